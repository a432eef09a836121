"""Dealer and technician profiles with their denormalized trust score."""

import enum
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Enum, Numeric, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, UTCDateTime, utcnow


class UserType(enum.Enum):
    DEALER = "dealer"
    TECHNICIAN = "technician"


class ActorRole(enum.Enum):
    DEALER = "dealer"
    TECHNICIAN = "technician"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"
    SYSTEM = "system"


class PartyStatus(enum.Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"


class TrustScoreStatus(enum.Enum):
    GOOD = "good"
    NORMAL = "normal"
    RISK = "risk"
    CRITICAL = "critical"


class Dealer(Base):
    __tablename__ = "dealers"

    dealer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    display_name: Mapped[str] = mapped_column(String(128), nullable=False)
    city: Mapped[str | None] = mapped_column(String(128), nullable=True)
    region: Mapped[str | None] = mapped_column(String(128), nullable=True)
    status: Mapped[PartyStatus] = mapped_column(
        Enum(PartyStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=PartyStatus.ACTIVE,
    )
    trust_score: Mapped[Decimal] = mapped_column(
        Numeric(5, 2), nullable=False, default=Decimal("50.00")
    )
    trust_score_status: Mapped[TrustScoreStatus] = mapped_column(
        Enum(TrustScoreStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=TrustScoreStatus.RISK,
    )
    last_trust_score_update: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class Technician(Base):
    __tablename__ = "technicians"

    technician_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    display_name: Mapped[str] = mapped_column(String(128), nullable=False)
    city: Mapped[str | None] = mapped_column(String(128), nullable=True)
    region: Mapped[str | None] = mapped_column(String(128), nullable=True)
    status: Mapped[PartyStatus] = mapped_column(
        Enum(PartyStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=PartyStatus.ACTIVE,
    )
    trust_score: Mapped[Decimal] = mapped_column(
        Numeric(5, 2), nullable=False, default=Decimal("50.00")
    )
    trust_score_status: Mapped[TrustScoreStatus] = mapped_column(
        Enum(TrustScoreStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=TrustScoreStatus.RISK,
    )
    last_trust_score_update: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
