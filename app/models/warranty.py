"""Warranty hold model."""

import enum
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import BigInteger, Enum, ForeignKey, Integer, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, JSONType, UTCDateTime, utcnow


class WarrantyStatus(enum.Enum):
    LOCKED = "locked"
    FROZEN = "frozen"
    RELEASED = "released"
    FORFEITED = "forfeited"


# FROZEN -> LOCKED only via an unfounded-issue resolution.
WARRANTY_TRANSITIONS: dict[WarrantyStatus, set[WarrantyStatus]] = {
    WarrantyStatus.LOCKED: {WarrantyStatus.FROZEN, WarrantyStatus.RELEASED},
    WarrantyStatus.FROZEN: {
        WarrantyStatus.LOCKED,
        WarrantyStatus.RELEASED,
        WarrantyStatus.FORFEITED,
    },
    WarrantyStatus.RELEASED: set(),
    WarrantyStatus.FORFEITED: set(),
}


class ResolutionOutcome(enum.Enum):
    UNFOUNDED = "unfounded"
    TECHNICIAN_NOT_AT_FAULT = "technician_not_at_fault"
    TECHNICIAN_AT_FAULT = "technician_at_fault"


class WarrantyHold(Base):
    __tablename__ = "warranty_holds"

    hold_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("job_posts.job_id", ondelete="RESTRICT"), unique=True, nullable=False
    )
    technician_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("technicians.technician_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    dealer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("dealers.dealer_id", ondelete="RESTRICT"), nullable=False
    )
    payment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("job_payments.payment_id", ondelete="RESTRICT"), nullable=False
    )
    hold_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    hold_fraction: Mapped[Decimal] = mapped_column(Numeric(5, 4), nullable=False)
    warranty_days: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[WarrantyStatus] = mapped_column(
        Enum(WarrantyStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=WarrantyStatus.LOCKED,
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    frozen_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    paused_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    issue_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    issue_reported_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    issue_reported_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    issue_metadata: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    rework_technician_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    resolution_outcome: Mapped[ResolutionOutcome | None] = mapped_column(
        Enum(ResolutionOutcome, values_callable=lambda x: [e.value for e in x]),
        nullable=True,
    )
    resolution_note: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    released_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    release_reason: Mapped[str | None] = mapped_column(String(64), nullable=True)
