"""Trust score history and penalty models."""

import enum
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import BigInteger, CheckConstraint, Enum, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, UTCDateTime, utcnow
from app.models.party import UserType


class TrustChangeType(enum.Enum):
    SYSTEM_RECALCULATION = "system_recalculation"
    MANUAL_INCREASE = "manual_increase"
    MANUAL_DECREASE = "manual_decrease"
    JOB_COMPLETION = "job_completion"
    RATING_IMPACT = "rating_impact"
    COMPLAINT_IMPACT = "complaint_impact"
    PENALTY_IMPACT = "penalty_impact"


class TrustScoreHistory(Base):
    """Append-only. One row per score mutation."""
    __tablename__ = "trust_score_history"
    __table_args__ = (
        CheckConstraint("new_score >= 0 AND new_score <= 100", name="ck_trust_history_new_score"),
    )

    history_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    user_type: Mapped[UserType] = mapped_column(
        Enum(UserType, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    previous_score: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    new_score: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    change_type: Mapped[TrustChangeType] = mapped_column(
        Enum(TrustChangeType, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    changed_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    changed_by_role: Mapped[str] = mapped_column(String(32), nullable=False, default="system")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class PenaltyReason(enum.Enum):
    LATE_CANCELLATION = "late_cancellation"
    WARRANTY_FORFEIT = "warranty_forfeit"


class Penalty(Base):
    __tablename__ = "penalties"

    penalty_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    user_type: Mapped[UserType] = mapped_column(
        Enum(UserType, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    job_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    reason: Mapped[PenaltyReason] = mapped_column(
        Enum(PenaltyReason, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
