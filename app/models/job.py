"""Job post SQLAlchemy model, full lifecycle entity."""

import enum
import uuid
from datetime import datetime

from sqlalchemy import BigInteger, Boolean, Enum, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, JSONType, UTCDateTime, utcnow


class JobStatus(enum.Enum):
    PENDING = "pending"
    SOFT_LOCKED = "soft_locked"
    WAITING_FOR_PAYMENT = "waiting_for_payment"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETION_PENDING_APPROVAL = "completion_pending_approval"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.CANCELLED})

# States in which a technician has been committed to the job.
ASSIGNED_STATUSES = frozenset({
    JobStatus.ASSIGNED,
    JobStatus.IN_PROGRESS,
    JobStatus.COMPLETION_PENDING_APPROVAL,
    JobStatus.COMPLETED,
})


class JobPost(Base):
    __tablename__ = "job_posts"

    job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    job_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    dealer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("dealers.dealer_id", ondelete="RESTRICT"), nullable=False
    )
    assigned_technician_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("technicians.technician_id", ondelete="RESTRICT"), nullable=True
    )
    title: Mapped[str] = mapped_column(String(256), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    service_category: Mapped[str] = mapped_column(String(128), nullable=False)
    service_sub_category: Mapped[str | None] = mapped_column(String(128), nullable=True)
    city: Mapped[str | None] = mapped_column(String(128), nullable=True)
    region: Mapped[str | None] = mapped_column(String(128), nullable=True)
    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=JobStatus.PENDING,
    )
    # Bumped on every status compare-and-set.
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    estimated_cost: Mapped[int] = mapped_column(BigInteger, nullable=False)
    final_price: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    price_locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    accepted_bid_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    soft_locked_by_technician_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    soft_locked_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    soft_lock_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    payment_deadline_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    negotiation_rounds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    recirculation_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    timeout_reasons: Mapped[list | None] = mapped_column(JSONType, nullable=True, default=list)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )
    assigned_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    completion_requested_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancelled_by_role: Mapped[str | None] = mapped_column(String(32), nullable=True)
