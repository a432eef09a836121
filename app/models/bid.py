"""Bid and negotiation-log models."""

import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, UTCDateTime, utcnow


class BidStatus(enum.Enum):
    PENDING = "pending"
    COUNTERED = "countered"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


# Bids still in negotiation. A technician has at most one chain of these per
# job, and at most one PENDING bid (the chain head).
OPEN_BID_STATUSES = frozenset({BidStatus.PENDING, BidStatus.COUNTERED})


class OfferedBy(enum.Enum):
    DEALER = "dealer"
    TECHNICIAN = "technician"


class BidEventType(enum.Enum):
    SUBMITTED = "submitted"
    COUNTERED = "countered"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    REOPENED = "reopened"
    WITHDRAWN = "withdrawn"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class JobBid(Base):
    __tablename__ = "job_bids"
    __table_args__ = (
        Index(
            "uq_job_bids_pending_per_technician",
            "job_id",
            "technician_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )

    bid_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("job_posts.job_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    technician_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("technicians.technician_id", ondelete="RESTRICT"), nullable=False
    )
    offered_price: Mapped[int] = mapped_column(BigInteger, nullable=False)
    offered_by_role: Mapped[OfferedBy] = mapped_column(
        Enum(OfferedBy, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=OfferedBy.TECHNICIAN,
    )
    status: Mapped[BidStatus] = mapped_column(
        Enum(BidStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=BidStatus.PENDING,
    )
    is_counter_offer: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    previous_bid_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("job_bids.bid_id", ondelete="RESTRICT"), nullable=True
    )
    round_number: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    last_activity_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class BidEvent(Base):
    """Append-only negotiation log. Never update or delete rows."""
    __tablename__ = "bid_events"
    __table_args__ = (
        UniqueConstraint("job_id", "sequence", name="uq_bid_events_job_sequence"),
    )

    event_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    # Insertion order within a job; timestamps alone can tie.
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("job_posts.job_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    bid_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("job_bids.bid_id", ondelete="RESTRICT"), nullable=False
    )
    technician_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    event_type: Mapped[BidEventType] = mapped_column(
        Enum(BidEventType, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    actor_role: Mapped[str] = mapped_column(String(32), nullable=False)
    actor_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    price: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
