"""Escrow payment model."""

import enum
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import BigInteger, Boolean, Enum, ForeignKey, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, UTCDateTime, utcnow


class PaymentStatus(enum.Enum):
    PENDING = "pending"
    ESCROW_HOLD = "escrow_hold"
    RELEASED = "released"
    FAILED = "failed"
    REFUNDED = "refunded"
    FORFEITED = "forfeited"


# Monotonic: nothing leaves RELEASED, FAILED, REFUNDED or FORFEITED.
PAYMENT_TRANSITIONS: dict[PaymentStatus, set[PaymentStatus]] = {
    PaymentStatus.PENDING: {PaymentStatus.ESCROW_HOLD, PaymentStatus.FAILED},
    PaymentStatus.ESCROW_HOLD: {
        PaymentStatus.RELEASED,
        PaymentStatus.REFUNDED,
        PaymentStatus.FORFEITED,
    },
    PaymentStatus.RELEASED: set(),
    PaymentStatus.FAILED: set(),
    PaymentStatus.REFUNDED: set(),
    PaymentStatus.FORFEITED: set(),
}


class PaymentType(enum.Enum):
    SERVICE_PAYMENT = "service_payment"
    WARRANTY_HOLD = "warranty_hold"


class EscrowRuling(enum.Enum):
    """Operator decision on escrow still held on a cancelled job."""
    REFUND_DEALER = "refund_dealer"
    RELEASE_TECHNICIAN = "release_technician"


class JobPayment(Base):
    __tablename__ = "job_payments"

    payment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("job_posts.job_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    dealer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("dealers.dealer_id", ondelete="RESTRICT"), nullable=False
    )
    technician_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("technicians.technician_id", ondelete="RESTRICT"), nullable=False
    )
    # Processor idempotency key; warranty rows derive theirs from the service row.
    payment_intent_id: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    payment_type: Mapped[PaymentType] = mapped_column(
        Enum(PaymentType, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=PaymentType.SERVICE_PAYMENT,
    )
    is_warranty_hold: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=PaymentStatus.PENDING,
    )

    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    commission_type: Mapped[str | None] = mapped_column(String(16), nullable=True)
    commission_value: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    commission_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    net_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    # Paid out to the technician; on a service row this excludes the warranty hold.
    released_amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    rule_source: Mapped[str | None] = mapped_column(String(64), nullable=True)
    currency: Mapped[str] = mapped_column(String(8), nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    captured_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    released_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
