"""Commission rule model."""

import enum
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, Enum, ForeignKey, Numeric, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, UTCDateTime, utcnow


class CommissionType(enum.Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class CommissionRule(Base):
    __tablename__ = "commission_rules"

    rule_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    # Scope: any combination; null columns match everything.
    dealer_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("dealers.dealer_id", ondelete="RESTRICT"), nullable=True
    )
    service_category: Mapped[str | None] = mapped_column(String(128), nullable=True)
    service_sub_category: Mapped[str | None] = mapped_column(String(128), nullable=True)
    city: Mapped[str | None] = mapped_column(String(128), nullable=True)
    region: Mapped[str | None] = mapped_column(String(128), nullable=True)

    commission_type: Mapped[CommissionType] = mapped_column(
        Enum(CommissionType, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=CommissionType.PERCENTAGE,
    )
    # Percent for PERCENTAGE rules, minor units for FIXED rules.
    commission_value: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    effective_from: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    effective_to: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
