"""Pydantic v2 schemas for payments."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.models.payment import EscrowRuling


class PaymentIntentRequest(BaseModel):
    """Amount is optional; when given it must match the locked price."""
    amount: int | None = Field(None, gt=0)


class EscrowRulingRequest(BaseModel):
    ruling: EscrowRuling
    note: str = Field(..., min_length=1, max_length=4096)


class PaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    payment_id: uuid.UUID
    job_id: uuid.UUID
    dealer_id: uuid.UUID
    technician_id: uuid.UUID | None
    payment_intent_id: str
    payment_type: str
    is_warranty_hold: bool
    status: str
    amount: int
    commission_type: str | None
    commission_value: Decimal | None
    commission_amount: int
    net_amount: int
    released_amount: int | None = None
    rule_source: str | None
    currency: str
    created_at: datetime
    captured_at: datetime | None
    released_at: datetime | None
    refunded_at: datetime | None
    failure_reason: str | None

    @field_validator("status", "payment_type", mode="before")
    @classmethod
    def serialize_enum(cls, v: object) -> str:
        if hasattr(v, "value"):
            return v.value
        return str(v)


class WebhookEvent(BaseModel):
    """Capture notification from the payment processor."""
    type: Literal["capture.succeeded", "capture.failed"]
    intent_id: str = Field(..., min_length=1, max_length=255)
    reason: str | None = Field(None, max_length=1024)
