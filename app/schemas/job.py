"""Pydantic v2 schemas for Job lifecycle endpoints."""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.config import settings


class JobCreate(BaseModel):
    """Dealer posts a job. Amounts are integer minor units."""
    title: str = Field(..., min_length=1, max_length=255)
    description: str | None = Field(None, max_length=8192)
    service_category: str = Field(..., min_length=1, max_length=64)
    service_sub_category: str | None = Field(None, max_length=64)
    city: str | None = Field(None, max_length=128)
    region: str | None = Field(None, max_length=128)
    estimated_cost: int = Field(..., gt=0)

    @field_validator("estimated_cost")
    @classmethod
    def validate_cost(cls, v: int) -> int:
        if v > settings.max_job_amount:
            raise ValueError(f"Maximum job amount is {settings.max_job_amount}")
        return v


class CancelRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=1024)


class RejectCompletionRequest(BaseModel):
    reason: str | None = Field(None, max_length=1024)


class JobResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    job_id: uuid.UUID
    job_number: str
    dealer_id: uuid.UUID
    assigned_technician_id: uuid.UUID | None
    title: str
    description: str | None
    service_category: str
    service_sub_category: str | None
    city: str | None
    region: str | None
    status: str
    version: int
    estimated_cost: int
    final_price: int | None
    price_locked: bool
    accepted_bid_id: uuid.UUID | None
    soft_locked_by_technician_id: uuid.UUID | None
    soft_lock_expires_at: datetime | None
    payment_deadline_expires_at: datetime | None
    negotiation_rounds: int
    recirculation_count: int
    created_at: datetime
    updated_at: datetime | None
    started_at: datetime | None
    completed_at: datetime | None
    cancelled_at: datetime | None
    cancellation_reason: str | None

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str:
        if hasattr(v, "value"):
            return v.value
        return str(v)


class SoftLockResponse(BaseModel):
    """What the dealer sees when opening a soft-locked job."""
    job: JobResponse
    seconds_remaining: int
