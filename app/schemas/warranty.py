"""Pydantic v2 schemas for warranty holds."""

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.models.warranty import ResolutionOutcome


class IssueReport(BaseModel):
    description: str = Field(..., min_length=1, max_length=4096)
    metadata: dict | None = None


class IssueResolution(BaseModel):
    outcome: ResolutionOutcome
    note: str | None = Field(None, max_length=4096)


class WarrantyHoldResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    hold_id: uuid.UUID
    job_id: uuid.UUID
    technician_id: uuid.UUID
    dealer_id: uuid.UUID
    payment_id: uuid.UUID | None
    hold_amount: int
    hold_fraction: Decimal
    warranty_days: int
    status: str
    created_at: datetime
    expires_at: datetime
    frozen_at: datetime | None
    paused_seconds: int
    issue_description: str | None
    issue_reported_at: datetime | None
    rework_technician_id: uuid.UUID | None
    resolution_outcome: str | None
    resolution_note: str | None
    resolved_at: datetime | None
    released_at: datetime | None

    @field_validator("status", "resolution_outcome", mode="before")
    @classmethod
    def serialize_enum(cls, v: object) -> str | None:
        if v is None:
            return None
        if hasattr(v, "value"):
            return v.value
        return str(v)
