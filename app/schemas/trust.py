"""Pydantic v2 schemas for trust scores."""

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TrustScoreResponse(BaseModel):
    user_id: uuid.UUID
    user_type: str
    trust_score: Decimal
    trust_score_status: str
    last_trust_score_update: datetime | None


class TrustHistoryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    history_id: uuid.UUID
    user_id: uuid.UUID
    user_type: str
    previous_score: Decimal
    new_score: Decimal
    change_type: str
    reason: str | None
    changed_by: uuid.UUID | None
    changed_by_role: str
    created_at: datetime

    @field_validator("user_type", "change_type", "changed_by_role", mode="before")
    @classmethod
    def serialize_enum(cls, v: object) -> str:
        if hasattr(v, "value"):
            return v.value
        return str(v)


class ManualAdjustRequest(BaseModel):
    delta: Decimal = Field(..., max_digits=5, decimal_places=2)
    reason: str = Field(..., min_length=1, max_length=1024)


class RecalculateRequest(BaseModel):
    reason: str | None = Field(None, max_length=1024)


class RiskEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: uuid.UUID
    user_type: str
    display_name: str
    status: str
    trust_score: Decimal
    risk_score: Decimal
    risk_level: str
    issues: list[str]

    @field_validator("user_type", "status", "risk_level", mode="before")
    @classmethod
    def serialize_enum(cls, v: object) -> str:
        if hasattr(v, "value"):
            return v.value
        return str(v)
