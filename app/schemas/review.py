"""Pydantic v2 schemas for Reviews."""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ReviewCreate(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    is_complaint: bool = False
    comment: str | None = Field(None, max_length=4096)


class ReviewResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    review_id: uuid.UUID
    job_id: uuid.UUID
    reviewer_id: uuid.UUID
    reviewee_id: uuid.UUID
    role: str
    rating: int
    is_complaint: bool
    comment: str | None
    created_at: datetime

    @field_validator("role", mode="before")
    @classmethod
    def serialize_role(cls, v: object) -> str:
        if hasattr(v, "value"):
            return v.value
        return str(v)
