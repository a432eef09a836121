"""Pydantic v2 schemas for bids and negotiation."""

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class BidCreate(BaseModel):
    price: int = Field(..., gt=0)
    message: str | None = Field(None, max_length=2048)


class CounterOfferRequest(BaseModel):
    price: int = Field(..., gt=0)
    message: str | None = Field(None, max_length=2048)


class BidResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    bid_id: uuid.UUID
    job_id: uuid.UUID
    technician_id: uuid.UUID
    offered_price: int
    offered_by_role: str
    status: str
    is_counter_offer: bool
    previous_bid_id: uuid.UUID | None
    round_number: int
    message: str | None
    created_at: datetime
    last_activity_at: datetime | None

    @field_validator("status", "offered_by_role", mode="before")
    @classmethod
    def serialize_enum(cls, v: object) -> str:
        if hasattr(v, "value"):
            return v.value
        return str(v)


class RankedBidResponse(BidResponse):
    """A bid as listed for the dealer, with the bidder's standing."""
    technician_name: str
    technician_trust_score: Decimal


class NegotiationChain(BaseModel):
    technician_id: uuid.UUID
    head_bid_id: uuid.UUID | None
    price: int | None
    awaiting: str | None
    accepted: bool
