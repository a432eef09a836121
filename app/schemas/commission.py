"""Pydantic v2 schemas for the commission preview."""

import uuid
from decimal import Decimal

from pydantic import BaseModel


class CommissionPreview(BaseModel):
    job_amount: int
    commission_type: str
    commission_value: Decimal
    commission_amount: int
    net_amount: int
    rule_source: str
    rule_id: uuid.UUID | None
    warranty_hold_amount: int
    immediate_payout: int
    currency: str
