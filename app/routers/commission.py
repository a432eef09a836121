"""Commission preview endpoint."""

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.actor import Actor, get_actor
from app.config import settings
from app.database import get_db, utcnow
from app.schemas.commission import CommissionPreview
from app.services.commission import CommissionContext, resolve_commission
from app.services.escrow import split_warranty

router = APIRouter(tags=["commission"])


@router.get("/commission/preview", response_model=CommissionPreview)
async def commission_preview(
    amount: int = Query(..., gt=0),
    service_category: str | None = Query(None),
    service_sub_category: str | None = Query(None),
    city: str | None = Query(None),
    region: str | None = Query(None),
    dealer_id: uuid.UUID | None = Query(None),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> CommissionPreview:
    """What a job at ``amount`` would cost in commission and pay out.

    Read-only. Uses the same rule resolution as payment-intent creation, so
    the numbers match what the escrow row will record.
    """
    ctx = CommissionContext(
        service_category=service_category,
        service_sub_category=service_sub_category,
        city=city,
        region=region,
        dealer_id=dealer_id,
    )
    breakdown = await resolve_commission(db, amount, ctx, utcnow())
    immediate, hold = split_warranty(breakdown.net_amount, settings.warranty_hold_fraction)
    return CommissionPreview(
        job_amount=amount,
        commission_type=breakdown.commission_type.value,
        commission_value=breakdown.commission_value,
        commission_amount=breakdown.commission_amount,
        net_amount=breakdown.net_amount,
        rule_source=breakdown.rule_source,
        rule_id=breakdown.rule_id,
        warranty_hold_amount=hold,
        immediate_payout=immediate,
        currency=settings.currency,
    )
