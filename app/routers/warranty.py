"""Warranty hold endpoints."""

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.actor import Actor, get_actor
from app.database import get_db
from app.models.party import ActorRole
from app.schemas.warranty import IssueReport, IssueResolution, WarrantyHoldResponse
from app.services import warranty as warranty_service

router = APIRouter(prefix="/warranty-holds", tags=["warranty"])


@router.get("", response_model=list[WarrantyHoldResponse])
async def list_holds(
    technician_id: uuid.UUID = Query(...),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> list[WarrantyHoldResponse]:
    """Warranty holds on a technician's completed jobs."""
    if not actor.is_admin and not (
        actor.role == ActorRole.TECHNICIAN and actor.actor_id == technician_id
    ):
        raise HTTPException(status_code=403, detail="Technicians can only view their own holds")
    holds = await warranty_service.list_holds(db, technician_id)
    return [WarrantyHoldResponse.model_validate(h) for h in holds]


@router.get("/{hold_id}", response_model=WarrantyHoldResponse)
async def get_hold(
    hold_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> WarrantyHoldResponse:
    hold = await warranty_service.get_hold(db, hold_id)
    if hold is None:
        raise HTTPException(status_code=404, detail="Warranty hold not found")
    if not actor.is_admin and actor.actor_id not in (hold.dealer_id, hold.technician_id):
        raise HTTPException(status_code=403, detail="Not a party to this warranty")
    return WarrantyHoldResponse.model_validate(hold)


@router.post("/{hold_id}/report-issue", response_model=WarrantyHoldResponse)
async def report_issue(
    hold_id: uuid.UUID,
    data: IssueReport,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> WarrantyHoldResponse:
    """Dealer reports a defect within the warranty window; the hold is frozen."""
    outcome = await warranty_service.report_issue(
        db, hold_id, data.description, actor, data.metadata
    )
    return WarrantyHoldResponse.model_validate(outcome.unwrap())


@router.post("/{hold_id}/resolve", response_model=WarrantyHoldResponse)
async def resolve_issue(
    hold_id: uuid.UUID,
    data: IssueResolution,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> WarrantyHoldResponse:
    """Operator ruling on a frozen hold."""
    outcome = await warranty_service.resolve_issue(db, hold_id, data.outcome, actor, data.note)
    return WarrantyHoldResponse.model_validate(outcome.unwrap())
