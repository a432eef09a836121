"""Trust score endpoints."""

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.actor import Actor, get_actor, require_roles
from app.database import get_db
from app.models.party import ActorRole, UserType
from app.schemas.trust import (
    ManualAdjustRequest,
    RecalculateRequest,
    RiskEntryResponse,
    TrustHistoryResponse,
    TrustScoreResponse,
)
from app.services import trust as trust_service

router = APIRouter(prefix="/trust", tags=["trust"])


@router.get("/risk", response_model=list[RiskEntryResponse])
async def risk_report(
    user_type: UserType | None = None,
    limit: int = Query(100, ge=1, le=500),
    actor: Actor = Depends(require_roles(ActorRole.ADMIN, ActorRole.SUPER_ADMIN)),
    db: AsyncSession = Depends(get_db),
) -> list[RiskEntryResponse]:
    """Dealers and technicians with elevated risk or flagged issues, riskiest first."""
    entries = await trust_service.list_risks(db, user_type, limit)
    return [RiskEntryResponse.model_validate(e) for e in entries]


@router.get("/{user_type}/{user_id}", response_model=TrustScoreResponse)
async def get_trust_score(
    user_type: UserType,
    user_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> TrustScoreResponse:
    party = await trust_service.get_party(db, user_id, user_type)
    if party is None:
        raise HTTPException(status_code=404, detail=f"{user_type.value.title()} not found")
    return TrustScoreResponse(
        user_id=user_id,
        user_type=user_type.value,
        trust_score=party.trust_score,
        trust_score_status=party.trust_score_status.value,
        last_trust_score_update=party.last_trust_score_update,
    )


@router.get("/{user_type}/{user_id}/history", response_model=list[TrustHistoryResponse])
async def trust_history(
    user_type: UserType,
    user_id: uuid.UUID,
    limit: int = Query(50, ge=1, le=200),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> list[TrustHistoryResponse]:
    """Score changes, newest first. Visible to the user and to operators."""
    if not actor.is_admin and actor.actor_id != user_id:
        raise HTTPException(status_code=403, detail="Not permitted to view this history")
    entries = await trust_service.list_history(db, user_id, limit)
    return [TrustHistoryResponse.model_validate(e) for e in entries]


@router.post("/{user_type}/{user_id}/recalculate", response_model=TrustHistoryResponse)
async def recalculate(
    user_type: UserType,
    user_id: uuid.UUID,
    data: RecalculateRequest | None = None,
    actor: Actor = Depends(
        require_roles(ActorRole.ADMIN, ActorRole.SUPER_ADMIN, ActorRole.SYSTEM)
    ),
    db: AsyncSession = Depends(get_db),
) -> TrustHistoryResponse:
    reason = data.reason if data else None
    outcome = await trust_service.recalculate(db, user_id, user_type, reason=reason)
    return TrustHistoryResponse.model_validate(outcome.unwrap())


@router.post("/{user_type}/{user_id}/adjust", response_model=TrustHistoryResponse)
async def manual_adjust(
    user_type: UserType,
    user_id: uuid.UUID,
    data: ManualAdjustRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> TrustHistoryResponse:
    """Operator adjustment. Admins are capped; super admins are not."""
    outcome = await trust_service.manual_adjust(
        db, user_id, user_type, data.delta, data.reason, actor.actor_id, actor.role
    )
    return TrustHistoryResponse.model_validate(outcome.unwrap())
