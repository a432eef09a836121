"""Bid and negotiation endpoints."""

import uuid

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.actor import Actor, get_actor, require_roles
from app.database import get_db
from app.models.party import ActorRole
from app.redis import get_redis
from app.schemas.bid import (
    BidCreate,
    BidResponse,
    CounterOfferRequest,
    NegotiationChain,
    RankedBidResponse,
)
from app.schemas.job import JobResponse
from app.services import bidding
from app.services.deadline_queue import schedule_deadline
from app.services.state_machine import load_job

router = APIRouter(tags=["bids"])


@router.post("/jobs/{job_id}/bids", response_model=BidResponse, status_code=201)
async def submit_bid(
    job_id: uuid.UUID,
    data: BidCreate,
    actor: Actor = Depends(require_roles(ActorRole.TECHNICIAN)),
    db: AsyncSession = Depends(get_db),
) -> BidResponse:
    """Technician bids on an open job."""
    outcome = await bidding.submit_bid(db, job_id, actor.actor_id, data.price, data.message)
    return BidResponse.model_validate(outcome.unwrap())


@router.get("/jobs/{job_id}/bids", response_model=list[RankedBidResponse])
async def list_bids(
    job_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> list[RankedBidResponse]:
    """Bids ranked by technician trust score, then price. Technicians see their own."""
    rows = (await bidding.list_bids(db, job_id, actor)).unwrap()
    return [
        RankedBidResponse(
            **BidResponse.model_validate(bid).model_dump(),
            technician_name=tech.display_name,
            technician_trust_score=tech.trust_score,
        )
        for bid, tech in rows
    ]


@router.get("/jobs/{job_id}/negotiation", response_model=list[NegotiationChain])
async def negotiation(
    job_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> list[NegotiationChain]:
    """Per-technician negotiation position, replayed from the bid event log."""
    job = await load_job(db, job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    is_dealer = actor.is_admin or (actor.role == ActorRole.DEALER and actor.actor_id == job.dealer_id)
    if not is_dealer and actor.role != ActorRole.TECHNICIAN:
        raise HTTPException(status_code=403, detail="Not a party to this job")

    chains = await bidding.negotiation_state(db, job_id)
    return [
        NegotiationChain(
            technician_id=state.technician_id,
            head_bid_id=state.head_bid_id,
            price=state.price,
            awaiting=state.awaiting.value if state.awaiting else None,
            accepted=state.accepted,
        )
        for technician_id, state in chains.items()
        if is_dealer or technician_id == actor.actor_id
    ]


@router.post("/jobs/{job_id}/bids/{bid_id}/accept", response_model=JobResponse)
async def accept_bid(
    job_id: uuid.UUID,
    bid_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
) -> JobResponse:
    """Accept an offer; the job is soft-locked for the dealer's decision window."""
    job = (await bidding.accept_bid(db, job_id, bid_id, actor)).unwrap()
    await schedule_deadline(redis, "soft_lock", job.job_id, job.soft_lock_expires_at)
    return JobResponse.model_validate(job)


@router.post("/bids/{bid_id}/counter", response_model=BidResponse, status_code=201)
async def counter_offer(
    bid_id: uuid.UUID,
    data: CounterOfferRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> BidResponse:
    outcome = await bidding.counter_offer(db, bid_id, data.price, actor, data.message)
    return BidResponse.model_validate(outcome.unwrap())


@router.post("/bids/{bid_id}/reject", response_model=BidResponse)
async def reject_bid(
    bid_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> BidResponse:
    return BidResponse.model_validate((await bidding.reject_bid(db, bid_id, actor)).unwrap())


@router.post("/bids/{bid_id}/withdraw", response_model=BidResponse)
async def withdraw_bid(
    bid_id: uuid.UUID,
    actor: Actor = Depends(require_roles(ActorRole.TECHNICIAN)),
    db: AsyncSession = Depends(get_db),
) -> BidResponse:
    outcome = await bidding.withdraw_bid(db, bid_id, actor.actor_id)
    return BidResponse.model_validate(outcome.unwrap())
