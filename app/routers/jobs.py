"""Job lifecycle endpoints."""

import uuid

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.actor import Actor, get_actor, require_roles
from app.database import get_db, utcnow
from app.models.job import JobPost, JobStatus
from app.models.party import ActorRole
from app.redis import get_redis
from app.schemas.job import (
    CancelRequest,
    JobCreate,
    JobResponse,
    RejectCompletionRequest,
    SoftLockResponse,
)
from app.services import bidding
from app.services import jobs as job_service
from app.services.deadline_queue import cancel_deadline, schedule_deadline

router = APIRouter(prefix="/jobs", tags=["jobs"])


def _can_view(job: JobPost, actor: Actor) -> bool:
    if actor.is_admin or actor.role == ActorRole.SYSTEM:
        return True
    if actor.role == ActorRole.DEALER:
        return actor.actor_id == job.dealer_id
    return job.status == JobStatus.PENDING or actor.actor_id in (
        job.assigned_technician_id, job.soft_locked_by_technician_id,
    )


@router.post("", response_model=JobResponse, status_code=201)
async def post_job(
    data: JobCreate,
    actor: Actor = Depends(require_roles(ActorRole.DEALER)),
    db: AsyncSession = Depends(get_db),
) -> JobResponse:
    """Dealer posts a job, open for bidding."""
    job = (await job_service.post_job(db, actor.actor_id, data)).unwrap()
    return JobResponse.model_validate(job)


@router.get("", response_model=list[JobResponse])
async def list_jobs(
    status: JobStatus | None = Query(None),
    limit: int = Query(50, ge=1, le=200),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> list[JobResponse]:
    jobs = await job_service.list_jobs(db, actor, status, limit)
    return [JobResponse.model_validate(j) for j in jobs]


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(
    job_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> JobResponse:
    """Current status of a job. Only parties to the job can view it once taken."""
    job = (await job_service.get_job_status(db, job_id)).unwrap()
    if not _can_view(job, actor):
        raise HTTPException(status_code=403, detail="Not a party to this job")
    return JobResponse.model_validate(job)


@router.get("/{job_id}/soft-lock", response_model=SoftLockResponse)
async def view_soft_lock(
    job_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
) -> SoftLockResponse:
    """Dealer opens the soft-locked job. Re-arms the decision window."""
    job = (await bidding.reset_soft_lock_timer(db, job_id, actor)).unwrap()
    await schedule_deadline(redis, "soft_lock", job.job_id, job.soft_lock_expires_at)
    remaining = max(0, int((job.soft_lock_expires_at - utcnow()).total_seconds()))
    return SoftLockResponse(job=JobResponse.model_validate(job), seconds_remaining=remaining)


@router.post("/{job_id}/soft-lock/confirm", response_model=JobResponse)
async def confirm_soft_lock(
    job_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
) -> JobResponse:
    """Dealer confirms the accepted bid: price locks and the payment window opens."""
    job = (await bidding.confirm_soft_lock(db, job_id, actor)).unwrap()
    await cancel_deadline(redis, "soft_lock", job.job_id)
    await schedule_deadline(redis, "payment", job.job_id, job.payment_deadline_expires_at)
    return JobResponse.model_validate(job)


@router.post("/{job_id}/start", response_model=JobResponse)
async def start_job(
    job_id: uuid.UUID,
    actor: Actor = Depends(require_roles(ActorRole.TECHNICIAN)),
    db: AsyncSession = Depends(get_db),
) -> JobResponse:
    """Assigned technician begins work."""
    job = (await job_service.start_job(db, job_id, actor)).unwrap()
    return JobResponse.model_validate(job)


@router.post("/{job_id}/request-completion", response_model=JobResponse)
async def request_completion(
    job_id: uuid.UUID,
    actor: Actor = Depends(require_roles(ActorRole.TECHNICIAN)),
    db: AsyncSession = Depends(get_db),
) -> JobResponse:
    job = (await job_service.request_completion(db, job_id, actor)).unwrap()
    return JobResponse.model_validate(job)


@router.post("/{job_id}/approve", response_model=JobResponse)
async def approve_completion(
    job_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> JobResponse:
    """Dealer approves the work. Escrow is released minus the warranty hold."""
    job = (await job_service.approve_completion(db, job_id, actor)).unwrap()
    return JobResponse.model_validate(job)


@router.post("/{job_id}/reject-completion", response_model=JobResponse)
async def reject_completion(
    job_id: uuid.UUID,
    data: RejectCompletionRequest | None = None,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> JobResponse:
    reason = data.reason if data else None
    job = (await job_service.reject_completion(db, job_id, actor, reason)).unwrap()
    return JobResponse.model_validate(job)


@router.post("/{job_id}/cancel", response_model=JobResponse)
async def cancel_job(
    job_id: uuid.UUID,
    data: CancelRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
) -> JobResponse:
    """Cancel a job. Penalties apply once a technician has been committed."""
    job = (await job_service.cancel_job(db, job_id, actor, data.reason)).unwrap()
    await cancel_deadline(redis, "soft_lock", job.job_id)
    await cancel_deadline(redis, "payment", job.job_id)
    return JobResponse.model_validate(job)
