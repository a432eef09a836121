"""Job lifecycle business logic: posting, work progress, completion, cancellation."""

import logging
import uuid
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.actor import Actor
from app.config import settings
from app.database import utcnow
from app.models.job import JobPost, JobStatus
from app.models.party import ActorRole, Dealer, PartyStatus, UserType
from app.models.trust import Penalty, PenaltyReason, TrustChangeType
from app.schemas.job import JobCreate
from app.services import notifications
from app.services.bidding import cancel_open_bids
from app.services.escrow import refund, release_on_completion
from app.services.outcome import Outcome, Rejection
from app.services.state_machine import load_job, transition
from app.services.trust import apply_recalculation
from app.services.warranty import create_hold
from app.utils.crypto import generate_nonce

logger = logging.getLogger(__name__)


def _is_job_dealer(job: JobPost, actor: Actor) -> bool:
    return actor.is_admin or (actor.role == ActorRole.DEALER and actor.actor_id == job.dealer_id)


def _is_assigned_technician(job: JobPost, actor: Actor) -> bool:
    return actor.role == ActorRole.TECHNICIAN and actor.actor_id == job.assigned_technician_id


def _job_number(now: datetime) -> str:
    return f"JOB-{now:%Y%m%d}-{generate_nonce()[:6].upper()}"


def penalty_fraction(stage: JobStatus) -> Decimal | None:
    """Share of the job price charged for cancelling from ``stage``."""
    if stage in (JobStatus.WAITING_FOR_PAYMENT, JobStatus.ASSIGNED):
        return settings.penalty_fraction_before_start
    if stage == JobStatus.IN_PROGRESS:
        return settings.penalty_fraction_in_progress
    if stage == JobStatus.COMPLETION_PENDING_APPROVAL:
        return settings.penalty_fraction_pending_approval
    return None


async def post_job(db: AsyncSession, dealer_id: uuid.UUID, data: JobCreate) -> Outcome[JobPost]:
    """Dealer posts a new job, open for bidding."""
    if data.estimated_cost <= 0 or data.estimated_cost > settings.max_job_amount:
        return Outcome.reject(Rejection.INVALID, "Estimated cost out of range")

    dealer = (await db.execute(
        select(Dealer).where(Dealer.dealer_id == dealer_id)
    )).scalar_one_or_none()
    if dealer is None or dealer.status != PartyStatus.ACTIVE:
        return Outcome.reject(Rejection.FORBIDDEN, "Dealer not found or not active")

    now = utcnow()
    job = JobPost(
        job_id=uuid.uuid4(),
        job_number=_job_number(now),
        dealer_id=dealer_id,
        title=data.title,
        description=data.description,
        service_category=data.service_category,
        service_sub_category=data.service_sub_category,
        city=data.city or dealer.city,
        region=data.region or dealer.region,
        status=JobStatus.PENDING,
        version=0,
        estimated_cost=data.estimated_cost,
        timeout_reasons=[],
        created_at=now,
    )
    db.add(job)
    await db.commit()
    await db.refresh(job)
    logger.info("Job %s (%s) posted by dealer %s", job.job_id, job.job_number, dealer_id)
    return Outcome.success(job)


async def get_job_status(db: AsyncSession, job_id: uuid.UUID) -> Outcome[JobPost]:
    job = await load_job(db, job_id)
    if job is None:
        return Outcome.reject(Rejection.NOT_FOUND, "Job not found")
    return Outcome.success(job)


async def list_jobs(
    db: AsyncSession, actor: Actor, status: JobStatus | None = None, limit: int = 50
) -> list[JobPost]:
    """Dealers see their own jobs; technicians see open jobs and their own."""
    stmt = select(JobPost)
    if actor.role == ActorRole.DEALER:
        stmt = stmt.where(JobPost.dealer_id == actor.actor_id)
    elif actor.role == ActorRole.TECHNICIAN:
        stmt = stmt.where(or_(
            JobPost.status == JobStatus.PENDING,
            JobPost.assigned_technician_id == actor.actor_id,
            JobPost.soft_locked_by_technician_id == actor.actor_id,
        ))
    if status is not None:
        stmt = stmt.where(JobPost.status == status)
    result = await db.execute(stmt.order_by(JobPost.created_at.desc()).limit(limit))
    return list(result.scalars().all())


async def start_job(db: AsyncSession, job_id: uuid.UUID, actor: Actor) -> Outcome[JobPost]:
    """Assigned technician begins work."""
    job = await load_job(db, job_id)
    if job is None:
        return Outcome.reject(Rejection.NOT_FOUND, "Job not found")
    if not _is_assigned_technician(job, actor):
        return Outcome.reject(Rejection.FORBIDDEN, "Only the assigned technician can start this job")

    outcome = await transition(
        db, job, JobStatus.IN_PROGRESS, actor.role, actor.actor_id, started_at=utcnow()
    )
    if not outcome.ok:
        return outcome
    await db.commit()
    await notifications.notify(db, job.dealer_id, notifications.JOB_STARTED, {"job_id": job.job_id})
    return Outcome.success(job)


async def request_completion(db: AsyncSession, job_id: uuid.UUID, actor: Actor) -> Outcome[JobPost]:
    """Technician reports the work done and asks the dealer to approve."""
    job = await load_job(db, job_id)
    if job is None:
        return Outcome.reject(Rejection.NOT_FOUND, "Job not found")
    if not _is_assigned_technician(job, actor):
        return Outcome.reject(Rejection.FORBIDDEN, "Only the assigned technician can request completion")

    outcome = await transition(
        db, job, JobStatus.COMPLETION_PENDING_APPROVAL, actor.role, actor.actor_id,
        completion_requested_at=utcnow(),
    )
    if not outcome.ok:
        return outcome
    await db.commit()
    await notifications.notify(
        db, job.dealer_id, notifications.COMPLETION_REQUESTED, {"job_id": job.job_id}
    )
    return Outcome.success(job)


async def reject_completion(
    db: AsyncSession, job_id: uuid.UUID, actor: Actor, reason: str | None = None
) -> Outcome[JobPost]:
    """Dealer sends the work back to the technician."""
    job = await load_job(db, job_id)
    if job is None:
        return Outcome.reject(Rejection.NOT_FOUND, "Job not found")
    if not _is_job_dealer(job, actor):
        return Outcome.reject(Rejection.FORBIDDEN, "Only the job's dealer can reject completion")
    if job.status != JobStatus.COMPLETION_PENDING_APPROVAL:
        return Outcome.reject(Rejection.CONFLICT, f"Job is {job.status.value}, not awaiting approval")

    outcome = await transition(
        db, job, JobStatus.IN_PROGRESS, actor.role, actor.actor_id,
        audit_metadata={"reason": reason},
        completion_requested_at=None,
    )
    if not outcome.ok:
        return outcome
    await db.commit()
    await notifications.notify(
        db, job.assigned_technician_id, notifications.COMPLETION_REJECTED,
        {"job_id": job.job_id, "reason": reason},
    )
    return Outcome.success(job)


async def approve_completion(
    db: AsyncSession, job_id: uuid.UUID, actor: Actor, now: datetime | None = None
) -> Outcome[JobPost]:
    """Complete the job, release escrow with a warranty hold, and rescore both parties."""
    now = now or utcnow()
    job = await load_job(db, job_id)
    if job is None:
        return Outcome.reject(Rejection.NOT_FOUND, "Job not found")
    if not _is_job_dealer(job, actor):
        return Outcome.reject(Rejection.FORBIDDEN, "Only the job's dealer can approve completion")

    outcome = await transition(
        db, job, JobStatus.COMPLETED, actor.role, actor.actor_id, completed_at=now
    )
    if not outcome.ok:
        return outcome

    split = await release_on_completion(db, job, now)
    if not split.ok:
        logger.error("Escrow release failed for job %s: %s", job_id, split.detail)
        await db.rollback()
        return Outcome.reject(split.rejection, split.detail)
    hold = await create_hold(db, job, split.value.warranty_payment, now)

    reason = f"Job {job.job_number} completed"
    await apply_recalculation(db, job.assigned_technician_id, UserType.TECHNICIAN,
                              TrustChangeType.JOB_COMPLETION, reason)
    await apply_recalculation(db, job.dealer_id, UserType.DEALER,
                              TrustChangeType.JOB_COMPLETION, reason)
    await db.commit()

    await notifications.notify_many(
        db, [job.dealer_id, job.assigned_technician_id], notifications.JOB_COMPLETED,
        {
            "job_id": job.job_id,
            "immediate_amount": split.value.immediate_amount,
            "warranty_hold": split.value.hold_amount,
            "warranty_expires_at": hold.expires_at.isoformat(),
        },
    )
    return Outcome.success(job)


async def apply_cancellation(
    db: AsyncSession,
    job: JobPost,
    actor: Actor,
    reason: str,
) -> Outcome[JobPost]:
    """Cancel a job with its bids, money and penalties. Does not commit.

    Escrowed funds are refunded only if work has not started; otherwise they
    stay held for an operator ruling.
    """
    stage = job.status
    work_started = stage in (JobStatus.IN_PROGRESS, JobStatus.COMPLETION_PENDING_APPROVAL)
    outcome = await transition(
        db, job, JobStatus.CANCELLED, actor.role, actor.actor_id,
        audit_metadata={"reason": reason, "stage": stage.value},
        cancelled_at=utcnow(),
        cancellation_reason=reason,
        cancelled_by_role=actor.role.value,
    )
    if not outcome.ok:
        return outcome

    await cancel_open_bids(db, job.job_id, actor.role, actor.actor_id)

    if not work_started:
        refunded = await refund(db, job, reason, actor)
        if not refunded.ok:
            # Nothing is released before completion, so this is a broken ledger.
            raise RuntimeError(f"Refund failed for job {job.job_id}: {refunded.detail}")
    else:
        logger.warning("Job %s cancelled after work started; escrow held for ruling", job.job_id)

    fraction = penalty_fraction(stage)
    user_type = actor.user_type
    if fraction is not None and user_type is not None:
        amount = int((Decimal(job.final_price or 0) * fraction).quantize(
            Decimal(1), rounding=ROUND_HALF_UP
        ))
        db.add(Penalty(
            penalty_id=uuid.uuid4(),
            user_id=actor.actor_id,
            user_type=user_type,
            job_id=job.job_id,
            reason=PenaltyReason.LATE_CANCELLATION,
            amount=amount,
            note=f"Cancelled from {stage.value}: {reason}",
        ))
        await db.flush()
        await apply_recalculation(
            db, actor.actor_id, user_type, TrustChangeType.PENALTY_IMPACT,
            f"Late cancellation of job {job.job_number}",
        )
        logger.info(
            "Penalty %s on %s %s for cancelling job %s from %s",
            amount, user_type.value, actor.actor_id, job.job_id, stage.value,
        )
    return Outcome.success(job)


async def cancel_job(
    db: AsyncSession, job_id: uuid.UUID, actor: Actor, reason: str
) -> Outcome[JobPost]:
    if not reason or not reason.strip():
        return Outcome.reject(Rejection.INVALID, "A cancellation reason is required")
    job = await load_job(db, job_id)
    if job is None:
        return Outcome.reject(Rejection.NOT_FOUND, "Job not found")
    if not (_is_job_dealer(job, actor) or _is_assigned_technician(job, actor)):
        return Outcome.reject(Rejection.FORBIDDEN, "Not a party to this job")

    technician_id = job.assigned_technician_id or job.soft_locked_by_technician_id
    outcome = await apply_cancellation(db, job, actor, reason.strip())
    if not outcome.ok:
        return outcome
    await db.commit()

    await notifications.notify_many(
        db, [job.dealer_id, technician_id], notifications.JOB_CANCELLED,
        {"job_id": job.job_id, "reason": job.cancellation_reason},
    )
    return Outcome.success(job)
