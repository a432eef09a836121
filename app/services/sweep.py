"""Background sweep: wall-clock deadlines as idempotent state transitions.

``run_background_sweep`` is the single entry point. It re-reads every
candidate from the database and only acts on rows that are still past their
deadline, so running it twice, or from several workers at once, ends in the
same state as running it once. Concurrent workers are serialized by the job
compare-and-set: one expires a job, the others see it already moved.
"""

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from datetime import datetime

import redis.asyncio as aioredis
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.actor import SYSTEM_ACTOR
from app.config import settings
from app.database import utcnow
from app.models.job import JobPost, JobStatus
from app.services import notifications
from app.services.bidding import expire_soft_lock, expire_stale_bids
from app.services.deadline_queue import next_deadline, pop_due, seconds_until_next
from app.services.escrow import expire_payment_deadline
from app.services.jobs import apply_cancellation
from app.services.state_machine import load_job
from app.services.warranty import release_expired_holds

logger = logging.getLogger(__name__)

RECIRCULATION_CAP_REASON = "Cancelled after repeated lock or payment timeouts"


@dataclass
class SweepReport:
    soft_locks_expired: int = 0
    payments_expired: int = 0
    bids_expired: int = 0
    jobs_cancelled: int = 0
    warranties_released: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class _Notice:
    recipients: tuple[uuid.UUID, ...]
    template_id: str
    metadata: dict


def _last_technician(job: JobPost) -> tuple[uuid.UUID, ...]:
    """Technician who held the lock the job was just released from."""
    reasons = job.timeout_reasons or []
    if reasons and reasons[-1].get("technician_id"):
        return (uuid.UUID(reasons[-1]["technician_id"]),)
    return ()


async def _each_job(
    db: AsyncSession,
    job_ids: list[uuid.UUID],
    action: Callable[[JobPost], Awaitable[bool]],
    notice: Callable[[JobPost], _Notice],
    label: str,
) -> list[_Notice]:
    """Apply ``action`` to each job in its own transaction; failures are isolated."""
    done: list[_Notice] = []
    for job_id in job_ids:
        try:
            job = await load_job(db, job_id)
            if job is None or not await action(job):
                continue
            await db.commit()
            done.append(notice(job))
        except Exception:
            logger.exception("Sweep %s failed for job %s", label, job_id)
            await db.rollback()
    return done


async def _due_job_ids(db: AsyncSession, status: JobStatus, column, now: datetime) -> list[uuid.UUID]:  # type: ignore[no-untyped-def]
    result = await db.execute(
        select(JobPost.job_id).where(JobPost.status == status, column <= now)
    )
    return list(result.scalars().all())


async def run_background_sweep(db: AsyncSession, now: datetime | None = None) -> SweepReport:
    """Run every time-driven transition that is due at ``now``."""
    now = now or utcnow()
    report = SweepReport()

    # Soft locks
    ids = await _due_job_ids(db, JobStatus.SOFT_LOCKED, JobPost.soft_lock_expires_at, now)
    notices = await _each_job(
        db, ids,
        lambda job: expire_soft_lock(db, job, now),
        lambda job: _Notice((job.dealer_id, *_last_technician(job)),
                            notifications.SOFT_LOCK_EXPIRED, {"job_id": job.job_id}),
        "soft-lock",
    )
    report.soft_locks_expired = len(notices)

    # Payment deadlines
    ids = await _due_job_ids(
        db, JobStatus.WAITING_FOR_PAYMENT, JobPost.payment_deadline_expires_at, now
    )
    expired = await _each_job(
        db, ids,
        lambda job: expire_payment_deadline(db, job, now),
        lambda job: _Notice((job.dealer_id, *_last_technician(job)),
                            notifications.PAYMENT_EXPIRED, {"job_id": job.job_id}),
        "payment-deadline",
    )
    report.payments_expired = len(expired)
    notices += expired

    # Unanswered bids
    try:
        report.bids_expired = await expire_stale_bids(db, now)
        await db.commit()
    except Exception:
        logger.exception("Sweep bid-timeout failed")
        await db.rollback()

    # Recirculation cap
    result = await db.execute(
        select(JobPost.job_id).where(
            JobPost.status == JobStatus.PENDING,
            JobPost.recirculation_count >= settings.max_recirculations,
        )
    )

    async def _cancel(job: JobPost) -> bool:
        outcome = await apply_cancellation(db, job, SYSTEM_ACTOR, RECIRCULATION_CAP_REASON)
        return outcome.ok

    cancelled = await _each_job(
        db, list(result.scalars().all()),
        _cancel,
        lambda job: _Notice((job.dealer_id,), notifications.JOB_CANCELLED,
                            {"job_id": job.job_id, "reason": RECIRCULATION_CAP_REASON}),
        "recirculation-cap",
    )
    report.jobs_cancelled = len(cancelled)
    notices += cancelled

    # Warranty windows
    try:
        released = await release_expired_holds(db, now)
        await db.commit()
        report.warranties_released = len(released)
        notices += [
            _Notice((hold.technician_id,), notifications.WARRANTY_RELEASED,
                    {"hold_id": hold.hold_id, "amount": hold.hold_amount})
            for hold in released
        ]
    except Exception:
        logger.exception("Sweep warranty-release failed")
        await db.rollback()

    for n in notices:
        await notifications.notify_many(db, list(n.recipients), n.template_id, n.metadata)

    if any(asdict(report).values()):
        logger.info("Sweep at %s: %s", now.isoformat(), report.to_dict())
    return report


async def run_sweep_loop() -> None:
    """In-process scheduler: sleep until the next indexed deadline, then sweep.

    Sleeps at most ``sweep_interval_seconds`` so deadlines written by other
    replicas (or missing from the index) are still honoured.
    """
    from app.database import async_session_factory
    from app.redis import redis_client

    redis: aioredis.Redis = redis_client()
    ceiling = float(settings.sweep_interval_seconds)

    while True:
        try:
            try:
                deadline_ts = await next_deadline(redis)
            except Exception:
                logger.warning("Deadline index unavailable, sweeping on the interval")
                deadline_ts = None
            await asyncio.sleep(seconds_until_next(deadline_ts, time.time(), ceiling))

            async with async_session_factory() as db:
                await run_background_sweep(db)
            try:
                await pop_due(redis)
            except Exception:
                logger.warning("Could not trim the deadline index")

        except asyncio.CancelledError:
            logger.info("Sweep loop shutting down")
            break
        except Exception:
            logger.exception("Sweep loop error, retrying in 5s")
            await asyncio.sleep(5)

    await redis.aclose()
