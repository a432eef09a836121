"""Job state machine, the single authority on legal status transitions.

Job lifecycle:
    PENDING → SOFT_LOCKED → WAITING_FOR_PAYMENT → ASSIGNED → IN_PROGRESS
        → COMPLETION_PENDING_APPROVAL → COMPLETED
    Any non-terminal state → CANCELLED

Backward edges:
- SOFT_LOCKED → PENDING: the dealer's exclusive window lapsed.
- WAITING_FOR_PAYMENT → PENDING: the payment deadline lapsed.
- COMPLETION_PENDING_APPROVAL → IN_PROGRESS: the dealer rejected the work.

``validate_transition`` is pure and side-effect free. ``transition`` applies
a validated change as a compare-and-set on (status, version) so that of two
concurrent writers exactly one wins; the loser observes the current state.
"""

import logging
import uuid

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import utcnow
from app.models.job import JobPost, JobStatus, TERMINAL_STATUSES
from app.models.party import ActorRole
from app.services.audit import log_audit
from app.services.outcome import Outcome, Rejection

logger = logging.getLogger(__name__)

_ADMINS = frozenset({ActorRole.ADMIN, ActorRole.SUPER_ADMIN})
_DEALER_OR_ADMIN = _ADMINS | {ActorRole.DEALER}
_CANCEL_BEFORE_WORK = _DEALER_OR_ADMIN | {ActorRole.SYSTEM}
_CANCEL_DURING_WORK = _DEALER_OR_ADMIN | {ActorRole.TECHNICIAN, ActorRole.SYSTEM}

# {from_state: {to_state: roles allowed to request it}}
_TRANSITIONS: dict[JobStatus, dict[JobStatus, frozenset[ActorRole]]] = {
    JobStatus.PENDING: {
        # A technician may accept a dealer counter-offer.
        JobStatus.SOFT_LOCKED: _DEALER_OR_ADMIN | {ActorRole.TECHNICIAN},
        JobStatus.CANCELLED: _CANCEL_BEFORE_WORK,
    },
    JobStatus.SOFT_LOCKED: {
        JobStatus.WAITING_FOR_PAYMENT: _DEALER_OR_ADMIN,
        JobStatus.PENDING: frozenset({ActorRole.SYSTEM}),
        JobStatus.CANCELLED: _CANCEL_BEFORE_WORK,
    },
    JobStatus.WAITING_FOR_PAYMENT: {
        JobStatus.ASSIGNED: frozenset({ActorRole.SYSTEM}),
        JobStatus.PENDING: frozenset({ActorRole.SYSTEM}),
        JobStatus.CANCELLED: _CANCEL_BEFORE_WORK,
    },
    JobStatus.ASSIGNED: {
        JobStatus.IN_PROGRESS: frozenset({ActorRole.TECHNICIAN}),
        JobStatus.CANCELLED: _CANCEL_DURING_WORK,
    },
    JobStatus.IN_PROGRESS: {
        JobStatus.COMPLETION_PENDING_APPROVAL: frozenset({ActorRole.TECHNICIAN}),
        JobStatus.CANCELLED: _CANCEL_DURING_WORK,
    },
    JobStatus.COMPLETION_PENDING_APPROVAL: {
        JobStatus.COMPLETED: _DEALER_OR_ADMIN,
        JobStatus.IN_PROGRESS: _DEALER_OR_ADMIN,
        JobStatus.CANCELLED: _DEALER_OR_ADMIN,
    },
    # Terminal states have no outgoing transitions
    JobStatus.COMPLETED: {},
    JobStatus.CANCELLED: {},
}


def validate_transition(
    current: JobStatus, requested: JobStatus, role: ActorRole
) -> tuple[bool, str]:
    """Check a transition against the adjacency table and the actor's role."""
    allowed = _TRANSITIONS.get(current, {})
    if requested not in allowed:
        return False, f"Cannot transition from {current.value} to {requested.value}"
    if role not in allowed[requested]:
        return False, (
            f"Role {role.value} may not move a job from {current.value} "
            f"to {requested.value}"
        )
    return True, ""


def is_terminal(status: JobStatus) -> bool:
    return status in TERMINAL_STATUSES


def valid_targets(status: JobStatus) -> set[JobStatus]:
    return set(_TRANSITIONS.get(status, {}))


async def compare_and_set(
    db: AsyncSession,
    job: JobPost,
    target: JobStatus,
    **values: object,
) -> bool:
    """Conditionally move ``job`` to ``target`` if nobody else moved it first.

    The update only matches when both status and version are still what this
    session last read. Returns False when the row was changed concurrently;
    in both cases ``job`` is refreshed to the committed state.
    """
    result = await db.execute(
        update(JobPost)
        .where(
            JobPost.job_id == job.job_id,
            JobPost.status == job.status,
            JobPost.version == job.version,
        )
        .values(status=target, version=JobPost.version + 1, updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    await db.refresh(job)
    return result.rowcount == 1


async def transition(
    db: AsyncSession,
    job: JobPost,
    target: JobStatus,
    role: ActorRole,
    actor_id: uuid.UUID | None = None,
    *,
    race_detail: str | None = None,
    audit_metadata: dict | None = None,
    **values: object,
) -> Outcome[JobPost]:
    """Validate, then compare-and-set, then append an audit row.

    Does not commit. The caller commits together with its own side effects.
    """
    previous = job.status
    ok, reason = validate_transition(previous, target, role)
    if not ok:
        logger.info("Rejected transition for job %s: %s", job.job_id, reason)
        return Outcome.reject(Rejection.CONFLICT, reason)

    if not await compare_and_set(db, job, target, **values):
        detail = race_detail or (
            f"Job was modified concurrently and is now {job.status.value}"
        )
        logger.info(
            "Lost race on job %s (%s -> %s), now %s",
            job.job_id, previous.value, target.value, job.status.value,
        )
        return Outcome.reject(Rejection.RACE_LOST, detail)

    await log_audit(
        db,
        entity_type="job",
        entity_id=job.job_id,
        action=f"{previous.value}->{target.value}",
        actor_id=actor_id,
        actor_role=role,
        metadata=audit_metadata,
    )
    logger.info(
        "Job %s %s -> %s by %s %s",
        job.job_id, previous.value, target.value, role.value, actor_id,
    )
    return Outcome.success(job)


async def load_job(db: AsyncSession, job_id: uuid.UUID) -> JobPost | None:
    result = await db.execute(select(JobPost).where(JobPost.job_id == job_id))
    return result.scalar_one_or_none()


async def lock_job(db: AsyncSession, job_id: uuid.UUID) -> None:
    """Hold the job row lock until commit without reloading the job."""
    await db.execute(
        select(JobPost.job_id).where(JobPost.job_id == job_id).with_for_update()
    )
