"""Warranty hold manager.

Hold lifecycle:
    LOCKED → FROZEN → RELEASED | FORFEITED
    LOCKED → RELEASED (window elapsed with no open issue)
    FROZEN → LOCKED only when the issue is resolved as unfounded; the time
    spent frozen is added back to the window.
"""

import logging
import uuid
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.actor import Actor
from app.config import settings
from app.database import utcnow
from app.models.job import JobPost
from app.models.party import ActorRole, UserType
from app.models.payment import JobPayment
from app.models.trust import Penalty, PenaltyReason, TrustChangeType
from app.models.warranty import (
    WARRANTY_TRANSITIONS,
    ResolutionOutcome,
    WarrantyHold,
    WarrantyStatus,
)
from app.services import notifications
from app.services.audit import log_audit
from app.services.escrow import settle_warranty_payment
from app.services.outcome import Outcome, Rejection
from app.services.trust import apply_recalculation

logger = logging.getLogger(__name__)


def can_move(current: WarrantyStatus, target: WarrantyStatus) -> bool:
    return target in WARRANTY_TRANSITIONS[current]


def _move(hold: WarrantyHold, target: WarrantyStatus) -> None:
    if not can_move(hold.status, target):
        raise ValueError(
            f"Warranty hold {hold.hold_id} cannot move from "
            f"{hold.status.value} to {target.value}"
        )
    hold.status = target


async def create_hold(
    db: AsyncSession, job: JobPost, payment: JobPayment, now: datetime | None = None
) -> WarrantyHold:
    """Open a hold over the warranty-portion payment. Does not commit."""
    now = now or utcnow()
    hold = WarrantyHold(
        hold_id=uuid.uuid4(),
        job_id=job.job_id,
        technician_id=payment.technician_id,
        dealer_id=payment.dealer_id,
        payment_id=payment.payment_id,
        hold_amount=payment.amount,
        hold_fraction=settings.warranty_hold_fraction,
        warranty_days=settings.warranty_days,
        status=WarrantyStatus.LOCKED,
        created_at=now,
        expires_at=now + timedelta(days=settings.warranty_days),
        paused_seconds=0,
    )
    db.add(hold)
    await db.flush()
    await log_audit(
        db, "warranty", hold.hold_id, "locked", None, ActorRole.SYSTEM, hold.hold_amount,
        {"job_id": str(job.job_id), "expires_at": hold.expires_at.isoformat()},
    )
    return hold


async def _load_hold(db: AsyncSession, hold_id: uuid.UUID) -> WarrantyHold | None:
    result = await db.execute(
        select(WarrantyHold).where(WarrantyHold.hold_id == hold_id).with_for_update()
    )
    return result.scalar_one_or_none()


async def get_hold(db: AsyncSession, hold_id: uuid.UUID) -> WarrantyHold | None:
    result = await db.execute(select(WarrantyHold).where(WarrantyHold.hold_id == hold_id))
    return result.scalar_one_or_none()


async def list_holds(db: AsyncSession, technician_id: uuid.UUID) -> list[WarrantyHold]:
    result = await db.execute(
        select(WarrantyHold)
        .where(WarrantyHold.technician_id == technician_id)
        .order_by(WarrantyHold.created_at.desc())
    )
    return list(result.scalars().all())


async def report_issue(
    db: AsyncSession,
    hold_id: uuid.UUID,
    description: str,
    actor: Actor,
    metadata: dict | None = None,
    now: datetime | None = None,
) -> Outcome[WarrantyHold]:
    """Freeze a hold over a reported issue and send the original technician back."""
    if not description or not description.strip():
        return Outcome.reject(Rejection.INVALID, "Issue description is required")
    now = now or utcnow()

    hold = await _load_hold(db, hold_id)
    if hold is None:
        return Outcome.reject(Rejection.NOT_FOUND, "Warranty hold not found")
    if not (actor.is_admin or (actor.role == ActorRole.DEALER and actor.actor_id == hold.dealer_id)):
        return Outcome.reject(Rejection.FORBIDDEN, "Only the job's dealer can report an issue")
    if hold.status in (WarrantyStatus.RELEASED, WarrantyStatus.FORFEITED):
        return Outcome.reject(Rejection.CONFLICT, f"Warranty hold is already {hold.status.value}")
    if hold.status == WarrantyStatus.FROZEN:
        return Outcome.reject(Rejection.CONFLICT, "An issue is already open on this warranty")
    if hold.expires_at <= now:
        return Outcome.reject(Rejection.CONFLICT, "The warranty window has ended")

    _move(hold, WarrantyStatus.FROZEN)
    hold.frozen_at = now
    hold.issue_description = description.strip()
    hold.issue_reported_by = actor.actor_id
    hold.issue_reported_at = now
    hold.issue_metadata = metadata
    hold.rework_technician_id = hold.technician_id
    await log_audit(
        db, "warranty", hold.hold_id, "frozen", actor.actor_id, actor.role, hold.hold_amount,
        {"description": hold.issue_description},
    )
    await db.flush()
    await apply_recalculation(
        db, hold.technician_id, UserType.TECHNICIAN,
        TrustChangeType.COMPLAINT_IMPACT, f"Warranty issue reported on job {hold.job_id}",
    )
    await db.commit()
    await db.refresh(hold)
    logger.info("Warranty hold %s frozen: %s", hold_id, hold.issue_description)

    await notifications.notify_many(
        db, [hold.technician_id, hold.dealer_id], notifications.WARRANTY_ISSUE_REPORTED,
        {"hold_id": hold.hold_id, "job_id": hold.job_id, "description": hold.issue_description},
    )
    return Outcome.success(hold)


async def resolve_issue(
    db: AsyncSession,
    hold_id: uuid.UUID,
    outcome: ResolutionOutcome,
    actor: Actor,
    note: str | None = None,
    now: datetime | None = None,
) -> Outcome[WarrantyHold]:
    """Operator ruling on a frozen hold."""
    if not actor.is_admin:
        return Outcome.reject(Rejection.FORBIDDEN, "Only operators can resolve warranty issues")
    now = now or utcnow()

    hold = await _load_hold(db, hold_id)
    if hold is None:
        return Outcome.reject(Rejection.NOT_FOUND, "Warranty hold not found")
    if hold.status != WarrantyStatus.FROZEN:
        return Outcome.reject(
            Rejection.CONFLICT, f"Warranty hold is {hold.status.value}, no open issue to resolve"
        )

    if outcome == ResolutionOutcome.UNFOUNDED:
        paused = now - hold.frozen_at if hold.frozen_at else timedelta(0)
        _move(hold, WarrantyStatus.LOCKED)
        hold.paused_seconds += int(paused.total_seconds())
        hold.expires_at = hold.expires_at + paused
        hold.frozen_at = None
    elif outcome == ResolutionOutcome.TECHNICIAN_NOT_AT_FAULT:
        _move(hold, WarrantyStatus.RELEASED)
        hold.released_at = now
        hold.release_reason = "resolved_not_at_fault"
        await settle_warranty_payment(db, hold.job_id, forfeit=False, now=now)
    else:
        _move(hold, WarrantyStatus.FORFEITED)
        await settle_warranty_payment(db, hold.job_id, forfeit=True, now=now)
        db.add(Penalty(
            penalty_id=uuid.uuid4(),
            user_id=hold.technician_id,
            user_type=UserType.TECHNICIAN,
            job_id=hold.job_id,
            reason=PenaltyReason.WARRANTY_FORFEIT,
            amount=hold.hold_amount,
            note=note,
        ))
        await db.flush()
        await apply_recalculation(
            db, hold.technician_id, UserType.TECHNICIAN,
            TrustChangeType.PENALTY_IMPACT, f"Warranty forfeited on job {hold.job_id}",
        )

    hold.resolution_outcome = outcome
    hold.resolution_note = note
    hold.resolved_by = actor.actor_id
    hold.resolved_at = now
    await log_audit(
        db, "warranty", hold.hold_id, f"resolved:{outcome.value}", actor.actor_id, actor.role,
        hold.hold_amount, {"note": note, "status": hold.status.value},
    )
    await db.commit()
    await db.refresh(hold)
    logger.info("Warranty hold %s resolved %s -> %s", hold_id, outcome.value, hold.status.value)

    await notifications.notify_many(
        db, [hold.technician_id, hold.dealer_id], notifications.WARRANTY_RESOLVED,
        {"hold_id": hold.hold_id, "outcome": outcome.value, "status": hold.status.value},
    )
    return Outcome.success(hold)


async def release_expired_holds(db: AsyncSession, now: datetime) -> list[WarrantyHold]:
    """Release LOCKED holds whose window has passed. Does not commit."""
    result = await db.execute(
        select(WarrantyHold)
        .where(WarrantyHold.status == WarrantyStatus.LOCKED, WarrantyHold.expires_at <= now)
        .with_for_update()
    )
    released = []
    for hold in result.scalars().all():
        _move(hold, WarrantyStatus.RELEASED)
        hold.released_at = now
        hold.release_reason = "warranty_expired"
        await settle_warranty_payment(db, hold.job_id, forfeit=False, now=now)
        await log_audit(
            db, "warranty", hold.hold_id, "released", None, ActorRole.SYSTEM, hold.hold_amount,
            {"reason": "warranty_expired"},
        )
        released.append(hold)
    return released
