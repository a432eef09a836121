"""Escrow payment engine: intent, capture, release, refund with row-level locking.

Money moves PENDING → ESCROW_HOLD → RELEASED. A technician is only ever paid
out of a captured payment, and a payment never leaves a terminal status.
On completion the captured net amount is split into an immediate payout and
a warranty-hold row that the warranty manager settles later.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.actor import Actor
from app.config import settings
from app.database import utcnow
from app.models.job import JobPost, JobStatus
from app.models.party import ActorRole
from app.models.payment import (
    PAYMENT_TRANSITIONS,
    EscrowRuling,
    JobPayment,
    PaymentStatus,
    PaymentType,
)
from app.services import notifications
from app.services.audit import log_audit
from app.services.bidding import reject_competing_bids, reopen_job
from app.services.commission import CommissionContext, resolve_commission
from app.services.outcome import Outcome, Rejection
from app.services.payment_processor import PaymentProcessor, get_payment_processor
from app.services.state_machine import load_job, transition

logger = logging.getLogger(__name__)

PAYMENT_EXPIRED = "Payment window expired; the job has been reopened for bidding"


@dataclass(frozen=True)
class ReleaseSplit:
    service_payment: JobPayment
    warranty_payment: JobPayment
    immediate_amount: int
    hold_amount: int


def split_warranty(net_amount: int, fraction: Decimal) -> tuple[int, int]:
    """Return (immediate, hold) with hold rounded half-up to a minor unit."""
    hold = int((Decimal(net_amount) * fraction).quantize(Decimal(1), rounding=ROUND_HALF_UP))
    hold = max(0, min(hold, net_amount))
    return net_amount - hold, hold


def _move(payment: JobPayment, target: PaymentStatus) -> None:
    if target not in PAYMENT_TRANSITIONS[payment.status]:
        raise ValueError(
            f"Payment {payment.payment_id} cannot move from "
            f"{payment.status.value} to {target.value}"
        )
    payment.status = target


async def _service_payments(
    db: AsyncSession, job_id: uuid.UUID, *statuses: PaymentStatus
) -> list[JobPayment]:
    stmt = select(JobPayment).where(
        JobPayment.job_id == job_id,
        JobPayment.payment_type == PaymentType.SERVICE_PAYMENT,
    )
    if statuses:
        stmt = stmt.where(JobPayment.status.in_(statuses))
    result = await db.execute(stmt.order_by(JobPayment.created_at).with_for_update())
    return list(result.scalars().all())


async def list_payments(db: AsyncSession, job_id: uuid.UUID) -> list[JobPayment]:
    result = await db.execute(
        select(JobPayment).where(JobPayment.job_id == job_id).order_by(JobPayment.created_at)
    )
    return list(result.scalars().all())


async def create_payment_intent(
    db: AsyncSession,
    job_id: uuid.UUID,
    actor: Actor,
    amount: int | None = None,
    processor: PaymentProcessor | None = None,
    now: datetime | None = None,
) -> Outcome[JobPayment]:
    """Open a processor intent for the locked price, within the payment window.

    Past the deadline the job is reopened for bidding instead. Calling again
    while an intent is pending returns that intent.
    """
    if amount is not None and amount <= 0:
        return Outcome.reject(Rejection.INVALID, "Amount must be positive")
    now = now or utcnow()

    job = await load_job(db, job_id)
    if job is None:
        return Outcome.reject(Rejection.NOT_FOUND, "Job not found")
    if not (actor.is_admin or (actor.role == ActorRole.DEALER and actor.actor_id == job.dealer_id)):
        return Outcome.reject(Rejection.FORBIDDEN, "Only the job's dealer can pay for it")

    if job.status != JobStatus.WAITING_FOR_PAYMENT:
        if job.assigned_technician_id is not None:
            return Outcome.reject(Rejection.ALREADY_DONE, "Payment already captured for this job")
        return Outcome.reject(Rejection.CONFLICT, f"Job is {job.status.value}, not awaiting payment")

    if job.payment_deadline_expires_at is None or job.payment_deadline_expires_at <= now:
        if await expire_payment_deadline(db, job, now):
            await db.commit()
            return Outcome.reject(Rejection.EXPIRED, PAYMENT_EXPIRED)
        return Outcome.reject(Rejection.CONFLICT, f"Job is {job.status.value}, not awaiting payment")

    if amount is not None and amount != job.final_price:
        return Outcome.reject(
            Rejection.CONFLICT, f"Amount must equal the locked price of {job.final_price}"
        )

    pending = await _service_payments(db, job_id, PaymentStatus.PENDING)
    if pending:
        return Outcome.success(pending[-1])

    breakdown = await resolve_commission(
        db,
        job.final_price,
        CommissionContext(
            service_category=job.service_category,
            service_sub_category=job.service_sub_category,
            city=job.city,
            region=job.region,
            dealer_id=job.dealer_id,
        ),
        now,
    )

    # Money-moving write: one attempt, failures propagate.
    attempt = len(await _service_payments(db, job_id)) + 1
    processor = processor or get_payment_processor()
    intent = await processor.create_intent(
        job.final_price, settings.currency, {"job_id": str(job.job_id), "attempt": attempt}
    )

    payment = JobPayment(
        payment_id=uuid.uuid4(),
        job_id=job.job_id,
        dealer_id=job.dealer_id,
        technician_id=job.soft_locked_by_technician_id,
        payment_intent_id=intent.intent_id,
        payment_type=PaymentType.SERVICE_PAYMENT,
        is_warranty_hold=False,
        status=PaymentStatus.PENDING,
        amount=job.final_price,
        commission_type=breakdown.commission_type.value,
        commission_value=breakdown.commission_value,
        commission_amount=breakdown.commission_amount,
        net_amount=breakdown.net_amount,
        rule_source=breakdown.rule_source,
        currency=settings.currency,
    )
    db.add(payment)
    await db.flush()
    await log_audit(
        db, "payment", payment.payment_id, "intent_created",
        actor.actor_id, actor.role, payment.amount,
        {"job_id": str(job.job_id), "intent_id": intent.intent_id, **breakdown.to_dict()},
    )
    await db.commit()
    await db.refresh(payment)
    logger.info("Payment intent %s for job %s: %s", intent.intent_id, job_id, payment.amount)
    return Outcome.success(payment)


async def _payment_by_intent(db: AsyncSession, intent_id: str) -> JobPayment | None:
    result = await db.execute(
        select(JobPayment).where(JobPayment.payment_intent_id == intent_id).with_for_update()
    )
    return result.scalar_one_or_none()


async def handle_capture_success(
    db: AsyncSession, intent_id: str, now: datetime | None = None
) -> Outcome[JobPayment]:
    """Processor captured the funds: hold them in escrow and assign the job.

    Idempotent on the intent id; a replay or a capture for a job that is no
    longer awaiting payment is rejected and logged, never applied twice.
    """
    now = now or utcnow()
    payment = await _payment_by_intent(db, intent_id)
    if payment is None:
        logger.warning("Capture for unknown intent %s", intent_id)
        return Outcome.reject(Rejection.NOT_FOUND, "Unknown payment intent")
    if payment.status != PaymentStatus.PENDING:
        logger.warning("Duplicate capture for intent %s (%s)", intent_id, payment.status.value)
        return Outcome.reject(
            Rejection.ALREADY_DONE, f"Payment already {payment.status.value}"
        )

    job = await load_job(db, payment.job_id)
    if job is None or job.status != JobStatus.WAITING_FOR_PAYMENT:
        state = job.status.value if job else "missing"
        logger.warning("Capture for intent %s rejected: job is %s", intent_id, state)
        return Outcome.reject(Rejection.CONFLICT, f"Job is {state}, not awaiting payment")

    outcome = await transition(
        db, job, JobStatus.ASSIGNED, ActorRole.SYSTEM,
        audit_metadata={"intent_id": intent_id},
        assigned_technician_id=job.soft_locked_by_technician_id,
        assigned_at=now,
    )
    if not outcome.ok:
        logger.warning("Capture for intent %s lost to a concurrent change", intent_id)
        return Outcome.reject(outcome.rejection, outcome.detail)

    _move(payment, PaymentStatus.ESCROW_HOLD)
    payment.captured_at = now
    await log_audit(
        db, "payment", payment.payment_id, "captured", None, ActorRole.SYSTEM,
        payment.amount, {"job_id": str(job.job_id), "intent_id": intent_id},
    )
    await reject_competing_bids(db, job)
    await db.commit()
    await db.refresh(payment)
    logger.info("Captured %s for job %s into escrow", payment.amount, job.job_id)

    await notifications.notify_many(
        db, [job.dealer_id, job.assigned_technician_id], notifications.PAYMENT_CAPTURED,
        {"job_id": job.job_id, "amount": payment.amount},
    )
    return Outcome.success(payment)


async def handle_capture_failure(
    db: AsyncSession, intent_id: str, reason: str | None = None
) -> Outcome[JobPayment]:
    """Processor declined: the intent fails, the job keeps its payment window."""
    payment = await _payment_by_intent(db, intent_id)
    if payment is None:
        return Outcome.reject(Rejection.NOT_FOUND, "Unknown payment intent")
    if payment.status != PaymentStatus.PENDING:
        return Outcome.reject(
            Rejection.ALREADY_DONE, f"Payment already {payment.status.value}"
        )
    _move(payment, PaymentStatus.FAILED)
    payment.failure_reason = reason or "capture_failed"
    await log_audit(
        db, "payment", payment.payment_id, "failed", None, ActorRole.SYSTEM,
        payment.amount, {"reason": payment.failure_reason},
    )
    await db.commit()
    await db.refresh(payment)
    logger.info("Capture failed for intent %s: %s", intent_id, payment.failure_reason)

    await notifications.notify(
        db, payment.dealer_id, notifications.PAYMENT_FAILED,
        {"job_id": payment.job_id, "reason": payment.failure_reason},
    )
    return Outcome.success(payment)


async def expire_payment_deadline(db: AsyncSession, job: JobPost, now: datetime) -> bool:
    """Reopen an unpaid job past its deadline and fail its pending intents.

    No-op unless the job is still awaiting payment past the deadline. Does
    not commit.
    """
    if job.status != JobStatus.WAITING_FOR_PAYMENT:
        return False
    if job.payment_deadline_expires_at is not None and job.payment_deadline_expires_at > now:
        return False
    if not await reopen_job(db, job, "payment_deadline_expired", now):
        return False
    for payment in await _service_payments(db, job.job_id, PaymentStatus.PENDING):
        _move(payment, PaymentStatus.FAILED)
        payment.failure_reason = "payment_window_expired"
    return True


async def release_on_completion(
    db: AsyncSession, job: JobPost, now: datetime | None = None
) -> Outcome[ReleaseSplit]:
    """Pay out a completed job, retaining the warranty fraction of the net amount.

    Does not commit; the warranty manager attaches its hold in the same
    transaction.
    """
    now = now or utcnow()
    if job.status != JobStatus.COMPLETED:
        return Outcome.reject(
            Rejection.CONFLICT, f"Job must be completed to release, currently {job.status.value}"
        )
    held = await _service_payments(db, job.job_id, PaymentStatus.ESCROW_HOLD)
    if not held:
        released = await _service_payments(db, job.job_id, PaymentStatus.RELEASED)
        if released:
            return Outcome.reject(Rejection.ALREADY_DONE, "Escrow already released")
        return Outcome.reject(Rejection.NOT_FOUND, "No escrowed payment for this job")
    payment = held[0]

    immediate, hold = split_warranty(payment.net_amount, settings.warranty_hold_fraction)

    _move(payment, PaymentStatus.RELEASED)
    payment.released_amount = immediate
    payment.released_at = now

    warranty_payment = JobPayment(
        payment_id=uuid.uuid4(),
        job_id=job.job_id,
        dealer_id=payment.dealer_id,
        technician_id=payment.technician_id,
        payment_intent_id=f"{payment.payment_intent_id}:warranty",
        payment_type=PaymentType.WARRANTY_HOLD,
        is_warranty_hold=True,
        status=PaymentStatus.ESCROW_HOLD,
        amount=hold,
        commission_amount=0,
        net_amount=hold,
        currency=payment.currency,
        captured_at=payment.captured_at,
    )
    db.add(warranty_payment)
    await db.flush()

    await log_audit(
        db, "payment", payment.payment_id, "released", None, ActorRole.SYSTEM, immediate,
        {
            "job_id": str(job.job_id),
            "gross": payment.amount,
            "commission": payment.commission_amount,
            "warranty_hold": hold,
            "warranty_fraction": str(settings.warranty_hold_fraction),
        },
    )
    await log_audit(
        db, "payment", warranty_payment.payment_id, "warranty_held", None, ActorRole.SYSTEM,
        hold, {"job_id": str(job.job_id)},
    )
    logger.info(
        "Released job %s: %s immediate, %s held for warranty", job.job_id, immediate, hold
    )
    return Outcome.success(ReleaseSplit(payment, warranty_payment, immediate, hold))


async def refund(
    db: AsyncSession, job: JobPost, reason: str, actor: Actor
) -> Outcome[JobPayment | None]:
    """Return escrowed funds to the dealer before work starts. Does not commit.

    Pending intents are failed. Refused once work has started or any part
    of the payment was released.
    """
    if job.status in (
        JobStatus.IN_PROGRESS,
        JobStatus.COMPLETION_PENDING_APPROVAL,
        JobStatus.COMPLETED,
    ) or job.started_at is not None:
        return Outcome.reject(
            Rejection.CONFLICT, "Work has started; a refund needs an admin ruling"
        )
    payments = await _service_payments(db, job.job_id)
    if any(p.status == PaymentStatus.RELEASED for p in payments):
        return Outcome.reject(Rejection.CONFLICT, "Refund not allowed after release")

    refunded: JobPayment | None = None
    now = utcnow()
    for payment in payments:
        if payment.status == PaymentStatus.PENDING:
            _move(payment, PaymentStatus.FAILED)
            payment.failure_reason = reason
        elif payment.status == PaymentStatus.ESCROW_HOLD:
            _move(payment, PaymentStatus.REFUNDED)
            payment.refunded_at = now
            refunded = payment
            await log_audit(
                db, "payment", payment.payment_id, "refunded", actor.actor_id, actor.role,
                payment.amount, {"job_id": str(job.job_id), "reason": reason},
            )
    if refunded is not None:
        logger.info("Refunded %s on job %s: %s", refunded.amount, job.job_id, reason)
    return Outcome.success(refunded)


async def rule_on_held_escrow(
    db: AsyncSession,
    job_id: uuid.UUID,
    ruling: EscrowRuling,
    actor: Actor,
    note: str,
) -> Outcome[JobPayment]:
    """Settle escrow left held by a cancellation after work started.

    Refunding returns the full captured amount to the dealer. Releasing pays
    the technician the net amount; there is no warranty hold on unfinished work.
    """
    if not actor.is_admin:
        return Outcome.reject(Rejection.FORBIDDEN, "Only operators can rule on held escrow")
    if not note or not note.strip():
        return Outcome.reject(Rejection.INVALID, "A note is required for an escrow ruling")
    job = await load_job(db, job_id)
    if job is None:
        return Outcome.reject(Rejection.NOT_FOUND, "Job not found")
    if job.status != JobStatus.CANCELLED:
        return Outcome.reject(
            Rejection.CONFLICT, f"Job is {job.status.value}; only cancelled jobs await a ruling"
        )

    held = await _service_payments(db, job_id, PaymentStatus.ESCROW_HOLD)
    if not held:
        if await _service_payments(db, job_id, PaymentStatus.RELEASED, PaymentStatus.REFUNDED):
            return Outcome.reject(Rejection.ALREADY_DONE, "Escrow already settled for this job")
        return Outcome.reject(Rejection.NOT_FOUND, "No escrowed payment for this job")
    payment = held[0]

    now = utcnow()
    if ruling == EscrowRuling.REFUND_DEALER:
        _move(payment, PaymentStatus.REFUNDED)
        payment.refunded_at = now
        amount = payment.amount
    else:
        _move(payment, PaymentStatus.RELEASED)
        payment.released_at = now
        payment.released_amount = payment.net_amount
        amount = payment.net_amount
    await log_audit(
        db, "payment", payment.payment_id, ruling.value, actor.actor_id, actor.role, amount,
        {"job_id": str(job_id), "note": note.strip()},
    )
    await db.commit()
    logger.info("Escrow ruling %s on job %s by %s: %s", ruling.value, job_id, actor.actor_id, amount)

    await notifications.notify_many(
        db,
        [payment.dealer_id, payment.technician_id],
        notifications.ESCROW_RULED,
        {"job_id": job_id, "ruling": ruling.value, "amount": amount},
    )
    return Outcome.success(payment)


async def settle_warranty_payment(
    db: AsyncSession, job_id: uuid.UUID, forfeit: bool, now: datetime | None = None
) -> JobPayment | None:
    """Release or forfeit the warranty-hold payment row. Does not commit."""
    result = await db.execute(
        select(JobPayment).where(
            JobPayment.job_id == job_id,
            JobPayment.payment_type == PaymentType.WARRANTY_HOLD,
            JobPayment.status == PaymentStatus.ESCROW_HOLD,
        ).with_for_update()
    )
    payment = result.scalar_one_or_none()
    if payment is None:
        return None
    target = PaymentStatus.FORFEITED if forfeit else PaymentStatus.RELEASED
    _move(payment, target)
    if not forfeit:
        payment.released_at = now or utcnow()
        payment.released_amount = payment.amount
    await log_audit(
        db, "payment", payment.payment_id, target.value, None, ActorRole.SYSTEM,
        payment.amount, {"job_id": str(job_id)},
    )
    return payment
