"""Bidding, negotiation and soft-lock coordination.

Technicians bid on PENDING jobs; the dealer and a technician may trade
counter-offers. Accepting a bid soft-locks the job for the dealer's
exclusive decision window, and confirming moves it to WAITING_FOR_PAYMENT.

Every bid change appends a ``BidEvent``. Who owes the next answer in a
negotiation is derived by replaying that log (``replay_negotiation``), not
from flags on the bid rows.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.actor import Actor
from app.config import settings
from app.database import utcnow
from app.models.bid import (
    OPEN_BID_STATUSES,
    BidEvent,
    BidEventType,
    BidStatus,
    JobBid,
    OfferedBy,
)
from app.models.job import JobPost, JobStatus
from app.models.party import ActorRole, PartyStatus, Technician
from app.services import notifications
from app.services.outcome import Outcome, Rejection
from app.services.state_machine import compare_and_set, load_job, lock_job, transition

logger = logging.getLogger(__name__)

JOB_TAKEN = "Job is no longer open: already assigned to another technician"
LOCK_EXPIRED = "Soft lock expired; the job has been reopened for bidding"


# --- Negotiation log ---

@dataclass(frozen=True)
class ChainState:
    """Current position of one technician's negotiation on a job."""
    technician_id: uuid.UUID
    head_bid_id: uuid.UUID | None
    price: int | None
    awaiting: OfferedBy | None  # side that must answer next; None when closed
    accepted: bool = False


def _opposite(side: OfferedBy) -> OfferedBy:
    return OfferedBy.DEALER if side == OfferedBy.TECHNICIAN else OfferedBy.TECHNICIAN


def replay_negotiation(events: list[BidEvent]) -> dict[uuid.UUID, ChainState]:
    """Fold a job's bid events into per-technician negotiation state.

    Pure: depends only on the ordered event list.
    """
    offered_by: dict[uuid.UUID, OfferedBy] = {}
    prices: dict[uuid.UUID, int | None] = {}
    chains: dict[uuid.UUID, ChainState] = {}

    for event in sorted(events, key=lambda e: e.sequence):
        tech = event.technician_id
        kind = event.event_type
        if kind in (BidEventType.SUBMITTED, BidEventType.COUNTERED):
            side = OfferedBy(event.actor_role)
            offered_by[event.bid_id] = side
            prices[event.bid_id] = event.price
            chains[tech] = ChainState(tech, event.bid_id, event.price, _opposite(side))
        elif kind == BidEventType.REOPENED:
            side = offered_by.get(event.bid_id, OfferedBy.TECHNICIAN)
            chains[tech] = ChainState(
                tech, event.bid_id, prices.get(event.bid_id), _opposite(side)
            )
        elif kind == BidEventType.ACCEPTED:
            chains[tech] = ChainState(
                tech, event.bid_id, prices.get(event.bid_id), None, accepted=True
            )
        elif kind == BidEventType.REJECTED:
            current = chains.get(tech)
            if current is not None and current.head_bid_id == event.bid_id:
                # A REOPENED event follows when a counter was rejected.
                chains[tech] = ChainState(tech, None, None, None)
        else:  # WITHDRAWN, EXPIRED, CANCELLED
            chains[tech] = ChainState(tech, None, None, None)
    return chains


async def _record_event(
    db: AsyncSession,
    bid: JobBid,
    event_type: BidEventType,
    role: ActorRole,
    actor_id: uuid.UUID | None,
    price: int | None = None,
) -> BidEvent:
    # Sequence numbers are allocated under the job row lock.
    await lock_job(db, bid.job_id)
    current = (await db.execute(
        select(func.max(BidEvent.sequence)).where(BidEvent.job_id == bid.job_id)
    )).scalar_one()
    event = BidEvent(
        event_id=uuid.uuid4(),
        sequence=(current or 0) + 1,
        job_id=bid.job_id,
        bid_id=bid.bid_id,
        technician_id=bid.technician_id,
        event_type=event_type,
        actor_role=role.value,
        actor_id=actor_id,
        price=price,
    )
    db.add(event)
    await db.flush()
    return event


async def job_events(db: AsyncSession, job_id: uuid.UUID) -> list[BidEvent]:
    result = await db.execute(
        select(BidEvent).where(BidEvent.job_id == job_id).order_by(BidEvent.sequence)
    )
    return list(result.scalars().all())


async def negotiation_state(db: AsyncSession, job_id: uuid.UUID) -> dict[uuid.UUID, ChainState]:
    return replay_negotiation(await job_events(db, job_id))


async def _close_open_bids(
    db: AsyncSession,
    job_id: uuid.UUID,
    status: BidStatus,
    event_type: BidEventType,
    role: ActorRole,
    actor_id: uuid.UUID | None = None,
    technician_id: uuid.UUID | None = None,
    exclude_technician_id: uuid.UUID | None = None,
) -> int:
    """Move every open bid on the job (optionally one technician's) to ``status``."""
    await lock_job(db, job_id)
    stmt = select(JobBid).where(
        JobBid.job_id == job_id, JobBid.status.in_(OPEN_BID_STATUSES)
    )
    if technician_id is not None:
        stmt = stmt.where(JobBid.technician_id == technician_id)
    if exclude_technician_id is not None:
        stmt = stmt.where(JobBid.technician_id != exclude_technician_id)
    bids = (await db.execute(stmt.with_for_update())).scalars().all()
    now = utcnow()
    for bid in bids:
        bid.status = status
        bid.last_activity_at = now
        await _record_event(db, bid, event_type, role, actor_id)
    return len(bids)


async def cancel_open_bids(
    db: AsyncSession, job_id: uuid.UUID, role: ActorRole, actor_id: uuid.UUID | None = None
) -> int:
    """Close every non-terminal bid of a job being cancelled, accepted one included."""
    count = await _close_open_bids(
        db, job_id, BidStatus.CANCELLED, BidEventType.CANCELLED, role, actor_id
    )
    accepted = (await db.execute(
        select(JobBid).where(JobBid.job_id == job_id, JobBid.status == BidStatus.ACCEPTED)
    )).scalars().all()
    for bid in accepted:
        bid.status = BidStatus.CANCELLED
        await _record_event(db, bid, BidEventType.CANCELLED, role, actor_id)
    return count + len(accepted)


async def reject_competing_bids(db: AsyncSession, job: JobPost) -> int:
    """Close every open bid from technicians other than the assigned one."""
    count = await _close_open_bids(
        db, job.job_id, BidStatus.REJECTED, BidEventType.REJECTED, ActorRole.SYSTEM,
        exclude_technician_id=job.assigned_technician_id,
    )
    # The winner's superseded counter-offers are finished too.
    count += await _close_open_bids(
        db, job.job_id, BidStatus.REJECTED, BidEventType.REJECTED, ActorRole.SYSTEM,
        technician_id=job.assigned_technician_id,
    )
    return count


def _is_job_dealer(job: JobPost, actor: Actor) -> bool:
    return actor.is_admin or (actor.role == ActorRole.DEALER and actor.actor_id == job.dealer_id)


def _event_role(side: OfferedBy) -> ActorRole:
    return ActorRole.TECHNICIAN if side == OfferedBy.TECHNICIAN else ActorRole.DEALER


def _side_for(actor: Actor) -> OfferedBy | None:
    if actor.role == ActorRole.TECHNICIAN:
        return OfferedBy.TECHNICIAN
    if actor.role == ActorRole.DEALER or actor.is_admin:
        return OfferedBy.DEALER
    return None


async def _load_bid(db: AsyncSession, bid_id: uuid.UUID) -> JobBid | None:
    # Job row first, then the bid, the same order cancellation and capture take them.
    job_id = (await db.execute(
        select(JobBid.job_id).where(JobBid.bid_id == bid_id)
    )).scalar_one_or_none()
    if job_id is None:
        return None
    await lock_job(db, job_id)
    result = await db.execute(select(JobBid).where(JobBid.bid_id == bid_id).with_for_update())
    return result.scalar_one_or_none()


def _validate_price(price: int) -> str | None:
    if price <= 0:
        return "Price must be a positive amount"
    if price > settings.max_job_amount:
        return f"Price exceeds the maximum job amount of {settings.max_job_amount}"
    return None


# --- Bids and counter-offers ---

async def submit_bid(
    db: AsyncSession,
    job_id: uuid.UUID,
    technician_id: uuid.UUID,
    price: int,
    message: str | None = None,
) -> Outcome[JobBid]:
    """Technician bids on an open job."""
    error = _validate_price(price)
    if error:
        return Outcome.reject(Rejection.INVALID, error)

    job = await load_job(db, job_id)
    if job is None:
        return Outcome.reject(Rejection.NOT_FOUND, "Job not found")
    if job.status != JobStatus.PENDING:
        return Outcome.reject(Rejection.CONFLICT, "Job is not open for bidding")

    technician = (await db.execute(
        select(Technician).where(Technician.technician_id == technician_id)
    )).scalar_one_or_none()
    if technician is None or technician.status != PartyStatus.ACTIVE:
        return Outcome.reject(Rejection.FORBIDDEN, "Technician not found or not active")
    if technician.trust_score < settings.trust_min_bid_score:
        return Outcome.reject(
            Rejection.FORBIDDEN,
            f"Trust score {technician.trust_score} is below the bidding minimum "
            f"of {settings.trust_min_bid_score}",
        )

    existing = (await db.execute(
        select(JobBid.bid_id).where(
            JobBid.job_id == job_id,
            JobBid.technician_id == technician_id,
            JobBid.status.in_(OPEN_BID_STATUSES),
        )
    )).first()
    if existing is not None:
        return Outcome.reject(Rejection.CONFLICT, "You already have an open bid on this job")

    # Every bid write bumps the job version, so of two concurrent submissions
    # only one gets past this point.
    if not await compare_and_set(db, job, JobStatus.PENDING):
        return Outcome.reject(
            Rejection.RACE_LOST, f"Job changed concurrently and is now {job.status.value}"
        )

    bid = JobBid(
        bid_id=uuid.uuid4(),
        job_id=job_id,
        technician_id=technician_id,
        offered_price=price,
        offered_by_role=OfferedBy.TECHNICIAN,
        status=BidStatus.PENDING,
        is_counter_offer=False,
        round_number=0,
        message=message,
    )
    db.add(bid)
    await db.flush()
    await _record_event(db, bid, BidEventType.SUBMITTED, ActorRole.TECHNICIAN, technician_id, price)
    await db.commit()
    await db.refresh(bid)
    logger.info("Bid %s on job %s by technician %s: %s", bid.bid_id, job_id, technician_id, price)

    await notifications.notify(
        db, job.dealer_id, notifications.BID_RECEIVED,
        {"job_id": job_id, "bid_id": bid.bid_id, "price": price},
    )
    return Outcome.success(bid)


async def counter_offer(
    db: AsyncSession,
    bid_id: uuid.UUID,
    new_price: int,
    actor: Actor,
    message: str | None = None,
) -> Outcome[JobBid]:
    """Answer a pending offer with a new price from the other side."""
    error = _validate_price(new_price)
    if error:
        return Outcome.reject(Rejection.INVALID, error)
    side = _side_for(actor)
    if side is None:
        return Outcome.reject(Rejection.FORBIDDEN, "Only the dealer or the technician can counter")

    bid = await _load_bid(db, bid_id)
    if bid is None:
        return Outcome.reject(Rejection.NOT_FOUND, "Bid not found")
    job = await load_job(db, bid.job_id)
    if job is None:
        return Outcome.reject(Rejection.NOT_FOUND, "Job not found")
    if side == OfferedBy.DEALER and not _is_job_dealer(job, actor):
        return Outcome.reject(Rejection.FORBIDDEN, "Only the job's dealer can counter this bid")
    if side == OfferedBy.TECHNICIAN and actor.actor_id != bid.technician_id:
        return Outcome.reject(Rejection.FORBIDDEN, "Not your negotiation")

    if job.status != JobStatus.PENDING:
        return Outcome.reject(Rejection.CONFLICT, "Job is not open for negotiation")
    if bid.status != BidStatus.PENDING:
        return Outcome.reject(Rejection.CONFLICT, f"Bid is {bid.status.value}, not awaiting a response")
    if bid.offered_by_role == side:
        return Outcome.reject(Rejection.CONFLICT, "Waiting for the other party to respond")
    if job.negotiation_rounds >= settings.max_negotiation_rounds:
        return Outcome.reject(
            Rejection.CONFLICT,
            f"Maximum of {settings.max_negotiation_rounds} negotiation rounds reached",
        )

    # Bumps the job version, so a concurrent accept or cancel wins or loses cleanly.
    if not await compare_and_set(
        db, job, JobStatus.PENDING, negotiation_rounds=job.negotiation_rounds + 1
    ):
        return Outcome.reject(
            Rejection.RACE_LOST, f"Job changed concurrently and is now {job.status.value}"
        )

    now = utcnow()
    counter = JobBid(
        bid_id=uuid.uuid4(),
        job_id=bid.job_id,
        technician_id=bid.technician_id,
        offered_price=new_price,
        offered_by_role=side,
        status=BidStatus.PENDING,
        is_counter_offer=True,
        previous_bid_id=bid.bid_id,
        round_number=job.negotiation_rounds,
        message=message,
        created_at=now,
        last_activity_at=now,
    )
    bid.status = BidStatus.COUNTERED
    bid.last_activity_at = now
    # Only one PENDING offer per technician and job at a time.
    await db.flush()
    db.add(counter)
    await db.flush()
    await _record_event(
        db, counter, BidEventType.COUNTERED, _event_role(side), actor.actor_id, new_price
    )
    await db.commit()
    await db.refresh(counter)
    logger.info(
        "Counter %s on bid %s by %s: %s (round %d)",
        counter.bid_id, bid_id, side.value, new_price, counter.round_number,
    )

    recipient = bid.technician_id if side == OfferedBy.DEALER else job.dealer_id
    await notifications.notify(
        db, recipient, notifications.BID_COUNTERED,
        {"job_id": job.job_id, "bid_id": counter.bid_id, "price": new_price},
    )
    return Outcome.success(counter)


async def reject_bid(db: AsyncSession, bid_id: uuid.UUID, actor: Actor) -> Outcome[JobBid]:
    """Decline a pending offer. Declining a counter reopens the offer it answered."""
    side = _side_for(actor)
    if side is None:
        return Outcome.reject(Rejection.FORBIDDEN, "Only the dealer or the technician can reject")

    bid = await _load_bid(db, bid_id)
    if bid is None:
        return Outcome.reject(Rejection.NOT_FOUND, "Bid not found")
    job = await load_job(db, bid.job_id)
    if job is None:
        return Outcome.reject(Rejection.NOT_FOUND, "Job not found")
    if side == OfferedBy.DEALER and not _is_job_dealer(job, actor):
        return Outcome.reject(Rejection.FORBIDDEN, "Only the job's dealer can reject this bid")
    if side == OfferedBy.TECHNICIAN and actor.actor_id != bid.technician_id:
        return Outcome.reject(Rejection.FORBIDDEN, "Not your negotiation")
    if bid.status != BidStatus.PENDING:
        return Outcome.reject(Rejection.CONFLICT, f"Bid is {bid.status.value}, not awaiting a response")
    if bid.offered_by_role == side:
        return Outcome.reject(Rejection.CONFLICT, "You cannot reject your own offer; withdraw it instead")

    event_role = _event_role(side)
    now = utcnow()
    bid.status = BidStatus.REJECTED
    bid.last_activity_at = now
    await _record_event(db, bid, BidEventType.REJECTED, event_role, actor.actor_id)

    reopened: JobBid | None = None
    if bid.is_counter_offer and bid.previous_bid_id is not None:
        reopened = await _load_bid(db, bid.previous_bid_id)
        if reopened is not None and reopened.status == BidStatus.COUNTERED:
            reopened.status = BidStatus.PENDING
            reopened.last_activity_at = now
            await _record_event(
                db, reopened, BidEventType.REOPENED, event_role, actor.actor_id,
                reopened.offered_price,
            )
    await db.commit()
    await db.refresh(bid)
    logger.info("Bid %s rejected by %s", bid_id, side.value)

    recipient = job.dealer_id if side == OfferedBy.TECHNICIAN else bid.technician_id
    await notifications.notify(
        db, recipient, notifications.BID_REJECTED,
        {
            "job_id": job.job_id,
            "bid_id": bid.bid_id,
            "reopened_bid_id": reopened.bid_id if reopened else None,
        },
    )
    return Outcome.success(bid)


async def withdraw_bid(db: AsyncSession, bid_id: uuid.UUID, technician_id: uuid.UUID) -> Outcome[JobBid]:
    """Technician abandons their negotiation on an open job."""
    bid = await _load_bid(db, bid_id)
    if bid is None:
        return Outcome.reject(Rejection.NOT_FOUND, "Bid not found")
    if bid.technician_id != technician_id:
        return Outcome.reject(Rejection.FORBIDDEN, "Not your bid")
    if bid.status not in OPEN_BID_STATUSES:
        return Outcome.reject(Rejection.CONFLICT, f"Bid is already {bid.status.value}")
    job = await load_job(db, bid.job_id)
    if job is None or job.status != JobStatus.PENDING:
        return Outcome.reject(Rejection.CONFLICT, "Bids can only be withdrawn while the job is open")

    await _close_open_bids(
        db, bid.job_id, BidStatus.WITHDRAWN, BidEventType.WITHDRAWN,
        ActorRole.TECHNICIAN, technician_id, technician_id=technician_id,
    )
    await db.commit()
    await db.refresh(bid)
    return Outcome.success(bid)


async def list_bids(
    db: AsyncSession, job_id: uuid.UUID, actor: Actor
) -> Outcome[list[tuple[JobBid, Technician]]]:
    """Bids on a job ranked for the dealer: trust score first, then price."""
    job = await load_job(db, job_id)
    if job is None:
        return Outcome.reject(Rejection.NOT_FOUND, "Job not found")
    stmt = (
        select(JobBid, Technician)
        .join(Technician, Technician.technician_id == JobBid.technician_id)
        .where(JobBid.job_id == job_id)
    )
    if actor.role == ActorRole.TECHNICIAN:
        stmt = stmt.where(JobBid.technician_id == actor.actor_id)
    elif not _is_job_dealer(job, actor):
        return Outcome.reject(Rejection.FORBIDDEN, "Only the job's dealer can view its bids")
    stmt = stmt.order_by(
        Technician.trust_score.desc(), JobBid.offered_price.asc(), JobBid.created_at.asc()
    )
    rows = (await db.execute(stmt)).all()
    return Outcome.success([(bid, tech) for bid, tech in rows])


# --- Soft lock ---

async def accept_bid(
    db: AsyncSession,
    job_id: uuid.UUID,
    bid_id: uuid.UUID,
    actor: Actor,
    now: datetime | None = None,
) -> Outcome[JobPost]:
    """Accept a pending offer and soft-lock the job to its technician.

    The dealer accepts a technician's offer; a technician may accept the
    dealer's counter-offer. The PENDING → SOFT_LOCKED compare-and-set is the
    race boundary: only the first accept on a job wins.
    """
    now = now or utcnow()
    job = await load_job(db, job_id)
    if job is None:
        return Outcome.reject(Rejection.NOT_FOUND, "Job not found")
    bid = await _load_bid(db, bid_id)
    if bid is None or bid.job_id != job_id:
        return Outcome.reject(Rejection.NOT_FOUND, "Bid not found for this job")

    side = _side_for(actor)
    if side is None:
        return Outcome.reject(Rejection.FORBIDDEN, "Not permitted to accept bids")
    if side == OfferedBy.DEALER and not _is_job_dealer(job, actor):
        return Outcome.reject(Rejection.FORBIDDEN, "Only the job's dealer can accept bids")
    if side == OfferedBy.TECHNICIAN and actor.actor_id != bid.technician_id:
        return Outcome.reject(Rejection.FORBIDDEN, "Not your negotiation")

    if job.status != JobStatus.PENDING:
        return Outcome.reject(Rejection.CONFLICT, JOB_TAKEN)
    if bid.status != BidStatus.PENDING:
        return Outcome.reject(Rejection.CONFLICT, f"Bid is {bid.status.value}, not awaiting a response")
    if bid.offered_by_role == side:
        return Outcome.reject(Rejection.CONFLICT, "You cannot accept your own offer")

    outcome = await transition(
        db, job, JobStatus.SOFT_LOCKED, actor.role, actor.actor_id,
        race_detail=JOB_TAKEN,
        audit_metadata={"bid_id": str(bid.bid_id), "price": bid.offered_price},
        accepted_bid_id=bid.bid_id,
        final_price=bid.offered_price,
        soft_locked_by_technician_id=bid.technician_id,
        soft_locked_at=now,
        soft_lock_expires_at=now + settings.soft_lock_window,
    )
    if not outcome.ok:
        if outcome.rejection == Rejection.RACE_LOST:
            if job.status == JobStatus.PENDING:
                # A bid or counter landed first; the job is still open.
                return Outcome.reject(
                    Rejection.RACE_LOST, "Job changed concurrently; reload the bids and retry"
                )
            # Same answer as the non-racing case: the job is taken.
            return Outcome.reject(Rejection.CONFLICT, JOB_TAKEN)
        return outcome

    bid.status = BidStatus.ACCEPTED
    bid.last_activity_at = now
    await _record_event(db, bid, BidEventType.ACCEPTED, actor.role, actor.actor_id, bid.offered_price)
    await db.commit()

    meta = {
        "job_id": job.job_id,
        "technician_id": bid.technician_id,
        "expires_at": job.soft_lock_expires_at.isoformat(),
    }
    await notifications.notify_many(
        db, [job.dealer_id, bid.technician_id], notifications.SOFT_LOCK_STARTED, meta
    )
    return Outcome.success(job)


async def reset_soft_lock_timer(
    db: AsyncSession, job_id: uuid.UUID, actor: Actor, now: datetime | None = None
) -> Outcome[JobPost]:
    """Re-arm the soft-lock window from the moment the dealer opens the job."""
    now = now or utcnow()
    job = await load_job(db, job_id)
    if job is None:
        return Outcome.reject(Rejection.NOT_FOUND, "Job not found")
    if not _is_job_dealer(job, actor):
        return Outcome.reject(Rejection.FORBIDDEN, "Only the job's dealer can view the soft lock")
    if job.status != JobStatus.SOFT_LOCKED:
        return Outcome.reject(Rejection.CONFLICT, f"Job is {job.status.value}, not soft-locked")

    if job.soft_lock_expires_at is not None and job.soft_lock_expires_at <= now:
        await expire_soft_lock(db, job, now)
        await db.commit()
        return Outcome.reject(Rejection.EXPIRED, LOCK_EXPIRED)

    if not await compare_and_set(
        db, job, JobStatus.SOFT_LOCKED, soft_lock_expires_at=now + settings.soft_lock_window
    ):
        return Outcome.reject(
            Rejection.RACE_LOST, f"Soft lock changed concurrently; job is now {job.status.value}"
        )
    await db.commit()
    logger.info("Soft lock on job %s re-armed until %s", job_id, job.soft_lock_expires_at)
    return Outcome.success(job)


async def confirm_soft_lock(
    db: AsyncSession, job_id: uuid.UUID, actor: Actor, now: datetime | None = None
) -> Outcome[JobPost]:
    """Dealer commits: lock the price and open the payment window."""
    now = now or utcnow()
    job = await load_job(db, job_id)
    if job is None:
        return Outcome.reject(Rejection.NOT_FOUND, "Job not found")
    if not _is_job_dealer(job, actor):
        return Outcome.reject(Rejection.FORBIDDEN, "Only the job's dealer can confirm the soft lock")

    if job.status != JobStatus.SOFT_LOCKED:
        return _explain_not_locked(job)

    if job.soft_lock_expires_at is None or job.soft_lock_expires_at <= now:
        await expire_soft_lock(db, job, now)
        await db.commit()
        return _explain_not_locked(job)

    outcome = await transition(
        db, job, JobStatus.WAITING_FOR_PAYMENT, actor.role, actor.actor_id,
        audit_metadata={"final_price": job.final_price},
        price_locked=True,
        payment_deadline_expires_at=now + settings.payment_window,
    )
    if not outcome.ok:
        if outcome.rejection == Rejection.RACE_LOST:
            return _explain_not_locked(job)
        return outcome
    await db.commit()

    await notifications.notify_many(
        db,
        [job.dealer_id, job.soft_locked_by_technician_id],
        notifications.SOFT_LOCK_CONFIRMED,
        {
            "job_id": job.job_id,
            "final_price": job.final_price,
            "payment_deadline": job.payment_deadline_expires_at.isoformat(),
        },
    )
    return Outcome.success(job)


def _explain_not_locked(job: JobPost) -> Outcome[JobPost]:
    """Deterministic answer for a confirm that cannot proceed."""
    if job.status == JobStatus.PENDING:
        reasons = job.timeout_reasons or []
        if reasons and reasons[-1].get("reason") == "soft_lock_expired":
            return Outcome.reject(Rejection.EXPIRED, LOCK_EXPIRED)
        return Outcome.reject(Rejection.CONFLICT, "Job has no active soft lock")
    if job.price_locked:
        return Outcome.reject(Rejection.ALREADY_DONE, "Soft lock already confirmed")
    return Outcome.reject(Rejection.CONFLICT, f"Job is {job.status.value}, not soft-locked")


# --- Timeouts ---

async def reopen_job(db: AsyncSession, job: JobPost, reason: str, now: datetime) -> bool:
    """Return a soft-locked or unpaid job to open bidding. Does not commit.

    Returns False if another writer moved the job first.
    """
    technician_id = job.soft_locked_by_technician_id
    accepted_bid_id = job.accepted_bid_id
    reasons = [
        *(job.timeout_reasons or []),
        {
            "reason": reason,
            "at": now.isoformat(),
            "technician_id": str(technician_id) if technician_id else None,
        },
    ]
    outcome = await transition(
        db, job, JobStatus.PENDING, ActorRole.SYSTEM,
        audit_metadata={"reason": reason},
        accepted_bid_id=None,
        final_price=None,
        price_locked=False,
        soft_locked_by_technician_id=None,
        soft_locked_at=None,
        soft_lock_expires_at=None,
        payment_deadline_expires_at=None,
        recirculation_count=job.recirculation_count + 1,
        timeout_reasons=reasons,
    )
    if not outcome.ok:
        return False

    if accepted_bid_id is not None:
        bid = await _load_bid(db, accepted_bid_id)
        if bid is not None and bid.status == BidStatus.ACCEPTED:
            bid.status = BidStatus.EXPIRED
            bid.last_activity_at = now
            await _record_event(db, bid, BidEventType.EXPIRED, ActorRole.SYSTEM, None)
    if technician_id is not None:
        # Superseded offers from the same negotiation end with it.
        await _close_open_bids(
            db, job.job_id, BidStatus.EXPIRED, BidEventType.EXPIRED, ActorRole.SYSTEM,
            technician_id=technician_id,
        )
    logger.info("Job %s reopened for bidding (%s)", job.job_id, reason)
    return True


async def expire_soft_lock(db: AsyncSession, job: JobPost, now: datetime) -> bool:
    """Revert a lapsed soft lock. No-op unless the job is still locked past expiry."""
    if job.status != JobStatus.SOFT_LOCKED:
        return False
    if job.soft_lock_expires_at is not None and job.soft_lock_expires_at > now:
        return False
    return await reopen_job(db, job, "soft_lock_expired", now)


async def expire_stale_bids(db: AsyncSession, now: datetime) -> int:
    """Expire pending offers on open jobs left unanswered past the response window."""
    cutoff = now - settings.bid_response_timeout
    stale = (await db.execute(
        select(JobBid.job_id, JobBid.technician_id)
        .join(JobPost, JobPost.job_id == JobBid.job_id)
        .where(
            JobPost.status == JobStatus.PENDING,
            JobBid.status == BidStatus.PENDING,
            JobBid.last_activity_at < cutoff,
        )
        .distinct()
    )).all()
    expired = 0
    for job_id, technician_id in stale:
        expired += await _close_open_bids(
            db, job_id, BidStatus.EXPIRED, BidEventType.EXPIRED, ActorRole.SYSTEM,
            technician_id=technician_id,
        )
    return expired
