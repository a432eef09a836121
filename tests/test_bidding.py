"""Tests for bids, counter-offers and the negotiation log."""

import asyncio
import uuid
from decimal import Decimal

import pytest
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from app.models.bid import OPEN_BID_STATUSES, BidEvent, BidEventType, BidStatus, JobBid, OfferedBy
from app.models.job import JobPost, JobStatus
from app.services import bidding
from app.services.outcome import Rejection
from tests.conftest import (
    dealer_actor,
    make_dealer,
    make_technician,
    post_job,
    technician_actor,
)


def _event(seq: int, bid_id: uuid.UUID, tech: uuid.UUID, kind: BidEventType,
           role: str = "technician", price: int | None = None) -> BidEvent:
    return BidEvent(
        event_id=uuid.uuid4(), sequence=seq, job_id=uuid.uuid4(), bid_id=bid_id,
        technician_id=tech, event_type=kind, actor_role=role, price=price,
    )


# --- replay (pure) ---

def test_replay_submit_awaits_dealer() -> None:
    tech, bid = uuid.uuid4(), uuid.uuid4()
    chains = bidding.replay_negotiation([_event(1, bid, tech, BidEventType.SUBMITTED, price=900)])
    assert chains[tech].awaiting == OfferedBy.DEALER
    assert chains[tech].price == 900


def test_replay_counter_then_reject_reopens() -> None:
    tech, first, counter = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()
    events = [
        _event(1, first, tech, BidEventType.SUBMITTED, price=1000),
        _event(2, counter, tech, BidEventType.COUNTERED, role="dealer", price=800),
        _event(3, counter, tech, BidEventType.REJECTED),
        _event(4, first, tech, BidEventType.REOPENED, price=1000),
    ]
    chains = bidding.replay_negotiation(list(reversed(events)))  # order comes from sequence
    state = chains[tech]
    assert state.head_bid_id == first
    assert state.price == 1000
    assert state.awaiting == OfferedBy.DEALER


def test_replay_closed_chains() -> None:
    tech, bid = uuid.uuid4(), uuid.uuid4()
    accepted = bidding.replay_negotiation([
        _event(1, bid, tech, BidEventType.SUBMITTED, price=500),
        _event(2, bid, tech, BidEventType.ACCEPTED, role="dealer", price=500),
    ])
    assert accepted[tech].accepted
    assert accepted[tech].awaiting is None

    withdrawn = bidding.replay_negotiation([
        _event(1, bid, tech, BidEventType.SUBMITTED, price=500),
        _event(2, bid, tech, BidEventType.WITHDRAWN),
    ])
    assert withdrawn[tech].head_bid_id is None
    assert withdrawn[tech].awaiting is None


# --- submit ---

@pytest.mark.asyncio
async def test_submit_bid(db_session: AsyncSession) -> None:
    dealer = await make_dealer(db_session)
    tech = await make_technician(db_session)
    job = await post_job(db_session, dealer)

    outcome = await bidding.submit_bid(db_session, job.job_id, tech.technician_id, 9_000, "Can start today")
    assert outcome.ok
    bid = outcome.value
    assert bid.status == BidStatus.PENDING
    assert bid.offered_by_role == OfferedBy.TECHNICIAN

    chains = await bidding.negotiation_state(db_session, job.job_id)
    assert chains[tech.technician_id].awaiting == OfferedBy.DEALER


@pytest.mark.asyncio
async def test_submit_bid_rejections(db_session: AsyncSession) -> None:
    dealer = await make_dealer(db_session)
    tech = await make_technician(db_session)
    low = await make_technician(db_session, trust_score=Decimal("15.00"))
    job = await post_job(db_session, dealer)

    assert (await bidding.submit_bid(db_session, job.job_id, tech.technician_id, 0)).rejection == Rejection.INVALID
    assert (await bidding.submit_bid(db_session, uuid.uuid4(), tech.technician_id, 100)).rejection == Rejection.NOT_FOUND
    assert (await bidding.submit_bid(db_session, job.job_id, low.technician_id, 100)).rejection == Rejection.FORBIDDEN

    assert (await bidding.submit_bid(db_session, job.job_id, tech.technician_id, 100)).ok
    duplicate = await bidding.submit_bid(db_session, job.job_id, tech.technician_id, 90)
    assert duplicate.rejection == Rejection.CONFLICT


# --- negotiation ---

@pytest.mark.asyncio
async def test_counter_offer_rounds_are_limited(db_session: AsyncSession) -> None:
    dealer = await make_dealer(db_session)
    tech = await make_technician(db_session)
    job = await post_job(db_session, dealer)
    bid = (await bidding.submit_bid(db_session, job.job_id, tech.technician_id, 10_000)).value

    dealer_counter = await bidding.counter_offer(db_session, bid.bid_id, 8_000, dealer_actor(dealer))
    assert dealer_counter.ok
    assert dealer_counter.value.offered_by_role == OfferedBy.DEALER
    assert dealer_counter.value.previous_bid_id == bid.bid_id
    assert bid.status == BidStatus.COUNTERED

    # The dealer cannot answer their own counter.
    again = await bidding.counter_offer(db_session, dealer_counter.value.bid_id, 7_500, dealer_actor(dealer))
    assert again.rejection == Rejection.CONFLICT

    tech_counter = await bidding.counter_offer(
        db_session, dealer_counter.value.bid_id, 9_000, technician_actor(tech)
    )
    assert tech_counter.ok
    assert job.negotiation_rounds == 2

    third = await bidding.counter_offer(db_session, tech_counter.value.bid_id, 8_500, dealer_actor(dealer))
    assert third.rejection == Rejection.CONFLICT
    assert "negotiation rounds" in third.detail


@pytest.mark.asyncio
async def test_rejecting_counter_reopens_previous_offer(db_session: AsyncSession) -> None:
    dealer = await make_dealer(db_session)
    tech = await make_technician(db_session)
    job = await post_job(db_session, dealer)
    bid = (await bidding.submit_bid(db_session, job.job_id, tech.technician_id, 10_000)).value
    counter = (await bidding.counter_offer(db_session, bid.bid_id, 8_000, dealer_actor(dealer))).value

    outcome = await bidding.reject_bid(db_session, counter.bid_id, technician_actor(tech))
    assert outcome.ok
    assert outcome.value.status == BidStatus.REJECTED
    await db_session.refresh(bid)
    assert bid.status == BidStatus.PENDING

    chains = await bidding.negotiation_state(db_session, job.job_id)
    assert chains[tech.technician_id].head_bid_id == bid.bid_id
    assert chains[tech.technician_id].awaiting == OfferedBy.DEALER


@pytest.mark.asyncio
async def test_strangers_cannot_negotiate(db_session: AsyncSession) -> None:
    dealer = await make_dealer(db_session)
    other_dealer = await make_dealer(db_session)
    tech = await make_technician(db_session)
    job = await post_job(db_session, dealer)
    bid = (await bidding.submit_bid(db_session, job.job_id, tech.technician_id, 10_000)).value

    outcome = await bidding.counter_offer(db_session, bid.bid_id, 9_000, dealer_actor(other_dealer))
    assert outcome.rejection == Rejection.FORBIDDEN
    outcome = await bidding.reject_bid(db_session, bid.bid_id, dealer_actor(other_dealer))
    assert outcome.rejection == Rejection.FORBIDDEN


@pytest.mark.asyncio
async def test_withdraw_bid(db_session: AsyncSession) -> None:
    dealer = await make_dealer(db_session)
    tech = await make_technician(db_session)
    job = await post_job(db_session, dealer)
    bid = (await bidding.submit_bid(db_session, job.job_id, tech.technician_id, 10_000)).value

    outcome = await bidding.withdraw_bid(db_session, bid.bid_id, tech.technician_id)
    assert outcome.ok
    assert outcome.value.status == BidStatus.WITHDRAWN
    # A fresh bid is allowed once the old one is closed.
    assert (await bidding.submit_bid(db_session, job.job_id, tech.technician_id, 9_500)).ok


@pytest.mark.asyncio
async def test_list_bids_ranked_by_trust_then_price(db_session: AsyncSession) -> None:
    dealer = await make_dealer(db_session)
    trusted = await make_technician(db_session, trust_score=Decimal("75.00"))
    cheap = await make_technician(db_session, trust_score=Decimal("50.00"))
    job = await post_job(db_session, dealer)
    await bidding.submit_bid(db_session, job.job_id, cheap.technician_id, 8_000)
    await bidding.submit_bid(db_session, job.job_id, trusted.technician_id, 11_000)

    outcome = await bidding.list_bids(db_session, job.job_id, dealer_actor(dealer))
    assert outcome.ok
    assert [tech.technician_id for _, tech in outcome.value] == [
        trusted.technician_id, cheap.technician_id,
    ]

    own = await bidding.list_bids(db_session, job.job_id, technician_actor(cheap))
    assert [bid.technician_id for bid, _ in own.value] == [cheap.technician_id]


# --- accept ---

@pytest.mark.asyncio
async def test_accept_soft_locks_job(db_session: AsyncSession) -> None:
    dealer = await make_dealer(db_session)
    tech = await make_technician(db_session)
    job = await post_job(db_session, dealer)
    bid = (await bidding.submit_bid(db_session, job.job_id, tech.technician_id, 9_000)).value

    outcome = await bidding.accept_bid(db_session, job.job_id, bid.bid_id, dealer_actor(dealer))
    assert outcome.ok
    assert job.status == JobStatus.SOFT_LOCKED
    assert job.final_price == 9_000
    assert job.soft_locked_by_technician_id == tech.technician_id
    assert bid.status == BidStatus.ACCEPTED


@pytest.mark.asyncio
async def test_second_accept_gets_job_taken(db_session: AsyncSession) -> None:
    dealer = await make_dealer(db_session)
    first = await make_technician(db_session)
    second = await make_technician(db_session)
    job = await post_job(db_session, dealer)
    bid_a = (await bidding.submit_bid(db_session, job.job_id, first.technician_id, 9_000)).value
    bid_b = (await bidding.submit_bid(db_session, job.job_id, second.technician_id, 8_500)).value

    assert (await bidding.accept_bid(db_session, job.job_id, bid_a.bid_id, dealer_actor(dealer))).ok
    outcome = await bidding.accept_bid(db_session, job.job_id, bid_b.bid_id, dealer_actor(dealer))
    assert outcome.rejection == Rejection.CONFLICT
    assert outcome.detail == bidding.JOB_TAKEN


@pytest.mark.asyncio
async def test_accept_losing_the_race_gets_job_taken(db_session: AsyncSession) -> None:
    dealer = await make_dealer(db_session)
    tech = await make_technician(db_session)
    job = await post_job(db_session, dealer)
    bid = (await bidding.submit_bid(db_session, job.job_id, tech.technician_id, 9_000)).value

    # A concurrent accept commits between this session's read and its write.
    await db_session.execute(
        update(JobPost)
        .where(JobPost.job_id == job.job_id)
        .values(status=JobStatus.SOFT_LOCKED, version=JobPost.version + 1)
        .execution_options(synchronize_session=False)
    )
    await db_session.commit()

    outcome = await bidding.accept_bid(db_session, job.job_id, bid.bid_id, dealer_actor(dealer))
    assert outcome.rejection == Rejection.CONFLICT
    assert outcome.detail == bidding.JOB_TAKEN
    assert bid.status == BidStatus.PENDING


@pytest.mark.asyncio
async def test_technician_accepts_dealer_counter(db_session: AsyncSession) -> None:
    dealer = await make_dealer(db_session)
    tech = await make_technician(db_session)
    job = await post_job(db_session, dealer)
    bid = (await bidding.submit_bid(db_session, job.job_id, tech.technician_id, 10_000)).value
    counter = (await bidding.counter_offer(db_session, bid.bid_id, 9_200, dealer_actor(dealer))).value

    # Nobody accepts their own offer.
    own = await bidding.accept_bid(db_session, job.job_id, counter.bid_id, dealer_actor(dealer))
    assert own.rejection == Rejection.CONFLICT

    outcome = await bidding.accept_bid(db_session, job.job_id, counter.bid_id, technician_actor(tech))
    assert outcome.ok
    assert job.final_price == 9_200


@pytest.mark.asyncio
async def test_accept_after_concurrent_bid_is_retryable(db_session: AsyncSession) -> None:
    dealer = await make_dealer(db_session)
    tech = await make_technician(db_session)
    job = await post_job(db_session, dealer)
    bid = (await bidding.submit_bid(db_session, job.job_id, tech.technician_id, 9_000)).value

    # Another bid bumps the version but leaves the job open.
    await db_session.execute(
        update(JobPost)
        .where(JobPost.job_id == job.job_id)
        .values(version=JobPost.version + 1)
        .execution_options(synchronize_session=False)
    )
    await db_session.commit()

    outcome = await bidding.accept_bid(db_session, job.job_id, bid.bid_id, dealer_actor(dealer))
    assert outcome.rejection == Rejection.RACE_LOST
    assert job.status == JobStatus.PENDING
    assert (await bidding.accept_bid(db_session, job.job_id, bid.bid_id, dealer_actor(dealer))).ok


@pytest.mark.asyncio
async def test_concurrent_submissions_leave_one_open_bid(file_engine: AsyncEngine) -> None:
    factory = async_sessionmaker(file_engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as setup:
        dealer = await make_dealer(setup)
        tech = await make_technician(setup)
        job = await post_job(setup, dealer)

    async def place(price: int):  # type: ignore[no-untyped-def]
        async with factory() as session:
            return await bidding.submit_bid(session, job.job_id, tech.technician_id, price)

    outcomes = await asyncio.gather(place(9_000), place(9_500))
    assert sum(1 for o in outcomes if o.ok) == 1
    loser = next(o for o in outcomes if not o.ok)
    assert loser.rejection in (Rejection.RACE_LOST, Rejection.CONFLICT)

    async with factory() as check:
        open_bids = (await check.execute(
            select(JobBid).where(JobBid.job_id == job.job_id, JobBid.status.in_(OPEN_BID_STATUSES))
        )).scalars().all()
        events = (await check.execute(
            select(BidEvent.sequence).where(BidEvent.job_id == job.job_id)
        )).scalars().all()
    assert len(open_bids) == 1
    assert events == [1]


@pytest.mark.asyncio
async def test_second_pending_bid_for_technician_is_refused_by_index(db_session: AsyncSession) -> None:
    dealer = await make_dealer(db_session)
    tech = await make_technician(db_session)
    job = await post_job(db_session, dealer)
    await bidding.submit_bid(db_session, job.job_id, tech.technician_id, 9_000)

    db_session.add(JobBid(
        bid_id=uuid.uuid4(), job_id=job.job_id, technician_id=tech.technician_id,
        offered_price=8_800, offered_by_role=OfferedBy.TECHNICIAN, status=BidStatus.PENDING,
    ))
    with pytest.raises(IntegrityError):
        await db_session.flush()
    await db_session.rollback()


@pytest.mark.asyncio
async def test_event_sequence_is_unique_per_job(db_session: AsyncSession) -> None:
    dealer = await make_dealer(db_session)
    tech = await make_technician(db_session)
    job = await post_job(db_session, dealer)
    bid = (await bidding.submit_bid(db_session, job.job_id, tech.technician_id, 9_000)).value

    db_session.add(BidEvent(
        event_id=uuid.uuid4(), sequence=1, job_id=job.job_id, bid_id=bid.bid_id,
        technician_id=tech.technician_id, event_type=BidEventType.WITHDRAWN,
        actor_role="technician",
    ))
    with pytest.raises(IntegrityError):
        await db_session.flush()
    await db_session.rollback()


@pytest.mark.asyncio
async def test_counter_and_reopen_keep_one_pending_head(db_session: AsyncSession) -> None:
    dealer = await make_dealer(db_session)
    tech = await make_technician(db_session)
    job = await post_job(db_session, dealer)
    bid = (await bidding.submit_bid(db_session, job.job_id, tech.technician_id, 10_000)).value
    counter = (await bidding.counter_offer(db_session, bid.bid_id, 9_000, dealer_actor(dealer))).value
    assert (await bidding.reject_bid(db_session, counter.bid_id, technician_actor(tech))).ok

    pending = (await db_session.execute(
        select(JobBid.bid_id).where(JobBid.job_id == job.job_id, JobBid.status == BidStatus.PENDING)
    )).scalars().all()
    assert pending == [bid.bid_id]
