"""Tests for the escrow payment engine: intent, capture, release, refund."""

from datetime import timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import utcnow
from app.models.bid import BidStatus, JobBid
from app.models.job import JobStatus
from app.models.payment import EscrowRuling, JobPayment, PaymentStatus, PaymentType
from app.services import bidding, escrow
from app.services import jobs as job_service
from app.services.outcome import Rejection
from tests.conftest import (
    ADMIN,
    assign,
    complete,
    dealer_actor,
    make_dealer,
    make_technician,
    post_job,
    soft_lock,
    technician_actor,
)


async def _awaiting_payment(db: AsyncSession, now=None):  # type: ignore[no-untyped-def]
    now = now or utcnow()
    dealer = await make_dealer(db)
    tech = await make_technician(db)
    job = await soft_lock(db, dealer, tech, 10_000, now)
    assert (await bidding.confirm_soft_lock(db, job.job_id, dealer_actor(dealer), now=now)).ok
    return dealer, tech, job


@pytest.mark.asyncio
async def test_intent_snapshots_commission(db_session: AsyncSession) -> None:
    dealer, tech, job = await _awaiting_payment(db_session)

    outcome = await escrow.create_payment_intent(db_session, job.job_id, dealer_actor(dealer))
    assert outcome.ok
    payment = outcome.value
    assert payment.status == PaymentStatus.PENDING
    assert payment.payment_intent_id.startswith("pi_")
    assert payment.amount == 10_000
    assert payment.commission_amount == 1_500
    assert payment.net_amount == 8_500
    assert payment.rule_source == "default"
    assert payment.technician_id == tech.technician_id


@pytest.mark.asyncio
async def test_intent_is_idempotent_while_pending(db_session: AsyncSession) -> None:
    dealer, _, job = await _awaiting_payment(db_session)
    first = await escrow.create_payment_intent(db_session, job.job_id, dealer_actor(dealer))
    second = await escrow.create_payment_intent(db_session, job.job_id, dealer_actor(dealer))
    assert first.value.payment_id == second.value.payment_id


@pytest.mark.asyncio
async def test_intent_amount_must_match_locked_price(db_session: AsyncSession) -> None:
    dealer, _, job = await _awaiting_payment(db_session)
    outcome = await escrow.create_payment_intent(
        db_session, job.job_id, dealer_actor(dealer), amount=9_999
    )
    assert outcome.rejection == Rejection.CONFLICT


@pytest.mark.asyncio
async def test_intent_past_deadline_reopens_job(db_session: AsyncSession) -> None:
    now = utcnow()
    dealer, tech, job = await _awaiting_payment(db_session, now)

    outcome = await escrow.create_payment_intent(
        db_session, job.job_id, dealer_actor(dealer), now=now + timedelta(minutes=31)
    )
    assert outcome.rejection == Rejection.EXPIRED
    assert outcome.detail == escrow.PAYMENT_EXPIRED
    assert job.status == JobStatus.PENDING
    assert job.final_price is None
    assert job.recirculation_count == 1
    assert job.timeout_reasons[-1]["reason"] == "payment_deadline_expired"


@pytest.mark.asyncio
async def test_capture_assigns_job_and_closes_competing_bids(db_session: AsyncSession) -> None:
    now = utcnow()
    dealer = await make_dealer(db_session)
    winner = await make_technician(db_session)
    loser = await make_technician(db_session)
    job = await post_job(db_session, dealer)
    losing_bid = (await bidding.submit_bid(db_session, job.job_id, loser.technician_id, 9_500)).value
    winning_bid = (await bidding.submit_bid(db_session, job.job_id, winner.technician_id, 10_000)).value
    actor = dealer_actor(dealer)
    assert (await bidding.accept_bid(db_session, job.job_id, winning_bid.bid_id, actor, now=now)).ok
    assert (await bidding.confirm_soft_lock(db_session, job.job_id, actor, now=now)).ok
    payment = (await escrow.create_payment_intent(db_session, job.job_id, actor, now=now)).value

    outcome = await escrow.handle_capture_success(db_session, payment.payment_intent_id, now=now)
    assert outcome.ok
    assert outcome.value.status == PaymentStatus.ESCROW_HOLD
    assert job.status == JobStatus.ASSIGNED
    assert job.assigned_technician_id == winner.technician_id
    await db_session.refresh(losing_bid)
    assert losing_bid.status == BidStatus.REJECTED


@pytest.mark.asyncio
async def test_duplicate_capture_is_already_done(db_session: AsyncSession) -> None:
    dealer = await make_dealer(db_session)
    tech = await make_technician(db_session)
    job = await assign(db_session, dealer, tech)
    payment = (await escrow.list_payments(db_session, job.job_id))[0]

    outcome = await escrow.handle_capture_success(db_session, payment.payment_intent_id)
    assert outcome.rejection == Rejection.ALREADY_DONE
    again = await escrow.create_payment_intent(db_session, job.job_id, dealer_actor(dealer))
    assert again.rejection == Rejection.ALREADY_DONE


@pytest.mark.asyncio
async def test_capture_for_unknown_intent(db_session: AsyncSession) -> None:
    outcome = await escrow.handle_capture_success(db_session, "pi_missing")
    assert outcome.rejection == Rejection.NOT_FOUND


@pytest.mark.asyncio
async def test_capture_failure_keeps_payment_window(db_session: AsyncSession) -> None:
    dealer, _, job = await _awaiting_payment(db_session)
    payment = (await escrow.create_payment_intent(db_session, job.job_id, dealer_actor(dealer))).value

    outcome = await escrow.handle_capture_failure(db_session, payment.payment_intent_id, "card_declined")
    assert outcome.ok
    assert outcome.value.status == PaymentStatus.FAILED
    assert outcome.value.failure_reason == "card_declined"
    assert job.status == JobStatus.WAITING_FOR_PAYMENT

    retry = await escrow.create_payment_intent(db_session, job.job_id, dealer_actor(dealer))
    assert retry.ok
    assert retry.value.payment_id != payment.payment_id


@pytest.mark.asyncio
async def test_completion_release_retains_warranty_fraction(db_session: AsyncSession) -> None:
    dealer = await make_dealer(db_session)
    tech = await make_technician(db_session)
    job = await complete(db_session, dealer, tech, price=10_000)

    payments = await escrow.list_payments(db_session, job.job_id)
    service = next(p for p in payments if p.payment_type == PaymentType.SERVICE_PAYMENT)
    warranty = next(p for p in payments if p.payment_type == PaymentType.WARRANTY_HOLD)
    assert service.status == PaymentStatus.RELEASED
    assert service.commission_amount == 1_500
    assert service.net_amount == 8_500
    assert service.commission_amount + service.net_amount == service.amount
    assert service.released_amount == 7_650
    assert warranty.status == PaymentStatus.ESCROW_HOLD
    assert warranty.amount == 850
    assert warranty.is_warranty_hold

    again = await escrow.release_on_completion(db_session, job)
    assert again.rejection == Rejection.ALREADY_DONE


@pytest.mark.asyncio
async def test_refund_refused_once_work_started(db_session: AsyncSession) -> None:
    dealer = await make_dealer(db_session)
    tech = await make_technician(db_session)
    job = await assign(db_session, dealer, tech)
    job.started_at = utcnow()

    outcome = await escrow.refund(db_session, job, "changed mind", dealer_actor(dealer))
    assert outcome.rejection == Rejection.CONFLICT
    held = (await db_session.execute(
        select(JobPayment).where(JobPayment.job_id == job.job_id)
    )).scalar_one()
    assert held.status == PaymentStatus.ESCROW_HOLD


def test_split_warranty_bounds() -> None:
    from decimal import Decimal
    assert escrow.split_warranty(0, Decimal("0.10")) == (0, 0)
    assert escrow.split_warranty(5, Decimal("0.10")) == (4, 1)  # 0.5 rounds up
    assert escrow.split_warranty(100, Decimal("1.5")) == (0, 100)


@pytest.mark.asyncio
async def test_winning_bid_stays_accepted(db_session: AsyncSession) -> None:
    dealer = await make_dealer(db_session)
    tech = await make_technician(db_session)
    job = await assign(db_session, dealer, tech)
    bids = (await db_session.execute(select(JobBid).where(JobBid.job_id == job.job_id))).scalars().all()
    assert [b.status for b in bids] == [BidStatus.ACCEPTED]


async def _cancelled_mid_work(db: AsyncSession):  # type: ignore[no-untyped-def]
    dealer = await make_dealer(db)
    tech = await make_technician(db)
    job = await assign(db, dealer, tech, price=10_000)
    await job_service.start_job(db, job.job_id, technician_actor(tech))
    assert (await job_service.cancel_job(db, job.job_id, dealer_actor(dealer), "Car sold")).ok
    return dealer, tech, job


@pytest.mark.asyncio
async def test_ruling_refunds_held_escrow_to_dealer(db_session: AsyncSession) -> None:
    dealer, _, job = await _cancelled_mid_work(db_session)

    outcome = await escrow.rule_on_held_escrow(
        db_session, job.job_id, EscrowRuling.REFUND_DEALER, ADMIN, "Work never began in earnest"
    )
    assert outcome.ok
    payment = outcome.value
    assert payment.status == PaymentStatus.REFUNDED
    assert payment.refunded_at is not None
    assert payment.released_amount is None

    again = await escrow.rule_on_held_escrow(
        db_session, job.job_id, EscrowRuling.RELEASE_TECHNICIAN, ADMIN, "second look"
    )
    assert again.rejection == Rejection.ALREADY_DONE


@pytest.mark.asyncio
async def test_ruling_releases_net_to_technician(db_session: AsyncSession) -> None:
    _, _, job = await _cancelled_mid_work(db_session)

    outcome = await escrow.rule_on_held_escrow(
        db_session, job.job_id, EscrowRuling.RELEASE_TECHNICIAN, ADMIN, "Parts were fitted"
    )
    assert outcome.ok
    payment = outcome.value
    assert payment.status == PaymentStatus.RELEASED
    assert payment.released_amount == payment.net_amount == 8_500
    assert payment.commission_amount + payment.net_amount == payment.amount


@pytest.mark.asyncio
async def test_ruling_validation(db_session: AsyncSession) -> None:
    dealer, _, job = await _cancelled_mid_work(db_session)

    denied = await escrow.rule_on_held_escrow(
        db_session, job.job_id, EscrowRuling.REFUND_DEALER, dealer_actor(dealer), "mine"
    )
    assert denied.rejection == Rejection.FORBIDDEN
    blank = await escrow.rule_on_held_escrow(db_session, job.job_id, EscrowRuling.REFUND_DEALER, ADMIN, " ")
    assert blank.rejection == Rejection.INVALID

    live = await assign(db_session, dealer, await make_technician(db_session))
    open_job = await escrow.rule_on_held_escrow(
        db_session, live.job_id, EscrowRuling.REFUND_DEALER, ADMIN, "early"
    )
    assert open_job.rejection == Rejection.CONFLICT


@pytest.mark.asyncio
async def test_ruling_not_needed_when_refunded_at_cancellation(db_session: AsyncSession) -> None:
    dealer = await make_dealer(db_session)
    tech = await make_technician(db_session)
    job = await assign(db_session, dealer, tech)
    assert (await job_service.cancel_job(db_session, job.job_id, dealer_actor(dealer), "Budget")).ok

    outcome = await escrow.rule_on_held_escrow(
        db_session, job.job_id, EscrowRuling.RELEASE_TECHNICIAN, ADMIN, "late appeal"
    )
    assert outcome.rejection == Rejection.ALREADY_DONE
