"""Tests for warranty holds: issue reports, operator rulings and expiry."""

import uuid
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import utcnow
from app.models.payment import JobPayment, PaymentStatus, PaymentType
from app.models.trust import Penalty, PenaltyReason
from app.models.warranty import ResolutionOutcome, WarrantyHold, WarrantyStatus
from app.services import warranty
from app.services.outcome import Rejection
from tests.conftest import (
    ADMIN,
    complete,
    dealer_actor,
    make_dealer,
    make_technician,
    technician_actor,
)


async def _completed_hold(db: AsyncSession, now=None):  # type: ignore[no-untyped-def]
    now = now or utcnow()
    dealer = await make_dealer(db)
    tech = await make_technician(db)
    job = await complete(db, dealer, tech, price=10_000, now=now)
    hold = (await db.execute(
        select(WarrantyHold).where(WarrantyHold.job_id == job.job_id)
    )).scalar_one()
    return dealer, tech, hold


async def _warranty_payment(db: AsyncSession, job_id: uuid.UUID) -> JobPayment:
    return (await db.execute(
        select(JobPayment).where(
            JobPayment.job_id == job_id, JobPayment.payment_type == PaymentType.WARRANTY_HOLD
        )
    )).scalar_one()


@pytest.mark.asyncio
async def test_hold_opens_on_completion(db_session: AsyncSession) -> None:
    now = utcnow()
    _, tech, hold = await _completed_hold(db_session, now)
    assert hold.status == WarrantyStatus.LOCKED
    assert hold.technician_id == tech.technician_id
    assert hold.expires_at == now + timedelta(hours=2) + timedelta(days=30)
    assert [h.hold_id for h in await warranty.list_holds(db_session, tech.technician_id)] == [hold.hold_id]


@pytest.mark.asyncio
async def test_report_issue_freezes_hold(db_session: AsyncSession) -> None:
    now = utcnow()
    dealer, tech, hold = await _completed_hold(db_session, now)

    outcome = await warranty.report_issue(
        db_session, hold.hold_id, "Clutch slipping again", dealer_actor(dealer),
        {"odometer": 60_420}, now=now + timedelta(days=3),
    )
    assert outcome.ok
    assert hold.status == WarrantyStatus.FROZEN
    assert hold.rework_technician_id == tech.technician_id
    assert hold.issue_metadata == {"odometer": 60_420}
    # Completion bonus minus one complaint.
    await db_session.refresh(tech)
    assert tech.trust_score == Decimal("52.00")

    again = await warranty.report_issue(db_session, hold.hold_id, "Still slipping", dealer_actor(dealer))
    assert again.rejection == Rejection.CONFLICT


@pytest.mark.asyncio
async def test_report_issue_permissions_and_window(db_session: AsyncSession) -> None:
    now = utcnow()
    dealer, tech, hold = await _completed_hold(db_session, now)

    outcome = await warranty.report_issue(db_session, hold.hold_id, "Noise", technician_actor(tech))
    assert outcome.rejection == Rejection.FORBIDDEN
    outcome = await warranty.report_issue(db_session, hold.hold_id, "", dealer_actor(dealer))
    assert outcome.rejection == Rejection.INVALID
    outcome = await warranty.report_issue(
        db_session, hold.hold_id, "Noise", dealer_actor(dealer), now=now + timedelta(days=31)
    )
    assert outcome.rejection == Rejection.CONFLICT
    outcome = await warranty.report_issue(db_session, uuid.uuid4(), "Noise", dealer_actor(dealer))
    assert outcome.rejection == Rejection.NOT_FOUND


@pytest.mark.asyncio
async def test_unfounded_issue_extends_window(db_session: AsyncSession) -> None:
    now = utcnow()
    dealer, _, hold = await _completed_hold(db_session, now)
    original_expiry = hold.expires_at
    reported = now + timedelta(days=3)
    await warranty.report_issue(db_session, hold.hold_id, "Rattle", dealer_actor(dealer), now=reported)

    outcome = await warranty.resolve_issue(
        db_session, hold.hold_id, ResolutionOutcome.UNFOUNDED, ADMIN, "Loose trim, unrelated",
        now=reported + timedelta(days=2),
    )
    assert outcome.ok
    assert hold.status == WarrantyStatus.LOCKED
    assert hold.expires_at == original_expiry + timedelta(days=2)
    assert hold.paused_seconds == 2 * 24 * 3600
    assert hold.resolution_outcome == ResolutionOutcome.UNFOUNDED
    assert hold.resolved_by == ADMIN.actor_id


@pytest.mark.asyncio
async def test_at_fault_forfeits_and_penalizes(db_session: AsyncSession) -> None:
    dealer, tech, hold = await _completed_hold(db_session)
    await warranty.report_issue(db_session, hold.hold_id, "Clutch failed", dealer_actor(dealer))

    outcome = await warranty.resolve_issue(
        db_session, hold.hold_id, ResolutionOutcome.TECHNICIAN_AT_FAULT, ADMIN, "Wrong part fitted"
    )
    assert outcome.ok
    assert hold.status == WarrantyStatus.FORFEITED
    payment = await _warranty_payment(db_session, hold.job_id)
    assert payment.status == PaymentStatus.FORFEITED

    penalty = (await db_session.execute(select(Penalty))).scalar_one()
    assert penalty.user_id == tech.technician_id
    assert penalty.reason == PenaltyReason.WARRANTY_FORFEIT
    assert penalty.amount == 850
    await db_session.refresh(tech)
    assert tech.trust_score == Decimal("47.00")


@pytest.mark.asyncio
async def test_not_at_fault_releases(db_session: AsyncSession) -> None:
    dealer, _, hold = await _completed_hold(db_session)
    await warranty.report_issue(db_session, hold.hold_id, "Leak", dealer_actor(dealer))

    outcome = await warranty.resolve_issue(
        db_session, hold.hold_id, ResolutionOutcome.TECHNICIAN_NOT_AT_FAULT, ADMIN
    )
    assert outcome.ok
    assert hold.status == WarrantyStatus.RELEASED
    assert hold.release_reason == "resolved_not_at_fault"
    payment = await _warranty_payment(db_session, hold.job_id)
    assert payment.status == PaymentStatus.RELEASED
    assert payment.released_amount == payment.amount == 850


@pytest.mark.asyncio
async def test_resolve_requires_operator_and_open_issue(db_session: AsyncSession) -> None:
    dealer, _, hold = await _completed_hold(db_session)

    outcome = await warranty.resolve_issue(
        db_session, hold.hold_id, ResolutionOutcome.UNFOUNDED, dealer_actor(dealer)
    )
    assert outcome.rejection == Rejection.FORBIDDEN
    outcome = await warranty.resolve_issue(db_session, hold.hold_id, ResolutionOutcome.UNFOUNDED, ADMIN)
    assert outcome.rejection == Rejection.CONFLICT


@pytest.mark.asyncio
async def test_release_expired_holds_skips_frozen(db_session: AsyncSession) -> None:
    now = utcnow()
    dealer, _, quiet = await _completed_hold(db_session, now)
    other_dealer, _, disputed = await _completed_hold(db_session, now)
    await warranty.report_issue(db_session, disputed.hold_id, "Smoke", dealer_actor(other_dealer))

    assert await warranty.release_expired_holds(db_session, now + timedelta(days=29)) == []

    released = await warranty.release_expired_holds(db_session, now + timedelta(days=31))
    await db_session.commit()
    assert [h.hold_id for h in released] == [quiet.hold_id]
    assert quiet.status == WarrantyStatus.RELEASED
    assert quiet.release_reason == "warranty_expired"
    assert disputed.status == WarrantyStatus.FROZEN
    payment = await _warranty_payment(db_session, quiet.job_id)
    assert payment.status == PaymentStatus.RELEASED
