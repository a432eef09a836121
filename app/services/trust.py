"""Trust score engine.

A dealer's or technician's score is a bounded [0, 100] function of four
inputs: job completion rate, average rating, complaint count and penalty
count. ``compute_trust_score`` is pure. Every mutation of the denormalized
score, automatic or manual, writes exactly one ``TrustScoreHistory`` row
before touching the profile. ``list_risks`` reads the same inputs to build
the operator risk report.
"""

import enum
import logging
import uuid
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import utcnow
from app.models.job import JobPost, JobStatus
from app.models.party import (
    ActorRole,
    Dealer,
    PartyStatus,
    Technician,
    TrustScoreStatus,
    UserType,
)
from app.models.review import JobReview
from app.models.trust import Penalty, TrustChangeType, TrustScoreHistory
from app.models.warranty import WarrantyHold
from app.services.outcome import Outcome, Rejection

logger = logging.getLogger(__name__)

SCORE_MIN = Decimal("0")
SCORE_MAX = Decimal("100")
_CENT = Decimal("0.01")


@dataclass(frozen=True)
class TrustWeights:
    base: Decimal = Decimal("50")
    # Points per star above/below a neutral 3-star average.
    rating_per_star: Decimal = Decimal("10")
    rating_cap: Decimal = Decimal("20")
    # Completion rate is measured against this target.
    completion_target: Decimal = Decimal("0.8")
    completion_weight: Decimal = Decimal("30")
    complaint_each: Decimal = Decimal("4")
    complaint_cap: Decimal = Decimal("20")
    penalty_each: Decimal = Decimal("5")
    penalty_cap: Decimal = Decimal("15")


DEFAULT_WEIGHTS = TrustWeights()


@dataclass(frozen=True)
class TrustInputs:
    total_jobs: int = 0
    completed_jobs: int = 0
    average_rating: Decimal | None = None
    complaints: int = 0
    penalties: int = 0


def clamp_score(score: Decimal) -> Decimal:
    return max(SCORE_MIN, min(SCORE_MAX, score)).quantize(_CENT, rounding=ROUND_HALF_UP)


def compute_trust_score(inputs: TrustInputs, weights: TrustWeights = DEFAULT_WEIGHTS) -> Decimal:
    """Deterministic score for ``inputs``.

    Missing signals (no ratings yet, no finished jobs) contribute nothing, so a
    new account sits at the base score.
    """
    score = weights.base

    if inputs.average_rating is not None:
        rating_term = (Decimal(inputs.average_rating) - 3) * weights.rating_per_star
        score += max(-weights.rating_cap, min(weights.rating_cap, rating_term))

    if inputs.total_jobs > 0:
        rate = Decimal(inputs.completed_jobs) / Decimal(inputs.total_jobs)
        score += (rate - weights.completion_target) * weights.completion_weight

    score -= min(weights.complaint_cap, weights.complaint_each * inputs.complaints)
    score -= min(weights.penalty_cap, weights.penalty_each * inputs.penalties)
    return clamp_score(score)


def score_status(score: Decimal) -> TrustScoreStatus:
    if score >= 80:
        return TrustScoreStatus.GOOD
    if score >= 60:
        return TrustScoreStatus.NORMAL
    if score >= 40:
        return TrustScoreStatus.RISK
    return TrustScoreStatus.CRITICAL


async def get_party(
    db: AsyncSession, user_id: uuid.UUID, user_type: UserType, for_update: bool = False
) -> Dealer | Technician | None:
    if user_type == UserType.DEALER:
        stmt = select(Dealer).where(Dealer.dealer_id == user_id)
    else:
        stmt = select(Technician).where(Technician.technician_id == user_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def gather_inputs(db: AsyncSession, user_id: uuid.UUID, user_type: UserType) -> TrustInputs:
    """Collect score inputs from jobs, reviews, warranty issues and penalties.

    A job counts once a technician was committed to it and it reached a
    terminal state; it counts as completed only if it reached COMPLETED.
    """
    if user_type == UserType.DEALER:
        party_col = JobPost.dealer_id
    else:
        party_col = JobPost.assigned_technician_id
    finished = (
        select(JobPost.status, func.count())
        .where(
            party_col == user_id,
            JobPost.assigned_technician_id.is_not(None),
            JobPost.status.in_([JobStatus.COMPLETED, JobStatus.CANCELLED]),
        )
        .group_by(JobPost.status)
    )
    counts = {status: n for status, n in (await db.execute(finished)).all()}
    completed = counts.get(JobStatus.COMPLETED, 0)
    total = completed + counts.get(JobStatus.CANCELLED, 0)

    avg_rating = (await db.execute(
        select(func.avg(JobReview.rating)).where(JobReview.reviewee_id == user_id)
    )).scalar_one()

    complaints = (await db.execute(
        select(func.count()).select_from(JobReview).where(
            JobReview.reviewee_id == user_id, JobReview.is_complaint.is_(True)
        )
    )).scalar_one()
    if user_type == UserType.TECHNICIAN:
        complaints += (await db.execute(
            select(func.count()).select_from(WarrantyHold).where(
                WarrantyHold.technician_id == user_id,
                WarrantyHold.issue_reported_at.is_not(None),
            )
        )).scalar_one()

    penalties = (await db.execute(
        select(func.count()).select_from(Penalty).where(
            Penalty.user_id == user_id, Penalty.user_type == user_type
        )
    )).scalar_one()

    return TrustInputs(
        total_jobs=total,
        completed_jobs=completed,
        average_rating=Decimal(str(avg_rating)) if avg_rating is not None else None,
        complaints=complaints,
        penalties=penalties,
    )


async def _write_score(
    db: AsyncSession,
    party: Dealer | Technician,
    user_id: uuid.UUID,
    user_type: UserType,
    new_score: Decimal,
    change_type: TrustChangeType,
    reason: str | None,
    actor_id: uuid.UUID | None,
    role: ActorRole,
) -> TrustScoreHistory:
    """History row first, then the denormalized profile fields."""
    new_score = clamp_score(new_score)
    entry = TrustScoreHistory(
        history_id=uuid.uuid4(),
        user_id=user_id,
        user_type=user_type,
        previous_score=party.trust_score,
        new_score=new_score,
        change_type=change_type,
        reason=reason,
        changed_by=actor_id,
        changed_by_role=role.value,
    )
    db.add(entry)
    await db.flush()

    party.trust_score = new_score
    party.trust_score_status = score_status(new_score)
    party.last_trust_score_update = utcnow()
    logger.info(
        "Trust score %s %s: %s -> %s (%s)",
        user_type.value, user_id, entry.previous_score, new_score, change_type.value,
    )
    return entry


async def apply_recalculation(
    db: AsyncSession,
    user_id: uuid.UUID,
    user_type: UserType,
    change_type: TrustChangeType = TrustChangeType.SYSTEM_RECALCULATION,
    reason: str | None = None,
) -> TrustScoreHistory | None:
    """Recompute inside the caller's transaction. Returns None for unknown users."""
    party = await get_party(db, user_id, user_type, for_update=True)
    if party is None:
        return None
    inputs = await gather_inputs(db, user_id, user_type)
    return await _write_score(
        db, party, user_id, user_type,
        compute_trust_score(inputs),
        change_type, reason, None, ActorRole.SYSTEM,
    )


async def recalculate(
    db: AsyncSession,
    user_id: uuid.UUID,
    user_type: UserType,
    change_type: TrustChangeType = TrustChangeType.SYSTEM_RECALCULATION,
    reason: str | None = None,
) -> Outcome[TrustScoreHistory]:
    entry = await apply_recalculation(db, user_id, user_type, change_type, reason)
    if entry is None:
        return Outcome.reject(Rejection.NOT_FOUND, f"{user_type.value.title()} not found")
    await db.commit()
    await db.refresh(entry)
    return Outcome.success(entry)


async def manual_adjust(
    db: AsyncSession,
    user_id: uuid.UUID,
    user_type: UserType,
    delta: Decimal,
    reason: str,
    actor_id: uuid.UUID,
    role: ActorRole,
) -> Outcome[TrustScoreHistory]:
    """Operator adjustment: ±limit for admins, unbounded for super admins."""
    if role not in (ActorRole.ADMIN, ActorRole.SUPER_ADMIN):
        return Outcome.reject(Rejection.FORBIDDEN, "Only operators can adjust trust scores")
    if delta == 0:
        return Outcome.reject(Rejection.INVALID, "Adjustment must be non-zero")
    if not reason or not reason.strip():
        return Outcome.reject(Rejection.INVALID, "A reason is required for manual adjustments")
    limit = settings.trust_manual_adjust_limit
    if role != ActorRole.SUPER_ADMIN and abs(delta) > limit:
        return Outcome.reject(
            Rejection.FORBIDDEN,
            f"Admins may adjust by at most ±{limit} points; use a super admin for larger changes",
        )

    party = await get_party(db, user_id, user_type, for_update=True)
    if party is None:
        return Outcome.reject(Rejection.NOT_FOUND, f"{user_type.value.title()} not found")

    change_type = TrustChangeType.MANUAL_INCREASE if delta > 0 else TrustChangeType.MANUAL_DECREASE
    entry = await _write_score(
        db, party, user_id, user_type,
        party.trust_score + delta,
        change_type, reason.strip(), actor_id, role,
    )
    await db.commit()
    await db.refresh(entry)
    return Outcome.success(entry)


async def list_history(
    db: AsyncSession, user_id: uuid.UUID, limit: int = 50
) -> list[TrustScoreHistory]:
    result = await db.execute(
        select(TrustScoreHistory)
        .where(TrustScoreHistory.user_id == user_id)
        .order_by(TrustScoreHistory.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


class RiskLevel(enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# Parties at or above this risk score are reported even without a flagged issue.
RISK_REPORT_THRESHOLD = Decimal("40")
LOW_COMPLETION_RATE = Decimal("0.7")
LOW_RATING = Decimal("3.5")


@dataclass(frozen=True)
class RiskEntry:
    user_id: uuid.UUID
    user_type: UserType
    display_name: str
    status: PartyStatus
    trust_score: Decimal
    risk_score: Decimal
    risk_level: RiskLevel
    issues: tuple[str, ...]


def risk_level(risk_score: Decimal) -> RiskLevel:
    if risk_score >= 80:
        return RiskLevel.CRITICAL
    if risk_score >= 60:
        return RiskLevel.HIGH
    if risk_score >= 40:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def risk_issues(inputs: TrustInputs, status: PartyStatus) -> tuple[str, ...]:
    issues = []
    if inputs.total_jobs > 0:
        rate = Decimal(inputs.completed_jobs) / Decimal(inputs.total_jobs)
        if rate < LOW_COMPLETION_RATE:
            issues.append("low_completion_rate")
    if inputs.average_rating is not None and inputs.average_rating < LOW_RATING:
        issues.append("low_rating")
    if status == PartyStatus.SUSPENDED:
        issues.append("suspended")
    return tuple(issues)


async def list_risks(
    db: AsyncSession, user_type: UserType | None = None, limit: int = 100
) -> list[RiskEntry]:
    """Parties worth an operator's attention, riskiest first.

    Risk is the complement of the stored trust score. A party is listed when
    its risk reaches the report threshold or any issue is flagged.
    """
    parties: list[tuple[UserType, Dealer | Technician, uuid.UUID]] = []
    if user_type in (None, UserType.DEALER):
        for dealer in (await db.execute(select(Dealer))).scalars():
            parties.append((UserType.DEALER, dealer, dealer.dealer_id))
    if user_type in (None, UserType.TECHNICIAN):
        for technician in (await db.execute(select(Technician))).scalars():
            parties.append((UserType.TECHNICIAN, technician, technician.technician_id))

    entries = []
    for party_type, party, user_id in parties:
        inputs = await gather_inputs(db, user_id, party_type)
        issues = risk_issues(inputs, party.status)
        risk_score = SCORE_MAX - party.trust_score
        if risk_score < RISK_REPORT_THRESHOLD and not issues:
            continue
        entries.append(RiskEntry(
            user_id=user_id,
            user_type=party_type,
            display_name=party.display_name,
            status=party.status,
            trust_score=party.trust_score,
            risk_score=risk_score,
            risk_level=risk_level(risk_score),
            issues=issues,
        ))
    entries.sort(key=lambda e: (-e.risk_score, -len(e.issues)))
    return entries[:limit]
