"""Commission calculation.

The platform cut is derived from a gross job amount in integer minor units.
Rules are matched most-specific first:

1. dealer + service sub-category
2. dealer + service category
3. dealer (general)
4. city
5. region
6. service sub-category
7. service category
8. unscoped rule stored in the database
9. the configured global default

Within one tier the newest active, currently effective rule wins.
Everything below ``resolve_commission`` is pure; identical inputs always give
identical outputs, so payment rows can be re-derived for audit.
"""

import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.commission import CommissionRule, CommissionType


@dataclass(frozen=True)
class CommissionContext:
    service_category: str | None = None
    service_sub_category: str | None = None
    city: str | None = None
    region: str | None = None
    dealer_id: uuid.UUID | None = None


@dataclass(frozen=True)
class CommissionBreakdown:
    """Itemized commission split for one gross amount."""
    commission_type: CommissionType
    commission_value: Decimal
    commission_amount: int
    net_amount: int
    rule_source: str
    rule_id: uuid.UUID | None = None

    def to_dict(self) -> dict:
        return {
            "commission_type": self.commission_type.value,
            "commission_value": str(self.commission_value),
            "commission_amount": self.commission_amount,
            "net_amount": self.net_amount,
            "rule_source": self.rule_source,
            "rule_id": str(self.rule_id) if self.rule_id else None,
        }


def calculate_commission(
    job_amount: int,
    commission_type: CommissionType,
    commission_value: Decimal,
    rule_source: str = "default",
    rule_id: uuid.UUID | None = None,
) -> CommissionBreakdown:
    """Split ``job_amount`` into commission and net payout.

    Percentage commission is rounded half-up to the nearest minor unit. Both
    kinds are clamped to [0, job_amount], and the net amount is always the
    exact remainder.
    """
    if commission_type == CommissionType.PERCENTAGE:
        raw = Decimal(job_amount) * commission_value / Decimal(100)
    else:
        raw = commission_value
    commission = int(raw.quantize(Decimal(1), rounding=ROUND_HALF_UP))
    commission = max(0, min(commission, job_amount))
    return CommissionBreakdown(
        commission_type=commission_type,
        commission_value=commission_value,
        commission_amount=commission,
        net_amount=job_amount - commission,
        rule_source=rule_source,
        rule_id=rule_id,
    )


def _is_effective(rule: CommissionRule, now: datetime) -> bool:
    if not rule.is_active:
        return False
    if rule.effective_from is not None and rule.effective_from > now:
        return False
    if rule.effective_to is not None and rule.effective_to < now:
        return False
    return True


def _tiers(ctx: CommissionContext) -> list[tuple[str, Callable[[CommissionRule], bool]]]:
    """Ordered (source, predicate) pairs, skipping tiers the context can't match."""
    tiers: list[tuple[str, Callable[[CommissionRule], bool]]] = []
    if ctx.dealer_id and ctx.service_sub_category:
        tiers.append(("dealer-service-sub-category", lambda r: (
            r.dealer_id == ctx.dealer_id
            and r.service_sub_category == ctx.service_sub_category
        )))
    if ctx.dealer_id and ctx.service_category:
        tiers.append(("dealer-service-category", lambda r: (
            r.dealer_id == ctx.dealer_id
            and r.service_category == ctx.service_category
            and r.service_sub_category is None
        )))
    if ctx.dealer_id:
        tiers.append(("dealer", lambda r: (
            r.dealer_id == ctx.dealer_id
            and r.service_category is None
            and r.service_sub_category is None
        )))
    if ctx.city:
        tiers.append(("city", lambda r: r.dealer_id is None and r.city == ctx.city))
    if ctx.region:
        tiers.append(("region", lambda r: (
            r.dealer_id is None and r.city is None and r.region == ctx.region
        )))
    if ctx.service_sub_category:
        tiers.append(("service-sub-category", lambda r: (
            r.dealer_id is None and r.city is None and r.region is None
            and r.service_sub_category == ctx.service_sub_category
        )))
    if ctx.service_category:
        tiers.append(("service-category", lambda r: (
            r.dealer_id is None and r.city is None and r.region is None
            and r.service_sub_category is None
            and r.service_category == ctx.service_category
        )))
    tiers.append(("default-rule", lambda r: (
        r.dealer_id is None and r.city is None and r.region is None
        and r.service_category is None and r.service_sub_category is None
    )))
    return tiers


def select_rule(
    rules: Iterable[CommissionRule], ctx: CommissionContext, now: datetime
) -> tuple[CommissionRule, str] | None:
    """Pick the most specific effective rule for ``ctx``, or None."""
    effective = sorted(
        (r for r in rules if _is_effective(r, now)),
        key=lambda r: r.created_at,
        reverse=True,
    )
    for source, matches in _tiers(ctx):
        for rule in effective:
            if matches(rule):
                return rule, source
    return None


def default_breakdown(job_amount: int) -> CommissionBreakdown:
    return calculate_commission(
        job_amount,
        CommissionType(settings.default_commission_type),
        settings.default_commission_value,
        rule_source="default",
    )


def calculate(
    job_amount: int,
    ctx: CommissionContext,
    rules: Iterable[CommissionRule],
    now: datetime,
) -> CommissionBreakdown:
    """Resolve the applicable rule from ``rules`` and split ``job_amount``."""
    selected = select_rule(rules, ctx, now)
    if selected is None:
        return default_breakdown(job_amount)
    rule, source = selected
    return calculate_commission(
        job_amount, rule.commission_type, rule.commission_value, source, rule.rule_id
    )


async def resolve_commission(
    db: AsyncSession, job_amount: int, ctx: CommissionContext, now: datetime
) -> CommissionBreakdown:
    """Load candidate rules and apply :func:`calculate`."""
    result = await db.execute(
        select(CommissionRule).where(CommissionRule.is_active.is_(True))
    )
    return calculate(job_amount, ctx, result.scalars().all(), now)
