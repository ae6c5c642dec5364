from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, List, Sequence

from timeengine.aggregation import MINUTES_PER_HOUR, ZERO
from timeengine.amortization import to_hours
from timeengine.months import to_month_key
from timeengine.records import (
    ActivityRecord,
    EngineContext,
    GoalContributionRecord,
    GoalRecord,
    ObjectRecord,
)

EPS = Decimal("0.000001")


@dataclass(frozen=True)
class ActivityRoi:
    id: int | None
    name: str
    roi_ratio: Decimal | None
    net_hours_per_occurrence: Decimal | None


@dataclass(frozen=True)
class ObjectMetrics:
    id: int | None
    name: str
    capex_hours: Decimal | None
    maint_hours_per_month: Decimal | None
    saved_hours_per_month: Decimal
    net_hours_per_month: Decimal | None
    payback_months: Decimal | None
    lifetime_roi_hours: Decimal | None


@dataclass(frozen=True)
class GoalProgress:
    goal_id: int
    name: str
    target_type: str
    target_hours: Decimal | None
    target_money: Decimal | None
    progress_hours: Decimal
    progress_money: Decimal
    remaining_hours: Decimal | None
    remaining_money: Decimal | None
    eta_months: Decimal | None
    needs_hourly_rate: bool
    blocked: bool


def activity_roi(rows: Iterable[ActivityRecord], ctx: EngineContext) -> List[ActivityRoi]:
    """Per-occurrence ROI at the hourly rate of the ``as_of`` month."""
    month = to_month_key(ctx.as_of)
    results: List[ActivityRoi] = []
    for row in rows:
        saved = Decimal(row.saved_minutes) / MINUTES_PER_HOUR
        money_cost = ctx.to_user_money(row.direct_cost_cents, row.currency, ctx.as_of)
        money_cost_hours = to_hours(money_cost, month, ctx.rate_for)
        if money_cost_hours is None:
            results.append(ActivityRoi(row.id, row.name, None, None))
            continue
        cost = Decimal(row.duration_minutes) / MINUTES_PER_HOUR + money_cost_hours
        roi = saved / cost if cost > EPS else None
        results.append(ActivityRoi(row.id, row.name, roi, saved - cost))
    return results


def object_metrics(rows: Iterable[ObjectRecord], ctx: EngineContext) -> List[ObjectMetrics]:
    """Static payback and lifetime ROI, priced at the purchase month's rate."""
    results: List[ObjectMetrics] = []
    for row in rows:
        month = to_month_key(row.purchase_date)
        saved = Decimal(row.hours_saved_per_month)
        price = ctx.to_user_money(row.price_cents, row.currency, row.purchase_date)
        maintenance = ctx.to_user_money(
            row.maintenance_cents_per_month, row.currency, row.purchase_date
        )
        capex_hours = to_hours(price, month, ctx.rate_for)
        maint_hours = to_hours(maintenance, month, ctx.rate_for)

        net = saved - maint_hours if maint_hours is not None else None
        payback = None
        lifetime_roi = None
        if capex_hours is not None and net is not None:
            if net > EPS:
                payback = capex_hours / net
            life = Decimal(row.expected_life_months)
            lifetime_roi = saved * life - capex_hours - maint_hours * life

        results.append(
            ObjectMetrics(
                id=row.id,
                name=row.name,
                capex_hours=capex_hours,
                maint_hours_per_month=maint_hours,
                saved_hours_per_month=saved,
                net_hours_per_month=net,
                payback_months=payback,
                lifetime_roi_hours=lifetime_roi,
            )
        )
    return results


def goal_progress(
    goals: Iterable[GoalRecord],
    contributions: Sequence[GoalContributionRecord],
    ctx: EngineContext,
    net_savings_hours_per_month: Decimal | None,
) -> Dict[int, GoalProgress]:
    by_goal: Dict[int, List[GoalContributionRecord]] = {}
    for contribution in contributions:
        by_goal.setdefault(contribution.goal_id, []).append(contribution)

    as_of_month = to_month_key(ctx.as_of)
    progress: Dict[int, GoalProgress] = {}
    for goal in goals:
        needs_rate = False
        target_type = "hours" if goal.target_hours is not None else "money"

        target_money = None
        target_hours = None
        if goal.target_hours is not None:
            target_hours = Decimal(goal.target_hours)
        elif goal.target_amount_cents is not None:
            target_money = ctx.to_user_money(goal.target_amount_cents, goal.currency, ctx.as_of)
            target_hours = to_hours(target_money, as_of_month, ctx.rate_for)
            if target_hours is None:
                needs_rate = True

        progress_hours = ZERO
        progress_money = ZERO
        for contribution in by_goal.get(goal.id, []):
            if contribution.hours is not None:
                progress_hours += Decimal(contribution.hours)
            if not contribution.amount_cents:
                continue
            money = ctx.to_user_money(
                contribution.amount_cents, goal.currency, contribution.contributed_at
            )
            progress_money += money
            hours = to_hours(money, to_month_key(contribution.contributed_at), ctx.rate_for)
            if hours is None:
                needs_rate = True
            else:
                progress_hours += hours

        remaining_hours = (
            max(ZERO, target_hours - progress_hours) if target_hours is not None else None
        )
        remaining_money = (
            max(ZERO, target_money - progress_money) if target_money is not None else None
        )
        eta = None
        if (
            remaining_hours is not None
            and net_savings_hours_per_month is not None
            and net_savings_hours_per_month > EPS
        ):
            eta = remaining_hours / net_savings_hours_per_month

        progress[goal.id] = GoalProgress(
            goal_id=goal.id,
            name=goal.name,
            target_type=target_type,
            target_hours=target_hours,
            target_money=target_money,
            progress_hours=progress_hours,
            progress_money=progress_money,
            remaining_hours=remaining_hours,
            remaining_money=remaining_money,
            eta_months=eta,
            needs_hourly_rate=needs_rate or target_hours is None,
            blocked=eta is None and remaining_hours != ZERO,
        )
    return progress
