"""Per-month money and hour series for every entity type.

Hours are only defined for months with a known hourly rate. Such months hold
``None`` in every hours series, and ``None`` wins in every sum so that
"unknown" never turns into "free" further down the pipeline.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence

from timeengine.amortization import amortize_capex, amortize_one_time, to_hours
from timeengine.months import (
    MonthKey,
    expand_occurrences,
    month_start,
    shift_month_key,
    to_month_key,
)
from timeengine.records import (
    ActivityRecord,
    EngineContext,
    ExpenseRecord,
    IncomeRecord,
    ObjectRecord,
)

ZERO = Decimal("0")
MINUTES_PER_HOUR = Decimal("60")
WEEKS_PER_MONTH = Decimal("52.1429") / Decimal("12")
UNDATED_ACTIVITY_ANCHOR = date(2000, 1, 1)

Series = Dict[MonthKey, Optional[Decimal]]
CategorySeries = Dict[int, Series]


@dataclass(frozen=True)
class IncomeResult:
    money: Series
    hours: Series
    by_source_money: Dict[str, Series] = field(default_factory=dict)


@dataclass(frozen=True)
class ExpenseResult:
    money: Series
    hours: Series
    by_category_money: CategorySeries = field(default_factory=dict)
    by_category_hours: CategorySeries = field(default_factory=dict)


@dataclass(frozen=True)
class ObjectsResult:
    maint_hours: Series
    saved_hours: Series
    capex_hours: Series
    by_category_maint_hours: CategorySeries = field(default_factory=dict)
    by_category_saved_hours: CategorySeries = field(default_factory=dict)
    by_category_capex_hours: CategorySeries = field(default_factory=dict)


@dataclass(frozen=True)
class ActivitiesResult:
    saved_hours: Series
    extra_cost_hours: Series
    by_category_saved_hours: CategorySeries = field(default_factory=dict)
    by_category_extra_cost_hours: CategorySeries = field(default_factory=dict)


@dataclass(frozen=True)
class TimeTotals:
    time_cost_hours: Series
    time_savings_hours: Series
    time_burn_net: Series
    cost_by_category_hours: CategorySeries
    savings_by_category_hours: CategorySeries
    net_savings_hours_per_month: Decimal | None


def zero_series(months: Sequence[MonthKey]) -> Series:
    return {month: ZERO for month in months}


def hours_template(months: Sequence[MonthKey], ctx: EngineContext) -> Series:
    return {month: (ZERO if ctx.rate_for(month) is not None else None) for month in months}


def add_to(series: Series, month: MonthKey, value: Decimal | None) -> None:
    if month not in series or series[month] is None or value is None:
        return
    series[month] += value


def sum_series(months: Sequence[MonthKey], *parts: Series) -> Series:
    total: Series = {}
    for month in months:
        values = [part.get(month) for part in parts]
        total[month] = None if any(value is None for value in values) else sum(values, ZERO)
    return total


def subtract_series(months: Sequence[MonthKey], left: Series, right: Series) -> Series:
    return {
        month: (
            None
            if left.get(month) is None or right.get(month) is None
            else left[month] - right[month]
        )
        for month in months
    }


def merge_category_maps(
    template: Series, *maps: CategorySeries
) -> CategorySeries:
    merged: CategorySeries = {}
    for category_map in maps:
        for category_id in sorted(category_map):
            target = _category_series(merged, category_id, template)
            for month, value in category_map[category_id].items():
                add_to(target, month, value)
    return dict(sorted(merged.items()))


def compute_income(
    rows: Iterable[IncomeRecord], months: Sequence[MonthKey], ctx: EngineContext
) -> IncomeResult:
    money = zero_series(months)
    hours = hours_template(months, ctx)
    by_source: Dict[str, Series] = {}

    for row in rows:
        frequency = "once" if row.recurring == "none" else row.recurring
        occurrences = expand_occurrences(frequency, row.received_at, None, months)
        for month, dates in occurrences.items():
            for occurrence_date in dates:
                amount = ctx.to_user_money(row.amount_cents, row.currency, occurrence_date)
                money[month] += amount
                add_to(hours, month, to_hours(amount, month, ctx.rate_for))
                source_series = by_source.setdefault(row.source, zero_series(months))
                source_series[month] += amount

    if ctx.implied_salary.enabled:
        hours_per_week = max(ZERO, ctx.implied_salary.hours_per_week)
        for month in months:
            rate = ctx.rate_for(month)
            if rate is None:
                continue
            monthly_money = rate * hours_per_week * WEEKS_PER_MONTH
            money[month] += monthly_money
            add_to(hours, month, monthly_money / rate)

    return IncomeResult(
        money=money,
        hours=hours,
        by_source_money=dict(sorted(by_source.items())),
    )


def compute_expenses(
    rows: Iterable[ExpenseRecord], months: Sequence[MonthKey], ctx: EngineContext
) -> ExpenseResult:
    money = zero_series(months)
    hours = hours_template(months, ctx)
    template = dict(hours)
    by_category_money: CategorySeries = {}
    by_category_hours: CategorySeries = {}

    def book(month: MonthKey, amount: Decimal, category_id: int | None) -> None:
        if month not in money:
            return
        amount_hours = to_hours(amount, month, ctx.rate_for)
        money[month] += amount
        add_to(hours, month, amount_hours)
        if category_id is None:
            return
        _category_series(by_category_money, category_id, zero_series(months))[month] += amount
        add_to(_category_series(by_category_hours, category_id, template), month, amount_hours)

    for row in rows:
        if not row.is_active:
            continue
        if row.frequency == "once":
            if row.end_date is not None and row.end_date < row.start_date:
                continue
            amount = ctx.to_user_money(row.amount_cents, row.currency, row.start_date)
            for month, portion in amortize_one_time(
                amount, to_month_key(row.start_date), ctx.amortize_one_time_months
            ):
                book(month, portion, row.category_id)
            continue

        occurrences = expand_occurrences(
            row.frequency, row.start_date, row.end_date, months, is_active=row.is_active
        )
        for month, dates in occurrences.items():
            for occurrence_date in dates:
                amount = ctx.to_user_money(row.amount_cents, row.currency, occurrence_date)
                book(month, amount, row.category_id)

    return ExpenseResult(
        money=money,
        hours=hours,
        by_category_money=dict(sorted(by_category_money.items())),
        by_category_hours=dict(sorted(by_category_hours.items())),
    )


def compute_objects(
    rows: Iterable[ObjectRecord], months: Sequence[MonthKey], ctx: EngineContext
) -> ObjectsResult:
    template = hours_template(months, ctx)
    maint_hours = dict(template)
    saved_hours = dict(template)
    capex_hours = dict(template)
    by_category_maint: CategorySeries = {}
    by_category_saved: CategorySeries = {}
    by_category_capex: CategorySeries = {}

    for row in rows:
        purchase_month = to_month_key(row.purchase_date)
        life_end = object_life_end(row)
        saved_per_month = Decimal(row.hours_saved_per_month)

        for month in months:
            if month < purchase_month:
                continue
            add_to(saved_hours, month, saved_per_month)
            if row.category_id is not None:
                add_to(
                    _category_series(by_category_saved, row.category_id, template),
                    month,
                    saved_per_month,
                )
            if life_end is not None and month > life_end:
                continue
            maintenance = ctx.to_user_money(
                row.maintenance_cents_per_month, row.currency, month_start(month)
            )
            maintenance_hours = to_hours(maintenance, month, ctx.rate_for)
            add_to(maint_hours, month, maintenance_hours)
            if row.category_id is not None:
                add_to(
                    _category_series(by_category_maint, row.category_id, template),
                    month,
                    maintenance_hours,
                )

        price = ctx.to_user_money(row.price_cents, row.currency, row.purchase_date)
        for month, portion in amortize_capex(price, purchase_month, ctx.amortize_capex_months):
            if month not in capex_hours:
                continue
            portion_hours = to_hours(portion, month, ctx.rate_for)
            add_to(capex_hours, month, portion_hours)
            if row.category_id is not None:
                add_to(
                    _category_series(by_category_capex, row.category_id, template),
                    month,
                    portion_hours,
                )

    return ObjectsResult(
        maint_hours=maint_hours,
        saved_hours=saved_hours,
        capex_hours=capex_hours,
        by_category_maint_hours=dict(sorted(by_category_maint.items())),
        by_category_saved_hours=dict(sorted(by_category_saved.items())),
        by_category_capex_hours=dict(sorted(by_category_capex.items())),
    )


def object_life_end(row: ObjectRecord) -> MonthKey | None:
    if row.expected_life_months <= 0:
        return None
    return shift_month_key(to_month_key(row.purchase_date), row.expected_life_months - 1)


def compute_activities(
    rows: Iterable[ActivityRecord], months: Sequence[MonthKey], ctx: EngineContext
) -> ActivitiesResult:
    template = hours_template(months, ctx)
    saved_hours = dict(template)
    extra_cost_hours = dict(template)
    by_category_saved: CategorySeries = {}
    by_category_extra: CategorySeries = {}

    for row in rows:
        duration_hours = Decimal(row.duration_minutes) / MINUTES_PER_HOUR
        saved_per_occurrence = Decimal(row.saved_minutes) / MINUTES_PER_HOUR
        for month, dates in activity_occurrences(row, months, ctx).items():
            for occurrence_date in dates:
                cost = ctx.to_user_money(row.direct_cost_cents, row.currency, occurrence_date)
                cost_hours = to_hours(cost, month, ctx.rate_for)
                if cost_hours is None:
                    continue
                add_to(extra_cost_hours, month, duration_hours + cost_hours)
                add_to(saved_hours, month, saved_per_occurrence)
                if row.category_id is None:
                    continue
                add_to(
                    _category_series(by_category_extra, row.category_id, template),
                    month,
                    duration_hours + cost_hours,
                )
                add_to(
                    _category_series(by_category_saved, row.category_id, template),
                    month,
                    saved_per_occurrence,
                )

    return ActivitiesResult(
        saved_hours=saved_hours,
        extra_cost_hours=extra_cost_hours,
        by_category_saved_hours=dict(sorted(by_category_saved.items())),
        by_category_extra_cost_hours=dict(sorted(by_category_extra.items())),
    )


def activity_occurrences(
    row: ActivityRecord, months: Sequence[MonthKey], ctx: EngineContext
) -> Dict[MonthKey, List[date]]:
    if row.start_date is not None:
        anchor = row.start_date
    elif row.frequency == "once":
        anchor = ctx.as_of
    else:
        anchor = UNDATED_ACTIVITY_ANCHOR
    return expand_occurrences(row.frequency, anchor, None, months)


def combine_time(
    months: Sequence[MonthKey],
    expenses: ExpenseResult,
    objects: ObjectsResult,
    activities: ActivitiesResult,
    template: Series,
) -> TimeTotals:
    time_cost = sum_series(
        months,
        expenses.hours,
        objects.maint_hours,
        activities.extra_cost_hours,
        objects.capex_hours,
    )
    time_savings = sum_series(months, objects.saved_hours, activities.saved_hours)
    time_burn = subtract_series(months, time_cost, time_savings)

    known = [-time_burn[month] for month in months if time_burn[month] is not None]
    net_savings = sum(known, ZERO) / len(known) if known else None

    return TimeTotals(
        time_cost_hours=time_cost,
        time_savings_hours=time_savings,
        time_burn_net=time_burn,
        cost_by_category_hours=merge_category_maps(
            template,
            expenses.by_category_hours,
            objects.by_category_maint_hours,
            objects.by_category_capex_hours,
            activities.by_category_extra_cost_hours,
        ),
        savings_by_category_hours=merge_category_maps(
            template,
            objects.by_category_saved_hours,
            activities.by_category_saved_hours,
        ),
        net_savings_hours_per_month=net_savings,
    )


def _category_series(
    category_map: CategorySeries, category_id: int, template: Series
) -> Series:
    if category_id not in category_map:
        category_map[category_id] = dict(template)
    return category_map[category_id]
