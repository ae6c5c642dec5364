from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping, Sequence

from timeengine.aggregation import (
    CategorySeries,
    Series,
    ZERO,
    add_to,
    hours_template,
    zero_series,
)
from timeengine.amortization import amortize, to_hours
from timeengine.currency_conversion import cents_to_money
from timeengine.months import MonthKey, month_start, months_between, to_month_key
from timeengine.records import BudgetAllocationRecord, EngineContext


@dataclass(frozen=True)
class BudgetResult:
    money: Series
    hours: Series
    by_category_money: CategorySeries
    by_category_hours: CategorySeries
    variance_hours: Series
    variance_by_category_hours: CategorySeries


def compute_budgets(
    allocations: Iterable[BudgetAllocationRecord],
    months: Sequence[MonthKey],
    ctx: EngineContext,
    actual_by_category_hours: Mapping[int, Series],
) -> BudgetResult:
    """Budgeted money/hours per month and the hours variance against actual spend.

    Variance is ``budget - actual`` (positive means under budget). Only
    categories that carry an allocation take part; spend without an allocation
    has nothing to compare against.
    """
    money = zero_series(months)
    template = hours_template(months, ctx)
    hours = dict(template)
    by_category_money: CategorySeries = {}
    by_category_hours: CategorySeries = {}

    for allocation in allocations:
        first_month = to_month_key(allocation.period_start)
        span = months_between(first_month, to_month_key(allocation.period_end)) + 1
        for month, portion in amortize(
            cents_to_money(allocation.amount_cents), first_month, span
        ):
            if month not in money:
                continue
            portion_money = portion * ctx.fx_rate(
                allocation.currency, ctx.user_currency, month_start(month)
            )
            portion_hours = to_hours(portion_money, month, ctx.rate_for)
            money[month] += portion_money
            add_to(hours, month, portion_hours)
            category_money = by_category_money.setdefault(
                allocation.category_id, zero_series(months)
            )
            category_money[month] += portion_money
            category_hours = by_category_hours.setdefault(
                allocation.category_id, dict(template)
            )
            add_to(category_hours, month, portion_hours)

    variance_by_category: CategorySeries = {}
    for category_id in sorted(by_category_hours):
        actual = actual_by_category_hours.get(category_id, {})
        variance_by_category[category_id] = {
            month: _variance(by_category_hours[category_id][month], actual.get(month))
            for month in months
        }

    variance_hours = dict(template)
    for series in variance_by_category.values():
        for month in months:
            add_to(variance_hours, month, series[month])

    return BudgetResult(
        money=money,
        hours=hours,
        by_category_money=dict(sorted(by_category_money.items())),
        by_category_hours=dict(sorted(by_category_hours.items())),
        variance_hours=variance_hours,
        variance_by_category_hours=variance_by_category,
    )


def _variance(budget_hours, actual_hours):
    if budget_hours is None:
        return None
    return budget_hours - (actual_hours if actual_hours is not None else ZERO)
