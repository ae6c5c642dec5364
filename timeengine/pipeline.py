"""One engine run: rows and a context in, a fully populated ``AggregateResult`` out.

Everything here besides ``load_inputs`` and ``prefetch_rates`` is pure. Those
two are the only places that talk to the data provider, each with a single
batched read, so a run never looks anything up per occurrence.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from timeengine.aggregation import (
    CategorySeries,
    Series,
    combine_time,
    compute_activities,
    compute_expenses,
    compute_income,
    compute_objects,
    hours_template,
)
from timeengine.analytics import (
    ActivityRoi,
    GoalProgress,
    ObjectMetrics,
    activity_roi,
    goal_progress,
    object_metrics,
)
from timeengine.budget_engine import compute_budgets
from timeengine.config import get_amortize_capex_months, get_amortize_one_time_months
from timeengine.currency_conversion import RateHistorySource, RateTable
from timeengine.forecast import forecast_time_burn
from timeengine.hourly_rates import HourlyRateTimeline
from timeengine.logging_setup import get_logger
from timeengine.months import MonthKey, month_end
from timeengine.records import (
    ActivityRecord,
    BudgetAllocationRecord,
    EngineContext,
    ExpenseRecord,
    GoalContributionRecord,
    GoalRecord,
    ImpliedSalary,
    IncomeRecord,
    ObjectRecord,
    UserProfile,
)

logger = get_logger(__name__)

FxGap = Tuple[str, str, date]

CONTRACT_FIELDS: Tuple[Tuple[str, str], ...] = (
    ("income_money", "incomeMoney"),
    ("income_hours", "incomeHours"),
    ("income_by_source_money", "incomeBySourceMoney"),
    ("expense_money", "expenseMoney"),
    ("expense_hours", "expenseHours"),
    ("objects_maint_hours", "objectsMaintHours"),
    ("objects_saved_hours", "objectsSavedHours"),
    ("objects_capex_hours", "objectsCapexHours"),
    ("activities_saved_hours", "activitiesSavedHours"),
    ("activities_extra_cost_hours", "activitiesExtraCostHours"),
    ("budget_money", "budgetMoney"),
    ("budget_hours", "budgetHours"),
    ("budget_variance_hours_by_month", "budgetVarianceHoursByMonth"),
    ("budget_variance_by_category_hours", "budgetVarianceByCategoryHours"),
    ("cost_by_category_hours", "costByCategoryHours"),
    ("savings_by_category_hours", "savingsByCategoryHours"),
    ("time_cost_hours", "timeCostHours"),
    ("time_savings_hours", "timeSavingsHours"),
    ("time_burn_net", "timeBurnNet"),
    ("net_savings_hours_per_month", "netSavingsHoursPerMonth"),
    ("goals_progress", "goalsProgress"),
    ("activities_roi", "activitiesRoi"),
    ("objects_metrics", "objectsMetrics"),
    ("forecast_net", "forecastNet"),
    ("forecast_labels", "forecastLabels"),
    ("projected_breakeven_month", "projectedBreakevenMonth"),
)


@dataclass(frozen=True)
class EngineInputs:
    incomes: Tuple[IncomeRecord, ...] = ()
    expenses: Tuple[ExpenseRecord, ...] = ()
    objects: Tuple[ObjectRecord, ...] = ()
    activities: Tuple[ActivityRecord, ...] = ()
    budget_allocations: Tuple[BudgetAllocationRecord, ...] = ()
    goals: Tuple[GoalRecord, ...] = ()
    contributions: Tuple[GoalContributionRecord, ...] = ()


@dataclass(frozen=True)
class AggregateResult:
    income_money: Series
    income_hours: Series
    income_by_source_money: Dict[str, Series]
    expense_money: Series
    expense_hours: Series
    objects_maint_hours: Series
    objects_saved_hours: Series
    objects_capex_hours: Series
    activities_saved_hours: Series
    activities_extra_cost_hours: Series
    budget_money: Series
    budget_hours: Series
    budget_variance_hours_by_month: Series
    budget_variance_by_category_hours: CategorySeries
    cost_by_category_hours: CategorySeries
    savings_by_category_hours: CategorySeries
    time_cost_hours: Series
    time_savings_hours: Series
    time_burn_net: Series
    net_savings_hours_per_month: Decimal | None
    goals_progress: List[GoalProgress] = field(default_factory=list)
    activities_roi: List[ActivityRoi] = field(default_factory=list)
    objects_metrics: List[ObjectMetrics] = field(default_factory=list)
    forecast_net: List[Optional[Decimal]] = field(default_factory=list)
    forecast_labels: List[MonthKey] = field(default_factory=list)
    projected_breakeven_month: MonthKey | None = None
    unresolved_fx: Tuple[FxGap, ...] = ()


def run_engine(
    inputs: EngineInputs, months: Sequence[MonthKey], ctx: EngineContext
) -> AggregateResult:
    ctx, gaps = recording_fx_gaps(ctx)
    template = hours_template(months, ctx)
    income = compute_income(inputs.incomes, months, ctx)
    expenses = compute_expenses(inputs.expenses, months, ctx)
    objects = compute_objects(inputs.objects, months, ctx)
    activities = compute_activities(inputs.activities, months, ctx)
    totals = combine_time(months, expenses, objects, activities, template)
    budgets = compute_budgets(
        inputs.budget_allocations, months, ctx, expenses.by_category_hours
    )
    goals = goal_progress(
        inputs.goals, inputs.contributions, ctx, totals.net_savings_hours_per_month
    )
    forecast = forecast_time_burn(months, totals.time_burn_net)

    return AggregateResult(
        income_money=income.money,
        income_hours=income.hours,
        income_by_source_money=income.by_source_money,
        expense_money=expenses.money,
        expense_hours=expenses.hours,
        objects_maint_hours=objects.maint_hours,
        objects_saved_hours=objects.saved_hours,
        objects_capex_hours=objects.capex_hours,
        activities_saved_hours=activities.saved_hours,
        activities_extra_cost_hours=activities.extra_cost_hours,
        budget_money=budgets.money,
        budget_hours=budgets.hours,
        budget_variance_hours_by_month=budgets.variance_hours,
        budget_variance_by_category_hours=budgets.variance_by_category_hours,
        cost_by_category_hours=totals.cost_by_category_hours,
        savings_by_category_hours=totals.savings_by_category_hours,
        time_cost_hours=totals.time_cost_hours,
        time_savings_hours=totals.time_savings_hours,
        time_burn_net=totals.time_burn_net,
        net_savings_hours_per_month=totals.net_savings_hours_per_month,
        goals_progress=[goals[goal_id] for goal_id in sorted(goals)],
        activities_roi=activity_roi(inputs.activities, ctx),
        objects_metrics=object_metrics(inputs.objects, ctx),
        forecast_net=forecast.net if forecast else [],
        forecast_labels=forecast.labels if forecast else [],
        projected_breakeven_month=forecast.projected_breakeven_month if forecast else None,
        unresolved_fx=tuple(sorted(gaps)),
    )


def load_inputs(provider, user_id: int) -> EngineInputs:
    return EngineInputs(
        incomes=tuple(provider.list_incomes(user_id)),
        expenses=tuple(provider.list_expenses(user_id)),
        objects=tuple(provider.list_objects(user_id)),
        activities=tuple(provider.list_activities(user_id)),
        budget_allocations=tuple(provider.list_budget_allocations(user_id)),
        goals=tuple(provider.list_goals(user_id)),
        contributions=tuple(provider.list_goal_contributions(user_id)),
    )


def load_timeline(provider, profile: UserProfile) -> HourlyRateTimeline:
    return HourlyRateTimeline.build(
        provider.hourly_rate_timeline(profile.id), static_rate=profile.hourly_rate
    )


def collect_currencies(inputs: EngineInputs, user_currency: str) -> Set[str]:
    currencies = {user_currency}
    for rows in (
        inputs.incomes,
        inputs.expenses,
        inputs.objects,
        inputs.activities,
        inputs.budget_allocations,
        inputs.goals,
    ):
        currencies.update(row.currency for row in rows)
    return currencies


def rate_horizon(inputs: EngineInputs, months: Sequence[MonthKey], as_of: date) -> date:
    """Latest day any conversion in the run can ask about."""
    days: List[date] = [as_of]
    if months:
        days.append(month_end(months[-1]))
    days.extend(row.purchase_date for row in inputs.objects)
    days.extend(row.contributed_at for row in inputs.contributions)
    days.extend(row.period_end for row in inputs.budget_allocations)
    return max(days)


def prefetch_rates(
    source: RateHistorySource,
    anchor: str,
    runs: Iterable[EngineInputs],
    user_currency: str,
    months: Sequence[MonthKey],
    as_of: date,
) -> RateTable:
    """One batched FX read covering every run that will share the table."""
    currencies: Set[str] = set()
    until = as_of
    for inputs in runs:
        currencies |= collect_currencies(inputs, user_currency)
        until = max(until, rate_horizon(inputs, months, as_of))
    return RateTable.prefetch(source, anchor, currencies, until)


def build_context(
    profile: UserProfile,
    timeline: HourlyRateTimeline,
    rate_table: RateTable,
    as_of: date,
) -> EngineContext:
    one_time = profile.amortize_one_time_months
    capex = profile.amortize_capex_months
    implied = ImpliedSalary(enabled=profile.implied_salary_enabled)
    if profile.implied_salary_hours_per_week is not None:
        implied = ImpliedSalary(
            enabled=profile.implied_salary_enabled,
            hours_per_week=profile.implied_salary_hours_per_week,
        )
    return EngineContext(
        user_currency=profile.currency,
        rate_for=timeline,
        fx=rate_table.resolve,
        as_of=as_of,
        hourly_rate=profile.hourly_rate,
        amortize_one_time_months=(
            one_time if one_time is not None else get_amortize_one_time_months()
        ),
        amortize_capex_months=capex if capex is not None else get_amortize_capex_months(),
        implied_salary=implied,
    )


def recording_fx_gaps(ctx: EngineContext) -> Tuple[EngineContext, Set[FxGap]]:
    """Copy of ``ctx`` whose FX lookups note unresolved pairs in a fresh set."""
    gaps: Set[FxGap] = set()
    resolve = ctx.fx

    def fx(source: str, target: str, day: date) -> Decimal | None:
        rate = resolve(source, target, day)
        if rate is None:
            gaps.add((source, target, day))
        return rate

    return replace(ctx, fx=fx), gaps


def report_unresolved(gaps: Iterable[FxGap], user_id: int | None = None) -> None:
    gaps = set(gaps)
    if not gaps:
        return
    pairs = sorted({f"{source}->{target}" for source, target, _ in gaps})
    logger.warning(
        "No FX rate for %s (user=%s, %d lookups); converted at parity",
        ", ".join(pairs),
        user_id,
        len(gaps),
    )


def compute_for_user(
    provider, profile: UserProfile, months: Sequence[MonthKey], as_of: date, anchor: str
) -> AggregateResult:
    inputs = load_inputs(provider, profile.id)
    rate_table = prefetch_rates(provider, anchor, [inputs], profile.currency, months, as_of)
    ctx = build_context(profile, load_timeline(provider, profile), rate_table, as_of)
    result = run_engine(inputs, months, ctx)
    report_unresolved(result.unresolved_fx, profile.id)
    return result


def serialize_result(result: Any) -> Dict[str, Any]:
    """JSON contract form of an ``AggregateResult`` or a diff of two of them."""
    return {
        contract: to_json_value(getattr(result, attribute))
        for attribute, contract in CONTRACT_FIELDS
    }


def to_json_value(value: Any) -> Any:
    if value is None or isinstance(value, (bool, str, int)):
        return value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, dict):
        return {str(key): to_json_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_json_value(item) for item in value]
    if hasattr(value, "__dataclass_fields__"):
        return {name: to_json_value(getattr(value, name)) for name in value.__dataclass_fields__}
    return value
