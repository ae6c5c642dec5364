"""What-if evaluation: the same pipeline run on baseline rows and on edited rows.

Scenario blobs arrive as free-form JSON (stored scenarios predate the tagged
op format). ``parse_scenario_params`` turns them into a closed set of
commands, dropping anything it cannot understand, and ``apply_ops`` folds
those commands over copies of the baseline rows.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, replace
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import (
    Annotated,
    Any,
    Dict,
    Iterable,
    List,
    Literal,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Type,
    TypeVar,
    Union,
)

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from timeengine.aggregation import ZERO, CategorySeries, Series
from timeengine.hourly_rates import HourlyRateTimeline
from timeengine.logging_setup import get_logger
from timeengine.months import MonthKey, to_month_key
from timeengine.pipeline import (
    AggregateResult,
    EngineInputs,
    build_context,
    load_inputs,
    load_timeline,
    prefetch_rates,
    report_unresolved,
    run_engine,
)
from timeengine.records import (
    ActivityRecord,
    BudgetAllocationRecord,
    EngineContext,
    ExpenseRecord,
    IncomeRecord,
    ObjectRecord,
    Record,
    UserProfile,
)

logger = get_logger(__name__)

RecordT = TypeVar("RecordT", bound=Record)

ENTITY_MODELS: Dict[str, Type[Record]] = {
    "incomes": IncomeRecord,
    "expenses": ExpenseRecord,
    "objects": ObjectRecord,
    "activities": ActivityRecord,
}

LEGACY_KEYS = {
    "hourlyRates": "hourly_rates",
    "scaleByCategory": "scale_by_category",
}

SCALED_FIELDS: Dict[str, Tuple[str, ...]] = {
    "expense": ("amount_cents",),
    "object": ("price_cents", "maintenance_cents_per_month"),
    "activity": ("direct_cost_cents", "duration_minutes"),
}


class AddOp(BaseModel):
    model_config = ConfigDict(frozen=True)

    op: Literal["add"]
    row: Dict[str, Any]


class EditOp(BaseModel):
    model_config = ConfigDict(frozen=True)

    op: Literal["edit"]
    id: int
    changes: Dict[str, Any]


class RemoveOp(BaseModel):
    model_config = ConfigDict(frozen=True)

    op: Literal["remove"]
    id: int


RowOp = Annotated[Union[AddOp, EditOp, RemoveOp], Field(discriminator="op")]

_row_op_adapter = TypeAdapter(RowOp)


class CategoryScale(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["expense", "object", "activity"]
    category_id: int
    factor: Decimal = Field(ge=0)


class ScenarioParams(BaseModel):
    model_config = ConfigDict(frozen=True)

    hourly_rates: Dict[MonthKey, Decimal] = Field(default_factory=dict)
    incomes: Tuple[RowOp, ...] = ()
    expenses: Tuple[RowOp, ...] = ()
    objects: Tuple[RowOp, ...] = ()
    activities: Tuple[RowOp, ...] = ()
    scale_by_category: Tuple[CategoryScale, ...] = ()
    budget_allocations: Optional[Tuple[BudgetAllocationRecord, ...]] = None

    @field_validator("hourly_rates", mode="before")
    @classmethod
    def _normalize_months(cls, value: Any) -> Dict[MonthKey, Any]:
        if not isinstance(value, Mapping):
            return {}
        return {to_month_key(str(month)): rate for month, rate in value.items()}


@dataclass(frozen=True)
class ScenarioComparison:
    months: List[MonthKey]
    baseline: AggregateResult
    scenario: AggregateResult
    diff: AggregateResult


def parse_scenario_params(raw: Any) -> ScenarioParams:
    """Best-effort parse of a stored or posted scenario blob.

    Never raises: unreadable blobs become an empty scenario and individual
    entries that fail validation are dropped with a warning.
    """
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    if isinstance(raw, str):
        try:
            raw = json.loads(raw) if raw.strip() else {}
        except json.JSONDecodeError:
            logger.warning("Scenario params are not valid JSON; using an empty scenario")
            return ScenarioParams()
    if raw is None:
        return ScenarioParams()
    if not isinstance(raw, Mapping):
        logger.warning("Scenario params must be an object, got %s", type(raw).__name__)
        return ScenarioParams()

    data = dict(raw)
    for legacy, current in LEGACY_KEYS.items():
        if current not in data and legacy in data:
            data[current] = data[legacy]

    fields: Dict[str, Any] = {
        "hourly_rates": _parse_hourly_rates(data.get("hourly_rates")),
        "scale_by_category": tuple(
            _parse_each(data.get("scale_by_category"), CategoryScale.model_validate, "scale")
        ),
    }
    for entity in ENTITY_MODELS:
        ops = _as_list(data.get(entity))
        ops.extend({"op": "add", "row": row} for row in _as_list(data.get(f"{entity}_add")))
        fields[entity] = tuple(_parse_each(ops, _row_op_adapter.validate_python, entity))
    if data.get("budget_allocations") is not None:
        fields["budget_allocations"] = tuple(
            _parse_each(
                data["budget_allocations"],
                BudgetAllocationRecord.model_validate,
                "budget_allocations",
            )
        )
    return ScenarioParams(**fields)


def apply_ops(
    rows: Sequence[RecordT], ops: Iterable[Union[AddOp, EditOp, RemoveOp]], model: Type[RecordT]
) -> Tuple[RecordT, ...]:
    """Fold ``ops`` over ``rows`` without touching the input sequence."""
    current: Tuple[RecordT, ...] = tuple(rows)
    for op in ops:
        if isinstance(op, AddOp):
            try:
                current = current + (model.model_validate(op.row),)
            except ValidationError as exc:
                logger.warning(
                    "Dropping invalid %s add op: %s", model.__name__, exc.errors(include_url=False)
                )
        elif isinstance(op, EditOp):
            current = tuple(_edit(row, op, model) for row in current)
        elif isinstance(op, RemoveOp):
            current = tuple(row for row in current if getattr(row, "id", None) != op.id)
    return current


def scale_rows(
    rows: Sequence[RecordT], kind: str, scales: Iterable[CategoryScale]
) -> Tuple[RecordT, ...]:
    factors: Dict[int, Decimal] = {}
    for scale in scales:
        if scale.kind == kind:
            factors[scale.category_id] = factors.get(scale.category_id, Decimal("1")) * scale.factor
    if not factors:
        return tuple(rows)

    scaled: List[RecordT] = []
    for row in rows:
        factor = factors.get(row.category_id) if row.category_id is not None else None
        if factor is None:
            scaled.append(row)
            continue
        updates = {
            name: _scale_value(getattr(row, name), factor) for name in SCALED_FIELDS[kind]
        }
        scaled.append(row.model_copy(update=updates))
    return tuple(scaled)


def apply_scenario(inputs: EngineInputs, params: ScenarioParams) -> EngineInputs:
    expenses = apply_ops(inputs.expenses, params.expenses, ExpenseRecord)
    objects = apply_ops(inputs.objects, params.objects, ObjectRecord)
    activities = apply_ops(inputs.activities, params.activities, ActivityRecord)
    return replace(
        inputs,
        incomes=apply_ops(inputs.incomes, params.incomes, IncomeRecord),
        expenses=scale_rows(expenses, "expense", params.scale_by_category),
        objects=scale_rows(objects, "object", params.scale_by_category),
        activities=scale_rows(activities, "activity", params.scale_by_category),
        budget_allocations=(
            params.budget_allocations
            if params.budget_allocations is not None
            else inputs.budget_allocations
        ),
    )


def with_rate_overrides(ctx: EngineContext, overrides: Mapping[MonthKey, Decimal]) -> EngineContext:
    if not overrides:
        return ctx
    if isinstance(ctx.rate_for, HourlyRateTimeline):
        return replace(ctx, rate_for=ctx.rate_for.with_overrides(overrides))

    base_rate_for = ctx.rate_for
    pinned = {month: (rate if rate > 0 else None) for month, rate in overrides.items()}

    def rate_for(month: MonthKey) -> Decimal | None:
        if month in pinned:
            return pinned[month]
        return base_rate_for(month)

    return replace(ctx, rate_for=rate_for)


def evaluate_scenario(
    inputs: EngineInputs,
    months: Sequence[MonthKey],
    base_ctx: EngineContext,
    params: ScenarioParams,
) -> ScenarioComparison:
    scenario_inputs = apply_scenario(inputs, params)
    baseline = run_engine(inputs, months, base_ctx)
    scenario = run_engine(
        scenario_inputs, months, with_rate_overrides(base_ctx, params.hourly_rates)
    )
    return ScenarioComparison(
        months=list(months),
        baseline=baseline,
        scenario=scenario,
        diff=diff_results(baseline, scenario),
    )


def evaluate_for_user(
    provider,
    profile: UserProfile,
    params: ScenarioParams,
    months: Sequence[MonthKey],
    as_of: date,
    anchor: str,
) -> ScenarioComparison:
    inputs = load_inputs(provider, profile.id)
    scenario_inputs = apply_scenario(inputs, params)
    rate_table = prefetch_rates(
        provider, anchor, [inputs, scenario_inputs], profile.currency, months, as_of
    )
    ctx = build_context(profile, load_timeline(provider, profile), rate_table, as_of)
    comparison = evaluate_scenario(inputs, months, ctx, params)
    report_unresolved(
        comparison.baseline.unresolved_fx + comparison.scenario.unresolved_fx, profile.id
    )
    return comparison


def diff_results(baseline: AggregateResult, scenario: AggregateResult) -> AggregateResult:
    """Field-by-field ``scenario - baseline`` in the shape of an ``AggregateResult``."""
    return AggregateResult(
        income_money=diff_series(baseline.income_money, scenario.income_money),
        income_hours=diff_series(baseline.income_hours, scenario.income_hours),
        income_by_source_money=diff_series_map(
            baseline.income_by_source_money, scenario.income_by_source_money
        ),
        expense_money=diff_series(baseline.expense_money, scenario.expense_money),
        expense_hours=diff_series(baseline.expense_hours, scenario.expense_hours),
        objects_maint_hours=diff_series(baseline.objects_maint_hours, scenario.objects_maint_hours),
        objects_saved_hours=diff_series(baseline.objects_saved_hours, scenario.objects_saved_hours),
        objects_capex_hours=diff_series(baseline.objects_capex_hours, scenario.objects_capex_hours),
        activities_saved_hours=diff_series(
            baseline.activities_saved_hours, scenario.activities_saved_hours
        ),
        activities_extra_cost_hours=diff_series(
            baseline.activities_extra_cost_hours, scenario.activities_extra_cost_hours
        ),
        budget_money=diff_series(baseline.budget_money, scenario.budget_money),
        budget_hours=diff_series(baseline.budget_hours, scenario.budget_hours),
        budget_variance_hours_by_month=diff_series(
            baseline.budget_variance_hours_by_month, scenario.budget_variance_hours_by_month
        ),
        budget_variance_by_category_hours=diff_series_map(
            baseline.budget_variance_by_category_hours,
            scenario.budget_variance_by_category_hours,
        ),
        cost_by_category_hours=diff_series_map(
            baseline.cost_by_category_hours, scenario.cost_by_category_hours
        ),
        savings_by_category_hours=diff_series_map(
            baseline.savings_by_category_hours, scenario.savings_by_category_hours
        ),
        time_cost_hours=diff_series(baseline.time_cost_hours, scenario.time_cost_hours),
        time_savings_hours=diff_series(baseline.time_savings_hours, scenario.time_savings_hours),
        time_burn_net=diff_series(baseline.time_burn_net, scenario.time_burn_net),
        net_savings_hours_per_month=_diff_value(
            baseline.net_savings_hours_per_month, scenario.net_savings_hours_per_month
        ),
        goals_progress=diff_entries(baseline.goals_progress, scenario.goals_progress, "goal_id"),
        activities_roi=diff_entries(baseline.activities_roi, scenario.activities_roi, "id"),
        objects_metrics=diff_entries(baseline.objects_metrics, scenario.objects_metrics, "id"),
        forecast_net=_diff_forecast(baseline, scenario),
        forecast_labels=list(scenario.forecast_labels or baseline.forecast_labels),
        projected_breakeven_month=(
            scenario.projected_breakeven_month
            if scenario.projected_breakeven_month != baseline.projected_breakeven_month
            else None
        ),
        unresolved_fx=tuple(sorted(set(baseline.unresolved_fx) | set(scenario.unresolved_fx))),
    )


def diff_series(baseline: Series, scenario: Series) -> Series:
    months = sorted(set(baseline) | set(scenario))
    return {month: _diff_value(baseline.get(month), scenario.get(month)) for month in months}


def diff_series_map(
    baseline: Mapping[Any, Series], scenario: Mapping[Any, Series]
) -> Dict[Any, Series]:
    """Per-key series diff over the union of keys; a missing side counts as zero."""
    diff: Dict[Any, Series] = {}
    for key in sorted(set(baseline) | set(scenario), key=str):
        left = baseline.get(key)
        right = scenario.get(key)
        if left is None:
            left = _zero_like(right)
        if right is None:
            right = _zero_like(left)
        diff[key] = diff_series(left, right)
    return diff


def diff_entries(
    baseline: Sequence[Any], scenario: Sequence[Any], key: str
) -> List[Dict[str, Any]]:
    """Diff analytics rows matched on ``key``; numeric fields subtract, the rest is carried."""
    left = _index_entries(baseline, key)
    right = _index_entries(scenario, key)
    entries: List[Dict[str, Any]] = []
    for entry_key in list(left) + [k for k in right if k not in left]:
        before = left.get(entry_key)
        after = right.get(entry_key)
        reference = after if after is not None else before
        entry: Dict[str, Any] = {}
        for name in reference.__dataclass_fields__:
            value = getattr(reference, name)
            if isinstance(value, Decimal) or (value is None and name != key):
                old = getattr(before, name) if before is not None else ZERO
                new = getattr(after, name) if after is not None else ZERO
                entry[name] = _diff_value(old, new)
            else:
                entry[name] = value
        entries.append(entry)
    return entries


def _diff_value(baseline: Decimal | None, scenario: Decimal | None) -> Decimal | None:
    if baseline is None or scenario is None:
        return None
    return scenario - baseline


def _diff_forecast(baseline: AggregateResult, scenario: AggregateResult) -> List[Optional[Decimal]]:
    labels = scenario.forecast_labels or baseline.forecast_labels
    before = dict(zip(baseline.forecast_labels, baseline.forecast_net))
    after = dict(zip(scenario.forecast_labels, scenario.forecast_net))
    return [_diff_value(before.get(label), after.get(label)) for label in labels]


def _zero_like(series: Series) -> Series:
    return {month: (None if value is None else ZERO) for month, value in series.items()}


def _index_entries(entries: Sequence[Any], key: str) -> Dict[Any, Any]:
    indexed: Dict[Any, Any] = {}
    for position, entry in enumerate(entries):
        entry_key = getattr(entry, key)
        indexed[entry_key if entry_key is not None else ("new", position)] = entry
    return indexed


def _edit(row: RecordT, op: EditOp, model: Type[RecordT]) -> RecordT:
    if getattr(row, "id", None) != op.id:
        return row
    merged = row.model_dump()
    merged.update(op.changes)
    merged["id"] = row.id
    try:
        return model.model_validate(merged)
    except ValidationError as exc:
        logger.warning(
            "Ignoring invalid %s edit for id=%s: %s",
            model.__name__,
            op.id,
            exc.errors(include_url=False),
        )
        return row


def _scale_value(value: int | Decimal, factor: Decimal) -> int | Decimal:
    scaled = Decimal(value) * factor
    if isinstance(value, int):
        return int(scaled.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return scaled


def _parse_hourly_rates(value: Any) -> Dict[MonthKey, Decimal]:
    if not isinstance(value, Mapping):
        return {}
    rates: Dict[MonthKey, Decimal] = {}
    for month, rate in value.items():
        if rate is None or rate == "":
            continue
        try:
            key = to_month_key(str(month))
            parsed = Decimal(str(rate))
        except (ArithmeticError, ValueError):
            parsed = None
        if parsed is None or not parsed.is_finite():
            logger.warning("Dropping hourly rate override %r=%r", month, rate)
            continue
        rates[key] = parsed
    return rates


def _parse_each(values: Any, parse, label: str) -> List[Any]:
    parsed: List[Any] = []
    for value in _as_list(values):
        try:
            parsed.append(parse(value))
        except ValidationError as exc:
            logger.warning(
                "Dropping malformed %s entry: %s", label, exc.errors(include_url=False)
            )
    return parsed


def _as_list(value: Any) -> List[Any]:
    if isinstance(value, (list, tuple)):
        return list(value)
    return []
