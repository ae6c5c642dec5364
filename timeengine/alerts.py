from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_CEILING, Decimal
from typing import Annotated, Any, Callable, Dict, Literal, Optional, Protocol, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from timeengine.aggregation import ZERO, compute_expenses, compute_income
from timeengine.analytics import object_metrics
from timeengine.config import get_fx_anchor_currency
from timeengine.currency_conversion import cents_to_money
from timeengine.logging_setup import get_logger
from timeengine.months import months_between, to_month_key
from timeengine.pipeline import (
    EngineInputs,
    build_context,
    load_inputs,
    load_timeline,
    prefetch_rates,
    recording_fx_gaps,
    report_unresolved,
)
from timeengine.records import EngineContext

logger = get_logger(__name__)


class PercentExpensesOfIncomeRule(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    rule_type: Literal["percent_expenses_of_income"]
    threshold: Decimal = Decimal("0.3")


class BudgetOverrunRule(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    rule_type: Literal["budget_overrun"]
    category: str = Field(min_length=1)
    limit_cents: int


class ObjectBreakevenReachedRule(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    rule_type: Literal["object_breakeven_reached"]
    object_name: str = Field(min_length=1)


AlertRule = Annotated[
    Union[PercentExpensesOfIncomeRule, BudgetOverrunRule, ObjectBreakevenReachedRule],
    Field(discriminator="rule_type"),
]

_rule_adapter = TypeAdapter(AlertRule)


@dataclass(frozen=True)
class Notification:
    title: str
    message: str
    severity: str
    dedupe_key: str
    meta: Dict[str, Any] = field(default_factory=dict)


class NotificationSink(Protocol):
    def send(self, user_id: int, alert_id: int, notification: Notification) -> bool: ...


def parse_rule(rule_type: str, rule_config: Any):
    """Typed rule for an alert row, or ``None`` when it cannot be evaluated."""
    if isinstance(rule_config, (bytes, bytearray)):
        rule_config = rule_config.decode("utf-8", errors="replace")
    if isinstance(rule_config, str):
        try:
            rule_config = json.loads(rule_config) if rule_config.strip() else {}
        except json.JSONDecodeError:
            return None
    if rule_config is None:
        rule_config = {}
    if not isinstance(rule_config, dict):
        return None
    try:
        return _rule_adapter.validate_python({**rule_config, "rule_type": rule_type})
    except ValidationError:
        return None


def check_expense_ratio(
    rule: PercentExpensesOfIncomeRule,
    inputs: EngineInputs,
    ctx: EngineContext,
    provider,
    user_id: int,
) -> Optional[Notification]:
    month = to_month_key(ctx.as_of)
    income = compute_income(inputs.incomes, [month], ctx).money[month]
    spent = compute_expenses(inputs.expenses, [month], ctx).money[month]
    if income <= 0:
        return None

    ratio = spent / income
    if ratio <= rule.threshold:
        return None
    return Notification(
        title="Spending threshold exceeded",
        message=(
            f"This month you're at {ratio * 100:.1f}% of income "
            f"(threshold {rule.threshold * 100:.0f}%)."
        ),
        severity="warning",
        meta={
            "income": float(income),
            "spent": float(spent),
            "ratio": float(ratio),
            "month": month,
        },
        dedupe_key=f"{month}|ratio>{_plain_number(rule.threshold)}",
    )


def check_budget_overrun(
    rule: BudgetOverrunRule,
    inputs: EngineInputs,
    ctx: EngineContext,
    provider,
    user_id: int,
) -> Optional[Notification]:
    category_id = provider.category_id_by_name(user_id, rule.category)
    if category_id is None:
        return None

    month = to_month_key(ctx.as_of)
    expenses = compute_expenses(inputs.expenses, [month], ctx)
    spent = expenses.by_category_money.get(category_id, {}).get(month) or ZERO
    limit = cents_to_money(rule.limit_cents)
    if spent <= limit:
        return None
    return Notification(
        title=f"Budget overrun: {rule.category}",
        message=(
            f"Spent {spent:.2f} {ctx.user_currency} > limit {limit:.2f} {ctx.user_currency}."
        ),
        severity="error",
        meta={
            "category": rule.category,
            "spent": float(spent),
            "limit": float(limit),
            "month": month,
        },
        dedupe_key=f"{month}|cat:{category_id}|>{_plain_number(limit)}",
    )


def check_object_breakeven(
    rule: ObjectBreakevenReachedRule,
    inputs: EngineInputs,
    ctx: EngineContext,
    provider,
    user_id: int,
) -> Optional[Notification]:
    wanted = rule.object_name.strip().lower()
    match = next((row for row in inputs.objects if row.name.strip().lower() == wanted), None)
    if match is None or match.purchase_date > ctx.as_of:
        return None

    metrics = object_metrics([match], ctx)[0]
    payback = metrics.payback_months
    if payback is None or payback <= 0:
        return None

    months_since = whole_months_between(match.purchase_date, ctx.as_of)
    payback_whole = int(payback.to_integral_value(rounding=ROUND_CEILING))
    if months_since + 1 < payback_whole:
        return None
    return Notification(
        title=f"Breakeven reached: {match.name}",
        message=f"{match.name} has reached payback ({payback_whole} months).",
        severity="success",
        meta={
            "object_id": match.id,
            "months_since": months_since,
            "payback_months": float(payback),
        },
        dedupe_key=f"breakeven|obj:{match.id}",
    )


RuleCheck = Callable[..., Optional[Notification]]

RULE_CHECKS: Dict[type, RuleCheck] = {
    PercentExpensesOfIncomeRule: check_expense_ratio,
    BudgetOverrunRule: check_budget_overrun,
    ObjectBreakevenReachedRule: check_object_breakeven,
}


def evaluate_alerts_for_user(
    provider,
    sink: NotificationSink,
    user_id: int,
    *,
    as_of: date | None = None,
    anchor: str | None = None,
) -> int:
    """Run every active alert of one user; returns how many notifications were stored."""
    profile = provider.get_user(user_id)
    if profile is None:
        return 0
    active = provider.list_active_alerts(user_id)
    if not active:
        return 0

    as_of = as_of or date.today()
    month = to_month_key(as_of)
    inputs = load_inputs(provider, user_id)
    rate_table = prefetch_rates(
        provider, anchor or get_fx_anchor_currency(), [inputs], profile.currency, [month], as_of
    )
    ctx, gaps = recording_fx_gaps(
        build_context(profile, load_timeline(provider, profile), rate_table, as_of)
    )

    delivered = 0
    for alert in active:
        rule = parse_rule(alert.rule_type, alert.rule_config)
        if rule is None:
            logger.warning(
                "Skipping alert %s: unusable rule %r config=%r",
                alert.id,
                alert.rule_type,
                alert.rule_config,
            )
            continue
        try:
            notification = RULE_CHECKS[type(rule)](rule, inputs, ctx, provider, user_id)
            if notification is not None and sink.send(user_id, alert.id, notification):
                delivered += 1
        except Exception:
            logger.exception("Alert rule failed alert=%s type=%s", alert.id, alert.rule_type)
    report_unresolved(gaps, user_id)
    return delivered


def evaluate_all_active_alerts(
    provider,
    sink: NotificationSink,
    *,
    as_of: date | None = None,
    anchor: str | None = None,
) -> int:
    delivered = 0
    for user_id in provider.users_with_active_alerts():
        try:
            delivered += evaluate_alerts_for_user(
                provider, sink, user_id, as_of=as_of, anchor=anchor
            )
        except Exception:
            logger.exception("Alert evaluation failed for user=%s", user_id)
    return delivered


def whole_months_between(start: date, end: date) -> int:
    months = months_between(to_month_key(start), to_month_key(end))
    if end.day < start.day:
        months -= 1
    return max(0, months)


def _plain_number(value: Decimal) -> str:
    return format(value.normalize(), "f")
