"""Per-entity record shapes and the immutable engine context.

Records are validated once, where rows enter the engine (the data provider or
a scenario ``add``/``edit`` op). The aggregator assumes well-formed input.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Callable, Optional

from pydantic import BaseModel, ConfigDict, ValidationInfo, field_validator

from timeengine.currency_conversion import cents_to_money, normalize_currency
from timeengine.months import MonthKey, normalize_frequency


class Record(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    @field_validator("currency", mode="before", check_fields=False)
    @classmethod
    def _normalize_currency(cls, value: str) -> str:
        return normalize_currency(str(value))


class IncomeRecord(Record):
    id: Optional[int] = None
    received_at: date
    amount_cents: int
    currency: str
    source: str = "other"
    recurring: str = "none"

    @field_validator("recurring", mode="before")
    @classmethod
    def _normalize_recurring(cls, value: str | None) -> str:
        if value is None:
            return "none"
        normalized = str(value).strip().lower()
        if normalized in {"", "none", "no", "false", "0"}:
            return "none"
        return normalize_frequency(normalized)


class ExpenseRecord(Record):
    id: Optional[int] = None
    amount_cents: int
    currency: str
    frequency: str
    start_date: date
    end_date: Optional[date] = None
    is_active: bool = True
    category_id: Optional[int] = None

    @field_validator("frequency", mode="before")
    @classmethod
    def _normalize_frequency(cls, value: str) -> str:
        return normalize_frequency(str(value))


class ObjectRecord(Record):
    id: Optional[int] = None
    name: str = ""
    category_id: Optional[int] = None
    price_cents: int
    currency: str
    purchase_date: date
    expected_life_months: int = 0
    maintenance_cents_per_month: int = 0
    hours_saved_per_month: Decimal = Decimal("0")


class ActivityRecord(Record):
    id: Optional[int] = None
    name: str = ""
    category_id: Optional[int] = None
    duration_minutes: Decimal = Decimal("0")
    frequency: str
    direct_cost_cents: int = 0
    saved_minutes: Decimal = Decimal("0")
    currency: str
    start_date: Optional[date] = None

    @field_validator("frequency", mode="before")
    @classmethod
    def _normalize_frequency(cls, value: str) -> str:
        return normalize_frequency(str(value))


class BudgetAllocationRecord(Record):
    id: Optional[int] = None
    category_id: int
    amount_cents: int
    currency: str
    period_start: date
    period_end: date

    @field_validator("period_end")
    @classmethod
    def _period_order(cls, value: date, info: ValidationInfo) -> date:
        start = info.data.get("period_start")
        if start is not None and value < start:
            raise ValueError("period_end must be on or after period_start.")
        return value


class GoalRecord(Record):
    id: int
    name: str = ""
    currency: str
    target_amount_cents: Optional[int] = None
    target_hours: Optional[Decimal] = None


class GoalContributionRecord(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    goal_id: int
    contributed_at: date
    amount_cents: Optional[int] = None
    hours: Optional[Decimal] = None
    source_type: Optional[str] = None


class UserProfile(Record):
    id: int
    currency: str
    hourly_rate: Optional[Decimal] = None
    amortize_one_time_months: Optional[int] = None
    amortize_capex_months: Optional[int] = None
    implied_salary_enabled: bool = False
    implied_salary_hours_per_week: Optional[Decimal] = None


@dataclass(frozen=True)
class ImpliedSalary:
    enabled: bool = False
    hours_per_week: Decimal = Decimal("40")


@dataclass(frozen=True)
class EngineContext:
    """Everything a run needs besides the rows. Never mutated during a run."""

    user_currency: str
    rate_for: Callable[[MonthKey], Decimal | None]
    fx: Callable[[str, str, date], Decimal | None]
    as_of: date
    hourly_rate: Decimal | None = None
    amortize_one_time_months: int = 0
    amortize_capex_months: int = 0
    implied_salary: ImpliedSalary = field(default_factory=ImpliedSalary)

    def to_user_money(self, cents: int | Decimal, currency: str, day: date) -> Decimal:
        return cents_to_money(cents) * self.fx_rate(currency, self.user_currency, day)

    def fx_rate(self, source: str, target: str, day: date) -> Decimal:
        """FX multiplier; an unresolved pair converts at parity."""
        multiplier = self.fx(source, target, day)
        return Decimal("1") if multiplier is None else multiplier
