from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Iterable, List, Mapping, Protocol, Sequence, Type, TypeVar

from pydantic import BaseModel, ValidationError
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    UniqueConstraint,
    func,
    insert,
    select,
)
from sqlalchemy.engine import Engine

from timeengine.config import get_notification_dedupe_hours, get_system_default_currency
from timeengine.currency_conversion import RateObservation
from timeengine.hourly_rates import HourlyRateEntry
from timeengine.logging_setup import get_logger
from timeengine.months import to_month_key
from timeengine.records import (
    ActivityRecord,
    BudgetAllocationRecord,
    ExpenseRecord,
    GoalContributionRecord,
    GoalRecord,
    IncomeRecord,
    ObjectRecord,
    UserProfile,
)

logger = get_logger(__name__)

RecordT = TypeVar("RecordT", bound=BaseModel)

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), unique=True, nullable=False),
    Column("currency", String(3)),
    Column("hourly_rate", Numeric(12, 2)),
    Column("amortize_one_time_months", Integer),
    Column("amortize_capex_months", Integer),
    Column("implied_salary_enabled", Boolean, nullable=False, server_default="0"),
    Column("implied_salary_hours_per_week", Numeric(6, 2)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

categories = Table(
    "categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("kind", String(20)),
    UniqueConstraint("user_id", "name", name="uq_categories_user_name"),
)

incomes = Table(
    "incomes",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("received_at", Date, nullable=False),
    Column("amount_cents", Integer, nullable=False),
    Column("currency", String(3), nullable=False),
    Column("source", String(255), nullable=False, server_default="other"),
    Column("recurring", String(20), nullable=False, server_default="none"),
)

expenses = Table(
    "expenses",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("category_id", Integer, ForeignKey("categories.id")),
    Column("amount_cents", Integer, nullable=False),
    Column("currency", String(3), nullable=False),
    Column("frequency", String(20), nullable=False),
    Column("start_date", Date, nullable=False),
    Column("end_date", Date),
    Column("is_active", Boolean, nullable=False, server_default="1"),
)

objects = Table(
    "objects",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("category_id", Integer, ForeignKey("categories.id")),
    Column("name", String(255), nullable=False),
    Column("price_cents", Integer, nullable=False),
    Column("currency", String(3), nullable=False),
    Column("purchase_date", Date, nullable=False),
    Column("expected_life_months", Integer, nullable=False, server_default="0"),
    Column("maintenance_cents_per_month", Integer, nullable=False, server_default="0"),
    Column("hours_saved_per_month", Numeric(10, 2), nullable=False, server_default="0"),
)

activities = Table(
    "activities",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("category_id", Integer, ForeignKey("categories.id")),
    Column("name", String(255), nullable=False),
    Column("duration_minutes", Numeric(10, 2), nullable=False, server_default="0"),
    Column("frequency", String(20), nullable=False),
    Column("direct_cost_cents", Integer, nullable=False, server_default="0"),
    Column("saved_minutes", Numeric(10, 2), nullable=False, server_default="0"),
    Column("currency", String(3), nullable=False),
    Column("start_date", Date),
)

budgets = Table(
    "budgets",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("period_start", Date, nullable=False),
    Column("period_end", Date, nullable=False),
    Column("currency", String(3), nullable=False),
)

budget_allocations = Table(
    "budget_allocations",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("budget_id", Integer, ForeignKey("budgets.id"), nullable=False),
    Column("category_id", Integer, ForeignKey("categories.id"), nullable=False),
    Column("amount_cents", Integer, nullable=False),
)

goals = Table(
    "goals",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("target_amount_cents", Integer),
    Column("target_hours", Numeric(10, 2)),
)

goal_contributions = Table(
    "goal_contributions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("goal_id", Integer, ForeignKey("goals.id"), nullable=False),
    Column("contributed_at", Date, nullable=False),
    Column("amount_cents", Integer),
    Column("hours", Numeric(10, 2)),
    Column("source_type", String(50)),
)

exchange_rates = Table(
    "exchange_rates",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("day", Date, nullable=False),
    Column("base", String(3), nullable=False),
    Column("quote", String(3), nullable=False),
    Column("rate", Numeric(18, 8), nullable=False),
    UniqueConstraint("day", "base", "quote", name="uq_exchange_rates_day_pair"),
)

user_hourly_rates = Table(
    "user_hourly_rates",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("effective_month", Date, nullable=False),
    Column("hourly_rate", Numeric(12, 2), nullable=False),
    UniqueConstraint("user_id", "effective_month", name="uq_user_hourly_rates_month"),
)

scenarios = Table(
    "scenarios",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("params_json", JSON),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

alerts = Table(
    "alerts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("rule_type", String(50), nullable=False),
    Column("rule_config", JSON),
    Column("is_active", Boolean, nullable=False, server_default="1"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

notifications = Table(
    "notifications",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("alert_id", Integer, ForeignKey("alerts.id")),
    Column("title", String(255), nullable=False),
    Column("message", String(1000), nullable=False),
    Column("severity", String(20), nullable=False),
    Column("meta", JSON),
    Column("dedupe_key", String(255), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Index("ix_notifications_dedupe", "alert_id", "dedupe_key", "created_at"),
)


@dataclass(frozen=True)
class StoredScenario:
    id: int
    user_id: int
    name: str
    params_json: Any


@dataclass(frozen=True)
class AlertRow:
    id: int
    user_id: int
    name: str
    rule_type: str
    rule_config: Any


class DataProvider(Protocol):
    """Read-only source of everything the engine consumes for a user."""

    def get_user(self, user_id: int) -> UserProfile | None: ...

    def list_incomes(self, user_id: int) -> List[IncomeRecord]: ...

    def list_expenses(self, user_id: int) -> List[ExpenseRecord]: ...

    def list_objects(self, user_id: int) -> List[ObjectRecord]: ...

    def list_activities(self, user_id: int) -> List[ActivityRecord]: ...

    def list_budget_allocations(self, user_id: int) -> List[BudgetAllocationRecord]: ...

    def list_goals(self, user_id: int) -> List[GoalRecord]: ...

    def list_goal_contributions(self, user_id: int) -> List[GoalContributionRecord]: ...

    def hourly_rate_timeline(self, user_id: int) -> List[HourlyRateEntry]: ...

    def exchange_rate_history(
        self, currencies: Iterable[str], quote: str, until: date
    ) -> List[RateObservation]: ...

    def get_scenario(self, user_id: int, scenario_id: int) -> StoredScenario | None: ...

    def list_active_alerts(self, user_id: int) -> List[AlertRow]: ...

    def users_with_active_alerts(self) -> List[int]: ...

    def category_id_by_name(self, user_id: int, name: str) -> int | None: ...


def parse_records(
    model: Type[RecordT], rows: Iterable[Mapping[str, Any]], *, source: str
) -> List[RecordT]:
    """Validate raw rows once; rows that fail validation are logged and dropped."""
    parsed: List[RecordT] = []
    for row in rows:
        try:
            parsed.append(model.model_validate(dict(row)))
        except ValidationError as exc:
            logger.warning(
                "Skipping invalid %s row id=%s: %s",
                source,
                row.get("id"),
                exc.errors(include_url=False),
            )
    return parsed


def decode_json_blob(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return None
    return value


class SqlDataProvider:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def init_schema(self) -> None:
        metadata.create_all(self.engine)

    def _fetch(self, stmt) -> Sequence[Mapping[str, Any]]:
        with self.engine.begin() as conn:
            return conn.execute(stmt).mappings().all()

    def get_user(self, user_id: int) -> UserProfile | None:
        rows = [
            {**row, "currency": row["currency"] or get_system_default_currency()}
            for row in self._fetch(select(users).where(users.c.id == user_id))
        ]
        parsed = parse_records(UserProfile, rows, source="user")
        return parsed[0] if parsed else None

    def list_incomes(self, user_id: int) -> List[IncomeRecord]:
        rows = self._fetch(
            select(incomes).where(incomes.c.user_id == user_id).order_by(incomes.c.id)
        )
        return parse_records(IncomeRecord, rows, source="income")

    def list_expenses(self, user_id: int) -> List[ExpenseRecord]:
        rows = self._fetch(
            select(expenses).where(expenses.c.user_id == user_id).order_by(expenses.c.id)
        )
        return parse_records(ExpenseRecord, rows, source="expense")

    def list_objects(self, user_id: int) -> List[ObjectRecord]:
        rows = self._fetch(
            select(objects).where(objects.c.user_id == user_id).order_by(objects.c.id)
        )
        return parse_records(ObjectRecord, rows, source="object")

    def list_activities(self, user_id: int) -> List[ActivityRecord]:
        rows = self._fetch(
            select(activities)
            .where(activities.c.user_id == user_id)
            .order_by(activities.c.id)
        )
        return parse_records(ActivityRecord, rows, source="activity")

    def list_budget_allocations(self, user_id: int) -> List[BudgetAllocationRecord]:
        rows = self._fetch(
            select(
                budget_allocations.c.id,
                budget_allocations.c.category_id,
                budget_allocations.c.amount_cents,
                budgets.c.currency,
                budgets.c.period_start,
                budgets.c.period_end,
            )
            .select_from(
                budget_allocations.join(budgets, budget_allocations.c.budget_id == budgets.c.id)
            )
            .where(budgets.c.user_id == user_id)
            .order_by(budget_allocations.c.id)
        )
        return parse_records(BudgetAllocationRecord, rows, source="budget allocation")

    def list_goals(self, user_id: int) -> List[GoalRecord]:
        rows = self._fetch(
            select(goals).where(goals.c.user_id == user_id).order_by(goals.c.id)
        )
        return parse_records(GoalRecord, rows, source="goal")

    def list_goal_contributions(self, user_id: int) -> List[GoalContributionRecord]:
        rows = self._fetch(
            select(goal_contributions)
            .select_from(goal_contributions.join(goals, goal_contributions.c.goal_id == goals.c.id))
            .where(goals.c.user_id == user_id)
            .order_by(goal_contributions.c.id)
        )
        return parse_records(GoalContributionRecord, rows, source="goal contribution")

    def hourly_rate_timeline(self, user_id: int) -> List[HourlyRateEntry]:
        rows = self._fetch(
            select(user_hourly_rates.c.effective_month, user_hourly_rates.c.hourly_rate)
            .where(user_hourly_rates.c.user_id == user_id)
            .order_by(user_hourly_rates.c.effective_month.asc())
        )
        return [
            HourlyRateEntry(
                effective_month=to_month_key(row["effective_month"]),
                rate=_coerce_decimal(row["hourly_rate"]),
            )
            for row in rows
        ]

    def exchange_rate_history(
        self, currencies: Iterable[str], quote: str, until: date
    ) -> List[RateObservation]:
        wanted = sorted(set(currencies))
        if not wanted:
            return []
        rows = self._fetch(
            select(
                exchange_rates.c.day,
                exchange_rates.c.base,
                exchange_rates.c.quote,
                exchange_rates.c.rate,
            )
            .where(
                exchange_rates.c.base.in_(wanted),
                exchange_rates.c.quote == quote,
                exchange_rates.c.day <= until,
            )
            .order_by(exchange_rates.c.base, exchange_rates.c.day)
        )
        return [
            RateObservation(
                day=row["day"],
                base=row["base"],
                quote=row["quote"],
                rate=_coerce_decimal(row["rate"]),
            )
            for row in rows
        ]

    def get_scenario(self, user_id: int, scenario_id: int) -> StoredScenario | None:
        rows = self._fetch(
            select(scenarios).where(
                scenarios.c.id == scenario_id, scenarios.c.user_id == user_id
            )
        )
        if not rows:
            return None
        row = rows[0]
        return StoredScenario(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            params_json=decode_json_blob(row["params_json"]),
        )

    def list_active_alerts(self, user_id: int) -> List[AlertRow]:
        rows = self._fetch(
            select(alerts)
            .where(alerts.c.user_id == user_id, alerts.c.is_active.is_(True))
            .order_by(alerts.c.id)
        )
        return [
            AlertRow(
                id=row["id"],
                user_id=row["user_id"],
                name=row["name"],
                rule_type=row["rule_type"],
                rule_config=decode_json_blob(row["rule_config"]),
            )
            for row in rows
        ]

    def users_with_active_alerts(self) -> List[int]:
        rows = self._fetch(
            select(alerts.c.user_id)
            .where(alerts.c.is_active.is_(True))
            .distinct()
            .order_by(alerts.c.user_id)
        )
        return [row["user_id"] for row in rows]

    def category_id_by_name(self, user_id: int, name: str) -> int | None:
        rows = self._fetch(
            select(categories.c.id)
            .where(categories.c.user_id == user_id, categories.c.name == name)
            .limit(1)
        )
        return rows[0]["id"] if rows else None


class SqlNotificationSink:
    """Stores notifications; a key already sent for the alert within the window is skipped."""

    def __init__(
        self,
        engine: Engine,
        window: timedelta | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.engine = engine
        self.window = window if window is not None else timedelta(
            hours=get_notification_dedupe_hours()
        )
        self.clock = clock or _utcnow

    def send(self, user_id: int, alert_id: int, notification) -> bool:
        now = self.clock()
        with self.engine.begin() as conn:
            recent = conn.execute(
                select(notifications.c.id)
                .where(
                    notifications.c.user_id == user_id,
                    notifications.c.alert_id == alert_id,
                    notifications.c.dedupe_key == notification.dedupe_key,
                    notifications.c.created_at >= now - self.window,
                )
                .limit(1)
            ).first()
            if recent is not None:
                logger.debug(
                    "Notification already sent user=%s alert=%s key=%s",
                    user_id,
                    alert_id,
                    notification.dedupe_key,
                )
                return False
            conn.execute(
                insert(notifications).values(
                    user_id=user_id,
                    alert_id=alert_id,
                    title=notification.title,
                    message=notification.message,
                    severity=notification.severity,
                    meta=notification.meta,
                    dedupe_key=notification.dedupe_key,
                    created_at=now,
                )
            )
        return True


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _coerce_decimal(value: Decimal | float | int | str) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))
