import unittest
from datetime import date
from decimal import Decimal

from timeengine.aggregation import (
    WEEKS_PER_MONTH,
    combine_time,
    compute_activities,
    compute_expenses,
    compute_income,
    compute_objects,
    hours_template,
)
from timeengine.currency_conversion import RateObservation, RateTable
from timeengine.hourly_rates import HourlyRateEntry, HourlyRateTimeline
from timeengine.months import month_range
from timeengine.records import (
    ActivityRecord,
    EngineContext,
    ExpenseRecord,
    ImpliedSalary,
    IncomeRecord,
    ObjectRecord,
)

MONTHS = ["2025-08", "2025-09", "2025-10"]


def make_context(
    rate=Decimal("50"),
    *,
    entries=(),
    observations=(),
    one_time=0,
    capex=12,
    implied=None,
):
    table = RateTable.from_observations("RON", observations)
    return EngineContext(
        user_currency="RON",
        rate_for=HourlyRateTimeline.build(entries, static_rate=rate),
        fx=table.fx,
        as_of=date(2025, 10, 15),
        hourly_rate=rate,
        amortize_one_time_months=one_time,
        amortize_capex_months=capex,
        implied_salary=implied or ImpliedSalary(),
    )


class ExpenseAggregationTests(unittest.TestCase):
    def test_monthly_expense_contributes_every_month(self) -> None:
        row = ExpenseRecord(
            amount_cents=5999, currency="RON", frequency="monthly", start_date="2025-08-01"
        )

        result = compute_expenses([row], MONTHS, make_context())

        self.assertEqual(
            result.money,
            {"2025-08": Decimal("59.99"), "2025-09": Decimal("59.99"), "2025-10": Decimal("59.99")},
        )
        self.assertEqual(result.hours["2025-09"], Decimal("1.1998"))

    def test_once_expense_is_amortized(self) -> None:
        row = ExpenseRecord(
            amount_cents=30000, currency="RON", frequency="once", start_date="2025-08-10"
        )

        result = compute_expenses([row], MONTHS, make_context(one_time=3))

        self.assertEqual(list(result.money.values()), [Decimal("100.00")] * 3)

    def test_once_expense_without_amortization_lands_in_start_month(self) -> None:
        row = ExpenseRecord(
            amount_cents=30000,
            currency="RON",
            frequency="once",
            start_date="2025-09-10",
            end_date="2025-09-10",
        )

        result = compute_expenses([row], MONTHS, make_context())

        self.assertEqual(result.money["2025-08"], Decimal("0"))
        self.assertEqual(result.money["2025-09"], Decimal("300"))
        self.assertEqual(result.money["2025-10"], Decimal("0"))

    def test_each_occurrence_uses_its_own_fx_rate(self) -> None:
        observations = [
            RateObservation(date(2025, 8, 1), "EUR", "RON", Decimal("4.97")),
            RateObservation(date(2025, 9, 1), "EUR", "RON", Decimal("5.00")),
        ]
        row = ExpenseRecord(
            amount_cents=1000, currency="EUR", frequency="monthly", start_date="2025-08-01"
        )

        result = compute_expenses(
            [row], ["2025-08", "2025-09"], make_context(observations=observations)
        )

        self.assertEqual(result.money["2025-08"], Decimal("49.70"))
        self.assertEqual(result.money["2025-09"], Decimal("50.00"))

    def test_inactive_expense_is_ignored(self) -> None:
        row = ExpenseRecord(
            amount_cents=5000,
            currency="RON",
            frequency="monthly",
            start_date="2025-08-01",
            is_active=False,
        )

        result = compute_expenses([row], MONTHS, make_context())

        self.assertEqual(sum(result.money.values()), Decimal("0"))

    def test_category_breakdown(self) -> None:
        rows = [
            ExpenseRecord(
                amount_cents=5000,
                currency="RON",
                frequency="monthly",
                start_date="2025-08-01",
                category_id=7,
            ),
            ExpenseRecord(
                amount_cents=2500, currency="RON", frequency="monthly", start_date="2025-08-01"
            ),
        ]

        result = compute_expenses(rows, MONTHS, make_context())

        self.assertEqual(list(result.by_category_money), [7])
        self.assertEqual(result.by_category_money[7]["2025-08"], Decimal("50"))
        self.assertEqual(result.by_category_hours[7]["2025-08"], Decimal("1"))
        self.assertEqual(result.money["2025-08"], Decimal("75"))


class HoursAbsenceTests(unittest.TestCase):
    def test_months_without_rate_have_absent_hours_everywhere(self) -> None:
        ctx = make_context(rate=None, entries=[HourlyRateEntry("2025-09", Decimal("50"))])
        expenses = compute_expenses(
            [
                ExpenseRecord(
                    amount_cents=5000,
                    currency="RON",
                    frequency="monthly",
                    start_date="2025-08-01",
                    category_id=3,
                )
            ],
            MONTHS,
            ctx,
        )
        objects = compute_objects(
            [
                ObjectRecord(
                    name="Dishwasher",
                    price_cents=120000,
                    currency="RON",
                    purchase_date="2025-07-01",
                    hours_saved_per_month=Decimal("4"),
                )
            ],
            MONTHS,
            ctx,
        )
        activities = compute_activities(
            [ActivityRecord(name="Cook", frequency="weekly", saved_minutes=30, currency="RON")],
            MONTHS,
            ctx,
        )
        totals = combine_time(MONTHS, expenses, objects, activities, hours_template(MONTHS, ctx))

        self.assertEqual(expenses.money["2025-08"], Decimal("50"))
        for series in (
            expenses.hours,
            expenses.by_category_hours[3],
            objects.maint_hours,
            objects.saved_hours,
            objects.capex_hours,
            activities.saved_hours,
            activities.extra_cost_hours,
            totals.time_cost_hours,
            totals.time_savings_hours,
            totals.time_burn_net,
        ):
            self.assertIsNone(series["2025-08"])
            self.assertIsNotNone(series["2025-09"])

    def test_no_rate_at_all_leaves_net_savings_absent(self) -> None:
        ctx = make_context(rate=None)
        template = hours_template(MONTHS, ctx)
        totals = combine_time(
            MONTHS,
            compute_expenses([], MONTHS, ctx),
            compute_objects([], MONTHS, ctx),
            compute_activities([], MONTHS, ctx),
            template,
        )

        self.assertIsNone(totals.net_savings_hours_per_month)


class IncomeAggregationTests(unittest.TestCase):
    def test_one_off_and_recurring_income(self) -> None:
        rows = [
            IncomeRecord(
                received_at="2025-09-15", amount_cents=20000, currency="RON", source="gift"
            ),
            IncomeRecord(
                received_at="2025-08-01",
                amount_cents=500000,
                currency="RON",
                source="salary",
                recurring="monthly",
            ),
        ]

        result = compute_income(rows, MONTHS, make_context())

        self.assertEqual(result.money["2025-08"], Decimal("5000"))
        self.assertEqual(result.money["2025-09"], Decimal("5200"))
        self.assertEqual(result.hours["2025-09"], Decimal("104"))
        self.assertEqual(list(result.by_source_money), ["gift", "salary"])
        self.assertEqual(result.by_source_money["gift"]["2025-10"], Decimal("0"))

    def test_implied_salary_adds_rate_times_hours(self) -> None:
        ctx = make_context(implied=ImpliedSalary(enabled=True, hours_per_week=Decimal("40")))

        result = compute_income([], ["2025-08"], ctx)

        expected_hours = Decimal("40") * WEEKS_PER_MONTH
        self.assertAlmostEqual(float(result.money["2025-08"]), float(expected_hours * 50), places=6)
        self.assertAlmostEqual(float(result.hours["2025-08"]), float(expected_hours), places=6)


class ObjectAggregationTests(unittest.TestCase):
    def test_capex_is_spread_over_twelve_months(self) -> None:
        row = ObjectRecord(
            id=1,
            name="Laptop",
            price_cents=120000,
            currency="RON",
            purchase_date="2025-07-01",
            expected_life_months=36,
        )
        months = month_range("2025-07", "2026-08")

        result = compute_objects([row], months, make_context())

        for month in month_range("2025-07", "2026-06"):
            self.assertEqual(result.capex_hours[month], Decimal("120000") / 100 / 12 / 50)
        self.assertEqual(result.capex_hours["2026-07"], Decimal("0"))
        self.assertEqual(result.capex_hours["2026-08"], Decimal("0"))

    def test_maintenance_stops_at_end_of_life_but_savings_continue(self) -> None:
        row = ObjectRecord(
            id=2,
            name="Robot vacuum",
            category_id=4,
            price_cents=0,
            currency="RON",
            purchase_date="2025-08-20",
            expected_life_months=2,
            maintenance_cents_per_month=1000,
            hours_saved_per_month=Decimal("3"),
        )

        result = compute_objects([row], ["2025-07"] + MONTHS, make_context())

        self.assertEqual(result.maint_hours["2025-07"], Decimal("0"))
        self.assertEqual(result.maint_hours["2025-08"], Decimal("0.2"))
        self.assertEqual(result.maint_hours["2025-09"], Decimal("0.2"))
        self.assertEqual(result.maint_hours["2025-10"], Decimal("0"))
        self.assertEqual(result.saved_hours["2025-07"], Decimal("0"))
        self.assertEqual(result.saved_hours["2025-10"], Decimal("3"))
        self.assertEqual(result.by_category_saved_hours[4]["2025-10"], Decimal("3"))


class ActivityAggregationTests(unittest.TestCase):
    def test_cost_and_saved_hours_per_occurrence(self) -> None:
        row = ActivityRecord(
            id=5,
            name="Meal prep",
            category_id=7,
            duration_minutes=30,
            frequency="monthly",
            direct_cost_cents=500,
            saved_minutes=90,
            currency="RON",
            start_date="2025-08-05",
        )

        result = compute_activities([row], MONTHS, make_context())

        self.assertEqual(result.extra_cost_hours["2025-08"], Decimal("0.6"))
        self.assertEqual(result.saved_hours["2025-08"], Decimal("1.5"))
        self.assertEqual(result.by_category_extra_cost_hours[7]["2025-10"], Decimal("0.6"))

    def test_undated_activity_month_does_not_depend_on_window(self) -> None:
        row = ActivityRecord(name="Cook", frequency="weekly", saved_minutes=60, currency="RON")
        ctx = make_context()

        wide = compute_activities([row], month_range("2025-09", "2025-10"), ctx)
        narrow = compute_activities([row], ["2025-10"], ctx)

        self.assertEqual(wide.saved_hours["2025-10"], narrow.saved_hours["2025-10"])
        self.assertEqual(narrow.saved_hours["2025-10"], Decimal("4"))


class CombineTimeTests(unittest.TestCase):
    def test_totals_and_category_rollups(self) -> None:
        ctx = make_context()
        expenses = compute_expenses(
            [
                ExpenseRecord(
                    amount_cents=10000,
                    currency="RON",
                    frequency="monthly",
                    start_date="2025-08-01",
                    category_id=7,
                )
            ],
            MONTHS,
            ctx,
        )
        objects = compute_objects([], MONTHS, ctx)
        activities = compute_activities(
            [
                ActivityRecord(
                    id=1,
                    name="Cycling to work",
                    category_id=7,
                    duration_minutes=60,
                    frequency="monthly",
                    saved_minutes=300,
                    currency="RON",
                    start_date="2025-08-01",
                )
            ],
            MONTHS,
            ctx,
        )

        totals = combine_time(MONTHS, expenses, objects, activities, hours_template(MONTHS, ctx))

        self.assertEqual(totals.time_cost_hours["2025-08"], Decimal("3"))
        self.assertEqual(totals.time_savings_hours["2025-08"], Decimal("5"))
        self.assertEqual(totals.time_burn_net["2025-08"], Decimal("-2"))
        self.assertEqual(totals.cost_by_category_hours[7]["2025-09"], Decimal("3"))
        self.assertEqual(totals.savings_by_category_hours[7]["2025-09"], Decimal("5"))
        self.assertEqual(totals.net_savings_hours_per_month, Decimal("2"))


if __name__ == "__main__":
    unittest.main()
