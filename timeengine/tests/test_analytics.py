import unittest
from datetime import date
from decimal import Decimal

from timeengine.analytics import activity_roi, goal_progress, object_metrics
from timeengine.currency_conversion import RateTable
from timeengine.hourly_rates import HourlyRateTimeline
from timeengine.records import (
    ActivityRecord,
    EngineContext,
    GoalContributionRecord,
    GoalRecord,
    ObjectRecord,
)


def make_context(rate=Decimal("50")):
    return EngineContext(
        user_currency="RON",
        rate_for=HourlyRateTimeline.build([], static_rate=rate),
        fx=RateTable(anchor="RON").fx,
        as_of=date(2025, 10, 15),
        hourly_rate=rate,
    )


class ActivityRoiTests(unittest.TestCase):
    def test_ratio_and_net_hours(self) -> None:
        row = ActivityRecord(
            id=1,
            name="Meal prep",
            duration_minutes=30,
            frequency="weekly",
            direct_cost_cents=500,
            saved_minutes=90,
            currency="RON",
        )

        [roi] = activity_roi([row], make_context())

        self.assertEqual(roi.roi_ratio, Decimal("2.5"))
        self.assertEqual(roi.net_hours_per_occurrence, Decimal("0.9"))

    def test_zero_cost_leaves_ratio_undefined(self) -> None:
        row = ActivityRecord(
            id=2, name="Podcast commute", frequency="weekly", saved_minutes=60, currency="RON"
        )

        [roi] = activity_roi([row], make_context())

        self.assertIsNone(roi.roi_ratio)
        self.assertEqual(roi.net_hours_per_occurrence, Decimal("1"))

    def test_missing_rate_leaves_everything_undefined(self) -> None:
        row = ActivityRecord(
            id=3, name="Gym", duration_minutes=60, frequency="weekly", currency="RON"
        )

        [roi] = activity_roi([row], make_context(rate=None))

        self.assertIsNone(roi.roi_ratio)
        self.assertIsNone(roi.net_hours_per_occurrence)


class ObjectMetricsTests(unittest.TestCase):
    def test_payback_and_lifetime_roi(self) -> None:
        row = ObjectRecord(
            id=9,
            name="Dishwasher",
            price_cents=120000,
            currency="RON",
            purchase_date=date(2025, 7, 1),
            expected_life_months=24,
            maintenance_cents_per_month=1000,
            hours_saved_per_month=Decimal("3"),
        )

        [metrics] = object_metrics([row], make_context())

        self.assertEqual(metrics.capex_hours, Decimal("24"))
        self.assertEqual(metrics.maint_hours_per_month, Decimal("0.2"))
        self.assertEqual(metrics.net_hours_per_month, Decimal("2.8"))
        self.assertAlmostEqual(float(metrics.payback_months), 24 / 2.8, places=9)
        self.assertEqual(metrics.lifetime_roi_hours, Decimal("43.2"))

    def test_no_net_saving_means_no_payback(self) -> None:
        row = ObjectRecord(
            id=10,
            name="Sofa",
            price_cents=300000,
            currency="RON",
            purchase_date=date(2025, 7, 1),
            expected_life_months=60,
        )

        [metrics] = object_metrics([row], make_context())

        self.assertIsNone(metrics.payback_months)
        self.assertEqual(metrics.lifetime_roi_hours, Decimal("-60"))


class GoalProgressTests(unittest.TestCase):
    def setUp(self) -> None:
        self.goals = [
            GoalRecord(id=1, name="Sabbatical", currency="RON", target_hours=Decimal("100")),
            GoalRecord(id=2, name="New bike", currency="RON", target_amount_cents=100000),
        ]
        self.contributions = [
            GoalContributionRecord(goal_id=1, contributed_at=date(2025, 9, 1), hours=Decimal("10")),
            GoalContributionRecord(goal_id=1, contributed_at=date(2025, 9, 5), amount_cents=5000),
            GoalContributionRecord(goal_id=2, contributed_at=date(2025, 9, 5), amount_cents=5000),
        ]

    def test_hours_goal_eta_from_net_savings(self) -> None:
        progress = goal_progress(self.goals, self.contributions, make_context(), Decimal("2"))

        sabbatical = progress[1]
        self.assertEqual(sabbatical.target_type, "hours")
        self.assertEqual(sabbatical.progress_hours, Decimal("11"))
        self.assertEqual(sabbatical.remaining_hours, Decimal("89"))
        self.assertEqual(sabbatical.eta_months, Decimal("44.5"))
        self.assertFalse(sabbatical.blocked)

    def test_money_goal_tracks_money_and_hours(self) -> None:
        progress = goal_progress(self.goals, self.contributions, make_context(), Decimal("2"))

        bike = progress[2]
        self.assertEqual(bike.target_type, "money")
        self.assertEqual(bike.target_hours, Decimal("20"))
        self.assertEqual(bike.progress_money, Decimal("50"))
        self.assertEqual(bike.remaining_money, Decimal("950"))
        self.assertEqual(bike.remaining_hours, Decimal("19"))

    def test_blocked_without_positive_savings(self) -> None:
        progress = goal_progress(self.goals, self.contributions, make_context(), Decimal("-1"))

        self.assertIsNone(progress[1].eta_months)
        self.assertTrue(progress[1].blocked)

    def test_missing_rate_flags_goal(self) -> None:
        progress = goal_progress(self.goals, self.contributions, make_context(rate=None), None)

        self.assertTrue(progress[2].needs_hourly_rate)
        self.assertIsNone(progress[2].remaining_hours)
        self.assertTrue(progress[2].blocked)


if __name__ == "__main__":
    unittest.main()
