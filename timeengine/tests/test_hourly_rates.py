import unittest
from decimal import Decimal

from timeengine.hourly_rates import HourlyRateEntry, HourlyRateTimeline


class HourlyRateTimelineTests(unittest.TestCase):
    def setUp(self) -> None:
        self.timeline = HourlyRateTimeline.build(
            [
                HourlyRateEntry("2025-09", Decimal("60")),
                HourlyRateEntry("2025-06", Decimal("50")),
            ],
            static_rate=Decimal("40"),
        )

    def test_rate_is_carried_forward_from_effective_month(self) -> None:
        self.assertEqual(self.timeline.rate_for("2025-06"), Decimal("50"))
        self.assertEqual(self.timeline.rate_for("2025-08"), Decimal("50"))
        self.assertEqual(self.timeline.rate_for("2026-01"), Decimal("60"))

    def test_months_before_first_entry_use_static_rate(self) -> None:
        self.assertEqual(self.timeline("2025-01"), Decimal("40"))

    def test_no_static_rate_means_absent(self) -> None:
        timeline = HourlyRateTimeline.build([HourlyRateEntry("2025-06", Decimal("50"))])

        self.assertIsNone(timeline.rate_for("2025-05"))

    def test_overrides_apply_to_single_months_only(self) -> None:
        overridden = self.timeline.with_overrides({"2025-07": 80})

        self.assertEqual(overridden.rate_for("2025-07"), Decimal("80"))
        self.assertEqual(overridden.rate_for("2025-08"), Decimal("50"))
        self.assertEqual(self.timeline.rate_for("2025-07"), Decimal("50"))

    def test_non_positive_rates_are_treated_as_absent(self) -> None:
        overridden = self.timeline.with_overrides({"2025-07": 0})

        self.assertIsNone(overridden.rate_for("2025-07"))

    def test_later_entry_for_same_month_wins(self) -> None:
        timeline = HourlyRateTimeline.build(
            [
                HourlyRateEntry("2025-06", Decimal("50")),
                HourlyRateEntry("2025-06-01", Decimal("55")),
            ]
        )

        self.assertEqual(timeline.rate_for("2025-06"), Decimal("55"))


if __name__ == "__main__":
    unittest.main()
