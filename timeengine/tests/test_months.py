import unittest
from datetime import date

from timeengine.months import (
    expand_occurrences,
    month_end,
    month_range,
    normalize_frequency,
    occurrence_counts,
    shift_month_key,
    to_month_key,
)


class MonthGridTests(unittest.TestCase):
    def test_month_range_is_inclusive_and_ordered(self) -> None:
        self.assertEqual(
            month_range("2025-11", "2026-02"),
            ["2025-11", "2025-12", "2026-01", "2026-02"],
        )

    def test_month_range_rejects_reversed_window(self) -> None:
        with self.assertRaises(ValueError):
            month_range("2025-10", "2025-08")

    def test_month_keys_accept_dates_and_strings(self) -> None:
        self.assertEqual(to_month_key(date(2025, 8, 15)), "2025-08")
        self.assertEqual(to_month_key("2025-08-15"), "2025-08")
        self.assertEqual(to_month_key("2025-08"), "2025-08")
        self.assertEqual(shift_month_key("2025-11", 3), "2026-02")
        self.assertEqual(month_end("2024-02"), date(2024, 2, 29))

    def test_invalid_month_raises(self) -> None:
        with self.assertRaises(ValueError):
            to_month_key("August")


class RecurrenceExpansionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.months = ["2025-08", "2025-09", "2025-10"]

    def test_open_ended_monthly_rule_hits_every_month(self) -> None:
        counts = occurrence_counts("monthly", date(2025, 8, 1), None, self.months)

        self.assertEqual(counts, {"2025-08": 1, "2025-09": 1, "2025-10": 1})

    def test_once_with_equal_start_and_end_yields_single_occurrence(self) -> None:
        counts = occurrence_counts(
            "once", date(2025, 9, 12), date(2025, 9, 12), self.months
        )

        self.assertEqual(counts, {"2025-08": 0, "2025-09": 1, "2025-10": 0})

    def test_inactive_rule_yields_nothing(self) -> None:
        counts = occurrence_counts(
            "monthly", date(2025, 8, 1), None, self.months, is_active=False
        )

        self.assertEqual(sum(counts.values()), 0)

    def test_end_date_clips_occurrences(self) -> None:
        counts = occurrence_counts(
            "monthly", date(2025, 8, 15), date(2025, 9, 20), self.months
        )

        self.assertEqual(counts, {"2025-08": 1, "2025-09": 1, "2025-10": 0})

    def test_start_before_window_is_clipped_to_grid(self) -> None:
        expanded = expand_occurrences("monthly", date(2024, 1, 31), None, ["2025-02", "2025-03"])

        self.assertEqual(expanded["2025-02"], [date(2025, 2, 28)])
        self.assertEqual(expanded["2025-03"], [date(2025, 3, 31)])

    def test_weekly_rule_counts_every_anchor_in_month(self) -> None:
        counts = occurrence_counts("weekly", date(2025, 9, 1), None, ["2025-09"])

        self.assertEqual(counts["2025-09"], 5)

    def test_yearly_rule_lands_on_anniversary_month(self) -> None:
        months = month_range("2025-01", "2025-12")
        counts = occurrence_counts("yearly", date(2024, 3, 10), None, months)

        self.assertEqual(counts["2025-03"], 1)
        self.assertEqual(sum(counts.values()), 1)

    def test_frequency_aliases(self) -> None:
        self.assertEqual(normalize_frequency("One-Time"), "once")
        self.assertEqual(normalize_frequency(" Monthly "), "monthly")
        with self.assertRaises(ValueError):
            normalize_frequency("daily")


if __name__ == "__main__":
    unittest.main()
