"""Unit tests for the billing date arithmetic."""

import unittest
from datetime import date

from recurbill.billing.datemath import (
    Annually,
    Custom,
    Monthly,
    Quarterly,
    describe_period,
    first_occurrence,
    next_occurrence,
    period_bounds,
    roll_forward,
)
from recurbill.db.enums import IntervalUnit
from recurbill.errors import ValidationError


class TestNextOccurrence(unittest.TestCase):
    """Test cases for next_occurrence."""

    def test_monthly_month_end_anchor_is_not_downgraded(self):
        """A 31st anchor clamps in short months and recovers afterwards."""
        d = date(2025, 1, 31)
        seen = []
        for _ in range(3):
            d = next_occurrence(Monthly(), 31, d)
            seen.append(d)
        self.assertEqual(seen, [date(2025, 2, 28), date(2025, 3, 31), date(2025, 4, 30)])

    def test_monthly_leap_year(self):
        self.assertEqual(next_occurrence(Monthly(), 31, date(2024, 1, 31)), date(2024, 2, 29))
        self.assertEqual(next_occurrence(Monthly(), 31, date(2024, 2, 29)), date(2024, 3, 31))

    def test_quarterly_and_annually(self):
        self.assertEqual(next_occurrence(Quarterly(), 15, date(2026, 1, 15)), date(2026, 4, 15))
        self.assertEqual(next_occurrence(Quarterly(), 31, date(2025, 11, 30)), date(2026, 2, 28))
        self.assertEqual(next_occurrence(Annually(), 29, date(2024, 2, 29)), date(2025, 2, 28))
        self.assertEqual(next_occurrence(Annually(), 29, date(2027, 2, 28)), date(2028, 2, 29))

    def test_custom_days(self):
        freq = Custom(10, IntervalUnit.DAYS)
        self.assertEqual(next_occurrence(freq, 1, date(2026, 1, 25)), date(2026, 2, 4))

    def test_custom_months_clamps_like_calendar_frequencies(self):
        freq = Custom(2, IntervalUnit.MONTHS)
        self.assertEqual(next_occurrence(freq, 31, date(2025, 12, 31)), date(2026, 2, 28))
        self.assertEqual(next_occurrence(freq, 31, date(2026, 2, 28)), date(2026, 4, 30))

    def test_result_is_strictly_after_from_date(self):
        """Off-anchor reference dates still move forward."""
        for freq in (Monthly(), Quarterly(), Annually(), Custom(1, IntervalUnit.MONTHS)):
            for from_date in (date(2026, 1, 1), date(2026, 1, 31), date(2026, 2, 28)):
                self.assertGreater(next_occurrence(freq, 15, from_date), from_date)

    def test_invalid_inputs(self):
        with self.assertRaises(ValidationError):
            next_occurrence(Monthly(), 32, date(2026, 1, 1))
        with self.assertRaises(ValidationError):
            next_occurrence(Monthly(), 0, date(2026, 1, 1))
        with self.assertRaises(ValidationError):
            Custom(0, IntervalUnit.DAYS)
        with self.assertRaises(ValidationError):
            Custom(3, None)


class TestCalendarHelpers(unittest.TestCase):
    """Test cases for first_occurrence, roll_forward and period labels."""

    def test_first_occurrence(self):
        self.assertEqual(first_occurrence(Monthly(), 15, date(2026, 1, 10)), date(2026, 1, 15))
        self.assertEqual(first_occurrence(Monthly(), 15, date(2026, 1, 15)), date(2026, 1, 15))
        self.assertEqual(first_occurrence(Monthly(), 15, date(2026, 1, 16)), date(2026, 2, 15))
        self.assertEqual(first_occurrence(Monthly(), 31, date(2026, 2, 1)), date(2026, 2, 28))

    def test_roll_forward_skips_missed_periods(self):
        result = roll_forward(Monthly(), 1, date(2026, 1, 1), date(2026, 4, 10))
        self.assertEqual(result, date(2026, 5, 1))
        self.assertEqual(roll_forward(Monthly(), 1, date(2026, 5, 1), date(2026, 4, 10)), date(2026, 5, 1))

    def test_period_bounds_and_labels(self):
        start, end = period_bounds(Monthly(), date(2026, 2, 15))
        self.assertEqual((start, end), (date(2026, 2, 1), date(2026, 2, 28)))
        self.assertEqual(describe_period(Monthly(), start, end), "Feb 2026")

        start, end = period_bounds(Quarterly(), date(2026, 5, 1))
        self.assertEqual((start, end), (date(2026, 4, 1), date(2026, 6, 30)))
        self.assertEqual(describe_period(Quarterly(), start, end), "Q2 2026")

        start, end = period_bounds(Annually(), date(2026, 7, 1))
        self.assertEqual(describe_period(Annually(), start, end), "2026")

        freq = Custom(14, IntervalUnit.DAYS)
        start, end = period_bounds(freq, date(2026, 1, 15))
        self.assertEqual(start, date(2026, 1, 1))
        self.assertEqual(describe_period(freq, start, end), "Jan 1 to Jan 15, 2026")


if __name__ == "__main__":
    unittest.main()
