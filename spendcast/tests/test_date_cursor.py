import unittest
from datetime import date

from spendcast.date_cursor import (
    add_months,
    format_frequency,
    next_monthly,
    next_weekly,
    sunday_weekday,
)


class DateCursorTests(unittest.TestCase):
    def test_next_monthly_clamps_to_short_months(self) -> None:
        self.assertEqual(next_monthly(date(2025, 1, 31), 31), date(2025, 2, 28))
        self.assertEqual(next_monthly(date(2024, 1, 31), 31), date(2024, 2, 29))
        self.assertEqual(next_monthly(date(2025, 3, 30), 30), date(2025, 4, 30))

    def test_next_monthly_recovers_anchor_after_clamp(self) -> None:
        self.assertEqual(next_monthly(date(2025, 2, 28), 31), date(2025, 3, 31))

    def test_next_monthly_from_mid_month_to_february_end(self) -> None:
        self.assertEqual(next_monthly(date(2024, 1, 15), 31), date(2024, 2, 29))
        self.assertEqual(next_monthly(date(2025, 1, 15), 31), date(2025, 2, 28))

    def test_next_monthly_crosses_year_boundary(self) -> None:
        self.assertEqual(next_monthly(date(2025, 12, 15), 15), date(2026, 1, 15))

    def test_next_weekly_is_strictly_after_base(self) -> None:
        # 2025-06-02 is a Monday.
        self.assertEqual(next_weekly(date(2025, 6, 2), 1), date(2025, 6, 9))
        self.assertEqual(next_weekly(date(2025, 6, 2), 3), date(2025, 6, 4))
        self.assertEqual(next_weekly(date(2025, 6, 2), 0), date(2025, 6, 8))

    def test_sunday_weekday_numbering(self) -> None:
        self.assertEqual(sunday_weekday(date(2025, 6, 1)), 0)
        self.assertEqual(sunday_weekday(date(2025, 6, 7)), 6)

    def test_add_months_keeps_day_when_possible(self) -> None:
        self.assertEqual(add_months(date(2025, 1, 15), 6), date(2025, 7, 15))
        self.assertEqual(add_months(date(2025, 8, 31), 1), date(2025, 9, 30))

    def test_format_frequency_labels(self) -> None:
        self.assertEqual(format_frequency("monthly", day_of_month=1), "Monthly on the 1st")
        self.assertEqual(format_frequency("monthly", day_of_month=12), "Monthly on the 12th")
        self.assertEqual(format_frequency("monthly", day_of_month=23), "Monthly on the 23rd")
        self.assertEqual(format_frequency("weekly", day_of_week=0), "Weekly on Sunday")
        self.assertEqual(format_frequency("yearly"), "yearly")


if __name__ == "__main__":
    unittest.main()
