import unittest
from datetime import date
from decimal import Decimal

from spendcast.forecast_generator import RecurringTemplate, generate_forecasts


def make_template(**overrides) -> RecurringTemplate:
    values = {
        "id": 7,
        "user_id": "user-1",
        "description": "Gym membership",
        "amount": Decimal("-49.90"),
        "frequency": "monthly",
        "start_date": date(2025, 1, 15),
        "forecast_months": 6,
        "day_of_month": 20,
        "category_id": 3,
        "subcategory_id": 11,
    }
    values.update(overrides)
    return RecurringTemplate(**values)


class ForecastGeneratorTests(unittest.TestCase):
    def test_monthly_forecasts_start_after_start_date(self) -> None:
        forecasts = generate_forecasts(make_template())

        self.assertEqual(
            [record.forecast_date for record in forecasts],
            [
                date(2025, 2, 20),
                date(2025, 3, 20),
                date(2025, 4, 20),
                date(2025, 5, 20),
                date(2025, 6, 20),
            ],
        )
        first = forecasts[0]
        self.assertEqual(first.date, first.forecast_date)
        self.assertEqual(first.amount, Decimal("-49.90"))
        self.assertEqual(first.recurring_expense_id, 7)
        self.assertEqual(first.raw_source, "FORECAST:7")
        self.assertEqual(first.category_confidence, Decimal("1"))
        self.assertTrue(first.is_forecast)
        self.assertEqual((first.statement_month, first.statement_year), (2, 2025))

    def test_monthly_anchor_31_clamps_and_recovers(self) -> None:
        template = make_template(start_date=date(2025, 1, 1), day_of_month=31, forecast_months=4)

        forecasts = generate_forecasts(template)

        self.assertEqual(
            [record.forecast_date for record in forecasts],
            [date(2025, 2, 28), date(2025, 3, 31), date(2025, 4, 30)],
        )

    def test_weekly_forecasts_cover_window(self) -> None:
        # 2025-06-02 is a Monday; day_of_week=5 is Friday.
        template = make_template(
            frequency="weekly",
            day_of_month=None,
            day_of_week=5,
            start_date=date(2025, 6, 2),
            forecast_months=1,
        )

        forecasts = generate_forecasts(template)

        self.assertEqual(
            [record.forecast_date for record in forecasts],
            [date(2025, 6, 6), date(2025, 6, 13), date(2025, 6, 20), date(2025, 6, 27)],
        )

    def test_weekly_on_start_weekday_skips_start(self) -> None:
        template = make_template(
            frequency="weekly",
            day_of_month=None,
            day_of_week=1,
            start_date=date(2025, 6, 2),
            forecast_months=1,
        )

        forecasts = generate_forecasts(template)

        self.assertEqual(forecasts[0].forecast_date, date(2025, 6, 9))

    def test_end_date_stops_generation(self) -> None:
        template = make_template(end_date=date(2025, 4, 1))

        forecasts = generate_forecasts(template)

        self.assertEqual(
            [record.forecast_date for record in forecasts],
            [date(2025, 2, 20), date(2025, 3, 20)],
        )

    def test_start_from_and_months_override_template(self) -> None:
        forecasts = generate_forecasts(make_template(), start_from=date(2025, 6, 20), months=3)

        self.assertEqual(
            [record.forecast_date for record in forecasts],
            [date(2025, 7, 20), date(2025, 8, 20), date(2025, 9, 20)],
        )

    def test_invalid_anchor_produces_nothing(self) -> None:
        template = make_template(day_of_month=None)

        with self.assertLogs("spendcast.forecast_generator", level="WARNING"):
            forecasts = generate_forecasts(template)

        self.assertEqual(forecasts, [])

    def test_unknown_frequency_produces_nothing(self) -> None:
        with self.assertLogs("spendcast.forecast_generator", level="WARNING"):
            forecasts = generate_forecasts(make_template(frequency="yearly"))

        self.assertEqual(forecasts, [])


if __name__ == "__main__":
    unittest.main()
