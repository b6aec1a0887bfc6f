import unittest
from datetime import date
from decimal import Decimal

from sqlalchemy import create_engine, insert, select
from sqlalchemy.pool import StaticPool

from spendcast.db import init_db, reconciliation_dismissals, transactions
from spendcast.forecast_lifecycle import RecordNotFound, bulk_delete_forecasts
from spendcast.reconciliation import (
    MergePayload,
    amount_within_tolerance,
    check_for_forecast_matches,
    confirm_merge,
    find_matching_forecasts,
    keep_both,
    row_fingerprint,
)
from spendcast.statement_parser import ImportRow


def make_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    return engine


def add_forecast(conn, when, amount, user_id="user-1", pending=True, description="Internet"):
    return conn.execute(
        insert(transactions)
        .values(
            user_id=user_id,
            description=description,
            amount=Decimal(amount),
            date=when,
            forecast_date=when,
            recurring_expense_id=1,
            is_forecast=pending,
            category_id=5,
            raw_source="FORECAST:1",
        )
        .returning(transactions.c.id)
    ).scalar_one()


def bank_row(when=date(2025, 3, 12), amount="-15.99", description="ISP BILLING"):
    return ImportRow(date=when, description=description, amount=Decimal(amount), raw="bank-line")


class ReconciliationTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()

    def tearDown(self) -> None:
        self.engine.dispose()

    def test_amount_tolerance_is_ten_percent_of_import(self) -> None:
        self.assertTrue(amount_within_tolerance(Decimal("-90"), Decimal("-100")))
        self.assertTrue(amount_within_tolerance(Decimal("110"), Decimal("-100")))
        self.assertFalse(amount_within_tolerance(Decimal("-89.99"), Decimal("-100")))
        self.assertFalse(amount_within_tolerance(Decimal("-110.01"), Decimal("-100")))

    def test_finds_forecasts_within_day_and_amount_window(self) -> None:
        with self.engine.begin() as conn:
            near = add_forecast(conn, date(2025, 3, 11), "-15.99")
            add_forecast(conn, date(2025, 3, 14), "-15.99")
            add_forecast(conn, date(2025, 3, 12), "-20.00")
            close_amount = add_forecast(conn, date(2025, 3, 13), "-17.00")
            add_forecast(conn, date(2025, 3, 12), "-15.99", pending=False)
            add_forecast(conn, date(2025, 3, 12), "-15.99", user_id="user-2")

            candidates = find_matching_forecasts(conn, "user-1", bank_row())

        self.assertEqual([candidate["id"] for candidate in candidates], [near, close_amount])
        self.assertEqual(candidates[0]["category_name"], "Bills")

    def test_candidates_are_capped_at_five(self) -> None:
        with self.engine.begin() as conn:
            ids = [add_forecast(conn, date(2025, 3, 12), "-15.99") for _ in range(7)]
            candidates = find_matching_forecasts(conn, "user-1", bank_row())

        self.assertEqual([candidate["id"] for candidate in candidates], ids[:5])

    def test_one_day_late_import_matches_but_two_days_does_not(self) -> None:
        with self.engine.begin() as conn:
            forecast_id = add_forecast(conn, date(2025, 3, 10), "-50.00")
            next_day = find_matching_forecasts(
                conn, "user-1", bank_row(when=date(2025, 3, 11), amount="-52.00")
            )
            two_days = find_matching_forecasts(
                conn, "user-1", bank_row(when=date(2025, 3, 12), amount="-52.00")
            )

        self.assertEqual([candidate["id"] for candidate in next_day], [forecast_id])
        self.assertEqual(two_days, [])

    def test_zero_amount_row_matches_nothing(self) -> None:
        with self.engine.begin() as conn:
            add_forecast(conn, date(2025, 3, 12), "-15.99")
            candidates = find_matching_forecasts(conn, "user-1", bank_row(amount="0"))

        self.assertEqual(candidates, [])

    def test_check_reports_only_rows_with_candidates(self) -> None:
        rows = [bank_row(when=date(2025, 1, 1)), bank_row()]
        with self.engine.begin() as conn:
            add_forecast(conn, date(2025, 3, 12), "-15.99")
            matches = check_for_forecast_matches(conn, "user-1", rows)

        self.assertEqual([match.row_index for match in matches], [1])

    def test_confirm_merge_overwrites_and_matures_forecast(self) -> None:
        row = bank_row(when=date(2025, 3, 13), amount="-16.49")
        with self.engine.begin() as conn:
            forecast_id = add_forecast(conn, date(2025, 3, 12), "-15.99")
            confirm_merge(conn, "user-1", forecast_id, MergePayload.from_import_row(row))
            merged = conn.execute(
                select(transactions).where(transactions.c.id == forecast_id)
            ).mappings().first()

            with self.assertRaises(RecordNotFound):
                confirm_merge(conn, "user-1", forecast_id, MergePayload.from_import_row(row))

        self.assertFalse(merged["is_forecast"])
        self.assertEqual(merged["amount"], Decimal("-16.49"))
        self.assertEqual(merged["date"], date(2025, 3, 13))
        self.assertEqual(merged["forecast_date"], date(2025, 3, 12))
        self.assertEqual(merged["description"], "ISP BILLING")
        self.assertEqual(merged["raw_source"], "bank-line")
        self.assertEqual(merged["category_id"], 5)

    def test_confirm_merge_requires_forecast(self) -> None:
        with self.engine.begin() as conn:
            with self.assertRaises(ValueError):
                confirm_merge(conn, "user-1", None, MergePayload.from_import_row(bank_row()))

    def test_keep_both_hides_pair_from_later_checks(self) -> None:
        row = bank_row()
        with self.engine.begin() as conn:
            forecast_id = add_forecast(conn, date(2025, 3, 12), "-15.99")
            keep_both(conn, "user-1", forecast_id, row)
            keep_both(conn, "user-1", forecast_id, row)

            self.assertEqual(find_matching_forecasts(conn, "user-1", row), [])
            other_row = bank_row(description="ISP BILLING 2")
            self.assertEqual(len(find_matching_forecasts(conn, "user-1", other_row)), 1)
            pending = conn.execute(
                select(transactions.c.is_forecast).where(transactions.c.id == forecast_id)
            ).scalar_one()
            dismissals = conn.execute(select(reconciliation_dismissals)).mappings().all()

        self.assertTrue(pending)
        self.assertEqual(len(dismissals), 1)
        self.assertEqual(dismissals[0]["row_fingerprint"], row_fingerprint(row))

    def test_deleting_forecast_removes_its_dismissals(self) -> None:
        with self.engine.begin() as conn:
            forecast_id = add_forecast(conn, date(2025, 3, 12), "-15.99")
            keep_both(conn, "user-1", forecast_id, bank_row())
            bulk_delete_forecasts(conn, "user-1", [forecast_id])
            remaining = conn.execute(select(reconciliation_dismissals)).mappings().all()

        self.assertEqual(remaining, [])

    def test_keep_both_unknown_forecast_is_not_found(self) -> None:
        with self.engine.begin() as conn:
            with self.assertRaises(RecordNotFound):
                keep_both(conn, "user-1", 404, bank_row())


if __name__ == "__main__":
    unittest.main()
