from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, List, Optional

from spendcast.date_cursor import add_months, next_monthly, next_weekly

logger = logging.getLogger(__name__)

SUPPORTED_FREQUENCIES = {"monthly", "weekly"}
WEEKS_PER_MONTH_CAP = 5
FORECAST_SOURCE_PREFIX = "FORECAST:"
FORECAST_NOTES = "Auto-generated from recurring template"


@dataclass(frozen=True)
class RecurringTemplate:
    id: int
    user_id: str
    description: str
    amount: Decimal
    frequency: str
    start_date: date
    forecast_months: int
    end_date: Optional[date] = None
    day_of_month: Optional[int] = None
    day_of_week: Optional[int] = None
    category_id: Optional[int] = None
    subcategory_id: Optional[int] = None
    merchant_name: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    is_active: bool = True

    @classmethod
    def from_row(cls, row: Any) -> "RecurringTemplate":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            description=row["description"],
            amount=_coerce_amount(row["amount"]),
            frequency=row["frequency"],
            start_date=row["start_date"],
            forecast_months=row["forecast_months"],
            end_date=row["end_date"],
            day_of_month=row["day_of_month"],
            day_of_week=row["day_of_week"],
            category_id=row["category_id"],
            subcategory_id=row["subcategory_id"],
            merchant_name=row["merchant_name"],
            tags=list(row["tags"] or []),
            is_active=bool(row["is_active"]),
        )


@dataclass(frozen=True)
class ForecastRecord:
    description: str
    amount: Decimal
    date: date
    forecast_date: date
    recurring_expense_id: int
    user_id: str
    category_id: Optional[int] = None
    subcategory_id: Optional[int] = None
    merchant_name: Optional[str] = None
    category_confidence: Decimal = Decimal("1")
    statement_month: Optional[int] = None
    statement_year: Optional[int] = None
    raw_source: Optional[str] = None
    is_recurring: bool = True
    notes: Optional[str] = FORECAST_NOTES
    is_forecast: bool = True

    def as_row(self) -> dict:
        return asdict(self)


def generate_forecasts(
    template: RecurringTemplate,
    start_from: Optional[date] = None,
    months: Optional[int] = None,
) -> List[ForecastRecord]:
    """Walk the template's cadence forward from ``start_from``.

    The first occurrence is strictly after ``start_from``. Generation stops at
    ``start_from + months`` or at the template end date, whichever comes
    first. A malformed anchor ends the walk early and returns what was
    produced so far.
    """
    origin = start_from or template.start_date
    generate_months = months if months is not None else template.forecast_months
    window_end = add_months(origin, generate_months)
    frequency = (template.frequency or "").strip().lower()
    max_iterations = (
        generate_months * WEEKS_PER_MONTH_CAP
        if frequency == "weekly"
        else generate_months
    )

    forecasts: List[ForecastRecord] = []
    current_date = origin
    for _ in range(max(max_iterations, 0)):
        if frequency == "monthly" and _valid_day_of_month(template.day_of_month):
            current_date = next_monthly(current_date, template.day_of_month)
        elif frequency == "weekly" and _valid_day_of_week(template.day_of_week):
            current_date = next_weekly(current_date, template.day_of_week)
        else:
            logger.warning(
                "Invalid frequency configuration for recurring template %s "
                "(frequency=%r, day_of_month=%r, day_of_week=%r)",
                template.id,
                template.frequency,
                template.day_of_month,
                template.day_of_week,
            )
            break

        if current_date > window_end:
            break
        if template.end_date is not None and current_date > template.end_date:
            break

        forecasts.append(_build_record(template, current_date))

    return forecasts


def has_valid_anchor(template: RecurringTemplate) -> bool:
    frequency = (template.frequency or "").strip().lower()
    if frequency == "monthly":
        return _valid_day_of_month(template.day_of_month)
    if frequency == "weekly":
        return _valid_day_of_week(template.day_of_week)
    return False


def _build_record(template: RecurringTemplate, occurrence: date) -> ForecastRecord:
    return ForecastRecord(
        description=template.description,
        amount=_coerce_amount(template.amount),
        date=occurrence,
        forecast_date=occurrence,
        recurring_expense_id=template.id,
        user_id=template.user_id,
        category_id=template.category_id,
        subcategory_id=template.subcategory_id,
        merchant_name=template.merchant_name or None,
        statement_month=occurrence.month,
        statement_year=occurrence.year,
        raw_source=f"{FORECAST_SOURCE_PREFIX}{template.id}",
    )


def _valid_day_of_month(value: Optional[int]) -> bool:
    return isinstance(value, int) and 1 <= value <= 31


def _valid_day_of_week(value: Optional[int]) -> bool:
    return isinstance(value, int) and 0 <= value <= 6


def _coerce_amount(amount: Decimal) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
