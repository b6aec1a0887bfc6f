from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import Iterable, List, Optional

from pydantic import BaseModel
from sqlalchemy import and_, delete, func, insert, select, update
from sqlalchemy.engine import Connection, Engine

from spendcast.categorization import CategoryIndex
from spendcast.date_cursor import add_months, utc_today
from spendcast.db import (
    categories,
    reconciliation_dismissals,
    recurring_templates,
    subcategories,
    transactions,
)
from spendcast.forecast_generator import (
    SUPPORTED_FREQUENCIES,
    RecurringTemplate,
    generate_forecasts,
    has_valid_anchor,
)

logger = logging.getLogger(__name__)

DEFAULT_FORECAST_MONTHS = 6
MAX_FORECAST_MONTHS = 24
FORECAST_RUNWAY_MONTHS = 3


class RecordNotFound(LookupError):
    """Raised when a record does not exist or is not owned by the caller."""


class RecurringExpensePayload(BaseModel):
    description: str
    amount: Decimal
    frequency: str
    start_date: date
    end_date: date | None = None
    day_of_month: int | None = None
    day_of_week: int | None = None
    forecast_months: int = DEFAULT_FORECAST_MONTHS
    category_id: int | None = None
    subcategory_id: int | None = None
    merchant_name: str | None = None
    tags: list[str] = []

    @classmethod
    def validate_payload(
        cls, payload: "RecurringExpensePayload"
    ) -> "RecurringExpensePayload":
        payload.description = payload.description.strip()
        if not payload.description:
            raise ValueError("Description required.")
        if payload.amount == 0:
            raise ValueError("Amount must be non-zero.")
        frequency = payload.frequency.strip().lower()
        if frequency not in SUPPORTED_FREQUENCIES:
            raise ValueError("Only monthly or weekly recurring expenses are supported.")
        payload.frequency = frequency
        if frequency == "monthly":
            if payload.day_of_month is None or not 1 <= payload.day_of_month <= 31:
                raise ValueError("Day of month required for monthly recurring.")
            payload.day_of_week = None
        else:
            if payload.day_of_week is None or not 0 <= payload.day_of_week <= 6:
                raise ValueError("Day of week required for weekly recurring.")
            payload.day_of_month = None
        if not 1 <= payload.forecast_months <= MAX_FORECAST_MONTHS:
            raise ValueError(f"Forecast months must be between 1 and {MAX_FORECAST_MONTHS}.")
        if payload.end_date is not None and payload.end_date < payload.start_date:
            raise ValueError("End date must be on or after start date.")
        payload.merchant_name = payload.merchant_name.strip() if payload.merchant_name else None
        payload.tags = [tag.strip() for tag in payload.tags if tag and tag.strip()]
        return payload


class RecurringExpenseChanges(BaseModel):
    description: str | None = None
    amount: Decimal | None = None
    frequency: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    day_of_month: int | None = None
    day_of_week: int | None = None
    forecast_months: int | None = None
    category_id: int | None = None
    subcategory_id: int | None = None
    merchant_name: str | None = None
    tags: list[str] | None = None


class ForecastChanges(BaseModel):
    description: str | None = None
    amount: Decimal | None = None
    category_id: int | None = None
    subcategory_id: int | None = None
    merchant_name: str | None = None

    def as_values(self) -> dict:
        values = self.model_dump(exclude_unset=True)
        if "description" in values:
            description = (values["description"] or "").strip()
            if not description:
                raise ValueError("Description required.")
            values["description"] = description
        if values.get("amount") is not None and values["amount"] == 0:
            raise ValueError("Amount must be non-zero.")
        return values


@dataclass(frozen=True)
class TemplateSweepResult:
    template_id: int
    success: bool
    created_count: int = 0
    error: Optional[str] = None


@dataclass
class SweepReport:
    results: List[TemplateSweepResult] = field(default_factory=list)

    @property
    def template_count(self) -> int:
        return len(self.results)

    @property
    def extended_count(self) -> int:
        return sum(1 for result in self.results if result.created_count > 0)

    @property
    def created_count(self) -> int:
        return sum(result.created_count for result in self.results)

    @property
    def failures(self) -> List[TemplateSweepResult]:
        return [result for result in self.results if not result.success]


def create_template(
    conn: Connection, user_id: str, payload: RecurringExpensePayload
) -> RecurringTemplate:
    payload = RecurringExpensePayload.validate_payload(payload)
    CategoryIndex.load(conn).validate_ids(payload.category_id, payload.subcategory_id)

    row = conn.execute(
        insert(recurring_templates)
        .values(user_id=user_id, is_active=True, **payload.model_dump())
        .returning(*recurring_templates.c)
    ).mappings().first()
    template = RecurringTemplate.from_row(row)

    forecasts = generate_forecasts(template)
    if forecasts:
        conn.execute(insert(transactions), [record.as_row() for record in forecasts])
    logger.info(
        "Created recurring template %s with %d forecasts", template.id, len(forecasts)
    )
    return template


def update_template(
    conn: Connection,
    user_id: str,
    template_id: int,
    changes: RecurringExpenseChanges,
) -> RecurringTemplate:
    """Apply changes to the template only; existing forecasts are kept as-is."""
    existing = _fetch_template_row(conn, user_id, template_id)
    merged = {
        name: existing[name] for name in RecurringExpensePayload.model_fields
    }
    merged["tags"] = list(existing["tags"] or [])
    merged.update(changes.model_dump(exclude_unset=True))
    payload = RecurringExpensePayload.validate_payload(RecurringExpensePayload(**merged))
    CategoryIndex.load(conn).validate_ids(payload.category_id, payload.subcategory_id)

    row = conn.execute(
        update(recurring_templates)
        .where(
            recurring_templates.c.id == template_id,
            recurring_templates.c.user_id == user_id,
        )
        .values(updated_at=func.now(), **payload.model_dump())
        .returning(*recurring_templates.c)
    ).mappings().first()
    if not row:
        raise RecordNotFound("Recurring expense not found.")
    return RecurringTemplate.from_row(row)


def stop_template(
    conn: Connection, user_id: str, template_id: int, today: Optional[date] = None
) -> int:
    """Deactivate a template and drop its forecasts dated after today.

    Returns the number of forecasts removed; past forecasts stay.
    """
    today = today or utc_today()
    result = conn.execute(
        update(recurring_templates)
        .where(
            recurring_templates.c.id == template_id,
            recurring_templates.c.user_id == user_id,
        )
        .values(is_active=False, updated_at=func.now())
    )
    if result.rowcount == 0:
        raise RecordNotFound("Recurring expense not found.")
    return _delete_forecasts(
        conn,
        transactions.c.user_id == user_id,
        transactions.c.recurring_expense_id == template_id,
        transactions.c.is_forecast.is_(True),
        transactions.c.forecast_date > today,
    )


def delete_template(conn: Connection, user_id: str, template_id: int) -> int:
    result = conn.execute(
        delete(recurring_templates).where(
            recurring_templates.c.id == template_id,
            recurring_templates.c.user_id == user_id,
        )
    )
    if result.rowcount == 0:
        raise RecordNotFound("Recurring expense not found.")
    return _delete_forecasts(
        conn,
        transactions.c.user_id == user_id,
        transactions.c.recurring_expense_id == template_id,
        transactions.c.is_forecast.is_(True),
    )


def extend_forecast_window(
    engine: Engine,
    today: Optional[date] = None,
    runway_months: int = FORECAST_RUNWAY_MONTHS,
) -> SweepReport:
    """Keep at least ``runway_months`` of forecasts for every active template.

    Each template is processed in its own transaction; a failure is recorded
    in the report and the sweep moves on.
    """
    today = today or utc_today()
    threshold = add_months(today, runway_months)
    with engine.connect() as conn:
        template_ids = conn.execute(
            select(recurring_templates.c.id)
            .where(recurring_templates.c.is_active.is_(True))
            .order_by(recurring_templates.c.id)
        ).scalars().all()

    report = SweepReport()
    if not template_ids:
        logger.info("No active recurring templates to extend")
        return report

    for template_id in template_ids:
        try:
            with engine.begin() as conn:
                result = _extend_template(conn, template_id, threshold, runway_months)
        except Exception as exc:
            logger.exception("Failed to extend forecasts for template %s", template_id)
            result = TemplateSweepResult(template_id=template_id, success=False, error=str(exc))
        report.results.append(result)

    logger.info(
        "Extended forecasts for %d/%d templates (%d new forecasts, %d failures)",
        report.extended_count,
        report.template_count,
        report.created_count,
        len(report.failures),
    )
    return report


def mature_due_forecasts(conn: Connection, today: Optional[date] = None) -> int:
    """Turn every forecast dated on or before today into a real transaction."""
    today = today or utc_today()
    result = conn.execute(
        update(transactions)
        .where(
            transactions.c.is_forecast.is_(True),
            transactions.c.forecast_date <= today,
        )
        .values(is_forecast=False, updated_at=func.now())
    )
    logger.info("Converted %d forecasts to real expenses", result.rowcount)
    return result.rowcount


def update_forecast_occurrence(
    conn: Connection, user_id: str, forecast_id: int, changes: ForecastChanges
) -> None:
    values = changes.as_values()
    result = conn.execute(
        update(transactions)
        .where(
            transactions.c.id == forecast_id,
            transactions.c.user_id == user_id,
            transactions.c.is_forecast.is_(True),
        )
        .values(updated_at=func.now(), **values)
    )
    if result.rowcount == 0:
        raise RecordNotFound("Forecast not found.")


def update_future_forecasts(
    conn: Connection,
    user_id: str,
    template_id: int,
    from_date: date,
    changes: ForecastChanges,
) -> int:
    values = changes.as_values()
    result = conn.execute(
        update(transactions)
        .where(
            transactions.c.user_id == user_id,
            transactions.c.recurring_expense_id == template_id,
            transactions.c.is_forecast.is_(True),
            transactions.c.forecast_date >= from_date,
        )
        .values(updated_at=func.now(), **values)
    )
    return result.rowcount


def bulk_delete_forecasts(conn: Connection, user_id: str, ids: Iterable[int]) -> int:
    ids = list(ids)
    if not ids:
        return 0
    return _delete_forecasts(
        conn,
        transactions.c.user_id == user_id,
        transactions.c.id.in_(ids),
        transactions.c.is_forecast.is_(True),
    )


def confirm_forecast(conn: Connection, user_id: str, forecast_id: int) -> None:
    if bulk_confirm_forecasts(conn, user_id, [forecast_id]) == 0:
        raise RecordNotFound("Forecast not found or already confirmed.")


def bulk_confirm_forecasts(conn: Connection, user_id: str, ids: Iterable[int]) -> int:
    ids = list(ids)
    if not ids:
        return 0
    result = conn.execute(
        update(transactions)
        .where(
            transactions.c.user_id == user_id,
            transactions.c.id.in_(ids),
            transactions.c.is_forecast.is_(True),
        )
        .values(is_forecast=False, updated_at=func.now())
    )
    return result.rowcount


def upcoming_forecasts(
    conn: Connection, user_id: str, today: Optional[date] = None, days: int = 30
) -> list[dict]:
    today = today or utc_today()
    stmt = forecast_select().where(
        transactions.c.user_id == user_id,
        transactions.c.is_forecast.is_(True),
        transactions.c.forecast_date >= today,
        transactions.c.forecast_date <= today + timedelta(days=days),
    )
    return [dict(row) for row in conn.execute(stmt).mappings()]


def forecasts_for_template(conn: Connection, user_id: str, template_id: int) -> list[dict]:
    _fetch_template_row(conn, user_id, template_id)
    stmt = forecast_select().where(
        transactions.c.user_id == user_id,
        transactions.c.recurring_expense_id == template_id,
        transactions.c.is_forecast.is_(True),
    )
    return [dict(row) for row in conn.execute(stmt).mappings()]


def list_templates(
    conn: Connection, user_id: str, include_inactive: bool = False
) -> list[RecurringTemplate]:
    stmt = (
        select(recurring_templates)
        .where(recurring_templates.c.user_id == user_id)
        .order_by(recurring_templates.c.created_at.desc(), recurring_templates.c.id.desc())
    )
    if not include_inactive:
        stmt = stmt.where(recurring_templates.c.is_active.is_(True))
    return [RecurringTemplate.from_row(row) for row in conn.execute(stmt).mappings()]


def get_template(conn: Connection, user_id: str, template_id: int) -> RecurringTemplate:
    return RecurringTemplate.from_row(_fetch_template_row(conn, user_id, template_id))


def _extend_template(
    conn: Connection, template_id: int, threshold: date, runway_months: int
) -> TemplateSweepResult:
    row = conn.execute(
        select(recurring_templates).where(recurring_templates.c.id == template_id)
    ).mappings().first()
    if row is None:
        return TemplateSweepResult(template_id=template_id, success=True)
    template = RecurringTemplate.from_row(row)
    if not has_valid_anchor(template):
        logger.warning(
            "Skipping recurring template %s: invalid frequency configuration "
            "(frequency=%r, day_of_month=%r, day_of_week=%r)",
            template.id,
            template.frequency,
            template.day_of_month,
            template.day_of_week,
        )
        return TemplateSweepResult(
            template_id=template_id,
            success=False,
            error="Invalid frequency configuration.",
        )

    # Matured records keep their forecast_date, so they still count here.
    latest = conn.execute(
        select(func.max(transactions.c.forecast_date)).where(
            transactions.c.recurring_expense_id == template_id
        )
    ).scalar_one_or_none()
    if latest is not None and latest >= threshold:
        return TemplateSweepResult(template_id=template_id, success=True)

    step = max(runway_months, 1)
    cursor = latest or template.start_date
    forecasts = []
    for _ in range(_months_between(cursor, threshold) // step + 2):
        batch = generate_forecasts(template, cursor, step)
        if not batch:
            break
        forecasts.extend(batch)
        cursor = batch[-1].forecast_date
        if cursor >= threshold:
            break
    if forecasts:
        conn.execute(insert(transactions), [record.as_row() for record in forecasts])
    return TemplateSweepResult(
        template_id=template_id, success=True, created_count=len(forecasts)
    )


def _months_between(start: date, end: date) -> int:
    return max((end.year - start.year) * 12 + end.month - start.month, 0)


def _delete_forecasts(conn: Connection, *conditions) -> int:
    doomed = select(transactions.c.id).where(and_(*conditions))
    conn.execute(
        delete(reconciliation_dismissals).where(
            reconciliation_dismissals.c.forecast_id.in_(doomed)
        )
    )
    result = conn.execute(delete(transactions).where(and_(*conditions)))
    return result.rowcount


def _fetch_template_row(conn: Connection, user_id: str, template_id: int):
    row = conn.execute(
        select(recurring_templates).where(
            recurring_templates.c.id == template_id,
            recurring_templates.c.user_id == user_id,
        )
    ).mappings().first()
    if row is None:
        raise RecordNotFound("Recurring expense not found.")
    return row


def forecast_select():
    joined = transactions.outerjoin(
        categories, categories.c.id == transactions.c.category_id
    ).outerjoin(subcategories, subcategories.c.id == transactions.c.subcategory_id)
    return (
        select(
            transactions,
            categories.c.name.label("category_name"),
            categories.c.color.label("category_color"),
            categories.c.icon.label("category_icon"),
            subcategories.c.name.label("subcategory_name"),
        )
        .select_from(joined)
        .order_by(transactions.c.forecast_date.asc(), transactions.c.id.asc())
    )
