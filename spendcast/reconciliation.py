"""
Statement reconciliation.

Imported statement rows are compared against pending forecasts so the user
can decide, per row, whether the bank line *is* the forecast (merge) or a
separate payment (keep both). Nothing is merged without that decision.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import List, Optional, Sequence

from pydantic import BaseModel
from sqlalchemy import func, insert, select, update
from sqlalchemy.engine import Connection

from spendcast.db import reconciliation_dismissals, transactions
from spendcast.forecast_lifecycle import RecordNotFound, forecast_select
from spendcast.statement_parser import ImportRow

logger = logging.getLogger(__name__)

MATCH_WINDOW_DAYS = 1
AMOUNT_TOLERANCE = Decimal("0.10")
MAX_CANDIDATES = 5


@dataclass(frozen=True)
class ForecastMatch:
    row_index: int
    candidates: List[dict] = field(default_factory=list)


class MergePayload(BaseModel):
    description: str
    amount: Decimal
    date: date
    raw_source: str
    category_id: int | None = None
    subcategory_id: int | None = None
    category_confidence: Decimal | None = None
    merchant_name: str | None = None

    @classmethod
    def from_import_row(cls, row: ImportRow) -> "MergePayload":
        return cls(
            description=row.description,
            amount=row.amount,
            date=row.date,
            raw_source=row.raw or row_fingerprint(row),
        )


def row_fingerprint(row: ImportRow) -> str:
    key = f"{row.date.isoformat()}|{row.description.strip().upper()}|{Decimal(row.amount):.2f}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def amount_within_tolerance(forecast_amount: Decimal, import_amount: Decimal) -> bool:
    target = abs(Decimal(import_amount))
    candidate = abs(Decimal(forecast_amount))
    return target * (1 - AMOUNT_TOLERANCE) <= candidate <= target * (1 + AMOUNT_TOLERANCE)


def find_matching_forecasts(conn: Connection, user_id: str, row: ImportRow) -> list[dict]:
    """Pending forecasts that plausibly are the same payment as ``row``.

    A candidate lies within one day of the row's date and within 10% of its
    absolute amount. At most five are returned, in storage order.
    """
    if not row.amount:
        return []

    window = timedelta(days=MATCH_WINDOW_DAYS)
    dismissed = select(reconciliation_dismissals.c.forecast_id).where(
        reconciliation_dismissals.c.user_id == user_id,
        reconciliation_dismissals.c.row_fingerprint == row_fingerprint(row),
    )
    stmt = (
        forecast_select()
        .where(
            transactions.c.user_id == user_id,
            transactions.c.is_forecast.is_(True),
            transactions.c.forecast_date >= row.date - window,
            transactions.c.forecast_date <= row.date + window,
            transactions.c.id.not_in(dismissed),
        )
        .order_by(None)
        .order_by(transactions.c.id.asc())
    )
    matches = []
    for candidate in conn.execute(stmt).mappings():
        if amount_within_tolerance(candidate["amount"], row.amount):
            matches.append(dict(candidate))
            if len(matches) >= MAX_CANDIDATES:
                break
    return matches


def check_for_forecast_matches(
    conn: Connection, user_id: str, rows: Sequence[ImportRow]
) -> list[ForecastMatch]:
    matches: list[ForecastMatch] = []
    for index, row in enumerate(rows):
        candidates = find_matching_forecasts(conn, user_id, row)
        if candidates:
            matches.append(ForecastMatch(row_index=index, candidates=candidates))
    return matches


def confirm_merge(
    conn: Connection,
    user_id: str,
    forecast_id: Optional[int],
    merge: MergePayload,
) -> None:
    """Overwrite a pending forecast with the bank's data and mature it.

    The record keeps its id, forecast_date and any category the user already
    set, unless the merge supplies a new one.
    """
    if forecast_id is None:
        raise ValueError("A forecast must be selected to merge.")
    description = merge.description.strip()
    if not description:
        raise ValueError("Description required.")

    values = {
        "description": description,
        "amount": merge.amount,
        "date": merge.date,
        "raw_source": merge.raw_source,
        "statement_month": merge.date.month,
        "statement_year": merge.date.year,
        "is_forecast": False,
        "updated_at": func.now(),
    }
    if merge.category_id is not None:
        values["category_id"] = merge.category_id
    if merge.subcategory_id is not None:
        values["subcategory_id"] = merge.subcategory_id
    if merge.category_confidence is not None:
        values["category_confidence"] = merge.category_confidence
    if merge.merchant_name is not None:
        values["merchant_name"] = merge.merchant_name

    result = conn.execute(
        update(transactions)
        .where(
            transactions.c.id == forecast_id,
            transactions.c.user_id == user_id,
            transactions.c.is_forecast.is_(True),
        )
        .values(**values)
    )
    if result.rowcount == 0:
        raise RecordNotFound("Forecast not found or already confirmed.")
    logger.info("Merged imported row into forecast %s", forecast_id)


def keep_both(conn: Connection, user_id: str, forecast_id: int, row: ImportRow) -> None:
    """Remember that ``row`` is not ``forecast_id`` so it is not offered again.

    The forecast itself stays pending; importing the row is up to the caller.
    """
    exists = conn.execute(
        select(transactions.c.id).where(
            transactions.c.id == forecast_id,
            transactions.c.user_id == user_id,
            transactions.c.is_forecast.is_(True),
        )
    ).first()
    if not exists:
        raise RecordNotFound("Forecast not found or already confirmed.")

    fingerprint = row_fingerprint(row)
    already = conn.execute(
        select(reconciliation_dismissals.c.id).where(
            reconciliation_dismissals.c.forecast_id == forecast_id,
            reconciliation_dismissals.c.row_fingerprint == fingerprint,
        )
    ).first()
    if already:
        return
    conn.execute(
        insert(reconciliation_dismissals).values(
            user_id=user_id,
            forecast_id=forecast_id,
            row_fingerprint=fingerprint,
        )
    )
