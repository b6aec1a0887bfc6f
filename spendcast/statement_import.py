from __future__ import annotations

import logging
from typing import Optional, Sequence

from sqlalchemy import insert
from sqlalchemy.engine import Connection

from spendcast.categorization import (
    CategoryIndex,
    Categorizer,
    RuleBasedCategorizer,
    categorize_or_fallback,
)
from spendcast.db import transactions
from spendcast.statement_parser import ImportRow

logger = logging.getLogger(__name__)


def commit_import(
    conn: Connection,
    user_id: str,
    rows: Sequence[ImportRow],
    categorizer: Optional[Categorizer] = None,
    statement_month: Optional[int] = None,
    statement_year: Optional[int] = None,
) -> int:
    """Insert statement rows as real transactions.

    Rows the user merged into forecasts must be left out by the caller.
    Returns the number of transactions created.
    """
    if not rows:
        return 0

    if categorizer is None:
        categorizer = RuleBasedCategorizer(conn, user_id)
    index = CategoryIndex.load(conn)

    insert_rows = []
    for row in rows:
        description = row.description.strip()
        if not description:
            raise ValueError("Every imported row needs a description.")
        labels = categorize_or_fallback(categorizer, description, row.amount)
        resolved = index.resolve_with_fallback(labels.category, labels.subcategory)
        insert_rows.append(
            {
                "user_id": user_id,
                "description": description,
                "amount": row.amount,
                "date": row.date,
                "category_id": resolved.category_id,
                "subcategory_id": resolved.subcategory_id,
                "category_confidence": labels.confidence,
                "merchant_name": labels.merchant_name,
                "statement_month": statement_month or row.date.month,
                "statement_year": statement_year or row.date.year,
                "raw_source": row.raw,
                "is_recurring": labels.is_recurring,
                "notes": labels.notes,
                "is_forecast": False,
            }
        )

    conn.execute(insert(transactions), insert_rows)
    logger.info("Imported %d transactions for user %s", len(insert_rows), user_id)
    return len(insert_rows)
