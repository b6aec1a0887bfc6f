"""
Transaction categorization.

The categorization oracle is pluggable: anything implementing ``Categorizer``
can label a statement row. The bundled ``RuleBasedCategorizer`` learns
merchant patterns from the user's already-categorized transactions, without
using AI/ML. Whatever the oracle answers, names are resolved against the
category index, and unknown names fall back to Other/Uncategorized.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional, Protocol, Union

from sqlalchemy import and_, func, insert, select, update
from sqlalchemy.engine import Connection

from spendcast.db import (
    OTHER_CATEGORY,
    UNCATEGORIZED_SUBCATEGORY,
    categories,
    classification_rules,
    subcategories,
    transactions,
)

logger = logging.getLogger(__name__)

PATTERN_CONFIDENCE = {
    "exact": Decimal("0.95"),
    "starts_with": Decimal("0.75"),
    "contains": Decimal("0.50"),
}


@dataclass(frozen=True)
class CategorizationResult:
    category: str
    subcategory: str
    confidence: Decimal
    merchant_name: Optional[str] = None
    is_recurring: bool = False
    notes: Optional[str] = None


FALLBACK_RESULT = CategorizationResult(
    category=OTHER_CATEGORY,
    subcategory=UNCATEGORIZED_SUBCATEGORY,
    confidence=Decimal("0"),
    notes="Failed to categorize",
)


class Categorizer(Protocol):
    def categorize(self, description: str, amount: Decimal) -> CategorizationResult:
        ...


class CategorizerUnavailable(RuntimeError):
    """Raised when a categorizer cannot produce a label."""


@dataclass(frozen=True)
class CategoryMatch:
    category_id: int
    subcategory_id: int
    category_name: str
    subcategory_name: str


@dataclass(frozen=True)
class CategoryNotFound:
    name: str
    subcategory: Optional[str] = None


CategoryLookup = Union[CategoryMatch, CategoryNotFound]


@dataclass(frozen=True)
class _Subcategory:
    id: int
    name: str


@dataclass(frozen=True)
class _Category:
    id: int
    name: str
    subcategories: tuple


class CategoryIndex:
    """In-memory view of categories and their subcategories."""

    def __init__(self, entries: Iterable[_Category]) -> None:
        self._by_name = {entry.name: entry for entry in entries}
        self._by_id = {entry.id: entry for entry in self._by_name.values()}

    @classmethod
    def load(cls, conn: Connection) -> "CategoryIndex":
        category_rows = conn.execute(
            select(categories.c.id, categories.c.name).order_by(categories.c.order, categories.c.id)
        ).mappings().all()
        sub_rows = conn.execute(
            select(subcategories.c.id, subcategories.c.category_id, subcategories.c.name)
            .order_by(subcategories.c.id)
        ).mappings().all()
        grouped: dict[int, list[_Subcategory]] = {}
        for row in sub_rows:
            grouped.setdefault(row["category_id"], []).append(
                _Subcategory(id=row["id"], name=row["name"])
            )
        return cls(
            _Category(id=row["id"], name=row["name"], subcategories=tuple(grouped.get(row["id"], [])))
            for row in category_rows
        )

    def resolve(self, category_name: str, subcategory_name: Optional[str]) -> CategoryLookup:
        category = self._by_name.get(category_name)
        if category is None:
            return CategoryNotFound(name=category_name, subcategory=subcategory_name)
        for sub in category.subcategories:
            if sub.name == subcategory_name:
                return CategoryMatch(category.id, sub.id, category.name, sub.name)
        return CategoryNotFound(name=category_name, subcategory=subcategory_name)

    def resolve_with_fallback(
        self, category_name: str, subcategory_name: Optional[str]
    ) -> CategoryMatch:
        """Resolve names to ids, falling back the way imports expect.

        Unknown category -> Other/Uncategorized. Known category with an
        unknown subcategory -> that category's "Other" subcategory, else its
        first subcategory.
        """
        found = self.resolve(category_name, subcategory_name)
        if isinstance(found, CategoryMatch):
            return found

        category = self._by_name.get(category_name)
        if category is None or not category.subcategories:
            fallback = self.resolve(OTHER_CATEGORY, UNCATEGORIZED_SUBCATEGORY)
            if isinstance(fallback, CategoryNotFound):
                raise LookupError("Default categories are not seeded.")
            return fallback

        for sub in category.subcategories:
            if sub.name == OTHER_CATEGORY:
                return CategoryMatch(category.id, sub.id, category.name, sub.name)
        first = category.subcategories[0]
        return CategoryMatch(category.id, first.id, category.name, first.name)

    def validate_ids(self, category_id: Optional[int], subcategory_id: Optional[int]) -> None:
        if category_id is None:
            if subcategory_id is not None:
                raise ValueError("Subcategory requires a category.")
            return
        category = self._by_id.get(category_id)
        if category is None:
            raise ValueError("Category not found.")
        if subcategory_id is not None and subcategory_id not in {
            sub.id for sub in category.subcategories
        }:
            raise ValueError("Subcategory does not belong to category.")


def categorize_or_fallback(
    categorizer: Optional[Categorizer], description: str, amount: Decimal
) -> CategorizationResult:
    if categorizer is None:
        return FALLBACK_RESULT
    try:
        return categorizer.categorize(description, amount)
    except CategorizerUnavailable as exc:
        logger.info("%s Using fallback category.", exc)
        return FALLBACK_RESULT
    except Exception:
        logger.warning("Categorizer failed for %r; using fallback", description, exc_info=True)
        return FALLBACK_RESULT


def extract_merchant_patterns(description: str) -> list[tuple[str, str]]:
    """
    Extract merchant patterns from a transaction description.

    Returns list of (pattern, pattern_type) tuples in order of specificity:
    1. Exact match (full description)
    2. Starts-with match (merchant name - first word or two)
    3. Contains match (first significant keyword)
    """
    if not description or not description.strip():
        return []

    patterns = []
    cleaned = description.strip().upper()
    patterns.append((cleaned, "exact"))

    merchant_match = re.match(r"^([A-Z0-9]+(?:\s+[A-Z0-9]+)?)", cleaned)
    merchant_name = merchant_match.group(1).strip() if merchant_match else None
    if merchant_name and merchant_name != cleaned:
        patterns.append((merchant_name, "starts_with"))

    words = re.findall(r"[A-Z0-9]{3,}", cleaned)
    if words:
        keyword = words[0]
        if keyword != cleaned and keyword != merchant_name:
            patterns.append((keyword, "contains"))

    return patterns


class RuleBasedCategorizer:
    """Categorizer backed by learned ``classification_rules`` rows.

    Tries patterns from most to least specific; when several rules share a
    pattern the one with the highest match_count wins. Raises
    ``CategorizerUnavailable`` when nothing matches so callers fall back.
    """

    def __init__(self, conn: Connection, user_id: str) -> None:
        self._conn = conn
        self._user_id = user_id

    def categorize(self, description: str, amount: Decimal) -> CategorizationResult:
        for pattern, pattern_type in extract_merchant_patterns(description):
            row = self._conn.execute(
                select(
                    classification_rules.c.category,
                    classification_rules.c.subcategory,
                )
                .where(
                    and_(
                        classification_rules.c.user_id == self._user_id,
                        classification_rules.c.pattern == pattern,
                        classification_rules.c.pattern_type == pattern_type,
                    )
                )
                .order_by(classification_rules.c.match_count.desc())
                .limit(1)
            ).mappings().first()
            if row:
                return CategorizationResult(
                    category=row["category"],
                    subcategory=row["subcategory"] or OTHER_CATEGORY,
                    confidence=PATTERN_CONFIDENCE[pattern_type],
                    merchant_name=pattern if pattern_type == "starts_with" else None,
                )
        raise CategorizerUnavailable(f"No learned pattern for {description!r}.")

    def learn(self, description: str, category: str, subcategory: Optional[str]) -> int:
        learned = 0
        for pattern, pattern_type in extract_merchant_patterns(description):
            upsert_classification_rule(
                self._conn, self._user_id, pattern, pattern_type, category, subcategory
            )
            learned += 1
        return learned


def upsert_classification_rule(
    conn: Connection,
    user_id: str,
    pattern: str,
    pattern_type: str,
    category: str,
    subcategory: Optional[str] = None,
) -> None:
    """Insert a rule, or bump match_count when (user, pattern, category) exists."""
    if not pattern or not category:
        return

    now = func.now()
    result = conn.execute(
        update(classification_rules)
        .where(
            classification_rules.c.user_id == user_id,
            classification_rules.c.pattern == pattern,
            classification_rules.c.category == category,
        )
        .values(
            match_count=classification_rules.c.match_count + 1,
            last_used_at=now,
            pattern_type=pattern_type,
            subcategory=subcategory,
        )
    )
    if result.rowcount == 0:
        conn.execute(
            insert(classification_rules).values(
                user_id=user_id,
                pattern=pattern,
                pattern_type=pattern_type,
                category=category,
                subcategory=subcategory,
                match_count=1,
                last_used_at=now,
            )
        )


def learn_from_transactions(
    conn: Connection,
    user_id: str,
    transaction_ids: Optional[list[int]] = None,
) -> int:
    """
    Learn classification patterns from the user's categorized transactions.

    Transactions still in the Other/Uncategorized bucket and pending
    forecasts teach nothing.

    Args:
        conn: Database connection
        user_id: Owner of the transactions
        transaction_ids: Optional list of specific transaction IDs to learn from.
                        If None, learns from all of the user's categorized
                        transactions.

    Returns:
        Number of patterns learned
    """
    query = (
        select(
            transactions.c.description,
            categories.c.name.label("category"),
            subcategories.c.name.label("subcategory"),
        )
        .select_from(
            transactions.join(categories, categories.c.id == transactions.c.category_id)
            .outerjoin(subcategories, subcategories.c.id == transactions.c.subcategory_id)
        )
        .where(
            transactions.c.user_id == user_id,
            transactions.c.is_forecast.is_(False),
        )
    )
    if transaction_ids is not None:
        query = query.where(transactions.c.id.in_(transaction_ids))

    categorizer = RuleBasedCategorizer(conn, user_id)
    patterns_learned = 0
    for row in conn.execute(query).mappings():
        if (row["category"], row["subcategory"]) == (OTHER_CATEGORY, UNCATEGORIZED_SUBCATEGORY):
            continue
        patterns_learned += categorizer.learn(row["description"], row["category"], row["subcategory"])
    return patterns_learned
