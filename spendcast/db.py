from __future__ import annotations

import logging

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    UniqueConstraint,
    create_engine,
    func,
    insert,
    select,
)
from sqlalchemy.engine import Connection, Engine

logger = logging.getLogger(__name__)

metadata = MetaData()

OTHER_CATEGORY = "Other"
UNCATEGORIZED_SUBCATEGORY = "Uncategorized"

DEFAULT_CATEGORIES = [
    {
        "name": "Food",
        "color": "#f59e0b",
        "hint": "Restaurants, grocery stores, cafes, food delivery",
        "icon": "UtensilsCrossed",
        "subcategories": ["Groceries", "Restaurants", "Delivery", "Other"],
    },
    {
        "name": "Transport",
        "color": "#3b82f6",
        "hint": "Gas, public transit, ride-sharing, parking",
        "icon": "Car",
        "subcategories": ["Fuel", "Public Transit", "Ride-sharing", "Parking", "Other"],
    },
    {
        "name": "Shopping",
        "color": "#ec4899",
        "hint": "Retail, online shopping, clothing, electronics",
        "icon": "ShoppingBag",
        "subcategories": ["Clothing", "Electronics", "Online", "Other"],
    },
    {
        "name": "Entertainment",
        "color": "#8b5cf6",
        "hint": "Movies, streaming, games, events",
        "icon": "Tv",
        "subcategories": ["Streaming", "Games", "Events", "Other"],
    },
    {
        "name": "Bills",
        "color": "#ef4444",
        "hint": "Utilities, phone, internet, insurance",
        "icon": "FileText",
        "subcategories": ["Utilities", "Phone", "Internet", "Insurance", "Rent", "Other"],
    },
    {
        "name": "Health",
        "color": "#10b981",
        "hint": "Medical, pharmacy, fitness, wellness",
        "icon": "Heart",
        "subcategories": ["Pharmacy", "Medical", "Fitness", "Other"],
    },
    {
        "name": OTHER_CATEGORY,
        "color": "#6b7280",
        "hint": "Miscellaneous expenses",
        "icon": "MoreHorizontal",
        "subcategories": [UNCATEGORIZED_SUBCATEGORY, "Other"],
    },
]

categories = Table(
    "categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), unique=True, nullable=False),
    Column("color", String(7), nullable=False, server_default="#6b7280"),
    Column("hint", String(500)),
    Column("icon", String(50)),
    Column("is_default", Boolean, nullable=False, server_default="0"),
    Column("order", Integer, nullable=False, server_default="0"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

subcategories = Table(
    "subcategories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("category_id", Integer, ForeignKey("categories.id"), nullable=False),
    Column("name", String(255), nullable=False),
    UniqueConstraint("category_id", "name", name="uq_subcategories_category_name"),
)

recurring_templates = Table(
    "recurring_templates",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(255), nullable=False, index=True),
    Column("description", String(500), nullable=False),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("category_id", Integer, ForeignKey("categories.id")),
    Column("subcategory_id", Integer, ForeignKey("subcategories.id")),
    Column("frequency", String(20), nullable=False),
    Column("start_date", Date, nullable=False),
    Column("end_date", Date),
    Column("day_of_month", Integer),
    Column("day_of_week", Integer),
    Column("forecast_months", Integer, nullable=False),
    Column("merchant_name", String(255)),
    Column("tags", JSON),
    Column("is_active", Boolean, nullable=False, server_default="1"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(255), nullable=False, index=True),
    Column("description", String(500), nullable=False),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("date", Date, nullable=False),
    Column("category_id", Integer, ForeignKey("categories.id")),
    Column("subcategory_id", Integer, ForeignKey("subcategories.id")),
    Column("category_confidence", Numeric(4, 3)),
    Column("merchant_name", String(255)),
    Column("statement_month", Integer),
    Column("statement_year", Integer),
    Column("raw_source", String(2000)),
    Column("is_recurring", Boolean, nullable=False, server_default="0"),
    Column("notes", String(500)),
    Column("recurring_expense_id", Integer, index=True),
    Column("is_forecast", Boolean, nullable=False, server_default="0"),
    Column("forecast_date", Date, index=True),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
)

classification_rules = Table(
    "classification_rules",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(255), nullable=False),
    Column("pattern", String(500), nullable=False),
    Column("pattern_type", String(20), nullable=False),
    Column("category", String(255), nullable=False),
    Column("subcategory", String(255)),
    Column("match_count", Integer, nullable=False, server_default="1"),
    Column("last_used_at", DateTime),
    UniqueConstraint("user_id", "pattern", "category", name="uq_rules_user_pattern_category"),
)

reconciliation_dismissals = Table(
    "reconciliation_dismissals",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(255), nullable=False),
    Column("forecast_id", Integer, ForeignKey("transactions.id"), nullable=False),
    Column("row_fingerprint", String(64), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("forecast_id", "row_fingerprint", name="uq_dismissals_forecast_row"),
)


def build_engine(database_url: str) -> Engine:
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
    return create_engine(database_url, connect_args=connect_args)


def seed_default_categories(conn: Connection) -> int:
    """Insert any missing default categories and subcategories.

    Returns the number of rows inserted; re-running on a seeded database
    inserts nothing.
    """
    inserted = 0
    existing = {
        row["name"]: row["id"]
        for row in conn.execute(select(categories.c.id, categories.c.name)).mappings()
    }
    for order, entry in enumerate(DEFAULT_CATEGORIES, start=1):
        category_id = existing.get(entry["name"])
        if category_id is None:
            category_id = conn.execute(
                insert(categories)
                .values(
                    name=entry["name"],
                    color=entry["color"],
                    hint=entry["hint"],
                    icon=entry["icon"],
                    is_default=True,
                    order=order,
                )
                .returning(categories.c.id)
            ).scalar_one()
            inserted += 1

        present = set(
            conn.execute(
                select(subcategories.c.name).where(subcategories.c.category_id == category_id)
            ).scalars()
        )
        missing = [name for name in entry["subcategories"] if name not in present]
        if missing:
            conn.execute(
                insert(subcategories),
                [{"category_id": category_id, "name": name} for name in missing],
            )
            inserted += len(missing)

    if inserted:
        logger.info("Seeded %d default category rows", inserted)
    return inserted


def init_db(engine: Engine) -> None:
    metadata.create_all(engine)
    with engine.begin() as conn:
        seed_default_categories(conn)
