from __future__ import annotations

from calendar import monthrange
from datetime import date, datetime, timedelta, timezone

DAYS_PER_WEEK = 7
WEEKDAY_NAMES = (
    "Sunday",
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
)


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def sunday_weekday(value: date) -> int:
    """Weekday of ``value`` with 0 = Sunday ... 6 = Saturday."""
    return (value.weekday() + 1) % DAYS_PER_WEEK


def add_months(value: date, months: int, anchor_day: int | None = None) -> date:
    total_month = value.month - 1 + months
    year = value.year + total_month // 12
    month = total_month % 12 + 1
    last_day = monthrange(year, month)[1]
    day = min(anchor_day if anchor_day is not None else value.day, last_day)
    return date(year, month, day)


def next_monthly(base: date, day_of_month: int) -> date:
    """Same anchor day in the following month, clamped to the month length.

    Day 31 lands on Feb 28 (Feb 29 in leap years), day 30 on Apr 30, etc.
    """
    return add_months(base, 1, anchor_day=day_of_month)


def next_weekly(base: date, day_of_week: int) -> date:
    """Next date strictly after ``base`` falling on ``day_of_week``.

    ``day_of_week`` uses 0 = Sunday. A base already on that weekday moves a
    full week forward.
    """
    days_to_add = day_of_week - sunday_weekday(base)
    if days_to_add <= 0:
        days_to_add += DAYS_PER_WEEK
    return base + timedelta(days=days_to_add)


def format_frequency(
    frequency: str,
    day_of_month: int | None = None,
    day_of_week: int | None = None,
) -> str:
    if frequency == "monthly" and day_of_month:
        return f"Monthly on the {day_of_month}{_ordinal_suffix(day_of_month)}"
    if frequency == "weekly" and day_of_week is not None and 0 <= day_of_week <= 6:
        return f"Weekly on {WEEKDAY_NAMES[day_of_week]}"
    return frequency


def _ordinal_suffix(day: int) -> str:
    if 11 <= day <= 13:
        return "th"
    return {1: "st", 2: "nd", 3: "rd"}.get(day % 10, "th")
