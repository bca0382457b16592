"""Date manipulation utilities"""

import calendar
from datetime import date, datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes (e.g. read back from SQLite) as UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def end_of_month(year: int, month: int) -> date:
    return date(year, month, calendar.monthrange(year, month)[1])


def add_months(from_date: date, months: int, anchor_day: Optional[int] = None) -> date:
    """
    Shift a date by whole months, clamping to the target month's last day.

    The day kept is `anchor_day` when given, otherwise the day of `from_date`.

    Example:
        add_months(date(2024, 1, 31), 1) -> 2024-02-29
        add_months(date(2024, 2, 29), 1, anchor_day=31) -> 2024-03-31
    """
    month_index = from_date.month - 1 + months
    year = from_date.year + month_index // 12
    month = month_index % 12 + 1
    day = anchor_day if anchor_day is not None else from_date.day
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day, last_day))
