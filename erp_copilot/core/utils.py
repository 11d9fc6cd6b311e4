"""
Small shared utilities: timing and calendar arithmetic.
"""
from __future__ import annotations

import calendar
import datetime as dt
import time
from contextlib import contextmanager
from typing import Generator
from zoneinfo import ZoneInfo

from erp_copilot.core.config import get_settings


@contextmanager
def timer() -> Generator[dict, None, None]:
    """Context manager that records elapsed wall-clock milliseconds."""
    result: dict = {}
    start = time.perf_counter()
    try:
        yield result
    finally:
        result["elapsed_ms"] = int((time.perf_counter() - start) * 1000)


def business_today() -> dt.date:
    """Today's date in the configured business timezone."""
    tz = ZoneInfo(get_settings().business_timezone)
    return dt.datetime.now(tz).date()


def last_day_of_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def is_month_end(day: dt.date) -> bool:
    return day.day == last_day_of_month(day.year, day.month)


def month_bounds(year: int, month: int) -> tuple[dt.date, dt.date]:
    """First and last day of the given calendar month."""
    return dt.date(year, month, 1), dt.date(year, month, last_day_of_month(year, month))


def shift_months(day: dt.date, months: int) -> dt.date:
    """Move *day* by *months* calendar months, clamping to the month length.

    A month-end date stays a month-end date (31 Oct -> 30 Sep -> 31 Aug).
    """
    index = day.year * 12 + (day.month - 1) + months
    year, month = divmod(index, 12)
    month += 1
    last = last_day_of_month(year, month)
    if is_month_end(day):
        return dt.date(year, month, last)
    return dt.date(year, month, min(day.day, last))


def period_label(start: dt.date, end: dt.date) -> str:
    """Readable name for a closed date window ("March 2024", "2024", or ISO dates)."""
    if start.day == 1 and is_month_end(end) and start.year == end.year:
        if start.month == end.month:
            return start.strftime("%B %Y")
        if start.month == 1 and end.month == 12:
            return str(start.year)
        return f"{start.strftime('%B')} - {end.strftime('%B %Y')}"
    if start == end:
        return start.isoformat()
    return f"{start.isoformat()} to {end.isoformat()}"
