"""
Calendar chunking for the driver layer.

Upstream rejects start_at filters spanning more than ~31 days, so a date
range is cut into contiguous half-open windows that never cross a month
boundary and never exceed `max_days`.
"""

from datetime import date, datetime, time, timedelta
from typing import List, Union

from .models import FilterWindow
from .normalize import parse_timestamp

DEFAULT_MAX_WINDOW_DAYS = 31


def parse_date(value: str) -> date:
    """Parse YYYY-MM-DD (argparse type)."""
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        raise ValueError(f"Invalid date {value!r}, expected YYYY-MM-DD") from None


def parse_moment(value: str) -> datetime:
    """Parse a date or ISO 8601 timestamp into naive UTC."""
    if len(value) == 10:
        return datetime.combine(parse_date(value), time.min)
    return parse_timestamp(value)


def _as_datetime(value: Union[date, datetime]) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.combine(value, time.min)


def _next_month(moment: datetime) -> datetime:
    if moment.month == 12:
        return datetime(moment.year + 1, 1, 1)
    return datetime(moment.year, moment.month + 1, 1)


def chunk_windows(
    start: Union[date, datetime],
    end: Union[date, datetime],
    max_days: int = DEFAULT_MAX_WINDOW_DAYS,
) -> List[FilterWindow]:
    """
    Split [start, end) into windows for one orchestrator run each.

    Dates are taken as midnight UTC, so an end date is exclusive: pass the
    day after the last day you want covered.
    """
    if max_days < 1:
        raise ValueError("max_days must be at least 1")
    start_at = _as_datetime(start)
    end_at = _as_datetime(end)
    if start_at >= end_at:
        raise ValueError(f"Empty range: {start_at.isoformat()} >= {end_at.isoformat()}")

    windows = []
    cursor = start_at
    span = timedelta(days=max_days)
    while cursor < end_at:
        boundary = min(_next_month(cursor), cursor + span, end_at)
        windows.append(FilterWindow(cursor, boundary))
        cursor = boundary
    return windows
