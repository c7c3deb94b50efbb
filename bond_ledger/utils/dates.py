"""Half-open date range helpers. Every range here is [start, end)."""

import calendar
from datetime import date, timedelta
from typing import Iterator, List, Tuple


def iter_dates(start: date, end: date) -> Iterator[date]:
    """Yield each date from start (inclusive) to end (exclusive)."""
    current = start
    while current < end:
        yield current
        current += timedelta(days=1)


def nights(start: date, end: date) -> int:
    return (end - start).days


def add_months(d: date, months: int) -> date:
    """Same day-of-month `months` later, clamped to the month's last day."""
    month_index = d.month - 1 + months
    year = d.year + month_index // 12
    month = month_index % 12 + 1
    day = min(d.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def month_windows(start: date, end: date) -> Iterator[Tuple[date, date]]:
    """Split [start, end) on calendar-month boundaries."""
    current = start
    while current < end:
        if current.month == 12:
            next_month = date(current.year + 1, 1, 1)
        else:
            next_month = date(current.year, current.month + 1, 1)
        window_end = min(next_month, end)
        yield current, window_end
        current = window_end


def compress_dates(dates: List[date]) -> List[Tuple[date, date]]:
    """
    Collapse a sorted list of dates into maximal half-open runs.

    [Jan 1, Jan 2, Jan 5] -> [(Jan 1, Jan 3), (Jan 5, Jan 6)]
    """
    runs: List[Tuple[date, date]] = []
    for d in dates:
        if runs and runs[-1][1] == d:
            runs[-1] = (runs[-1][0], d + timedelta(days=1))
        else:
            runs.append((d, d + timedelta(days=1)))
    return runs
