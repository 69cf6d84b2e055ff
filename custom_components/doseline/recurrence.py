"""Occurrence stepping for "every N civil days" schedules.

Reconciliation, projection and next-due detection all step through this
module, so a projected occurrence lands on exactly the instant that will
later be materialized as a dose.
"""

from __future__ import annotations

from collections.abc import Iterator
from datetime import datetime
from typing import Any

from .const import DEFAULT_TIMEZONE
from .timezone import (
    add_days_in_timezone,
    get_local_day_index,
    is_valid_time_zone,
    parse_instant,
    to_iso,
)


def occurrence_key(schedule_id: str, instant: datetime) -> str:
    """Deterministic identity of one occurrence of a schedule."""
    return f"{schedule_id}_{to_iso(instant)}"


def schedule_start(schedule: dict[str, Any]) -> datetime | None:
    return parse_instant(schedule.get("start_datetime_iso"))


def schedule_interval(schedule: dict[str, Any]) -> int | None:
    """Positive whole-day interval, or None when unusable."""
    interval = schedule.get("interval")
    if isinstance(interval, bool) or not isinstance(interval, (int, float)):
        return None
    if interval <= 0 or int(interval) != interval:
        return None
    return int(interval)


def schedule_is_active(schedule: dict[str, Any]) -> bool:
    """True if the schedule can produce occurrences at all."""
    return (
        bool(schedule.get("enabled"))
        and schedule_start(schedule) is not None
        and schedule_interval(schedule) is not None
    )


def schedule_timezone(schedule: dict[str, Any], default_timezone: str | None) -> str:
    """Effective timezone: schedule's, then the default, then the constant."""
    fallback = (
        default_timezone
        if is_valid_time_zone(default_timezone)
        else DEFAULT_TIMEZONE
    )
    raw = schedule.get("timezone") or fallback
    return raw if is_valid_time_zone(raw) else fallback


def _first_period(
    start: datetime, after: datetime, interval_days: int, timezone_name: str
) -> int | None:
    """Index of the last period starting on or before the civil day of *after*."""
    start_day = get_local_day_index(start, timezone_name)
    after_day = get_local_day_index(after, timezone_name)
    if start_day is None or after_day is None:
        return None
    return max(0, (after_day - start_day) // interval_days)


def iter_occurrences(
    start: datetime,
    interval_days: int,
    timezone_name: str,
    *,
    after: datetime | None = None,
    inclusive: bool = True,
) -> Iterator[datetime]:
    """Yield occurrence instants of a schedule in ascending order.

    Occurrence n is *start* advanced by n * *interval_days* civil days, so
    every caller derives the same instants whatever point it starts from.
    Without *after*, the first yielded instant is *start*. With *after*, the
    sequence begins at the first occurrence at or after it (strictly after
    when *inclusive* is False). The iterator is unbounded; callers stop it.
    """
    if not is_valid_time_zone(timezone_name):
        return

    period = 0
    if after is not None and after > start:
        first = _first_period(start, after, interval_days, timezone_name)
        if first is None:
            return
        period = first

    current = (
        add_days_in_timezone(start, period * interval_days, timezone_name)
        if period
        else start
    )
    previous: datetime | None = None
    while current is not None:
        if previous is not None and current <= previous:
            return
        if after is None or current > after or (inclusive and current == after):
            yield current
        previous = current
        period += 1
        current = add_days_in_timezone(start, period * interval_days, timezone_name)
