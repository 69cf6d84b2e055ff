"""Civil-calendar arithmetic in named timezones."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

_EPOCH_ORDINAL = date(1970, 1, 1).toordinal()


def _get_zone(name: str | None) -> tzinfo | None:
    """Return the zone for *name*, or None if it cannot be resolved."""
    if not isinstance(name, str) or not name:
        return None
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        # OSError covers names that map to a directory in the zone database
        return None


def is_valid_time_zone(name: str | None) -> bool:
    """Return True if *name* is a resolvable IANA timezone."""
    return _get_zone(name) is not None


def resolve_timezone(name: str | None, fallback: str) -> str:
    """Return *name* if it is a valid timezone, otherwise *fallback*."""
    return name if is_valid_time_zone(name) else fallback  # type: ignore[return-value]


def parse_instant(value: object) -> datetime | None:
    """Parse an absolute instant.

    Accepts datetimes and ISO-8601 strings. Naive values are taken as UTC.
    Returns None for anything that cannot be parsed.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None or parsed.utcoffset() is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def to_iso(instant: datetime) -> str:
    """Render *instant* as UTC with millisecond precision and a Z suffix."""
    utc = instant.astimezone(timezone.utc)
    return utc.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc.microsecond // 1000:03d}Z"


def _parts_in_zone(
    instant: datetime, zone: tzinfo
) -> tuple[int, int, int, int, int, int]:
    local = instant.astimezone(zone)
    return (
        local.year,
        local.month,
        local.day,
        local.hour,
        local.minute,
        local.second,
    )


def _offset_at(zone: tzinfo, instant: datetime) -> timedelta:
    """UTC offset of *zone* at the absolute *instant*."""
    return instant.astimezone(zone).utcoffset() or timedelta(0)


def get_local_day_index(instant: datetime, timezone_name: str) -> int | None:
    """Whole civil days since 1970-01-01 for the local date of *instant*."""
    zone = _get_zone(timezone_name)
    if zone is None:
        return None
    year, month, day, *_ = _parts_in_zone(instant, zone)
    return date(year, month, day).toordinal() - _EPOCH_ORDINAL


def add_days_in_timezone(
    instant: datetime, days: int, timezone_name: str
) -> datetime | None:
    """Advance *instant* by *days* civil days in *timezone_name*.

    The local wall-clock time (to the second) is kept, so a step across a
    DST change moves the absolute instant by 23 or 25 hours. Returns None if
    the timezone is invalid.
    """
    zone = _get_zone(timezone_name)
    if zone is None:
        return None
    year, month, day, hour, minute, second = _parts_in_zone(instant, zone)
    guess = datetime(
        year, month, day, hour, minute, second, tzinfo=timezone.utc
    ) + timedelta(days=days)
    initial_offset = _offset_at(zone, guess)
    adjusted = guess - initial_offset
    # One correction pass is enough: offsets differ by at most a few hours.
    adjusted_offset = _offset_at(zone, adjusted)
    if adjusted_offset != initial_offset:
        adjusted = guess - adjusted_offset
    return adjusted
