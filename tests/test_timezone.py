"""Tests for civil-day arithmetic in named timezones."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from custom_components.doseline.timezone import (
    add_days_in_timezone,
    get_local_day_index,
    is_valid_time_zone,
    parse_instant,
    resolve_timezone,
    to_iso,
)

AUCKLAND = "Pacific/Auckland"


class TestAddDaysInTimezone:
    def test_spring_forward_day_is_23_hours(self):
        start = datetime(2024, 9, 27, 22, 0, tzinfo=UTC)
        result = add_days_in_timezone(start, 1, AUCKLAND)
        assert result == datetime(2024, 9, 28, 21, 0, tzinfo=UTC)
        assert result - start == timedelta(hours=23)

    def test_fall_back_day_is_25_hours(self):
        # 11:00 NZDT on 5 April; DST ends early on 6 April 2025
        start = datetime(2025, 4, 4, 22, 0, tzinfo=UTC)
        result = add_days_in_timezone(start, 1, AUCKLAND)
        assert result == datetime(2025, 4, 5, 23, 0, tzinfo=UTC)
        assert result - start == timedelta(hours=25)

    def test_keeps_local_wall_clock(self):
        start = datetime(2024, 9, 20, 20, 30, tzinfo=UTC)
        result = add_days_in_timezone(start, 14, AUCKLAND)
        before = start.astimezone(ZoneInfo(AUCKLAND))
        after = result.astimezone(ZoneInfo(AUCKLAND))
        assert (after.hour, after.minute) == (before.hour, before.minute)
        assert (after.date() - before.date()).days == 14

    def test_utc_is_plain_24_hour_days(self):
        start = datetime(2025, 1, 1, tzinfo=UTC)
        assert add_days_in_timezone(start, 7, "UTC") == datetime(2025, 1, 8, tzinfo=UTC)

    def test_negative_days(self):
        start = datetime(2025, 1, 8, tzinfo=UTC)
        assert add_days_in_timezone(start, -7, "UTC") == datetime(2025, 1, 1, tzinfo=UTC)

    def test_invalid_timezone_returns_none(self):
        start = datetime(2025, 1, 1, tzinfo=UTC)
        assert add_days_in_timezone(start, 1, "Not/AZone") is None
        assert add_days_in_timezone(start, 1, "") is None


class TestLocalDayIndex:
    def test_epoch_offset(self):
        assert get_local_day_index(datetime(1970, 1, 1, tzinfo=UTC), "UTC") == 0
        assert get_local_day_index(datetime(2024, 1, 1, tzinfo=UTC), "UTC") == 19723

    def test_uses_local_calendar_date(self):
        # 12:00 UTC on 1 January is already 2 January in Auckland
        instant = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)
        assert get_local_day_index(instant, "UTC") == 19723
        assert get_local_day_index(instant, AUCKLAND) == 19724

    def test_invalid_timezone(self):
        assert get_local_day_index(datetime(2024, 1, 1, tzinfo=UTC), "Mars/Base") is None


class TestParsing:
    def test_parse_z_suffix(self):
        assert parse_instant("2025-01-01T00:00:00.000Z") == datetime(2025, 1, 1, tzinfo=UTC)

    def test_parse_offset_is_normalized_to_utc(self):
        parsed = parse_instant("2025-01-01T12:00:00+13:00")
        assert parsed == datetime(2024, 12, 31, 23, 0, tzinfo=UTC)
        assert parsed.utcoffset() == timedelta(0)

    def test_naive_values_are_utc(self):
        assert parse_instant("2025-01-01T05:00:00") == datetime(2025, 1, 1, 5, tzinfo=UTC)
        assert parse_instant(datetime(2025, 1, 1, 5)) == datetime(2025, 1, 1, 5, tzinfo=UTC)

    def test_unparseable_values(self):
        assert parse_instant("not a date") is None
        assert parse_instant("") is None
        assert parse_instant(None) is None
        assert parse_instant(1735689600) is None

    def test_to_iso_millisecond_precision(self):
        instant = datetime(2025, 1, 1, 1, 2, 3, 456789, tzinfo=timezone(timedelta(hours=2)))
        assert to_iso(instant) == "2024-12-31T23:02:03.456Z"


def test_timezone_validation():
    assert is_valid_time_zone(AUCKLAND)
    assert is_valid_time_zone("UTC")
    assert not is_valid_time_zone("Nowhere/Special")
    assert not is_valid_time_zone(None)
    assert resolve_timezone("Nowhere/Special", AUCKLAND) == AUCKLAND
    assert resolve_timezone("Europe/London", AUCKLAND) == "Europe/London"


@pytest.mark.parametrize("name", ["America", "Pacific", "", "../etc/passwd"])
def test_zone_directories_and_bad_paths_are_invalid(name):
    assert not is_valid_time_zone(name)
    assert resolve_timezone(name, "UTC") == "UTC"
