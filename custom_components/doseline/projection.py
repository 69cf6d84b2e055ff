"""Compose persisted doses and projected schedule occurrences into a series."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from .const import STATUS_SKIPPED, TOTAL_KEY
from .pk import DoseEvent, MedicationProfile, total_amount_at_time
from .recurrence import (
    iter_occurrences,
    schedule_interval,
    schedule_start,
    schedule_timezone,
)
from .timezone import parse_instant


@dataclass
class ChartSeries:
    """Sampled amounts split into past and future at *now*.

    Each point carries ``time`` (epoch milliseconds) plus ``<id>_past`` and
    ``<id>_future`` for every visible medication and for ``total``. Exactly
    one of the pair is non-null: past when ``time <= now``.
    """

    now: datetime
    start: datetime
    end: datetime
    medication_ids: list[str] = field(default_factory=list)
    points: list[dict[str, Any]] = field(default_factory=list)


def medication_profile(medication: dict[str, Any]) -> MedicationProfile:
    return MedicationProfile(
        ka_per_hour=float(medication["ka_per_hour"]),
        ke_per_hour=float(medication["ke_per_hour"]),
        scale=float(medication.get("scale", 1.0)),
    )


def to_dose_event(
    dose: dict[str, Any], profile: MedicationProfile
) -> DoseEvent | None:
    """DoseEvent for a stored dose.

    None if its instant is unreadable or the dose was marked skipped.
    """
    if dose.get("status") == STATUS_SKIPPED:
        return None
    instant = parse_instant(dose.get("datetime_iso"))
    if instant is None:
        return None
    return DoseEvent(datetime=instant, dose_mg=float(dose["dose_mg"]), medication=profile)


def resolve_window(
    now: datetime, lookback_days: float, future_days: float
) -> tuple[datetime, datetime]:
    return now - timedelta(days=lookback_days), now + timedelta(days=future_days)


def build_future_schedule_doses(
    schedule: dict[str, Any],
    profile: MedicationProfile,
    now: datetime,
    end: datetime,
    default_timezone: str | None,
) -> list[DoseEvent]:
    """Projected events for occurrences after *now* up to *end*.

    Occurrences at or before *now* are left to reconciliation, which
    persists them as real doses.
    """
    if not schedule.get("enabled"):
        return []
    start = schedule_start(schedule)
    interval = schedule_interval(schedule)
    if start is None or interval is None:
        return []

    timezone_name = schedule_timezone(schedule, default_timezone)
    events: list[DoseEvent] = []
    for instant in iter_occurrences(
        start, interval, timezone_name, after=now, inclusive=False
    ):
        if instant > end:
            break
        events.append(
            DoseEvent(datetime=instant, dose_mg=float(schedule["dose_mg"]), medication=profile)
        )
    return events


def build_time_points(
    start: datetime,
    end: datetime,
    sample_minutes: float,
    now: datetime | None = None,
) -> list[datetime]:
    """Fixed-cadence sample instants, plus an exact *now* sample when it
    falls inside the window between grid points."""
    if sample_minutes <= 0 or end < start:
        return []
    step = timedelta(minutes=sample_minutes)
    points: list[datetime] = []
    current = start
    while current <= end:
        points.append(current)
        current += step
    if now is not None and start <= now <= end and now not in points:
        points.append(now)
        points.sort()
    return points


def build_dose_events_by_medication(
    doses: list[dict[str, Any]],
    schedules: list[dict[str, Any]],
    medications: list[dict[str, Any]],
    *,
    now: datetime,
    end: datetime,
    default_timezone: str | None,
) -> dict[str, list[DoseEvent]]:
    """Group persisted and projected events by medication id.

    Doses and schedules referencing an unknown medication are ignored.
    """
    profiles = {med["id"]: medication_profile(med) for med in medications}
    events: dict[str, list[DoseEvent]] = {}

    for dose in doses:
        profile = profiles.get(dose.get("medication_id"))
        if profile is None:
            continue
        event = to_dose_event(dose, profile)
        if event is not None:
            events.setdefault(dose["medication_id"], []).append(event)

    for schedule in schedules:
        profile = profiles.get(schedule.get("medication_id"))
        if profile is None:
            continue
        future = build_future_schedule_doses(
            schedule, profile, now, end, default_timezone
        )
        if future:
            events.setdefault(schedule["medication_id"], []).extend(future)

    return events


def _split(point: dict[str, Any], key: str, amount: float | None, is_past: bool) -> None:
    point[f"{key}_past"] = amount if is_past else None
    point[f"{key}_future"] = None if is_past else amount


def build_chart_series(
    doses: list[dict[str, Any]],
    schedules: list[dict[str, Any]],
    medications: list[dict[str, Any]],
    *,
    now: datetime,
    start: datetime,
    end: datetime,
    sample_minutes: float,
    default_timezone: str | None,
    visible_medication_ids: list[str] | None = None,
    show_total: bool = True,
) -> ChartSeries:
    """Sample every visible medication and the total over [start, end]."""
    events = build_dose_events_by_medication(
        doses,
        schedules,
        medications,
        now=now,
        end=end,
        default_timezone=default_timezone,
    )
    medication_ids = [
        med["id"]
        for med in medications
        if visible_medication_ids is None or med["id"] in visible_medication_ids
    ]
    series = ChartSeries(now=now, start=start, end=end, medication_ids=medication_ids)

    time_points = build_time_points(start, end, sample_minutes, now)
    if not time_points:
        return series

    all_events = [event for med_events in events.values() for event in med_events]
    for t in time_points:
        is_past = t <= now
        point: dict[str, Any] = {"time": round(t.timestamp() * 1000)}
        for medication_id in medication_ids:
            med_events = events.get(medication_id)
            amount = total_amount_at_time(med_events, t) if med_events else 0.0
            _split(point, medication_id, amount, is_past)
        if show_total:
            _split(point, TOTAL_KEY, total_amount_at_time(all_events, t), is_past)
        else:
            point[f"{TOTAL_KEY}_past"] = None
            point[f"{TOTAL_KEY}_future"] = None
        series.points.append(point)
    return series


def current_amounts(
    doses: list[dict[str, Any]],
    medications: list[dict[str, Any]],
    now: datetime,
) -> dict[str, float]:
    """Amount per medication at *now*, plus the ``total`` key."""
    profiles = {med["id"]: medication_profile(med) for med in medications}
    amounts = {med_id: 0.0 for med_id in profiles}
    for dose in doses:
        profile = profiles.get(dose.get("medication_id"))
        if profile is None:
            continue
        event = to_dose_event(dose, profile)
        if event is not None:
            amounts[dose["medication_id"]] += total_amount_at_time([event], now)
    amounts[TOTAL_KEY] = sum(amounts.values())
    return amounts
