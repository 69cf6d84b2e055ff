"""Materialize due scheduled doses exactly once."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from .const import SOURCE_SCHEDULED, STATUS_ASSUMED_TAKEN
from .database import DoselineDatabase, generate_id, now_iso
from .recurrence import (
    iter_occurrences,
    occurrence_key,
    schedule_interval,
    schedule_start,
    schedule_timezone,
)
from .timezone import parse_instant, to_iso

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconcileResult:
    """Number of scheduled doses created by one reconciliation call."""

    created_count: int


def due_occurrences(
    schedule: dict[str, Any],
    now: datetime,
    default_timezone: str | None,
    since: datetime | None = None,
) -> list[tuple[datetime, str]]:
    """Occurrences of *schedule* up to *now* as (instant, occurrence key).

    With *since*, occurrences before it are assumed already reconciled and
    are not returned. Inactive schedules yield nothing.
    """
    if not schedule.get("enabled"):
        return []
    start = schedule_start(schedule)
    interval = schedule_interval(schedule)
    if start is None or interval is None:
        return []

    timezone_name = schedule_timezone(schedule, default_timezone)
    occurrences: list[tuple[datetime, str]] = []
    for instant in iter_occurrences(start, interval, timezone_name, after=since):
        if instant > now:
            break
        occurrences.append((instant, occurrence_key(schedule["id"], instant)))
    return occurrences


def _scheduled_dose(
    schedule: dict[str, Any],
    instant: datetime,
    key: str,
    timezone_name: str,
) -> dict[str, Any]:
    timestamp = now_iso()
    return {
        "id": generate_id(),
        "medication_id": schedule["medication_id"],
        "dose_mg": schedule["dose_mg"],
        "datetime_iso": to_iso(instant),
        "timezone": timezone_name,
        "source": SOURCE_SCHEDULED,
        "schedule_id": schedule["id"],
        "occurrence_key": key,
        "status": STATUS_ASSUMED_TAKEN,
        "created_at": timestamp,
        "updated_at": timestamp,
    }


async def reconcile_scheduled_doses(
    database: DoselineDatabase,
    now: datetime | str | None,
    *,
    since: datetime | str | None = None,
) -> ReconcileResult:
    """Create a dose for every due occurrence that has none yet.

    Every enabled schedule is expanded up to *now*; occurrences whose key
    already exists are skipped. All new records go in one transaction. A
    duplicate key raced in by an overlapping call only drops that record
    from the count; any other storage error rolls back and propagates.
    """
    now_dt = parse_instant(now)
    if now_dt is None:
        return ReconcileResult(created_count=0)
    since_dt = parse_instant(since) if since is not None else None

    schedules = await database.get_schedules()
    settings = await database.get_settings()
    default_timezone = settings.get("default_timezone")

    async with database.transaction():
        to_create: list[dict[str, Any]] = []
        for schedule in schedules:
            occurrences = due_occurrences(schedule, now_dt, default_timezone, since_dt)
            if not occurrences:
                continue
            existing = await database.get_existing_occurrence_keys(
                key for _, key in occurrences
            )
            timezone_name = schedule_timezone(schedule, default_timezone)
            to_create.extend(
                _scheduled_dose(schedule, instant, key, timezone_name)
                for instant, key in occurrences
                if key not in existing
            )

        if not to_create:
            return ReconcileResult(created_count=0)

        result = await database.bulk_add_doses(to_create)

    if result.failures:
        _LOGGER.debug(
            "Skipped %d scheduled doses that already existed",
            len(result.failures),
        )
    _LOGGER.debug(
        "Reconciled scheduled doses up to %s: %d created",
        to_iso(now_dt),
        result.created,
    )
    return ReconcileResult(created_count=result.created)
