"""Rules for manual dose entry and edits to scheduled doses."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from .const import (
    SOURCE_MANUAL,
    SOURCE_SCHEDULED,
    STATUS_CONFIRMED_TAKEN,
    STATUS_SKIPPED,
)
from .timezone import parse_instant, to_iso

# Editing any of these on a scheduled dose detaches it from its schedule
DETACHING_FIELDS = ("datetime_iso", "medication_id", "dose_mg")

_LINKAGE_FIELDS = ("schedule_id", "occurrence_key", "status")


def new_manual_dose(
    medication_id: str,
    dose_mg: float,
    taken_at: datetime,
    timezone_name: str,
) -> dict[str, Any]:
    """Dose record for a user-entered dose; no schedule linkage."""
    return {
        "medication_id": medication_id,
        "dose_mg": dose_mg,
        "datetime_iso": to_iso(taken_at),
        "timezone": timezone_name,
        "source": SOURCE_MANUAL,
    }


def _changed(existing: dict[str, Any], key: str, value: Any) -> bool:
    if key == "datetime_iso":
        return parse_instant(value) != parse_instant(existing.get(key))
    if key == "dose_mg":
        return float(value) != float(existing.get(key, 0))
    return value != existing.get(key)


def build_dose_update(
    existing: dict[str, Any], changes: dict[str, Any]
) -> dict[str, Any]:
    """Column updates for editing *existing* with *changes*.

    A scheduled dose whose time, medication or amount moves away from the
    scheduled values becomes a manual dose and loses its schedule linkage.
    """
    updates = dict(changes)
    if "datetime_iso" in updates:
        instant = parse_instant(updates["datetime_iso"])
        if instant is None:
            raise ValueError(f"Invalid dose time: {updates['datetime_iso']}")
        updates["datetime_iso"] = to_iso(instant)

    if existing.get("source") != SOURCE_SCHEDULED:
        return updates

    if any(
        key in updates and _changed(existing, key, updates[key])
        for key in DETACHING_FIELDS
    ):
        updates["source"] = SOURCE_MANUAL
        for key in _LINKAGE_FIELDS:
            updates[key] = None
    return updates


def _status_update(dose: dict[str, Any], status: str) -> dict[str, Any]:
    if dose.get("source") != SOURCE_SCHEDULED:
        raise ValueError(f"Dose {dose.get('id')} is not a scheduled dose")
    return {"status": status}


def confirm_dose(dose: dict[str, Any]) -> dict[str, Any]:
    """Mark a scheduled dose as actually taken."""
    return _status_update(dose, STATUS_CONFIRMED_TAKEN)


def skip_dose(dose: dict[str, Any]) -> dict[str, Any]:
    """Mark a scheduled dose as skipped; it no longer adds to levels."""
    return _status_update(dose, STATUS_SKIPPED)
