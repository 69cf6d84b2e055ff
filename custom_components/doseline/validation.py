"""Validation and migration of import/export payloads."""

from __future__ import annotations

import math
from typing import Any

import voluptuous as vol

from .const import (
    DB_SCHEMA_VERSION,
    DEFAULT_TIMEZONE,
    DOSE_SOURCES,
    FREQUENCY_INTERVALS,
    SCHEDULED_STATUSES,
    SETTINGS_ID,
    SOURCE_MANUAL,
    SOURCE_SCHEDULED,
    STATUS_ASSUMED_TAKEN,
    TOTAL_KEY,
)
from .timezone import parse_instant, resolve_timezone, to_iso


class ImportValidationError(ValueError):
    """Raised when an import payload is rejected."""


# Payloads keep the exported camelCase field names; storage uses snake_case.
_FIELD_NAMES: dict[str, str] = {
    "id": "id",
    "name": "name",
    "notes": "notes",
    "scale": "scale",
    "timezone": "timezone",
    "source": "source",
    "status": "status",
    "frequency": "frequency",
    "interval": "interval",
    "enabled": "enabled",
    "kaPerHour": "ka_per_hour",
    "kePerHour": "ke_per_hour",
    "medicationId": "medication_id",
    "doseMg": "dose_mg",
    "datetimeIso": "datetime_iso",
    "startDatetimeIso": "start_datetime_iso",
    "scheduleId": "schedule_id",
    "occurrenceKey": "occurrence_key",
    "createdAt": "created_at",
    "updatedAt": "updated_at",
    "defaultTimezone": "default_timezone",
    "chartSampleMinutes": "chart_sample_minutes",
    "defaultLookbackDays": "default_lookback_days",
    "defaultFutureDays": "default_future_days",
}
_PAYLOAD_NAMES = {snake: camel for camel, snake in _FIELD_NAMES.items()}

_DATETIME_FIELDS = ("datetime_iso", "start_datetime_iso", "created_at", "updated_at")


def _number(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise vol.Invalid("expected a number")
    if not math.isfinite(value):
        raise vol.Invalid("expected a finite number")
    return value


def _positive(value: Any) -> float:
    if _number(value) <= 0:
        raise vol.Invalid("expected a positive number")
    return value


def _non_negative(value: Any) -> float:
    if _number(value) < 0:
        raise vol.Invalid("expected a non-negative number")
    return value


def _whole_days(value: Any) -> int:
    if _positive(value) != int(value):
        raise vol.Invalid("expected a whole number of days")
    return int(value)


def _iso_date(value: Any) -> str:
    if not isinstance(value, str) or parse_instant(value) is None:
        raise vol.Invalid("expected an ISO-8601 date")
    return value


def _zone_name(value: Any) -> str:
    """Unknown zones are replaced by DEFAULT_TIMEZONE."""
    if not isinstance(value, str):
        raise vol.Invalid("expected a time zone name")
    return resolve_timezone(value, DEFAULT_TIMEZONE)


def _optional(validator: Any) -> Any:
    return vol.Any(None, validator)


MEDICATION_SCHEMA = vol.Schema(
    {
        vol.Required("id"): vol.All(str, vol.NotIn([TOTAL_KEY])),
        vol.Required("name"): str,
        vol.Required("kaPerHour"): _positive,
        vol.Required("kePerHour"): _positive,
        vol.Required("scale"): _positive,
        vol.Required("notes"): str,
        vol.Required("createdAt"): _iso_date,
        vol.Required("updatedAt"): _iso_date,
    },
    extra=vol.REMOVE_EXTRA,
)


def _scheduled_dose_linked(record: dict[str, Any]) -> dict[str, Any]:
    if record.get("source") == SOURCE_SCHEDULED and not (
        isinstance(record.get("scheduleId"), str)
        and isinstance(record.get("occurrenceKey"), str)
    ):
        raise vol.Invalid("scheduled doses need scheduleId and occurrenceKey")
    return record


DOSE_SCHEMA = vol.All(
    vol.Schema(
        {
            vol.Required("id"): str,
            vol.Required("medicationId"): str,
            vol.Required("doseMg"): _positive,
            vol.Required("datetimeIso"): _iso_date,
            vol.Required("timezone"): _zone_name,
            vol.Required("createdAt"): _iso_date,
            vol.Required("updatedAt"): _iso_date,
            vol.Optional("source"): _optional(vol.In(DOSE_SOURCES)),
            vol.Optional("scheduleId"): _optional(str),
            vol.Optional("occurrenceKey"): _optional(str),
            vol.Optional("status"): _optional(vol.In(SCHEDULED_STATUSES)),
        },
        extra=vol.REMOVE_EXTRA,
    ),
    _scheduled_dose_linked,
)

SCHEDULE_SCHEMA = vol.Schema(
    {
        vol.Required("id"): str,
        vol.Required("medicationId"): str,
        vol.Required("startDatetimeIso"): _iso_date,
        vol.Required("timezone"): _zone_name,
        vol.Required("doseMg"): _positive,
        vol.Required("frequency"): vol.In(list(FREQUENCY_INTERVALS)),
        vol.Required("interval"): _whole_days,
        vol.Required("enabled"): bool,
        vol.Required("createdAt"): _iso_date,
        vol.Required("updatedAt"): _iso_date,
    },
    extra=vol.REMOVE_EXTRA,
)

SETTINGS_SCHEMA = vol.Schema(
    {
        vol.Required("id"): SETTINGS_ID,
        vol.Required("defaultTimezone"): _zone_name,
        vol.Required("chartSampleMinutes"): _positive,
        vol.Required("defaultLookbackDays"): _non_negative,
        vol.Required("defaultFutureDays"): _non_negative,
    },
    extra=vol.REMOVE_EXTRA,
)

_TABLES: list[tuple[str, Any, str]] = [
    ("medications", MEDICATION_SCHEMA, "Invalid medication records."),
    ("doses", DOSE_SCHEMA, "Invalid dose records."),
    ("schedules", SCHEDULE_SCHEMA, "Invalid schedule records."),
    ("settings", SETTINGS_SCHEMA, "Invalid settings records."),
]


# ── Migration of older payloads ──────────────────────────────────────────────


def _coerce_timezone(record: Any, key: str = "timezone") -> Any:
    if not isinstance(record, dict):
        return record
    value = record.get(key)
    if isinstance(value, str) and value:
        return record
    return {**record, key: DEFAULT_TIMEZONE}


def _migrate_dose(record: Any) -> Any:
    """Older exports could carry a scheduled source without its linkage."""
    record = _coerce_timezone(record)
    if not isinstance(record, dict) or record.get("source") != SOURCE_SCHEDULED:
        return record
    has_schedule = isinstance(record.get("scheduleId"), str)
    has_key = isinstance(record.get("occurrenceKey"), str)
    if has_schedule and has_key:
        return record
    return {
        **record,
        "source": None,
        "scheduleId": record.get("scheduleId") if has_schedule else None,
        "occurrenceKey": record.get("occurrenceKey") if has_key else None,
        "status": None,
    }


def normalize_dose_source(record: dict[str, Any]) -> dict[str, Any]:
    """Infer a missing source from the schedule linkage pair and default
    the status of scheduled doses."""
    has_schedule_metadata = isinstance(record.get("scheduleId"), str) and isinstance(
        record.get("occurrenceKey"), str
    )
    source = record.get("source") or (
        SOURCE_SCHEDULED if has_schedule_metadata else SOURCE_MANUAL
    )
    status = record.get("status")
    if source == SOURCE_SCHEDULED and status is None:
        status = STATUS_ASSUMED_TAKEN
    return {**record, "source": source, "status": status}


# ── Conversion ───────────────────────────────────────────────────────────────


def _to_storage(record: dict[str, Any]) -> dict[str, Any]:
    stored = {_FIELD_NAMES[key]: value for key, value in record.items() if key in _FIELD_NAMES}
    for key in _DATETIME_FIELDS:
        if isinstance(stored.get(key), str):
            stored[key] = to_iso(parse_instant(stored[key]))  # type: ignore[arg-type]
    return stored


def _to_payload(record: dict[str, Any]) -> dict[str, Any]:
    return {
        _PAYLOAD_NAMES[key]: value
        for key, value in record.items()
        if key in _PAYLOAD_NAMES and value is not None
    }


def build_export_payload(
    tables: dict[str, list[dict[str, Any]]], exported_at: str
) -> dict[str, Any]:
    """Export payload for *tables* as returned by the database."""
    return {
        "schemaVersion": DB_SCHEMA_VERSION,
        "exportedAt": exported_at,
        "data": {
            name: [_to_payload(record) for record in tables.get(name, [])]
            for name, _schema, _message in _TABLES
        },
    }


def validate_import_payload(payload: Any) -> dict[str, list[dict[str, Any]]]:
    """Validate an export payload and return storage-ready tables.

    Payloads from older schema versions are migrated first. Raises
    ImportValidationError describing the first problem found.
    """
    if not isinstance(payload, dict):
        raise ImportValidationError("Invalid import payload.")

    schema_version = payload.get("schemaVersion")
    if (
        isinstance(schema_version, bool)
        or not isinstance(schema_version, (int, float))
        or schema_version > DB_SCHEMA_VERSION
    ):
        raise ImportValidationError("Unsupported schema version.")

    if not isinstance(payload.get("exportedAt"), str):
        raise ImportValidationError("Missing export timestamp.")

    data = payload.get("data")
    if not isinstance(data, dict):
        raise ImportValidationError("Missing data section.")

    raw: dict[str, list[Any]] = {}
    for name, _schema, _message in _TABLES:
        table = data.get(name)
        if not isinstance(table, list):
            raise ImportValidationError(f"Missing {name} table.")
        raw[name] = table

    if schema_version < DB_SCHEMA_VERSION:
        raw["doses"] = [_migrate_dose(record) for record in raw["doses"]]
        raw["schedules"] = [_coerce_timezone(record) for record in raw["schedules"]]
        raw["settings"] = [
            _coerce_timezone(record, "defaultTimezone") for record in raw["settings"]
        ]

    tables: dict[str, list[dict[str, Any]]] = {}
    for name, schema, message in _TABLES:
        try:
            validated = [schema(record) for record in raw[name]]
        except vol.Invalid as err:
            raise ImportValidationError(message) from err
        if name == "doses":
            validated = [normalize_dose_source(record) for record in validated]
        tables[name] = [_to_storage(record) for record in validated]
    return tables
