"""Tests for the import/export payload gate."""

from __future__ import annotations

import copy

import pytest

from custom_components.doseline.const import DB_SCHEMA_VERSION, DEFAULT_TIMEZONE
from custom_components.doseline.validation import (
    ImportValidationError,
    build_export_payload,
    normalize_dose_source,
    validate_import_payload,
)

STAMP = "2025-01-01T00:00:00.000Z"


def _payload(schema_version: int = DB_SCHEMA_VERSION) -> dict:
    return {
        "schemaVersion": schema_version,
        "exportedAt": STAMP,
        "data": {
            "medications": [
                {
                    "id": "med-1",
                    "name": "Tirzepatide",
                    "kaPerHour": 0.12,
                    "kePerHour": 0.0058,
                    "scale": 1,
                    "notes": "",
                    "createdAt": STAMP,
                    "updatedAt": STAMP,
                }
            ],
            "doses": [
                {
                    "id": "dose-1",
                    "medicationId": "med-1",
                    "doseMg": 2.5,
                    "datetimeIso": "2025-01-01T13:00:00+13:00",
                    "timezone": "Pacific/Auckland",
                    "source": "scheduled",
                    "scheduleId": "sched-1",
                    "occurrenceKey": "sched-1_2025-01-01T00:00:00.000Z",
                    "status": "confirmed_taken",
                    "createdAt": STAMP,
                    "updatedAt": STAMP,
                }
            ],
            "schedules": [
                {
                    "id": "sched-1",
                    "medicationId": "med-1",
                    "startDatetimeIso": STAMP,
                    "timezone": "Pacific/Auckland",
                    "doseMg": 2.5,
                    "frequency": "weekly",
                    "interval": 7,
                    "enabled": True,
                    "createdAt": STAMP,
                    "updatedAt": STAMP,
                }
            ],
            "settings": [
                {
                    "id": "singleton",
                    "defaultTimezone": "Pacific/Auckland",
                    "chartSampleMinutes": 60,
                    "defaultLookbackDays": 30,
                    "defaultFutureDays": 7,
                }
            ],
        },
    }


def test_valid_payload_converts_to_storage_names():
    tables = validate_import_payload(_payload())

    dose = tables["doses"][0]
    assert dose["medication_id"] == "med-1"
    assert dose["occurrence_key"] == "sched-1_2025-01-01T00:00:00.000Z"
    assert dose["status"] == "confirmed_taken"
    # Instants are normalized to UTC with millisecond precision
    assert dose["datetime_iso"] == "2025-01-01T00:00:00.000Z"
    assert tables["medications"][0]["ka_per_hour"] == 0.12
    assert tables["schedules"][0]["start_datetime_iso"] == STAMP
    assert tables["settings"][0]["default_timezone"] == "Pacific/Auckland"


def test_unknown_fields_are_dropped():
    payload = _payload()
    payload["data"]["medications"][0]["colour"] = "blue"

    tables = validate_import_payload(payload)

    assert "colour" not in tables["medications"][0]


def test_export_payload_shape():
    tables = validate_import_payload(_payload())

    exported = build_export_payload(tables, STAMP)

    assert exported["schemaVersion"] == DB_SCHEMA_VERSION
    assert exported["exportedAt"] == STAMP
    assert exported["data"]["doses"][0]["occurrenceKey"] == (
        "sched-1_2025-01-01T00:00:00.000Z"
    )
    assert validate_import_payload(exported) == tables


@pytest.mark.parametrize(
    ("mutate", "message"),
    [
        (lambda p: p.clear(), "Unsupported schema version."),
        (lambda p: p.update(schemaVersion=DB_SCHEMA_VERSION + 1), "Unsupported schema version."),
        (lambda p: p.update(schemaVersion=True), "Unsupported schema version."),
        (lambda p: p.update(schemaVersion="5"), "Unsupported schema version."),
        (lambda p: p.pop("exportedAt"), "Missing export timestamp."),
        (lambda p: p.pop("data"), "Missing data section."),
        (lambda p: p["data"].pop("schedules"), "Missing schedules table."),
        (lambda p: p["data"]["doses"][0].update(doseMg=-1), "Invalid dose records."),
        (lambda p: p["data"]["doses"][0].pop("scheduleId"), "Invalid dose records."),
        (lambda p: p["data"]["doses"][0].update(status="forgotten"), "Invalid dose records."),
        (lambda p: p["data"]["schedules"][0].update(interval=1.5), "Invalid schedule records."),
        (lambda p: p["data"]["medications"][0].update(kaPerHour=0), "Invalid medication records."),
        (lambda p: p["data"]["medications"][0].update(id="total"), "Invalid medication records."),
        (lambda p: p["data"]["settings"][0].update(id="other"), "Invalid settings records."),
    ],
)
def test_rejected_payloads(mutate, message):
    payload = _payload()
    mutate(payload)

    with pytest.raises(ImportValidationError, match=message):
        validate_import_payload(payload)


def test_non_dict_payload():
    with pytest.raises(ImportValidationError, match="Invalid import payload."):
        validate_import_payload([])


def test_unknown_timezones_fall_back_to_default():
    payload = _payload()
    payload["data"]["doses"][0]["timezone"] = "America"
    payload["data"]["schedules"][0]["timezone"] = "Nowhere/Special"
    payload["data"]["settings"][0]["defaultTimezone"] = "Pacific"

    tables = validate_import_payload(payload)

    assert tables["doses"][0]["timezone"] == DEFAULT_TIMEZONE
    assert tables["schedules"][0]["timezone"] == DEFAULT_TIMEZONE
    assert tables["settings"][0]["default_timezone"] == DEFAULT_TIMEZONE


class TestOlderPayloads:
    def test_missing_timezones_are_coerced(self):
        payload = _payload(schema_version=4)
        del payload["data"]["doses"][0]["timezone"]
        payload["data"]["schedules"][0]["timezone"] = ""
        del payload["data"]["settings"][0]["defaultTimezone"]

        tables = validate_import_payload(payload)

        assert tables["doses"][0]["timezone"] == DEFAULT_TIMEZONE
        assert tables["schedules"][0]["timezone"] == DEFAULT_TIMEZONE
        assert tables["settings"][0]["default_timezone"] == DEFAULT_TIMEZONE

    def test_scheduled_dose_without_linkage_becomes_manual(self):
        payload = _payload(schema_version=4)
        del payload["data"]["doses"][0]["occurrenceKey"]

        dose = validate_import_payload(payload)["doses"][0]

        assert dose["source"] == "manual"
        assert dose["status"] is None
        assert dose.get("occurrence_key") is None

    def test_current_version_does_not_migrate(self):
        payload = _payload()
        del payload["data"]["doses"][0]["timezone"]

        with pytest.raises(ImportValidationError, match="Invalid dose records."):
            validate_import_payload(payload)


class TestSourceNormalization:
    def test_legacy_linked_dose_becomes_scheduled(self):
        record = {"scheduleId": "s", "occurrenceKey": "s_k"}
        assert normalize_dose_source(record) == {
            **record,
            "source": "scheduled",
            "status": "assumed_taken",
        }

    def test_partial_linkage_stays_manual(self):
        assert normalize_dose_source({"scheduleId": "s"})["source"] == "manual"
        assert normalize_dose_source({})["source"] == "manual"
        assert normalize_dose_source({})["status"] is None

    def test_explicit_status_is_kept(self):
        record = {
            "source": "scheduled",
            "scheduleId": "s",
            "occurrenceKey": "s_k",
            "status": "skipped",
        }
        assert normalize_dose_source(record)["status"] == "skipped"

    def test_import_infers_source(self):
        payload = _payload()
        del payload["data"]["doses"][0]["source"]
        del payload["data"]["doses"][0]["status"]

        dose = validate_import_payload(copy.deepcopy(payload))["doses"][0]

        assert dose["source"] == "scheduled"
        assert dose["status"] == "assumed_taken"
