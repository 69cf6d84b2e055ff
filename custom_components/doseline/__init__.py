"""Doseline medication level integration for Home Assistant."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

import voluptuous as vol
from homeassistant.config_entries import ConfigEntry
from homeassistant.core import (
    HomeAssistant,
    ServiceCall,
    ServiceResponse,
    SupportsResponse,
)
from homeassistant.util import dt as dt_util

from .const import (
    CONF_DEFAULT_TIMEZONE,
    DB_FILENAME,
    DOMAIN,
    FREQUENCY_CUSTOM,
    FREQUENCY_INTERVALS,
    PLATFORMS,
)
from .coordinator import DoselineCoordinator
from .database import DoselineDatabase, now_iso
from .doses import build_dose_update, confirm_dose, new_manual_dose, skip_dose
from .timezone import is_valid_time_zone, parse_instant, to_iso
from .validation import (
    ImportValidationError,
    build_export_payload,
    validate_import_payload,
)

_LOGGER = logging.getLogger(__name__)

_RESERVED_KEYS = ("services_registered", "database", "_setup_lock")


def _instant(value: Any) -> str:
    instant = parse_instant(value)
    if instant is None:
        raise vol.Invalid(f"Invalid date/time: {value}")
    return to_iso(instant)


def _time_zone(value: Any) -> str:
    if not is_valid_time_zone(value):
        raise vol.Invalid(f"Unknown time zone: {value}")
    return value


_DOSE_MG = vol.All(vol.Coerce(float), vol.Range(min=0.001))
_RATE = vol.All(vol.Coerce(float), vol.Range(min=1e-6))
_INTERVAL = vol.All(vol.Coerce(int), vol.Range(min=1))

SERVICE_LOG_DOSE_SCHEMA = vol.Schema(
    {
        vol.Required("medication_id"): str,
        vol.Required("dose_mg"): _DOSE_MG,
        vol.Optional("datetime"): _instant,
        vol.Optional("timezone"): _time_zone,
    }
)

SERVICE_UPDATE_DOSE_SCHEMA = vol.Schema(
    {
        vol.Required("dose_id"): str,
        vol.Optional("medication_id"): str,
        vol.Optional("dose_mg"): _DOSE_MG,
        vol.Optional("datetime"): _instant,
        vol.Optional("timezone"): _time_zone,
    }
)

SERVICE_DOSE_ID_SCHEMA = vol.Schema(
    {
        vol.Required("dose_id"): str,
    }
)

SERVICE_ADD_SCHEDULE_SCHEMA = vol.Schema(
    {
        vol.Required("medication_id"): str,
        vol.Required("start"): _instant,
        vol.Required("dose_mg"): _DOSE_MG,
        vol.Optional("frequency", default=FREQUENCY_CUSTOM): vol.In(
            list(FREQUENCY_INTERVALS)
        ),
        vol.Optional("interval"): _INTERVAL,
        vol.Optional("timezone"): _time_zone,
        vol.Optional("enabled", default=True): bool,
    }
)

SERVICE_UPDATE_SCHEDULE_SCHEMA = vol.Schema(
    {
        vol.Required("schedule_id"): str,
        vol.Optional("medication_id"): str,
        vol.Optional("start"): _instant,
        vol.Optional("dose_mg"): _DOSE_MG,
        vol.Optional("frequency"): vol.In(list(FREQUENCY_INTERVALS)),
        vol.Optional("interval"): _INTERVAL,
        vol.Optional("timezone"): _time_zone,
        vol.Optional("enabled"): bool,
    }
)

SERVICE_SCHEDULE_ID_SCHEMA = vol.Schema(
    {
        vol.Required("schedule_id"): str,
    }
)

SERVICE_ADD_MEDICATION_SCHEMA = vol.Schema(
    {
        vol.Required("name"): vol.All(str, vol.Length(min=1)),
        vol.Required("ka_per_hour"): _RATE,
        vol.Required("ke_per_hour"): _RATE,
        vol.Optional("scale", default=1.0): vol.All(
            vol.Coerce(float), vol.Range(min=1e-6)
        ),
        vol.Optional("notes", default=""): str,
    }
)

SERVICE_IMPORT_DATA_SCHEMA = vol.Schema(
    {
        vol.Required("payload"): dict,
    }
)

SERVICE_EMPTY_SCHEMA = vol.Schema({})


def _get_coordinator(hass: HomeAssistant) -> DoselineCoordinator:
    """Return the loaded coordinator."""
    for key, val in hass.data.get(DOMAIN, {}).items():
        if key not in _RESERVED_KEYS and isinstance(val, DoselineCoordinator):
            return val
    raise ValueError("Doseline is not set up")


def _resolve_interval(frequency: str, interval: int | None) -> int:
    fixed = FREQUENCY_INTERVALS.get(frequency)
    if fixed is not None:
        return fixed
    if interval is None:
        raise ValueError("A custom schedule needs an interval in days")
    return interval


async def async_setup_entry(hass: HomeAssistant, entry: ConfigEntry) -> bool:
    """Set up Doseline from a config entry."""
    hass.data.setdefault(DOMAIN, {})

    if "_setup_lock" not in hass.data[DOMAIN]:
        hass.data[DOMAIN]["_setup_lock"] = asyncio.Lock()
    setup_lock: asyncio.Lock = hass.data[DOMAIN]["_setup_lock"]

    async with setup_lock:
        if "database" not in hass.data[DOMAIN]:
            db_path = Path(hass.config.config_dir) / DB_FILENAME
            database = DoselineDatabase(db_path)
            await database.async_setup()
            hass.data[DOMAIN]["database"] = database
        else:
            database = hass.data[DOMAIN]["database"]

        coordinator = DoselineCoordinator(hass, entry, database)
        await coordinator.async_sync_settings()
        hass.data[DOMAIN][entry.entry_id] = coordinator
        await coordinator.async_config_entry_first_refresh()

    await hass.config_entries.async_forward_entry_setups(entry, PLATFORMS)

    entry.async_on_unload(entry.add_update_listener(_async_update_listener))

    if "services_registered" not in hass.data[DOMAIN]:
        _register_services(hass)
        hass.data[DOMAIN]["services_registered"] = True

    return True


def _register_services(hass: HomeAssistant) -> None:
    """Register doseline services."""

    # ── Doses ────────────────────────────────────────────────────────────────

    async def handle_log_dose(call: ServiceCall) -> None:
        coord = _get_coordinator(hass)
        if await coord.database.get_medication(call.data["medication_id"]) is None:
            raise ValueError(f"Unknown medication: {call.data['medication_id']}")
        taken_at = parse_instant(call.data.get("datetime")) or dt_util.utcnow()
        timezone_name = call.data.get(
            "timezone", coord.get_config()[CONF_DEFAULT_TIMEZONE]
        )
        await coord.database.add_dose(
            new_manual_dose(
                call.data["medication_id"],
                call.data["dose_mg"],
                taken_at,
                timezone_name,
            )
        )
        await coord.async_request_refresh()

    async def handle_update_dose(call: ServiceCall) -> None:
        coord = _get_coordinator(hass)
        existing = await coord.database.get_dose(call.data["dose_id"])
        if existing is None:
            raise ValueError(f"Unknown dose: {call.data['dose_id']}")
        changes: dict[str, Any] = {}
        for field, column in (
            ("medication_id", "medication_id"),
            ("dose_mg", "dose_mg"),
            ("datetime", "datetime_iso"),
            ("timezone", "timezone"),
        ):
            if field in call.data:
                changes[column] = call.data[field]
        await coord.database.update_dose(
            existing["id"], build_dose_update(existing, changes)
        )
        await coord.async_request_refresh()

    async def handle_delete_dose(call: ServiceCall) -> None:
        coord = _get_coordinator(hass)
        if not await coord.database.delete_dose(call.data["dose_id"]):
            raise ValueError(f"Unknown dose: {call.data['dose_id']}")
        await coord.async_request_refresh()

    async def _set_status(call: ServiceCall, transition: Any) -> None:
        coord = _get_coordinator(hass)
        dose = await coord.database.get_dose(call.data["dose_id"])
        if dose is None:
            raise ValueError(f"Unknown dose: {call.data['dose_id']}")
        await coord.database.update_dose(dose["id"], transition(dose))
        await coord.async_request_refresh()

    async def handle_confirm_dose(call: ServiceCall) -> None:
        await _set_status(call, confirm_dose)

    async def handle_skip_dose(call: ServiceCall) -> None:
        await _set_status(call, skip_dose)

    # ── Schedules ────────────────────────────────────────────────────────────

    async def handle_add_schedule(call: ServiceCall) -> None:
        coord = _get_coordinator(hass)
        if await coord.database.get_medication(call.data["medication_id"]) is None:
            raise ValueError(f"Unknown medication: {call.data['medication_id']}")
        frequency = call.data["frequency"]
        await coord.database.add_schedule(
            medication_id=call.data["medication_id"],
            start_datetime_iso=call.data["start"],
            timezone_name=call.data.get(
                "timezone", coord.get_config()[CONF_DEFAULT_TIMEZONE]
            ),
            dose_mg=call.data["dose_mg"],
            interval=_resolve_interval(frequency, call.data.get("interval")),
            frequency=frequency,
            enabled=call.data["enabled"],
        )
        await coord.async_schedules_changed()
        await coord.async_request_refresh()

    async def handle_update_schedule(call: ServiceCall) -> None:
        coord = _get_coordinator(hass)
        existing = await coord.database.get_schedule(call.data["schedule_id"])
        if existing is None:
            raise ValueError(f"Unknown schedule: {call.data['schedule_id']}")
        updates: dict[str, Any] = {}
        for field, column in (
            ("medication_id", "medication_id"),
            ("start", "start_datetime_iso"),
            ("dose_mg", "dose_mg"),
            ("timezone", "timezone"),
            ("enabled", "enabled"),
        ):
            if field in call.data:
                updates[column] = call.data[field]
        if "frequency" in call.data or "interval" in call.data:
            frequency = call.data.get("frequency", existing["frequency"])
            updates["frequency"] = frequency
            updates["interval"] = _resolve_interval(
                frequency, call.data.get("interval", existing["interval"])
            )
        await coord.database.update_schedule(existing["id"], updates)
        await coord.async_schedules_changed()
        await coord.async_request_refresh()

    async def handle_delete_schedule(call: ServiceCall) -> None:
        coord = _get_coordinator(hass)
        if not await coord.database.delete_schedule(call.data["schedule_id"]):
            raise ValueError(f"Unknown schedule: {call.data['schedule_id']}")
        await coord.async_schedules_changed()
        await coord.async_request_refresh()

    # ── Medications and data ─────────────────────────────────────────────────

    async def handle_add_medication(call: ServiceCall) -> None:
        coord = _get_coordinator(hass)
        await coord.database.add_medication(
            name=call.data["name"],
            ka_per_hour=call.data["ka_per_hour"],
            ke_per_hour=call.data["ke_per_hour"],
            scale=call.data["scale"],
            notes=call.data["notes"],
        )
        await coord.async_request_refresh()

    async def handle_import_data(call: ServiceCall) -> None:
        coord = _get_coordinator(hass)
        try:
            tables = validate_import_payload(call.data["payload"])
        except ImportValidationError as err:
            raise ValueError(str(err)) from err
        await coord.database.import_replace_all(tables)
        coord.controller.invalidate()
        await coord.async_request_refresh()

    async def handle_export_data(call: ServiceCall) -> ServiceResponse:
        coord = _get_coordinator(hass)
        tables = await coord.database.export_tables()
        return build_export_payload(tables, now_iso())

    async def handle_clear_data(call: ServiceCall) -> None:
        coord = _get_coordinator(hass)
        await coord.database.clear_all_data()
        coord.controller.invalidate()
        await coord.async_sync_settings()
        await coord.async_request_refresh()

    for name, handler, schema in (
        ("log_dose", handle_log_dose, SERVICE_LOG_DOSE_SCHEMA),
        ("update_dose", handle_update_dose, SERVICE_UPDATE_DOSE_SCHEMA),
        ("delete_dose", handle_delete_dose, SERVICE_DOSE_ID_SCHEMA),
        ("confirm_dose", handle_confirm_dose, SERVICE_DOSE_ID_SCHEMA),
        ("skip_dose", handle_skip_dose, SERVICE_DOSE_ID_SCHEMA),
        ("add_schedule", handle_add_schedule, SERVICE_ADD_SCHEDULE_SCHEMA),
        ("update_schedule", handle_update_schedule, SERVICE_UPDATE_SCHEDULE_SCHEMA),
        ("delete_schedule", handle_delete_schedule, SERVICE_SCHEDULE_ID_SCHEMA),
        ("add_medication", handle_add_medication, SERVICE_ADD_MEDICATION_SCHEMA),
        ("import_data", handle_import_data, SERVICE_IMPORT_DATA_SCHEMA),
        ("clear_data", handle_clear_data, SERVICE_EMPTY_SCHEMA),
    ):
        hass.services.async_register(DOMAIN, name, handler, schema=schema)

    hass.services.async_register(
        DOMAIN,
        "export_data",
        handle_export_data,
        schema=SERVICE_EMPTY_SCHEMA,
        supports_response=SupportsResponse.ONLY,
    )


async def async_unload_entry(hass: HomeAssistant, entry: ConfigEntry) -> bool:
    """Unload a config entry."""
    unload_ok = await hass.config_entries.async_unload_platforms(entry, PLATFORMS)
    if unload_ok:
        coordinator: DoselineCoordinator | None = hass.data[DOMAIN].pop(
            entry.entry_id, None
        )
        if coordinator is not None:
            await coordinator.async_shutdown()

    remaining = [eid for eid in hass.data[DOMAIN] if eid not in _RESERVED_KEYS]
    if not remaining and "database" in hass.data[DOMAIN]:
        db: DoselineDatabase = hass.data[DOMAIN].pop("database")
        await db.async_close()

    return unload_ok


async def _async_update_listener(
    hass: HomeAssistant, entry: ConfigEntry
) -> None:
    """Handle options update."""
    await hass.config_entries.async_reload(entry.entry_id)
