"""DataUpdateCoordinator for Doseline."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from homeassistant.config_entries import ConfigEntry
from homeassistant.core import HomeAssistant
from homeassistant.helpers.update_coordinator import DataUpdateCoordinator
from homeassistant.util import dt as dt_util

from .const import (
    CONF_DEFAULT_TIMEZONE,
    CONF_ENABLE_CALENDAR,
    CONF_FUTURE_DAYS,
    CONF_LOOKBACK_DAYS,
    CONF_SAMPLE_MINUTES,
    DEFAULT_ENABLE_CALENDAR,
    DEFAULT_FUTURE_DAYS,
    DEFAULT_LOOKBACK_DAYS,
    DEFAULT_SAMPLE_MINUTES,
    DEFAULT_TIMEZONE,
    DEFAULT_UPDATE_INTERVAL,
    DOMAIN,
)
from .controller import RefreshController
from .database import DoselineDatabase
from .projection import build_chart_series, current_amounts, resolve_window
from .timezone import resolve_timezone, to_iso

_LOGGER = logging.getLogger(__name__)


class DoselineCoordinator(DataUpdateCoordinator[dict[str, Any]]):
    """Coordinator driving reconciliation and the projected series.

    Each periodic update is a timer tick for the refresh controller; the
    first one is the initial load.
    """

    config_entry: ConfigEntry

    def __init__(
        self,
        hass: HomeAssistant,
        entry: ConfigEntry,
        database: DoselineDatabase,
    ) -> None:
        """Initialize the coordinator."""
        super().__init__(
            hass,
            _LOGGER,
            name=DOMAIN,
            update_interval=timedelta(seconds=DEFAULT_UPDATE_INTERVAL),
        )
        self.config_entry = entry
        self.database = database
        self.controller = RefreshController(
            database,
            clock=dt_util.utcnow,
            on_refresh=self.async_request_refresh,
        )

    def get_config(self) -> dict[str, Any]:
        """Get merged config from entry data + options."""
        data = self.config_entry.data
        opts = self.config_entry.options
        return {
            CONF_DEFAULT_TIMEZONE: opts.get(
                CONF_DEFAULT_TIMEZONE,
                data.get(CONF_DEFAULT_TIMEZONE, DEFAULT_TIMEZONE),
            ),
            CONF_SAMPLE_MINUTES: opts.get(
                CONF_SAMPLE_MINUTES,
                data.get(CONF_SAMPLE_MINUTES, DEFAULT_SAMPLE_MINUTES),
            ),
            CONF_LOOKBACK_DAYS: opts.get(
                CONF_LOOKBACK_DAYS,
                data.get(CONF_LOOKBACK_DAYS, DEFAULT_LOOKBACK_DAYS),
            ),
            CONF_FUTURE_DAYS: opts.get(
                CONF_FUTURE_DAYS,
                data.get(CONF_FUTURE_DAYS, DEFAULT_FUTURE_DAYS),
            ),
            CONF_ENABLE_CALENDAR: opts.get(
                CONF_ENABLE_CALENDAR,
                data.get(CONF_ENABLE_CALENDAR, DEFAULT_ENABLE_CALENDAR),
            ),
        }

    async def async_sync_settings(self) -> None:
        """Mirror the entry's settings into the settings table."""
        config = self.get_config()
        await self.database.upsert_settings(
            {
                "default_timezone": config[CONF_DEFAULT_TIMEZONE],
                "chart_sample_minutes": config[CONF_SAMPLE_MINUTES],
                "default_lookback_days": config[CONF_LOOKBACK_DAYS],
                "default_future_days": config[CONF_FUTURE_DAYS],
            }
        )

    async def async_schedules_changed(self) -> None:
        """Re-read schedules after an edit and let the controller react."""
        schedules = await self.database.get_schedules()
        self.controller.async_schedules_changed(schedules)

    async def async_manual_refresh(self) -> None:
        await self.controller.async_manual_refresh()
        await self.async_request_refresh()

    async def async_shutdown(self) -> None:
        """Cancel pending work before the entry unloads."""
        await self.controller.async_shutdown()
        await super().async_shutdown()

    async def _async_update_data(self) -> dict[str, Any]:
        """Reconcile if due, then rebuild the series from SQLite."""
        now = dt_util.utcnow()
        if self.controller.loaded:
            await self.controller.async_tick(now)
            snapshot = await self.controller.async_reload()
        else:
            snapshot = await self.controller.async_load(now)

        settings = snapshot.settings
        default_timezone = resolve_timezone(
            settings.get("default_timezone"), DEFAULT_TIMEZONE
        )
        start, end = resolve_window(
            now,
            float(settings.get("default_lookback_days", DEFAULT_LOOKBACK_DAYS)),
            float(settings.get("default_future_days", DEFAULT_FUTURE_DAYS)),
        )
        sample_minutes = float(
            settings.get("chart_sample_minutes", DEFAULT_SAMPLE_MINUTES)
        )
        series = build_chart_series(
            snapshot.doses,
            snapshot.schedules,
            snapshot.medications,
            now=now,
            start=start,
            end=end,
            sample_minutes=sample_minutes,
            default_timezone=default_timezone,
        )
        amounts = current_amounts(snapshot.doses, snapshot.medications, now)
        last = self.controller.last_reconciled_at

        return {
            "now": now,
            "medications": snapshot.medications,
            "doses": snapshot.doses,
            "schedules": snapshot.schedules,
            "settings": settings,
            "default_timezone": default_timezone,
            "series": series,
            "amounts": {k: round(v, 3) for k, v in amounts.items()},
            "last_reconciled_at": to_iso(last) if last else None,
            "config": self.get_config(),
        }
