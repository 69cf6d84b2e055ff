"""Calendar platform for Doseline."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from homeassistant.components.calendar import CalendarEntity, CalendarEvent
from homeassistant.config_entries import ConfigEntry
from homeassistant.core import HomeAssistant
from homeassistant.helpers.entity_platform import AddEntitiesCallback
from homeassistant.helpers.update_coordinator import CoordinatorEntity
from homeassistant.util import dt as dt_util

from .const import (
    CALENDAR_HORIZON_DAYS,
    CONF_ENABLE_CALENDAR,
    DEFAULT_ENABLE_CALENDAR,
    DOMAIN,
    SOURCE_SCHEDULED,
)
from .coordinator import DoselineCoordinator
from .recurrence import (
    iter_occurrences,
    occurrence_key,
    schedule_interval,
    schedule_start,
    schedule_timezone,
)
from .timezone import parse_instant

EVENT_DURATION = timedelta(minutes=15)


async def async_setup_entry(
    hass: HomeAssistant,
    entry: ConfigEntry,
    async_add_entities: AddEntitiesCallback,
) -> None:
    """Set up the Doseline calendar entity."""
    enabled = entry.options.get(
        CONF_ENABLE_CALENDAR,
        entry.data.get(CONF_ENABLE_CALENDAR, DEFAULT_ENABLE_CALENDAR),
    )
    if not enabled:
        return

    coordinator: DoselineCoordinator = hass.data[DOMAIN][entry.entry_id]
    async_add_entities([DoseCalendar(coordinator, entry)])


class DoseCalendar(CoordinatorEntity[DoselineCoordinator], CalendarEntity):
    """Logged doses and upcoming scheduled occurrences."""

    _attr_has_entity_name = True
    _attr_name = "Doses"
    _attr_icon = "mdi:calendar-clock"

    def __init__(self, coordinator: DoselineCoordinator, entry: ConfigEntry) -> None:
        super().__init__(coordinator)
        self._attr_unique_id = f"{entry.entry_id}_dose_calendar"

    @property
    def event(self) -> CalendarEvent | None:
        """Return the next upcoming dose, or the latest one."""
        events = self._build_events(dt_util.utcnow())
        if not events:
            return None

        now = dt_util.utcnow()
        future = [e for e in events if e.start >= now]
        if future:
            return min(future, key=lambda e: e.start)
        return max(events, key=lambda e: e.start)

    async def async_get_events(
        self,
        hass: HomeAssistant,
        start_date: datetime,
        end_date: datetime,
    ) -> list[CalendarEvent]:
        """Return events in the given date range."""
        events = self._build_events(dt_util.utcnow())
        return [e for e in events if e.end > start_date and e.start < end_date]

    def _build_events(self, now: datetime) -> list[CalendarEvent]:
        if not self.coordinator.data:
            return []

        data = self.coordinator.data
        names = {med["id"]: med["name"] for med in data.get("medications", [])}
        events: list[CalendarEvent] = []

        for dose in data.get("doses", []):
            start = parse_instant(dose.get("datetime_iso"))
            if start is None:
                continue
            name = names.get(dose.get("medication_id"), "Unknown medication")
            description = f"Source: {dose.get('source', 'manual')}"
            if dose.get("source") == SOURCE_SCHEDULED:
                description += f"\nStatus: {dose.get('status')}"
            events.append(
                CalendarEvent(
                    summary=f"{name} {dose['dose_mg']} mg",
                    start=start,
                    end=start + EVENT_DURATION,
                    description=description,
                    uid=dose.get("id"),
                )
            )

        events.extend(self._projected_events(data, names, now))
        events.sort(key=lambda e: e.start)
        return events

    def _projected_events(
        self, data: dict[str, Any], names: dict[str, str], now: datetime
    ) -> list[CalendarEvent]:
        """Scheduled occurrences after *now*, not yet materialized."""
        horizon = now + timedelta(days=CALENDAR_HORIZON_DAYS)
        events: list[CalendarEvent] = []
        for schedule in data.get("schedules", []):
            if not schedule.get("enabled"):
                continue
            start = schedule_start(schedule)
            interval = schedule_interval(schedule)
            if start is None or interval is None:
                continue
            timezone_name = schedule_timezone(schedule, data.get("default_timezone"))
            name = names.get(schedule.get("medication_id"), "Unknown medication")
            for instant in iter_occurrences(
                start, interval, timezone_name, after=now, inclusive=False
            ):
                if instant > horizon:
                    break
                events.append(
                    CalendarEvent(
                        summary=f"{name} {schedule['dose_mg']} mg (scheduled)",
                        start=instant,
                        end=instant + EVENT_DURATION,
                        description=f"Every {interval} day(s) in {timezone_name}",
                        uid=occurrence_key(schedule["id"], instant),
                    )
                )
        return events
