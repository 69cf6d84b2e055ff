"""Sensor platform for Doseline."""

from __future__ import annotations

from typing import Any

from homeassistant.components.sensor import SensorEntity, SensorStateClass
from homeassistant.config_entries import ConfigEntry
from homeassistant.core import HomeAssistant, callback
from homeassistant.helpers.entity_platform import AddEntitiesCallback
from homeassistant.helpers.update_coordinator import CoordinatorEntity

from .const import (
    APPROXIMATION_DISCLAIMER,
    ATTR_LAST_RECONCILED_AT,
    ATTR_MEDICATION_ID,
    ATTR_NOW,
    ATTR_PK_PROFILE,
    ATTR_SAMPLE_MINUTES,
    ATTR_SERIES,
    ATTR_WINDOW_END,
    ATTR_WINDOW_START,
    DOMAIN,
    TOTAL_KEY,
)
from .coordinator import DoselineCoordinator
from .timezone import to_iso

UNIT_MG = "mg"


async def async_setup_entry(
    hass: HomeAssistant,
    entry: ConfigEntry,
    async_add_entities: AddEntitiesCallback,
) -> None:
    """Set up Doseline sensors from a config entry."""
    coordinator: DoselineCoordinator = hass.data[DOMAIN][entry.entry_id]
    known: set[str] = set()

    @callback
    def _add_new_medications() -> None:
        medications = (coordinator.data or {}).get("medications", [])
        new = [med for med in medications if med["id"] not in known]
        if not new:
            return
        known.update(med["id"] for med in new)
        async_add_entities(
            MedicationAmountSensor(coordinator, entry, med["id"], med["name"])
            for med in new
        )

    async_add_entities([TotalAmountSensor(coordinator, entry)])
    _add_new_medications()
    entry.async_on_unload(coordinator.async_add_listener(_add_new_medications))


class TotalAmountSensor(CoordinatorEntity[DoselineCoordinator], SensorEntity):
    """Estimated amount in the body across all medications.

    The sampled chart series (past and projected) rides along in the
    attributes for dashboard cards.
    """

    _attr_has_entity_name = True
    _attr_name = "Total amount"
    _attr_icon = "mdi:chart-bell-curve-cumulative"
    _attr_state_class = SensorStateClass.MEASUREMENT
    _attr_native_unit_of_measurement = UNIT_MG
    _attr_suggested_display_precision = 2
    _unrecorded_attributes = frozenset({ATTR_SERIES})

    def __init__(self, coordinator: DoselineCoordinator, entry: ConfigEntry) -> None:
        super().__init__(coordinator)
        self._attr_unique_id = f"{entry.entry_id}_total_amount"

    @property
    def native_value(self) -> float | None:
        if not self.coordinator.data:
            return None
        return self.coordinator.data["amounts"].get(TOTAL_KEY)

    @property
    def extra_state_attributes(self) -> dict[str, Any]:
        """Return the chart series and window for the card."""
        if not self.coordinator.data:
            return {}

        data = self.coordinator.data
        series = data["series"]
        return {
            ATTR_NOW: to_iso(series.now),
            ATTR_WINDOW_START: to_iso(series.start),
            ATTR_WINDOW_END: to_iso(series.end),
            ATTR_SAMPLE_MINUTES: data["settings"].get("chart_sample_minutes"),
            ATTR_LAST_RECONCILED_AT: data.get("last_reconciled_at"),
            "medications": {
                med["id"]: med["name"] for med in data.get("medications", [])
            },
            ATTR_SERIES: series.points,
            "approximation_disclaimer": APPROXIMATION_DISCLAIMER,
        }


class MedicationAmountSensor(CoordinatorEntity[DoselineCoordinator], SensorEntity):
    """Estimated amount of one medication."""

    _attr_has_entity_name = True
    _attr_icon = "mdi:needle"
    _attr_state_class = SensorStateClass.MEASUREMENT
    _attr_native_unit_of_measurement = UNIT_MG
    _attr_suggested_display_precision = 2

    def __init__(
        self,
        coordinator: DoselineCoordinator,
        entry: ConfigEntry,
        medication_id: str,
        name: str,
    ) -> None:
        super().__init__(coordinator)
        self._medication_id = medication_id
        self._attr_name = f"{name} amount"
        self._attr_unique_id = f"{entry.entry_id}_{medication_id}_amount"

    def _medication(self) -> dict[str, Any] | None:
        if not self.coordinator.data:
            return None
        for med in self.coordinator.data.get("medications", []):
            if med["id"] == self._medication_id:
                return med
        return None

    @property
    def available(self) -> bool:
        return super().available and self._medication() is not None

    @property
    def native_value(self) -> float | None:
        if not self.coordinator.data:
            return None
        return self.coordinator.data["amounts"].get(self._medication_id)

    @property
    def extra_state_attributes(self) -> dict[str, Any]:
        med = self._medication()
        if med is None:
            return {}
        schedules = [
            s
            for s in self.coordinator.data.get("schedules", [])
            if s.get("medication_id") == self._medication_id
        ]
        return {
            ATTR_MEDICATION_ID: self._medication_id,
            ATTR_PK_PROFILE: {
                "ka_per_hour": med["ka_per_hour"],
                "ke_per_hour": med["ke_per_hour"],
                "scale": med["scale"],
            },
            "notes": med.get("notes", ""),
            "schedules": schedules,
        }
