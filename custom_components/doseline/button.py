"""Button platform for Doseline."""

from __future__ import annotations

import logging

from homeassistant.components.button import ButtonEntity
from homeassistant.config_entries import ConfigEntry
from homeassistant.core import HomeAssistant
from homeassistant.helpers.entity_platform import AddEntitiesCallback

from .const import DOMAIN
from .coordinator import DoselineCoordinator

_LOGGER = logging.getLogger(__name__)


async def async_setup_entry(
    hass: HomeAssistant,
    entry: ConfigEntry,
    async_add_entities: AddEntitiesCallback,
) -> None:
    """Set up Doseline button entities."""
    coordinator: DoselineCoordinator = hass.data[DOMAIN][entry.entry_id]
    async_add_entities([RefreshDosesButton(coordinator, entry)])


class RefreshDosesButton(ButtonEntity):
    """Button to reconcile scheduled doses now and reload everything."""

    _attr_has_entity_name = True
    _attr_name = "Refresh doses"
    _attr_icon = "mdi:refresh"

    def __init__(
        self,
        coordinator: DoselineCoordinator,
        entry: ConfigEntry,
    ) -> None:
        self._coordinator = coordinator
        self._attr_unique_id = f"{entry.entry_id}_refresh_doses"

    async def async_press(self) -> None:
        """Handle the button press."""
        _LOGGER.debug("Manual refresh requested")
        await self._coordinator.async_manual_refresh()
