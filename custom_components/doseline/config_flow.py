"""Config flow for Doseline."""

from __future__ import annotations

from typing import Any

import voluptuous as vol
from homeassistant import config_entries
from homeassistant.core import callback

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
    DOMAIN,
)
from .timezone import is_valid_time_zone


def _settings_schema(data: dict[str, Any]) -> vol.Schema:
    """Form schema for the settings, defaulting to *data*."""
    return vol.Schema(
        {
            vol.Required(
                CONF_DEFAULT_TIMEZONE,
                default=data.get(CONF_DEFAULT_TIMEZONE, DEFAULT_TIMEZONE),
            ): str,
            vol.Required(
                CONF_SAMPLE_MINUTES,
                default=data.get(CONF_SAMPLE_MINUTES, DEFAULT_SAMPLE_MINUTES),
            ): vol.All(vol.Coerce(int), vol.Range(min=5, max=1440)),
            vol.Required(
                CONF_LOOKBACK_DAYS,
                default=data.get(CONF_LOOKBACK_DAYS, DEFAULT_LOOKBACK_DAYS),
            ): vol.All(vol.Coerce(int), vol.Range(min=0, max=365)),
            vol.Required(
                CONF_FUTURE_DAYS,
                default=data.get(CONF_FUTURE_DAYS, DEFAULT_FUTURE_DAYS),
            ): vol.All(vol.Coerce(int), vol.Range(min=0, max=90)),
            vol.Required(
                CONF_ENABLE_CALENDAR,
                default=data.get(CONF_ENABLE_CALENDAR, DEFAULT_ENABLE_CALENDAR),
            ): bool,
        }
    )


def _validate(user_input: dict[str, Any]) -> dict[str, str]:
    errors: dict[str, str] = {}
    if not is_valid_time_zone(user_input.get(CONF_DEFAULT_TIMEZONE)):
        errors[CONF_DEFAULT_TIMEZONE] = "invalid_timezone"
    return errors


class DoselineConfigFlow(config_entries.ConfigFlow, domain=DOMAIN):
    """Handle a config flow for Doseline."""

    VERSION = 1

    async def async_step_user(
        self, user_input: dict[str, Any] | None = None
    ) -> config_entries.ConfigFlowResult:
        """Collect the default time zone and chart window."""
        await self.async_set_unique_id(DOMAIN)
        self._abort_if_unique_id_configured()

        errors: dict[str, str] = {}
        if user_input is not None:
            errors = _validate(user_input)
            if not errors:
                return self.async_create_entry(title="Doseline", data=user_input)

        defaults = dict(user_input or {})
        if CONF_DEFAULT_TIMEZONE not in defaults and is_valid_time_zone(
            self.hass.config.time_zone
        ):
            defaults[CONF_DEFAULT_TIMEZONE] = self.hass.config.time_zone

        return self.async_show_form(
            step_id="user",
            data_schema=_settings_schema(defaults),
            errors=errors,
        )

    @staticmethod
    @callback
    def async_get_options_flow(
        config_entry: config_entries.ConfigEntry,
    ) -> DoselineOptionsFlow:
        """Get the options flow handler."""
        return DoselineOptionsFlow()


class DoselineOptionsFlow(config_entries.OptionsFlow):
    """Handle options for Doseline."""

    async def async_step_init(
        self, user_input: dict[str, Any] | None = None
    ) -> config_entries.ConfigFlowResult:
        """Manage integration options."""
        errors: dict[str, str] = {}

        if user_input is not None:
            errors = _validate(user_input)
            if not errors:
                return self.async_create_entry(data=user_input)

        # Merge options over data so saved changes are reflected
        data = {**self.config_entry.data, **self.config_entry.options}

        return self.async_show_form(
            step_id="init",
            data_schema=_settings_schema(data),
            errors=errors,
        )
