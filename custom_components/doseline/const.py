"""Constants for the Doseline medication level integration."""

from __future__ import annotations

DOMAIN = "doseline"

PLATFORMS = ["sensor", "calendar", "button"]

# ── Config keys ──────────────────────────────────────────────────────────────

CONF_DEFAULT_TIMEZONE = "default_timezone"
CONF_SAMPLE_MINUTES = "chart_sample_minutes"
CONF_LOOKBACK_DAYS = "default_lookback_days"
CONF_FUTURE_DAYS = "default_future_days"
CONF_ENABLE_CALENDAR = "enable_calendar"

# ── Defaults ─────────────────────────────────────────────────────────────────

DEFAULT_TIMEZONE = "Pacific/Auckland"
DEFAULT_SAMPLE_MINUTES = 60
DEFAULT_LOOKBACK_DAYS = 30
DEFAULT_FUTURE_DAYS = 7
DEFAULT_ENABLE_CALENDAR = True
DEFAULT_UPDATE_INTERVAL = 60  # timer tick, seconds
DEFAULT_DEBOUNCE_SECONDS = 0.3
CALENDAR_HORIZON_DAYS = 30

DB_FILENAME = "doseline.db"
DB_SCHEMA_VERSION = 5

SETTINGS_ID = "singleton"

# ── Dose sources and scheduled statuses ──────────────────────────────────────

SOURCE_MANUAL = "manual"
SOURCE_SCHEDULED = "scheduled"

DOSE_SOURCES = [SOURCE_MANUAL, SOURCE_SCHEDULED]

STATUS_ASSUMED_TAKEN = "assumed_taken"
STATUS_CONFIRMED_TAKEN = "confirmed_taken"
STATUS_SKIPPED = "skipped"

SCHEDULED_STATUSES = [
    STATUS_ASSUMED_TAKEN,
    STATUS_CONFIRMED_TAKEN,
    STATUS_SKIPPED,
]

FREQUENCY_DAILY = "daily"
FREQUENCY_WEEKLY = "weekly"
FREQUENCY_CUSTOM = "custom"

FREQUENCY_INTERVALS: dict[str, int | None] = {
    FREQUENCY_DAILY: 1,
    FREQUENCY_WEEKLY: 7,
    FREQUENCY_CUSTOM: None,
}

# ── Attribute names ──────────────────────────────────────────────────────────

ATTR_SERIES = "series"
ATTR_WINDOW_START = "window_start"
ATTR_WINDOW_END = "window_end"
ATTR_NOW = "now"
ATTR_MEDICATION_ID = "medication_id"
ATTR_LAST_RECONCILED_AT = "last_reconciled_at"
ATTR_SAMPLE_MINUTES = "sample_minutes"
ATTR_PK_PROFILE = "pk_profile"

# Series and amount key for the sum over all medications; reserved as an id
TOTAL_KEY = "total"

# ── Default medication profiles (seeded on first load) ───────────────────────
# ka/ke per hour; approximate population values.

DEFAULT_MEDICATIONS: list[dict[str, object]] = [
    {
        "name": "Tirzepatide",
        "ka_per_hour": 0.12,
        "ke_per_hour": 0.0058,
        "scale": 1.0,
        "notes": "Approximate PK defaults (t1/2 ≈ 5 days, tmax ≈ 24-36h).",
    },
    {
        "name": "Retatrutide",
        "ka_per_hour": 0.1,
        "ke_per_hour": 0.0048,
        "scale": 1.0,
        "notes": "Approximate PK defaults (t1/2 ≈ 6 days, tmax ≈ 24-36h).",
    },
]

APPROXIMATION_DISCLAIMER = (
    "Estimated amounts are pharmacokinetic APPROXIMATIONS based on a"
    " two-compartment absorption/elimination model, not measured levels."
)
