"""Two-compartment absorption/elimination model (Bateman function)."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

KA_KE_EPSILON = 1e-8

_SECONDS_PER_HOUR = 3600.0


@dataclass(frozen=True)
class MedicationProfile:
    """Rate constants (1/hour) and linear scale of a medication."""

    ka_per_hour: float
    ke_per_hour: float
    scale: float = 1.0


@dataclass(frozen=True)
class DoseEvent:
    """A dose at an absolute instant, with the profile it decays by."""

    datetime: datetime
    dose_mg: float
    medication: MedicationProfile


def _clamp_non_negative(value: float) -> float:
    if value < 0 or math.isnan(value):
        return 0.0
    return value


def amount_from_dose_at_delta_hours(dose: DoseEvent, dt_hours: float) -> float:
    """Amount contributed by *dose* *dt_hours* after it was taken."""
    if dt_hours < 0:
        return 0.0

    ka = dose.medication.ka_per_hour
    ke = dose.medication.ke_per_hour
    scale = dose.medication.scale
    ka_minus_ke = ka - ke

    try:
        if abs(ka_minus_ke) < KA_KE_EPSILON:
            # Limit of the general form as ke -> ka
            amount = dose.dose_mg * scale * (ka * dt_hours) * math.exp(-ka * dt_hours)
        else:
            amount = (
                dose.dose_mg
                * scale
                * (ka / ka_minus_ke)
                * (math.exp(-ke * dt_hours) - math.exp(-ka * dt_hours))
            )
    except OverflowError:
        return 0.0

    return _clamp_non_negative(amount)


def amount_from_dose_at_time(dose: DoseEvent, t: datetime) -> float:
    """Amount contributed by *dose* at instant *t*; zero before the dose."""
    dt_hours = (t - dose.datetime).total_seconds() / _SECONDS_PER_HOUR
    return amount_from_dose_at_delta_hours(dose, dt_hours)


def total_amount_at_time(doses: list[DoseEvent], t: datetime) -> float:
    """Sum of all dose contributions at *t*."""
    return sum((amount_from_dose_at_time(dose, t) for dose in doses), 0.0)


def generate_time_series(
    doses: list[DoseEvent],
    start: datetime,
    end: datetime,
    sample_minutes: float,
) -> list[dict[str, Any]]:
    """Sample the total amount every *sample_minutes* from start to end inclusive."""
    if sample_minutes <= 0 or end < start:
        return []

    step = timedelta(minutes=sample_minutes)
    results: list[dict[str, Any]] = []
    current = start
    while current <= end:
        results.append(
            {"t": current, "amount_mg": total_amount_at_time(doses, current)}
        )
        current += step
    return results
