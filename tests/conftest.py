"""Shared fixtures for the doseline tests."""

from __future__ import annotations

from typing import Any

import pytest

from custom_components.doseline.database import DoselineDatabase


@pytest.fixture
async def database(tmp_path):
    """A fresh SQLite database under tmp_path."""
    db = DoselineDatabase(tmp_path / "doseline.db")
    await db.async_setup()
    yield db
    await db.async_close()


@pytest.fixture
async def medication(database) -> dict[str, Any]:
    return await database.add_medication(
        name="Tirzepatide", ka_per_hour=0.12, ke_per_hour=0.0058
    )


@pytest.fixture
def add_schedule(database, medication):
    """Factory inserting a schedule for the default medication."""

    async def _add(
        start: str,
        interval: int,
        timezone_name: str = "UTC",
        dose_mg: float = 2.5,
        enabled: bool = True,
    ) -> dict[str, Any]:
        return await database.add_schedule(
            medication_id=medication["id"],
            start_datetime_iso=start,
            timezone_name=timezone_name,
            dose_mg=dose_mg,
            interval=interval,
            enabled=enabled,
        )

    return _add
