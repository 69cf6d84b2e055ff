"""Tests for the event-driven refresh controller."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from datetime import UTC, datetime, timedelta

import pytest

from custom_components.doseline.const import DEFAULT_MEDICATIONS
from custom_components.doseline.controller import (
    RefreshController,
    next_scheduled_occurrence,
)

T0 = datetime(2025, 2, 1, tzinfo=UTC)


class SteppingClock:
    """Returns a later instant on every call."""

    def __init__(self, start: datetime, step: timedelta = timedelta(minutes=1)) -> None:
        self.current = start
        self.step = step

    def __call__(self) -> datetime:
        self.current += self.step
        return self.current


@pytest.fixture
def clock():
    return SteppingClock(T0)


@pytest.fixture
def controller(database, clock):
    return RefreshController(database, debounce_seconds=0.01, clock=clock)


def _schedule(schedule_id: str = "s1", **overrides):
    return {
        "id": schedule_id,
        "medication_id": "m1",
        "start_datetime_iso": "2025-01-01T00:00:00.000Z",
        "timezone": "UTC",
        "dose_mg": 1.0,
        "interval": 7,
        "enabled": True,
        **overrides,
    }


# ── Load ─────────────────────────────────────────────────────────────────────


async def test_load_seeds_default_medications(database, controller):
    snapshot = await controller.async_load(T0)

    assert controller.loaded
    assert sorted(m["name"] for m in snapshot.medications) == sorted(
        m["name"] for m in DEFAULT_MEDICATIONS
    )
    assert controller.last_reconciled_at == T0


async def test_load_reconciles_existing_schedules(database, controller, add_schedule):
    await add_schedule("2025-01-01T00:00:00.000Z", 7)

    snapshot = await controller.async_load(T0)

    # 1, 8, 15, 22 and 29 January
    assert len(snapshot.doses) == 5
    assert len(snapshot.schedules) == 1


# ── Scan decisions ───────────────────────────────────────────────────────────


async def test_first_decision_is_full_scan(controller):
    decision = controller.decide_scan([_schedule()])
    assert decision.force_full_scan
    assert decision.since is None


async def test_decisions_after_load(database, controller):
    await controller.async_load(T0)

    past = _schedule(start_datetime_iso="2025-01-01T00:00:00.000Z")
    future = _schedule("s2", start_datetime_iso="2025-03-01T00:00:00.000Z")
    disabled = _schedule("s3", enabled=False)

    assert controller.decide_scan([past]).force_full_scan
    incremental = controller.decide_scan([future, disabled])
    assert not incremental.force_full_scan
    assert incremental.since == T0


async def test_edits_to_known_schedules(database, controller, add_schedule):
    schedule = await add_schedule("2025-01-01T00:00:00.000Z", 7)
    await controller.async_load(T0)

    assert not controller.decide_scan([schedule]).force_full_scan
    for change in (
        {"interval": 3},
        {"timezone": "Pacific/Auckland"},
        {"start_datetime_iso": "2025-01-02T00:00:00.000Z"},
    ):
        assert controller.decide_scan([{**schedule, **change}]).force_full_scan
    # Only a change in dose amount does not need a rescan
    assert not controller.decide_scan([{**schedule, "dose_mg": 9.0}]).force_full_scan


async def test_reenabled_schedule_forces_full_scan(database, controller, add_schedule):
    schedule = await add_schedule("2025-01-01T00:00:00.000Z", 7, enabled=False)
    await controller.async_load(T0)

    assert controller.decide_scan([{**schedule, "enabled": True}]).force_full_scan


# ── Reconcile gating ─────────────────────────────────────────────────────────


async def test_stale_target_is_dropped(database, controller):
    await controller.async_load(T0)

    assert await controller.async_reconcile(T0) is False
    assert await controller.async_reconcile(T0 - timedelta(hours=1)) is False
    assert controller.last_reconciled_at == T0


async def test_trigger_while_in_flight_is_dropped(database, controller, monkeypatch):
    gate = asyncio.Event()
    original = database.get_schedules

    async def _slow_schedules():
        await gate.wait()
        return await original()

    monkeypatch.setattr(database, "get_schedules", _slow_schedules)
    first = asyncio.create_task(controller.async_reconcile(T0))
    await asyncio.sleep(0)

    assert controller.in_flight
    assert await controller.async_reconcile(T0 + timedelta(hours=1)) is False

    gate.set()
    await first
    assert not controller.in_flight
    assert controller.last_reconciled_at == T0


async def test_failure_keeps_previous_state(database, controller, monkeypatch, caplog):
    async def _broken():
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(database, "get_schedules", _broken)
    with caplog.at_level(logging.ERROR):
        assert await controller.async_reconcile(T0) is False

    assert controller.last_reconciled_at is None
    assert not controller.in_flight
    assert "Reconciling scheduled doses failed" in caplog.text


async def test_manual_refresh_rereads_doses(database, controller, medication):
    await controller.async_load(T0)
    await database.add_dose(
        {
            "medication_id": medication["id"],
            "dose_mg": 1.0,
            "datetime_iso": "2025-01-31T00:00:00.000Z",
            "timezone": "UTC",
        }
    )

    assert await controller.async_manual_refresh(T0 + timedelta(minutes=5))
    assert len(controller.snapshot.doses) == 1


# ── Timer tick ───────────────────────────────────────────────────────────────


async def test_tick_reconciles_only_when_an_occurrence_is_due(
    database, controller, add_schedule
):
    await add_schedule("2025-01-01T08:00:00.000Z", 1)
    await controller.async_load(datetime(2025, 1, 2, 0, 0, tzinfo=UTC))
    assert len(await database.get_doses()) == 1

    assert await controller.async_tick(datetime(2025, 1, 2, 7, 0, tzinfo=UTC)) is False
    assert controller.last_reconciled_at == datetime(2025, 1, 2, 0, 0, tzinfo=UTC)

    assert await controller.async_tick(datetime(2025, 1, 2, 9, 0, tzinfo=UTC)) is True
    assert len(await database.get_doses()) == 2
    assert len(controller.snapshot.doses) == 2


def test_next_scheduled_occurrence_is_strictly_after():
    schedules = [
        _schedule("weekly"),
        _schedule("daily", start_datetime_iso="2025-01-01T06:00:00.000Z", interval=1),
        _schedule("off", start_datetime_iso="2025-01-01T01:00:00.000Z", interval=1, enabled=False),
    ]
    since = datetime(2025, 1, 8, tzinfo=UTC)
    assert next_scheduled_occurrence(schedules, since, "UTC") == datetime(
        2025, 1, 8, 6, 0, tzinfo=UTC
    )
    assert next_scheduled_occurrence(schedules[:1], since, "UTC") == datetime(
        2025, 1, 15, tzinfo=UTC
    )
    assert next_scheduled_occurrence([], since, "UTC") is None


# ── Schedule changes ─────────────────────────────────────────────────────────


async def test_schedule_edits_are_debounced(database, clock, add_schedule):
    refreshes = []

    async def _on_refresh():
        refreshes.append(controller.last_reconciled_at)

    controller = RefreshController(
        database, debounce_seconds=0.01, clock=clock, on_refresh=_on_refresh
    )
    await controller.async_load(T0)
    schedule = await add_schedule("2025-03-01T00:00:00.000Z", 7)

    first = controller.async_schedules_changed([schedule])
    second = controller.async_schedules_changed([{**schedule, "dose_mg": 3.0}])
    await second

    assert first.cancelled()
    assert len(refreshes) == 1


async def test_pending_full_scan_survives_coalescing(database, controller, add_schedule):
    await controller.async_load(T0)
    schedule = await add_schedule("2025-01-01T00:00:00.000Z", 7)

    # The first edit needs a full scan; the second on its own would not
    controller.async_schedules_changed([schedule])
    task = controller.async_schedules_changed([schedule])
    await task

    # 1, 8, 15, 22 and 29 January were all before the last reconciliation
    assert len(await database.get_doses()) == 5
    assert len(controller.snapshot.doses) == 5


async def test_edit_during_debounced_reconcile_runs_after_it(
    database, clock, add_schedule, monkeypatch
):
    refreshes = []

    async def _on_refresh():
        refreshes.append(controller.last_reconciled_at)

    controller = RefreshController(
        database, debounce_seconds=0.01, clock=clock, on_refresh=_on_refresh
    )
    await controller.async_load(T0)
    schedule = await add_schedule("2025-01-01T00:00:00.000Z", 7)

    gate = asyncio.Event()
    original = database.bulk_add_doses

    async def _slow_bulk_add(records):
        await gate.wait()
        return await original(records)

    monkeypatch.setattr(database, "bulk_add_doses", _slow_bulk_add)
    first = controller.async_schedules_changed([schedule])
    while not controller.in_flight:
        await asyncio.sleep(0.005)

    second = controller.async_schedules_changed([{**schedule, "dose_mg": 3.0}])
    await asyncio.sleep(0.02)
    assert not first.done()

    gate.set()
    await second

    assert first.done() and not first.cancelled()
    assert len(await database.get_doses()) == 5
    assert len(refreshes) == 2
    assert refreshes[0] < refreshes[1]


async def test_shutdown_waits_for_running_reconcile(
    database, controller, add_schedule, monkeypatch
):
    await controller.async_load(T0)
    schedule = await add_schedule("2025-01-01T00:00:00.000Z", 7)
    gate = asyncio.Event()
    original = database.bulk_add_doses

    async def _slow_bulk_add(records):
        await gate.wait()
        return await original(records)

    monkeypatch.setattr(database, "bulk_add_doses", _slow_bulk_add)
    task = controller.async_schedules_changed([schedule])
    while not controller.in_flight:
        await asyncio.sleep(0.005)

    shutdown = asyncio.create_task(controller.async_shutdown())
    await asyncio.sleep(0.01)
    assert not shutdown.done()

    gate.set()
    await shutdown
    assert task.done() and not task.cancelled()
    assert len(await database.get_doses()) == 5


async def test_shutdown_cancels_pending(database, controller):
    await controller.async_load(T0)
    task = controller.async_schedules_changed([_schedule()])

    await controller.async_shutdown()
    await asyncio.sleep(0)

    assert task.cancelled()


async def test_invalidate_forgets_reconciliation(database, controller):
    await controller.async_load(T0)
    controller.invalidate()

    assert controller.last_reconciled_at is None
    assert not controller.loaded
    assert controller.decide_scan([_schedule()]).force_full_scan
