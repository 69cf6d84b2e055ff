"""Decide when to reconcile scheduled doses, and keep the loaded state."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from .const import DEFAULT_DEBOUNCE_SECONDS, DEFAULT_MEDICATIONS
from .database import DoselineDatabase
from .recurrence import (
    iter_occurrences,
    schedule_interval,
    schedule_start,
    schedule_timezone,
)
from .reconcile import reconcile_scheduled_doses

_LOGGER = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ScanDecision:
    """How the next reconciliation should scan.

    A full scan (``since`` is None) rechecks every occurrence from each
    schedule's start; otherwise only occurrences at or after ``since``.
    """

    force_full_scan: bool
    since: datetime | None


@dataclass
class Snapshot:
    """Entities as last loaded from the database."""

    medications: list[dict[str, Any]] = field(default_factory=list)
    doses: list[dict[str, Any]] = field(default_factory=list)
    schedules: list[dict[str, Any]] = field(default_factory=list)
    settings: dict[str, Any] = field(default_factory=dict)


def next_scheduled_occurrence(
    schedules: list[dict[str, Any]],
    since: datetime,
    default_timezone: str | None,
) -> datetime | None:
    """Earliest occurrence strictly after *since* across enabled schedules."""
    next_time: datetime | None = None
    for schedule in schedules:
        if not schedule.get("enabled"):
            continue
        start = schedule_start(schedule)
        interval = schedule_interval(schedule)
        if start is None or interval is None:
            continue
        timezone_name = schedule_timezone(schedule, default_timezone)
        candidate = next(
            iter_occurrences(start, interval, timezone_name, after=since, inclusive=False),
            None,
        )
        if candidate is not None and (next_time is None or candidate < next_time):
            next_time = candidate
    return next_time


class RefreshController:
    """Event-driven trigger for reconciliation.

    Events are load, schedule change, timer tick and manual refresh. Each
    maps to a scan decision and at most one reconcile call; a call arriving
    while another is in flight is dropped, and the next event catches up.
    """

    def __init__(
        self,
        database: DoselineDatabase,
        *,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
        on_refresh: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        self._database = database
        self._debounce_seconds = debounce_seconds
        self._clock = clock
        self._on_refresh = on_refresh
        self.last_reconciled_at: datetime | None = None
        self.snapshot = Snapshot()
        self.loaded = False
        self._in_flight = False
        self._previous_schedules: dict[str, dict[str, Any]] = {}
        self._pending: asyncio.Task[None] | None = None
        self._pending_full_scan = False
        # Whether _pending is still waiting out the debounce delay
        self._debouncing = False

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    # ── Decisions ────────────────────────────────────────────────────────────

    def decide_scan(self, schedules: list[dict[str, Any]]) -> ScanDecision:
        """Full scan if an edit may add occurrences at or before the last
        reconciliation point; otherwise scan from that point on."""
        last = self.last_reconciled_at
        if last is None:
            return ScanDecision(force_full_scan=True, since=None)

        for schedule in schedules:
            if not schedule.get("enabled"):
                continue
            start = schedule_start(schedule)
            if start is None or start > last:
                continue
            previous = self._previous_schedules.get(schedule["id"])
            if (
                previous is None
                or not previous.get("enabled")
                or previous.get("start_datetime_iso") != schedule.get("start_datetime_iso")
                or previous.get("interval") != schedule.get("interval")
                or previous.get("timezone") != schedule.get("timezone")
            ):
                return ScanDecision(force_full_scan=True, since=None)

        return ScanDecision(force_full_scan=False, since=last)

    def _remember_schedules(self, schedules: list[dict[str, Any]]) -> None:
        self._previous_schedules = {s["id"]: dict(s) for s in schedules}

    # ── Reconciliation ───────────────────────────────────────────────────────

    async def async_reconcile(
        self,
        target: datetime,
        *,
        since: datetime | None = None,
        force_refresh: bool = False,
    ) -> bool:
        """Reconcile up to *target*; True if doses were re-read.

        Dropped when another call is in flight or *target* is not past the
        last reconciliation. Failures are logged and leave state untouched.
        """
        if self._in_flight:
            _LOGGER.debug("Reconciliation already in flight; dropping trigger")
            return False
        if self.last_reconciled_at is not None and target <= self.last_reconciled_at:
            return False

        self._in_flight = True
        try:
            result = await reconcile_scheduled_doses(self._database, target, since=since)
            self.last_reconciled_at = target
            if result.created_count > 0 or force_refresh:
                self.snapshot.doses = await self._database.get_doses()
                return True
            return False
        except Exception:
            _LOGGER.exception("Reconciling scheduled doses failed")
            return False
        finally:
            self._in_flight = False

    # ── Events ───────────────────────────────────────────────────────────────

    async def async_load(self, now: datetime | None = None) -> Snapshot:
        """Full reconciliation, then load every entity."""
        target = now or self._clock()
        await self.async_reconcile(target)

        medications = await self._database.get_medications()
        if not medications:
            for profile in DEFAULT_MEDICATIONS:
                await self._database.add_medication(**profile)
            medications = await self._database.get_medications()

        self.snapshot = Snapshot(
            medications=medications,
            doses=await self._database.get_doses(),
            schedules=await self._database.get_schedules(),
            settings=await self._database.get_settings(),
        )
        self._remember_schedules(self.snapshot.schedules)
        self.loaded = True
        return self.snapshot

    async def async_reload(self) -> Snapshot:
        """Re-read every entity without reconciling."""
        self.snapshot = Snapshot(
            medications=await self._database.get_medications(),
            doses=await self._database.get_doses(),
            schedules=await self._database.get_schedules(),
            settings=await self._database.get_settings(),
        )
        return self.snapshot

    def async_schedules_changed(
        self, schedules: list[dict[str, Any]]
    ) -> asyncio.Task[None]:
        """Record a schedule edit and debounce the reconciliation it needs.

        Rapid edits coalesce into one call; a full scan requested by any of
        them is kept. A reconciliation that has already started is never
        cancelled; the new edit runs after it.
        """
        decision = self.decide_scan(schedules)
        self._pending_full_scan = self._pending_full_scan or decision.force_full_scan
        self._remember_schedules(schedules)
        self.snapshot.schedules = list(schedules)

        previous = self._pending
        if previous is not None and (previous.done() or self._debouncing):
            previous.cancel()
            previous = None
        self._debouncing = True
        self._pending = asyncio.create_task(self._async_debounced_reconcile(previous))
        return self._pending

    async def _async_debounced_reconcile(
        self, previous: asyncio.Task[None] | None
    ) -> None:
        await asyncio.sleep(self._debounce_seconds)
        self._debouncing = False
        if previous is not None:
            await asyncio.wait([previous])

        target = self._clock()
        full_scan = self._pending_full_scan
        self._pending_full_scan = False
        since = None if full_scan else self.last_reconciled_at
        refreshed = await self.async_reconcile(
            target, since=since, force_refresh=True
        )
        if self.last_reconciled_at != target:
            self._pending_full_scan = self._pending_full_scan or full_scan
        if refreshed and self._on_refresh is not None:
            await self._on_refresh()

    async def async_tick(self, now: datetime | None = None) -> bool:
        """Reconcile if a scheduled occurrence has become due."""
        target = now or self._clock()
        if self.last_reconciled_at is None:
            return await self.async_reconcile(target)
        next_due = next_scheduled_occurrence(
            self.snapshot.schedules,
            self.last_reconciled_at,
            self.snapshot.settings.get("default_timezone"),
        )
        if next_due is None or target < next_due:
            return False
        return await self.async_reconcile(target, since=self.last_reconciled_at)

    async def async_manual_refresh(self, now: datetime | None = None) -> bool:
        target = now or self._clock()
        return await self.async_reconcile(
            target, since=self.last_reconciled_at, force_refresh=True
        )

    async def async_shutdown(self) -> None:
        """Cancel a debounced reconciliation, or let a running one finish."""
        pending = self._pending
        if pending is not None and not pending.done():
            if self._debouncing:
                pending.cancel()
            else:
                await asyncio.wait([pending])
        self._pending = None
        self._debouncing = False

    def invalidate(self) -> None:
        """Forget reconciliation state so the next event starts over."""
        self.last_reconciled_at = None
        self.loaded = False
        self._previous_schedules = {}
