"""Sync engine: pulls provider changes into the local event store.

Each cycle for a calendar loads the stored sync token, asks the calendar's
provider adapter for changes, turns them into store operations and commits
those operations together with the new token in one ``apply_batch`` call.
Nothing from a failed, timed-out or cancelled cycle reaches the store.

Cycles for the same ``(account_id, calendar_id)`` are serialized by a
per-calendar ``asyncio.Lock``; different calendars sync concurrently.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

from unical.core.logging import sync_context
from unical.core.metrics import SyncMetrics
from unical.core.telemetry import calendar_span
from unical.errors import SyncFailedError
from unical.models import Calendar, CalendarEvent, SyncDeleted, SyncResult, SyncStatus, SyncUpdated
from unical.providers.base import SyncOptions
from unical.providers.registry import ProviderRegistry
from unical.storage.base import (
    CalendarKey,
    DeleteEvent,
    EventKey,
    EventStore,
    StoreOperation,
    UpsertEvent,
)
from unical.temporal import Instant, TemporalValue, to_instant

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_PAST = timedelta(days=30)
DEFAULT_WINDOW_FUTURE = timedelta(days=365)
DEFAULT_SYNC_TIMEOUT_SECONDS = 30.0


class SyncState(StrEnum):
    """Per-calendar state machine: IDLE -> SYNCING -> IDLE | FAILED."""

    IDLE = "idle"
    SYNCING = "syncing"
    FAILED = "failed"


@dataclass(frozen=True)
class SyncReport:
    """Outcome of one committed sync cycle."""

    calendar_key: CalendarKey
    status: SyncStatus
    upserted: int
    deleted: int
    sync_token: str | None


@dataclass
class _CalendarSyncState:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    state: SyncState = SyncState.IDLE
    last_status: SyncStatus | None = None
    last_error: str | None = None
    last_synced_at: datetime | None = None


def _overlaps_window(
    event: CalendarEvent,
    window_start: datetime,
    window_end: datetime,
    time_zone: str,
) -> bool:
    """True when *event* intersects ``[window_start, window_end)``."""
    start = to_instant(event.start, time_zone).value
    end = to_instant(event.end, time_zone).value
    if start >= window_end:
        return False
    return end > window_start or start >= window_start


class SyncEngine:
    """Runs sync cycles for calendars of any registered provider.

    Parameters
    ----------
    registry:
        Resolves the adapter for a calendar from its ``provider_id`` tag.
    store:
        The event store every cycle commits into.
    default_time_zone:
        Zone used to evaluate windows when neither the call nor the calendar
        names one.
    window_past / window_future:
        Default full-sync window around ``clock()``.
    timeout_seconds:
        Default deadline for one adapter ``sync`` call.
    clock:
        Returns the current aware datetime; injectable for tests.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        store: EventStore,
        *,
        default_time_zone: str = "UTC",
        window_past: timedelta = DEFAULT_WINDOW_PAST,
        window_future: timedelta = DEFAULT_WINDOW_FUTURE,
        timeout_seconds: float = DEFAULT_SYNC_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] | None = None,
        metrics: SyncMetrics | None = None,
    ) -> None:
        self._registry = registry
        self._store = store
        self._default_time_zone = default_time_zone
        self._window_past = window_past
        self._window_future = window_future
        self._timeout_seconds = timeout_seconds
        self._clock = clock or (lambda: datetime.now(UTC))
        self._metrics = metrics or SyncMetrics()
        self._calendars: dict[CalendarKey, _CalendarSyncState] = {}
        self._force_sync_event: asyncio.Event = asyncio.Event()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def _entry(self, calendar: Calendar) -> _CalendarSyncState:
        entry = self._calendars.get(calendar.key)
        if entry is None:
            entry = _CalendarSyncState()
            self._calendars[calendar.key] = entry
        return entry

    def state(self, calendar: Calendar) -> SyncState:
        entry = self._calendars.get(calendar.key)
        return entry.state if entry is not None else SyncState.IDLE

    def last_status(self, calendar: Calendar) -> SyncStatus | None:
        """Status of the last committed cycle (``incremental`` or ``full``)."""
        entry = self._calendars.get(calendar.key)
        return entry.last_status if entry is not None else None

    def last_error(self, calendar: Calendar) -> str | None:
        entry = self._calendars.get(calendar.key)
        return entry.last_error if entry is not None else None

    def forget_calendar(self, calendar: Calendar) -> bool:
        """Drop the per-calendar state of a disconnected calendar.

        Returns ``False`` while a cycle for it still holds the lock; the
        state is kept in that case and the caller may retry.
        """
        entry = self._calendars.get(calendar.key)
        if entry is None or entry.lock.locked():
            return False
        del self._calendars[calendar.key]
        return True

    # ------------------------------------------------------------------
    # Sync cycle
    # ------------------------------------------------------------------

    def _window(
        self,
        time_min: TemporalValue | None,
        time_max: TemporalValue | None,
    ) -> tuple[TemporalValue, TemporalValue]:
        now = self._clock()
        if time_min is None:
            time_min = Instant(value=now - self._window_past)
        if time_max is None:
            time_max = Instant(value=now + self._window_future)
        return time_min, time_max

    async def sync_calendar(
        self,
        calendar: Calendar,
        *,
        time_min: TemporalValue | None = None,
        time_max: TemporalValue | None = None,
        time_zone: str | None = None,
        timeout: float | None = None,
        full: bool = False,
    ) -> SyncReport:
        """Run one sync cycle for *calendar* and commit it atomically.

        ``full=True`` ignores the stored token and re-lists the window.

        Raises
        ------
        SyncFailedError
            When the adapter (or the commit) fails or the adapter call exceeds
            *timeout*. The stored token and events are left untouched.
        """
        entry = self._entry(calendar)
        zone = time_zone or calendar.time_zone or self._default_time_zone
        window = self._window(time_min, time_max)
        deadline = self._timeout_seconds if timeout is None else timeout

        async with entry.lock:
            with (
                sync_context(calendar.account_id, calendar.id),
                calendar_span(
                    "sync.cycle",
                    account_id=calendar.account_id,
                    calendar_id=calendar.id,
                    provider_id=calendar.provider_id,
                ) as span,
            ):
                entry.state = SyncState.SYNCING
                self._metrics.sync_started(calendar.provider_id)
                started = time.monotonic()
                outcome = "failed"
                try:
                    report = await self._run_cycle(calendar, window, zone, deadline, full=full)
                except asyncio.CancelledError:
                    outcome = "cancelled"
                    entry.state = SyncState.IDLE
                    logger.info("Sync cancelled; nothing applied")
                    raise
                except SyncFailedError as exc:
                    entry.state = SyncState.FAILED
                    entry.last_error = exc.reason
                    logger.warning("Sync failed: %s", exc.reason)
                    raise
                else:
                    outcome = report.status
                    entry.state = SyncState.IDLE
                    entry.last_status = report.status
                    entry.last_error = None
                    entry.last_synced_at = self._clock()
                    self._metrics.record_changes(
                        calendar.provider_id, updated=report.upserted, deleted=report.deleted
                    )
                    logger.info(
                        "Sync completed (status=%s, upserted=%d, deleted=%d)",
                        report.status,
                        report.upserted,
                        report.deleted,
                    )
                    return report
                finally:
                    span.set_attribute("sync.status", outcome)
                    self._metrics.sync_finished(
                        calendar.provider_id,
                        outcome,
                        (time.monotonic() - started) * 1000,
                    )

    async def _run_cycle(
        self,
        calendar: Calendar,
        window: tuple[TemporalValue, TemporalValue],
        time_zone: str,
        timeout: float,
        *,
        full: bool,
    ) -> SyncReport:
        key = calendar.key
        deadline: asyncio.Timeout | None = None
        try:
            token: str | None = None
            if not full:
                token = await self._store.get_sync_token(key)
                if token is None:
                    token = calendar.sync_token

            # Events written locally after this read are never stale candidates.
            stored = await self._store.list_events(calendar.account_id, calendar.id)
            provider = self._registry.for_calendar(calendar)
            options = SyncOptions(
                calendar=calendar,
                initial_sync_token=token,
                time_min=window[0],
                time_max=window[1],
                time_zone=time_zone,
            )
            async with asyncio.timeout(timeout) as deadline:
                result = await provider.sync(options)

            operations = self._merge_operations(result, stored, window, time_zone)
            await self._store.apply_batch(operations, sync_token=(key, result.sync_token))
        except TimeoutError as exc:
            if deadline is not None and deadline.expired():
                raise SyncFailedError("timeout", calendar_key=key) from exc
            raise SyncFailedError(str(exc) or type(exc).__name__, calendar_key=key) from exc
        except SyncFailedError:
            raise
        except Exception as exc:
            raise SyncFailedError(str(exc) or type(exc).__name__, calendar_key=key) from exc

        upserted = sum(1 for op in operations if isinstance(op, UpsertEvent))
        return SyncReport(
            calendar_key=key,
            status=result.status,
            upserted=upserted,
            deleted=len(operations) - upserted,
            sync_token=result.sync_token,
        )

    def _merge_operations(
        self,
        result: SyncResult,
        stored: list[CalendarEvent],
        window: tuple[TemporalValue, TemporalValue],
        time_zone: str,
    ) -> list[StoreOperation]:
        """Translate a sync result into store operations.

        Incremental results map one-to-one. A full result additionally deletes
        stored events inside the window that the listing no longer contains;
        stored events outside the window are left alone.

        ``stored`` is read before the adapter call, so an event created locally
        during the cycle is never a candidate. Each stale delete carries the event
        as it was read and the store drops it only while the row is unchanged, so
        a concurrent local edit also survives the resync.
        """
        operations: list[StoreOperation] = []
        listed: set[str] = set()
        for item in result.changes:
            if isinstance(item, SyncUpdated):
                operations.append(UpsertEvent(item.event))
                listed.add(item.event.id)
            elif isinstance(item, SyncDeleted):
                operations.append(DeleteEvent(EventKey.of(item.event)))
                listed.add(item.event.id)

        if result.status != "full":
            return operations

        window_start = to_instant(window[0], time_zone).value
        window_end = to_instant(window[1], time_zone).value
        stale = [
            existing
            for existing in stored
            if existing.id not in listed
            and _overlaps_window(existing, window_start, window_end, time_zone)
        ]
        if stale:
            logger.debug("Full resync removes %d stale event(s)", len(stale))
        operations.extend(DeleteEvent(EventKey.of(event), expected=event) for event in stale)
        return operations

    async def _sync_or_failure(
        self, calendar: Calendar, kwargs: dict[str, Any]
    ) -> SyncReport | SyncFailedError:
        try:
            return await self.sync_calendar(calendar, **kwargs)
        except SyncFailedError as exc:
            return exc

    async def sync_calendars(
        self,
        calendars: Iterable[Calendar],
        **kwargs: Any,
    ) -> list[SyncReport | SyncFailedError]:
        """Sync several calendars concurrently.

        Failures are returned in place of the report for that calendar so one
        broken calendar does not hide the others' results.
        """
        return list(
            await asyncio.gather(
                *(self._sync_or_failure(calendar, kwargs) for calendar in calendars)
            )
        )

    # ------------------------------------------------------------------
    # Poller
    # ------------------------------------------------------------------

    def request_sync(self) -> None:
        """Wake the poller for an immediate cycle."""
        self._force_sync_event.set()

    async def run_poller(
        self,
        calendars_fn: Callable[[], Awaitable[list[Calendar]]],
        interval_seconds: float,
    ) -> None:
        """Background task: sync every calendar at the configured interval.

        The poller also listens for :meth:`request_sync` to trigger an
        immediate cycle. It runs until cancelled.
        """
        logger.debug("Sync poller loop started (interval=%ss)", interval_seconds)
        while True:
            try:
                calendars = await calendars_fn()
                results = await self.sync_calendars(calendars)
                failures = [r for r in results if isinstance(r, SyncFailedError)]
                logger.info(
                    "Sync poller cycle finished (calendars=%d, failed=%d)",
                    len(results),
                    len(failures),
                )
            except Exception as exc:
                logger.error("Sync poller error: %s", exc, exc_info=True)

            # Sleep until the next cycle is due unless request_sync() fires first.
            try:
                await asyncio.wait_for(
                    self._force_sync_event.wait(),
                    timeout=interval_seconds,
                )
                self._force_sync_event.clear()
                logger.debug("Sync poller woken early by request_sync")
            except TimeoutError:
                pass
