"""In-process event store.

Writers build a new snapshot of the whole store and swap it in under an
``asyncio.Lock``; readers only ever dereference the current snapshot, so a
half-applied batch is never visible.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from unical.models import CalendarEvent
from unical.storage.base import (
    UNCHANGED,
    CalendarKey,
    DeleteEvent,
    EventKey,
    StoreOperation,
    SyncTokenUpdate,
    UpsertEvent,
    _Unchanged,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Snapshot:
    events: dict[EventKey, CalendarEvent] = field(default_factory=dict)
    sync_tokens: dict[CalendarKey, str | None] = field(default_factory=dict)


class InMemoryEventStore:
    """Copy-on-write store suitable for tests, scripts and single-process use."""

    def __init__(self) -> None:
        self._snapshot = _Snapshot()
        self._lock = asyncio.Lock()

    async def get_event(self, key: EventKey) -> CalendarEvent | None:
        event = self._snapshot.events.get(key)
        return event.model_copy(deep=True) if event is not None else None

    async def list_events(self, account_id: str, calendar_id: str) -> list[CalendarEvent]:
        return [
            event.model_copy(deep=True)
            for key, event in self._snapshot.events.items()
            if key.account_id == account_id and key.calendar_id == calendar_id
        ]

    async def upsert_event(self, event: CalendarEvent) -> None:
        await self.apply_batch([UpsertEvent(event)])

    async def delete_event(self, key: EventKey) -> bool:
        existed = key in self._snapshot.events
        await self.apply_batch([DeleteEvent(key)])
        return existed

    async def apply_batch(
        self,
        operations: Sequence[StoreOperation],
        *,
        sync_token: SyncTokenUpdate | _Unchanged = UNCHANGED,
    ) -> None:
        async with self._lock:
            events = dict(self._snapshot.events)
            sync_tokens = dict(self._snapshot.sync_tokens)
            for operation in operations:
                if isinstance(operation, UpsertEvent):
                    events[operation.key] = operation.event.model_copy(deep=True)
                elif isinstance(operation, DeleteEvent):
                    expected = operation.expected
                    if expected is not None and events.get(operation.key) != expected:
                        logger.debug("Skipping delete of changed event %s", operation.key)
                        continue
                    events.pop(operation.key, None)
                else:
                    raise TypeError(f"Unsupported store operation: {operation!r}")
            if not isinstance(sync_token, _Unchanged):
                calendar_key, token = sync_token
                sync_tokens[calendar_key] = token
            self._snapshot = _Snapshot(events=events, sync_tokens=sync_tokens)
        logger.debug("Applied batch of %d operation(s)", len(operations))

    async def get_sync_token(self, calendar_key: CalendarKey) -> str | None:
        return self._snapshot.sync_tokens.get(calendar_key)

    async def set_sync_token(self, calendar_key: CalendarKey, token: str | None) -> None:
        await self.apply_batch([], sync_token=(calendar_key, token))
