"""Local event store abstraction consumed by the sync engine and the mutator.

Every writer goes through :meth:`EventStore.apply_batch`, which applies a list
of operations and (optionally) a calendar's new sync token as one atomic step.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Final, NamedTuple, Protocol

from unical.models import CalendarEvent, EventRef

CalendarKey = tuple[str, str]


class EventKey(NamedTuple):
    """Identity of a stored event."""

    account_id: str
    calendar_id: str
    event_id: str

    @classmethod
    def of(cls, event: CalendarEvent | EventRef) -> EventKey:
        return cls(account_id=event.account_id, calendar_id=event.calendar_id, event_id=event.id)

    @property
    def calendar_key(self) -> CalendarKey:
        return (self.account_id, self.calendar_id)


class UpsertEvent(NamedTuple):
    event: CalendarEvent

    @property
    def key(self) -> EventKey:
        return EventKey.of(self.event)


class DeleteEvent(NamedTuple):
    """Remove ``key``; with ``expected`` set, only while the stored event still equals it."""

    key: EventKey
    expected: CalendarEvent | None = None


StoreOperation = UpsertEvent | DeleteEvent


class _Unchanged:
    """Marker for "leave the stored sync token alone"."""

    _instance: _Unchanged | None = None

    def __new__(cls) -> _Unchanged:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNCHANGED"


UNCHANGED: Final = _Unchanged()

SyncTokenUpdate = tuple[CalendarKey, str | None]


class EventStore(Protocol):
    """Protocol for local event stores."""

    async def get_event(self, key: EventKey) -> CalendarEvent | None:
        """Return the stored event for *key*, or ``None``."""
        ...

    async def list_events(self, account_id: str, calendar_id: str) -> list[CalendarEvent]:
        """Return every stored event of one calendar."""
        ...

    async def upsert_event(self, event: CalendarEvent) -> None:
        ...

    async def delete_event(self, key: EventKey) -> bool:
        """Remove *key*; returns ``False`` when nothing was stored."""
        ...

    async def apply_batch(
        self,
        operations: Sequence[StoreOperation],
        *,
        sync_token: SyncTokenUpdate | _Unchanged = UNCHANGED,
    ) -> None:
        """Apply *operations* in order, plus an optional token write, atomically.

        Args:
            operations: Upserts and deletes, applied in list order.
            sync_token: ``UNCHANGED`` or ``(calendar_key, token)``.

        Readers observe either none or all of the batch.
        """
        ...

    async def get_sync_token(self, calendar_key: CalendarKey) -> str | None:
        ...

    async def set_sync_token(self, calendar_key: CalendarKey, token: str | None) -> None:
        ...
