"""Local event storage used by the sync engine and the event mutator."""

from unical.storage.base import (
    UNCHANGED,
    DeleteEvent,
    EventKey,
    EventStore,
    StoreOperation,
    UpsertEvent,
)
from unical.storage.memory import InMemoryEventStore
from unical.storage.postgres import PostgresEventStore

__all__ = [
    "UNCHANGED",
    "DeleteEvent",
    "EventKey",
    "EventStore",
    "InMemoryEventStore",
    "PostgresEventStore",
    "StoreOperation",
    "UpsertEvent",
]
