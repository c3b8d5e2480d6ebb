"""Calendar provider adapters and the registry that dispatches to them."""

from unical.providers.base import CalendarProvider, HttpCalendarProvider, SyncOptions
from unical.providers.google import GoogleCalendarProvider
from unical.providers.microsoft import MicrosoftCalendarProvider
from unical.providers.registry import (
    ProviderNotRegisteredError,
    ProviderRegistry,
    default_registry,
)

__all__ = [
    "CalendarProvider",
    "GoogleCalendarProvider",
    "HttpCalendarProvider",
    "MicrosoftCalendarProvider",
    "ProviderNotRegisteredError",
    "ProviderRegistry",
    "SyncOptions",
    "default_registry",
]
