"""Provider registry: one adapter instance per connected account."""

from __future__ import annotations

import logging
from collections.abc import Callable

import httpx

from unical.auth import AccessTokenSource
from unical.models import Calendar, CalendarEvent, EventRef
from unical.providers.base import CalendarProvider
from unical.providers.google import GoogleCalendarProvider
from unical.providers.microsoft import MicrosoftCalendarProvider

logger = logging.getLogger(__name__)

ProviderFactory = Callable[..., CalendarProvider]


class ProviderNotRegisteredError(KeyError):
    """Raised when no factory is registered for a provider id."""

    def __init__(self, provider_id: str) -> None:
        self.provider_id = provider_id
        super().__init__(f"No calendar provider registered for '{provider_id}'")


def default_registry(
    token_source: AccessTokenSource,
    *,
    http_client: httpx.AsyncClient | None = None,
    default_time_zone: str = "UTC",
) -> ProviderRegistry:
    """Create a ProviderRegistry with the Google and Microsoft adapters registered."""
    registry = ProviderRegistry(
        token_source,
        http_client=http_client,
        default_time_zone=default_time_zone,
    )
    registry.register("google", GoogleCalendarProvider)
    registry.register("microsoft", MicrosoftCalendarProvider)
    return registry


class ProviderRegistry:
    """Maps provider ids to adapter factories and caches bound instances.

    Factories are called with keyword arguments ``account_id``,
    ``token_source``, ``http_client`` and ``default_time_zone``, which matches
    the constructors of the bundled adapters. One instance is kept per
    ``(provider_id, account_id)`` pair until :meth:`shutdown`.
    """

    def __init__(
        self,
        token_source: AccessTokenSource,
        *,
        http_client: httpx.AsyncClient | None = None,
        default_time_zone: str = "UTC",
    ) -> None:
        self._token_source = token_source
        self._http_client = http_client
        self._default_time_zone = default_time_zone
        self._factories: dict[str, ProviderFactory] = {}
        self._instances: dict[tuple[str, str], CalendarProvider] = {}

    def register(self, provider_id: str, factory: ProviderFactory) -> None:
        """Register a factory for *provider_id*.

        Raises ``ValueError`` if the id is already registered.
        """
        if provider_id in self._factories:
            raise ValueError(f"Provider '{provider_id}' is already registered")
        self._factories[provider_id] = factory

    @property
    def available_providers(self) -> list[str]:
        return sorted(self._factories)

    def get(self, provider_id: str, account_id: str) -> CalendarProvider:
        """Return the adapter for one account, creating it on first use.

        Raises
        ------
        ProviderNotRegisteredError
            If *provider_id* has no registered factory.
        """
        key = (provider_id, account_id)
        instance = self._instances.get(key)
        if instance is not None:
            return instance

        factory = self._factories.get(provider_id)
        if factory is None:
            raise ProviderNotRegisteredError(provider_id)

        instance = factory(
            account_id=account_id,
            token_source=self._token_source,
            http_client=self._http_client,
            default_time_zone=self._default_time_zone,
        )
        self._instances[key] = instance
        logger.debug("Created %s provider for account=%s", provider_id, account_id)
        return instance

    def for_calendar(self, calendar: Calendar) -> CalendarProvider:
        return self.get(calendar.provider_id, calendar.account_id)

    def for_event(self, event: CalendarEvent | EventRef) -> CalendarProvider:
        return self.get(event.provider_id, event.account_id)

    async def shutdown(self) -> None:
        """Shut down every cached adapter; errors are logged and the rest still close."""
        instances = list(self._instances.items())
        self._instances.clear()
        for (provider_id, account_id), instance in instances:
            try:
                await instance.shutdown()
            except Exception:
                logger.exception(
                    "Failed to shut down %s provider for account=%s", provider_id, account_id
                )
