"""Error taxonomy shared by the codec, the provider adapters and the sync engine."""

from __future__ import annotations


class CalendarError(RuntimeError):
    """Base error for every failure raised by unical."""


class ParseError(CalendarError, ValueError):
    """Raised when temporal or iCalendar text is malformed."""


class RangeError(CalendarError, ValueError):
    """Raised when a calendar field or time zone id is out of range."""


class InvalidRecurrenceError(CalendarError, ValueError):
    """Raised when a recurrence violates the RFC 5545 contract (e.g. COUNT with UNTIL)."""


class UnsupportedRecurrenceError(InvalidRecurrenceError):
    """Raised when a provider cannot represent a recurrence rule."""


class NotARecurringInstanceError(CalendarError, ValueError):
    """Raised when a series-scoped write targets an event with no series master."""

    def __init__(self, event_id: str) -> None:
        self.event_id = event_id
        super().__init__(f"Event '{event_id}' is not an instance of a recurring series")


class ProviderError(CalendarError):
    """Raised when a provider API request fails."""

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        operation: str | None = None,
        status_code: int | None = None,
    ) -> None:
        self.message = message
        self.provider = provider
        self.operation = operation
        self.status_code = status_code
        prefix = provider or "provider"
        if status_code is not None:
            super().__init__(f"{prefix} request failed ({status_code}): {message}")
        else:
            super().__init__(f"{prefix} request failed: {message}")


class AuthExpiredError(ProviderError):
    """Raised when an access token cannot be refreshed or is rejected after a refresh."""


class NotFoundError(ProviderError):
    """Raised when a calendar or event no longer exists at the provider."""


class RateLimitedError(ProviderError):
    """Raised when the provider keeps throttling after the retry budget is spent."""

    def __init__(
        self, message: str, *, retry_after: float | None = None, **kwargs
    ) -> None:  # noqa: ANN003
        self.retry_after = retry_after
        super().__init__(message, **kwargs)


class SyncTokenExpiredError(ProviderError):
    """Raised inside an adapter when a sync token is invalid; triggers a full resync."""


class SyncFailedError(CalendarError):
    """Raised by the sync engine when a cycle fails; nothing from the cycle is applied."""

    def __init__(self, reason: str, *, calendar_key: tuple[str, str] | None = None) -> None:
        self.reason = reason
        self.calendar_key = calendar_key
        if calendar_key is not None:
            account_id, calendar_id = calendar_key
            super().__init__(f"Sync failed for {account_id}/{calendar_id}: {reason}")
        else:
            super().__init__(f"Sync failed: {reason}")
