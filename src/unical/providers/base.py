"""Provider capability shared by every calendar backend, plus the HTTP request helper."""

from __future__ import annotations

import abc
import asyncio
import logging
from datetime import UTC
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict

from unical.auth import AccessTokenSource, redact_credential_values, safe_error_message
from unical.errors import (
    AuthExpiredError,
    NotFoundError,
    ProviderError,
    RateLimitedError,
    SyncTokenExpiredError,
)
from unical.models import (
    Calendar,
    CalendarEvent,
    CalendarFreeBusy,
    CreateCalendarInput,
    EventsPage,
    ProviderId,
    ResponseToEventInput,
    SyncResult,
    UpdateCalendarInput,
)
from unical.temporal import Instant, PlainDate, TemporalValue, ZonedDateTime, to_datetime

logger = logging.getLogger(__name__)

RATE_LIMIT_RETRY_STATUS_CODES = {429, 503}
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0
DEFAULT_HTTP_TIMEOUT_SECONDS = 30.0


class SyncOptions(BaseModel):
    """Arguments for one :meth:`CalendarProvider.sync` call."""

    model_config = ConfigDict(extra="forbid")

    calendar: Calendar
    initial_sync_token: str | None = None
    time_min: TemporalValue | None = None
    time_max: TemporalValue | None = None
    time_zone: str = "UTC"


class CalendarProvider(abc.ABC):
    """One provider backend bound to one connected account."""

    @property
    @abc.abstractmethod
    def provider_id(self) -> ProviderId:
        """Provider tag stored on every calendar and event (e.g. ``google``)."""
        ...

    @property
    @abc.abstractmethod
    def account_id(self) -> str:
        ...

    @abc.abstractmethod
    async def calendars(self) -> list[Calendar]:
        """List every calendar visible to the account."""
        ...

    @abc.abstractmethod
    async def calendar(self, calendar_id: str) -> Calendar:
        ...

    @abc.abstractmethod
    async def create_calendar(self, calendar: CreateCalendarInput) -> Calendar:
        ...

    @abc.abstractmethod
    async def update_calendar(self, calendar_id: str, calendar: UpdateCalendarInput) -> Calendar:
        ...

    @abc.abstractmethod
    async def delete_calendar(self, calendar_id: str) -> None:
        ...

    @abc.abstractmethod
    async def events(
        self,
        calendar: Calendar,
        *,
        time_min: TemporalValue,
        time_max: TemporalValue,
        time_zone: str = "UTC",
    ) -> EventsPage:
        """Return expanded instances in a window plus the masters they belong to."""
        ...

    @abc.abstractmethod
    async def sync(self, options: SyncOptions) -> SyncResult:
        """Fetch changes since ``options.initial_sync_token``.

        An invalidated token is handled inside the adapter by re-listing the
        ``[time_min, time_max]`` window and reporting ``status="full"``; it is
        never raised to the caller.
        """
        ...

    @abc.abstractmethod
    async def event(
        self,
        calendar: Calendar,
        event_id: str,
        *,
        time_zone: str = "UTC",
    ) -> CalendarEvent:
        ...

    @abc.abstractmethod
    async def create_event(self, calendar: Calendar, event: CalendarEvent) -> CalendarEvent:
        ...

    @abc.abstractmethod
    async def update_event(
        self,
        calendar: Calendar,
        event_id: str,
        event: CalendarEvent,
    ) -> CalendarEvent:
        """Write *event*'s fields onto ``event_id``.

        When ``event.response.send_update`` is set the current user's response
        is written too and attendees are notified.
        """
        ...

    @abc.abstractmethod
    async def delete_event(
        self,
        calendar_id: str,
        event_id: str,
        *,
        send_update: bool = True,
    ) -> None:
        ...

    @abc.abstractmethod
    async def response_to_event(
        self,
        calendar_id: str,
        event_id: str,
        response: ResponseToEventInput,
    ) -> None:
        ...

    @abc.abstractmethod
    async def move_event(
        self,
        source_calendar: Calendar,
        destination_calendar: Calendar,
        event_id: str,
        *,
        send_update: bool = True,
    ) -> CalendarEvent:
        """Move an event and return it as it now exists in the destination.

        Backends without a native move recreate the event, so the returned
        ``id`` may differ from ``event_id``.
        """
        ...

    @abc.abstractmethod
    async def free_busy(
        self,
        schedule_ids: list[str],
        *,
        time_min: TemporalValue,
        time_max: TemporalValue,
    ) -> list[CalendarFreeBusy]:
        ...

    @abc.abstractmethod
    async def shutdown(self) -> None:
        """Release provider resources."""
        ...


def rfc3339(value: PlainDate | Instant | ZonedDateTime, time_zone: str = "UTC") -> str:
    """Render a temporal value as an RFC 3339 UTC timestamp for query windows."""
    return to_datetime(value, time_zone).astimezone(UTC).isoformat().replace("+00:00", "Z")


class HttpCalendarProvider(CalendarProvider):
    """Shared bearer-token request helper for REST-backed providers.

    Every request fetches a token from the token source. A 401 (or a token
    source failure) forces one refresh and one retry; 429/503 are retried
    with exponential backoff, honouring ``Retry-After`` on 429.
    """

    base_url: str = ""

    def __init__(
        self,
        *,
        account_id: str,
        token_source: AccessTokenSource,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._account_id = account_id
        self._token_source = token_source
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=DEFAULT_HTTP_TIMEOUT_SECONDS)

    @property
    def account_id(self) -> str:
        return self._account_id

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    # -- request helpers ------------------------------------------------------

    def _url(self, path: str) -> str:
        if path.startswith("https://") or path.startswith("http://"):
            return path
        normalized_path = path if path.startswith("/") else f"/{path}"
        return f"{self.base_url}{normalized_path}"

    async def _request_json(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        extra_headers: dict[str, str] | None = None,
        sync_cursor: bool = False,
    ) -> dict[str, Any]:
        response = await self._request(
            method,
            path,
            operation=operation,
            params=params,
            json_body=json_body,
            extra_headers=extra_headers,
        )
        self._raise_for_status(response, operation=operation, sync_cursor=sync_cursor)

        if response.status_code == 204 or not response.content:
            return {}

        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderError(
                "returned invalid JSON for a successful response",
                provider=self.provider_id,
                operation=operation,
                status_code=response.status_code,
            ) from exc

        if not isinstance(payload, dict):
            raise ProviderError(
                "returned an unexpected JSON payload shape",
                provider=self.provider_id,
                operation=operation,
                status_code=response.status_code,
            )
        return payload

    async def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        extra_headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        url = self._url(path)
        request_kwargs: dict[str, Any] = {
            "method": method,
            "url": url,
            "operation": operation,
            "params": params,
            "json_body": json_body,
            "extra_headers": extra_headers,
        }

        try:
            response = await self._request_once(**request_kwargs, force_refresh=False)
        except AuthExpiredError:
            logger.info(
                "%s token unavailable for account=%s; forcing refresh (operation=%s)",
                self.provider_id,
                self._account_id,
                operation,
            )
            response = await self._request_once(**request_kwargs, force_refresh=True)
        else:
            if response.status_code == 401:
                response = await self._request_once(**request_kwargs, force_refresh=True)

        if response.status_code == 401:
            raise AuthExpiredError(
                safe_error_message(response),
                provider=self.provider_id,
                operation=operation,
                status_code=401,
            )

        retry = 0
        while (
            response.status_code in RATE_LIMIT_RETRY_STATUS_CODES and retry < RATE_LIMIT_MAX_RETRIES
        ):
            backoff = RATE_LIMIT_BASE_BACKOFF_SECONDS * (2**retry)
            if response.status_code == 429:
                retry_after_header = response.headers.get("Retry-After")
                if retry_after_header is not None:
                    try:
                        backoff = float(retry_after_header)
                    except ValueError:
                        pass
            logger.warning(
                "%s API rate-limited (status=%d), retrying in %.1fs (attempt %d/%d)",
                self.provider_id,
                response.status_code,
                backoff,
                retry + 1,
                RATE_LIMIT_MAX_RETRIES,
            )
            await asyncio.sleep(backoff)
            response = await self._request_once(**request_kwargs, force_refresh=False)
            retry += 1

        if response.status_code in RATE_LIMIT_RETRY_STATUS_CODES:
            retry_after = response.headers.get("Retry-After")
            raise RateLimitedError(
                safe_error_message(response),
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
                provider=self.provider_id,
                operation=operation,
                status_code=response.status_code,
            )
        return response

    async def _request_once(
        self,
        *,
        method: str,
        url: str,
        operation: str,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
        extra_headers: dict[str, str] | None,
        force_refresh: bool,
    ) -> httpx.Response:
        access_token = await self._token_source.get_access_token(
            self._account_id, force_refresh=force_refresh
        )
        headers: dict[str, str] = {"Authorization": f"Bearer {access_token}"}
        if extra_headers:
            headers.update(extra_headers)
        try:
            return await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=headers,
            )
        except httpx.TimeoutException as exc:
            raise TimeoutError(f"{self.provider_id} {operation} timed out") from exc
        except httpx.HTTPError as exc:
            raise ProviderError(
                redact_credential_values(str(exc)) or type(exc).__name__,
                provider=self.provider_id,
                operation=operation,
            ) from exc

    def _is_sync_token_invalid(self, response: httpx.Response) -> bool:
        return response.status_code == 410

    def _raise_for_status(
        self,
        response: httpx.Response,
        *,
        operation: str,
        sync_cursor: bool = False,
    ) -> None:
        if 200 <= response.status_code < 300:
            return

        message = safe_error_message(response)
        if sync_cursor and self._is_sync_token_invalid(response):
            raise SyncTokenExpiredError(
                message,
                provider=self.provider_id,
                operation=operation,
                status_code=response.status_code,
            )

        error_cls = NotFoundError if response.status_code in (404, 410) else ProviderError
        logger.warning(
            "%s %s failed for account=%s (status=%d): %s",
            self.provider_id,
            operation,
            self._account_id,
            response.status_code,
            message,
        )
        raise error_cls(
            message,
            provider=self.provider_id,
            operation=operation,
            status_code=response.status_code,
        )
