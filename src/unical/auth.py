"""Access-token sources consumed by the provider adapters.

The adapters only ever call :meth:`AccessTokenSource.get_access_token`. The
refresh-token source below covers the Google and Microsoft token endpoints;
acquiring the refresh token in the first place happens elsewhere.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from unical.errors import AuthExpiredError

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
MICROSOFT_OAUTH_TOKEN_URL = "https://login.microsoftonline.com/common/oauth2/v2.0/token"
MICROSOFT_DEFAULT_SCOPE = "offline_access https://graph.microsoft.com/Calendars.ReadWrite"

_DEFAULT_EXPIRES_IN_SECONDS = 3600


class AccessTokenSource(Protocol):
    """Returns a bearer token for an account.

    Raises ``AuthExpiredError`` when the token cannot be refreshed.
    """

    async def get_access_token(self, account_id: str, *, force_refresh: bool = False) -> str:
        ...


class OAuthCredentials(BaseModel):
    """OAuth client credentials required for refresh-token exchange."""

    model_config = ConfigDict(extra="forbid")

    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)
    token_url: str = GOOGLE_OAUTH_TOKEN_URL
    scope: str | None = None

    @field_validator("client_id", "client_secret", "refresh_token")
    @classmethod
    def _normalize_non_empty(cls, value: str, info: ValidationInfo) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{info.field_name} must be a non-empty string")
        return normalized

    @classmethod
    def for_provider(
        cls,
        provider_id: str,
        *,
        client_id: str,
        client_secret: str,
        refresh_token: str,
    ) -> OAuthCredentials:
        if provider_id == "microsoft":
            return cls(
                client_id=client_id,
                client_secret=client_secret,
                refresh_token=refresh_token,
                token_url=MICROSOFT_OAUTH_TOKEN_URL,
                scope=MICROSOFT_DEFAULT_SCOPE,
            )
        return cls(client_id=client_id, client_secret=client_secret, refresh_token=refresh_token)

    @classmethod
    def from_json(cls, raw_value: str) -> OAuthCredentials:
        """Read a Google-style client secret JSON (top-level, ``installed`` or ``web``)."""
        try:
            payload = json.loads(raw_value)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Credential JSON must be valid JSON: {exc.msg}") from exc

        if not isinstance(payload, dict):
            raise ValueError("Credential JSON must decode to a JSON object")

        credential_data = {
            key: _extract_credential_value(payload, key)
            for key in ("client_id", "client_secret", "refresh_token")
        }
        missing = sorted(key for key, value in credential_data.items() if value is None)
        if missing:
            raise ValueError(f"Credential JSON is missing required field(s): {', '.join(missing)}")
        return cls(**{key: str(value) for key, value in credential_data.items()})


def _extract_credential_value(payload: dict[str, Any], key: str) -> Any:
    if key in payload:
        return payload[key]

    for nested_key in ("installed", "web"):
        nested = payload.get(nested_key)
        if isinstance(nested, dict) and key in nested:
            return nested[key]
    return None


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return _DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, int | float):
        return int(value) if value > 0 else _DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, str) and value.isdigit():
        return int(value) or _DEFAULT_EXPIRES_IN_SECONDS
    return _DEFAULT_EXPIRES_IN_SECONDS


def redact_credential_values(message: str) -> str:
    """Mask token and secret values embedded in an error message."""
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|token)\s*=\s*([^\s,;&]+)",
        r"\1=[REDACTED]",
        message,
    )
    redacted = re.sub(
        r"""(?i)(['"]?(?:client_secret|refresh_token|access_token|token)['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    redacted = re.sub(r"(?i)\bBearer\s+[A-Za-z0-9._~+/=-]+", "Bearer [REDACTED]", redacted)
    return redacted


def safe_error_message(response: httpx.Response) -> str:
    """Pull a short, redacted error message out of a provider error response."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    message: str | None = None
    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            candidate = error_payload.get("message")
            if isinstance(candidate, str) and candidate.strip():
                message = candidate
        elif isinstance(error_payload, str) and error_payload.strip():
            description = payload.get("error_description")
            message = error_payload
            if isinstance(description, str) and description.strip():
                message = f"{error_payload}: {description}"

    if message is None:
        message = response.text.strip() or "Request failed without an error payload"
    return " ".join(redact_credential_values(message).split())[:200]


def _missing_credentials(account_id: str) -> AuthExpiredError:
    return AuthExpiredError(
        f"No OAuth credentials configured for account '{account_id}'",
        provider="oauth",
        operation="refresh_token",
    )


@dataclass
class _CachedToken:
    access_token: str
    expires_at: datetime

    def is_fresh(self) -> bool:
        return datetime.now(UTC) < self.expires_at


class OAuthRefreshTokenSource:
    """Refresh-token OAuth helper with per-account access-token caching."""

    def __init__(
        self,
        credentials: Mapping[str, OAuthCredentials],
        http_client: httpx.AsyncClient,
    ) -> None:
        self._credentials = dict(credentials)
        self._http_client = http_client
        self._tokens: dict[str, _CachedToken] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def add_account(self, account_id: str, credentials: OAuthCredentials) -> None:
        self._credentials[account_id] = credentials
        self._tokens.pop(account_id, None)

    def remove_account(self, account_id: str) -> None:
        """Forget an account's credentials, cached token and refresh lock."""
        self._credentials.pop(account_id, None)
        self._tokens.pop(account_id, None)
        self._locks.pop(account_id, None)

    async def get_access_token(self, account_id: str, *, force_refresh: bool = False) -> str:
        cached = self._tokens.get(account_id)
        if not force_refresh and cached is not None and cached.is_fresh():
            return cached.access_token

        if account_id not in self._credentials:
            raise _missing_credentials(account_id)

        lock = self._locks.setdefault(account_id, asyncio.Lock())
        async with lock:
            cached = self._tokens.get(account_id)
            if not force_refresh and cached is not None and cached.is_fresh():
                return cached.access_token

            token = await self._refresh_access_token(account_id)
            if account_id in self._credentials:
                self._tokens[account_id] = token
            return token.access_token

    async def _refresh_access_token(self, account_id: str) -> _CachedToken:
        credentials = self._credentials.get(account_id)
        if credentials is None:
            raise _missing_credentials(account_id)

        data = {
            "client_id": credentials.client_id,
            "client_secret": credentials.client_secret,
            "refresh_token": credentials.refresh_token,
            "grant_type": "refresh_token",
        }
        if credentials.scope:
            data["scope"] = credentials.scope

        try:
            response = await self._http_client.post(
                credentials.token_url,
                data=data,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise AuthExpiredError(
                f"OAuth token refresh request failed: {redact_credential_values(str(exc))}",
                provider="oauth",
                operation="refresh_token",
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise AuthExpiredError(
                safe_error_message(response),
                provider="oauth",
                operation="refresh_token",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise AuthExpiredError(
                "OAuth token endpoint returned invalid JSON",
                provider="oauth",
                operation="refresh_token",
            ) from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise AuthExpiredError(
                "OAuth token response is missing a non-empty access_token",
                provider="oauth",
                operation="refresh_token",
            )

        expires_in_seconds = _coerce_expires_in_seconds(payload.get("expires_in"))
        # Refresh early to avoid edge-of-expiration failures.
        refresh_ttl_seconds = max(expires_in_seconds - 60, 30)
        logger.debug("Refreshed access token for account=%s", account_id)
        return _CachedToken(
            access_token=access_token.strip(),
            expires_at=datetime.now(UTC) + timedelta(seconds=refresh_ttl_seconds),
        )


class StaticTokenSource:
    """Fixed tokens per account; useful for scripts and tests."""

    def __init__(self, tokens: Mapping[str, str]) -> None:
        self._tokens = dict(tokens)

    async def get_access_token(self, account_id: str, *, force_refresh: bool = False) -> str:
        token = self._tokens.get(account_id)
        if token is None:
            raise AuthExpiredError(
                f"No access token for account '{account_id}'",
                provider="static",
                operation="get_access_token",
            )
        return token
