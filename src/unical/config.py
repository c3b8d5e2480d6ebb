"""unical configuration loading and validation.

Reads ``unical.toml``, resolves ``${ENV_VAR}`` references, and returns a
validated UnicalConfig dataclass.
"""

from __future__ import annotations

import enum
import os
import re
import tomllib
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any

from unical.auth import OAuthCredentials
from unical.errors import RangeError
from unical.temporal import zone_info

DEFAULT_CONFIG_FILENAME = "unical.toml"

# Pattern matching ${VAR_NAME}: supports alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")
_LOG_FORMATS = ("text", "json")


class ConfigError(Exception):
    """Raised when unical configuration is missing, malformed, or invalid."""


class StorageBackend(enum.StrEnum):
    MEMORY = "memory"
    POSTGRES = "postgres"


class AccountProvider(enum.StrEnum):
    GOOGLE = "google"
    MICROSOFT = "microsoft"


@dataclass
class LoggingConfig:
    """Logging configuration from [unical.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_file: str | None = None


@dataclass
class SyncConfig:
    """Sync engine settings from [unical.sync] section."""

    interval_minutes: float = 5
    window_past_days: int = 30
    window_future_days: int = 365
    timeout_seconds: float = 30.0

    @property
    def interval_seconds(self) -> float:
        return self.interval_minutes * 60

    @property
    def window_past(self) -> timedelta:
        return timedelta(days=self.window_past_days)

    @property
    def window_future(self) -> timedelta:
        return timedelta(days=self.window_future_days)


@dataclass
class StorageConfig:
    """Event store settings from [unical.storage] section."""

    backend: StorageBackend = StorageBackend.MEMORY
    dsn: str | None = None


@dataclass
class AccountConfig:
    """A connected account from [[unical.accounts]].

    ``calendars`` filters the discovered calendars by id; empty means all.
    """

    id: str
    provider: AccountProvider
    client_id: str
    client_secret: str
    refresh_token: str
    calendars: list[str] = field(default_factory=list)

    def credentials(self) -> OAuthCredentials:
        return OAuthCredentials.for_provider(
            self.provider.value,
            client_id=self.client_id,
            client_secret=self.client_secret,
            refresh_token=self.refresh_token,
        )


@dataclass
class UnicalConfig:
    """Top-level parsed configuration."""

    default_time_zone: str = "UTC"
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    accounts: list[AccountConfig] = field(default_factory=list)

    def account(self, account_id: str) -> AccountConfig:
        for account in self.accounts:
            if account.id == account_id:
                return account
        raise ConfigError(f"Unknown account: {account_id!r}")


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values (int, bool,
    float, None) are returned unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    # int, float, bool, None: pass through unchanged.
    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)  # keep placeholder for error reporting
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(f"Unresolved environment variable(s) in config value: {vars_str}")

    return result


def _require_table(value: Any, path: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{path} must be a TOML table")
    return value


def _positive_number(section: dict[str, Any], key: str, default: float, path: str) -> float:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ConfigError(f"{path}.{key} must be a number, got {value!r}")
    if value <= 0:
        raise ConfigError(f"Invalid {path}.{key}: {value!r}. Must be greater than zero.")
    return value


def _parse_logging(section: dict[str, Any]) -> LoggingConfig:
    level = str(section.get("level", "INFO")).upper()
    if level not in _LOG_LEVELS:
        raise ConfigError(
            f"Invalid unical.logging.level: {level!r}. Must be one of {', '.join(_LOG_LEVELS)}."
        )
    fmt = section.get("format", "text")
    if fmt not in _LOG_FORMATS:
        raise ConfigError(f"Invalid unical.logging.format: {fmt!r}. Must be 'text' or 'json'.")
    log_file = section.get("log_file")
    if log_file is not None and (not isinstance(log_file, str) or not log_file.strip()):
        raise ConfigError("unical.logging.log_file must be a non-empty string when set")
    return LoggingConfig(level=level, format=fmt, log_file=log_file)


def _parse_sync(section: dict[str, Any]) -> SyncConfig:
    path = "unical.sync"
    defaults = SyncConfig()
    return SyncConfig(
        interval_minutes=_positive_number(
            section, "interval_minutes", defaults.interval_minutes, path
        ),
        window_past_days=int(
            _positive_number(section, "window_past_days", defaults.window_past_days, path)
        ),
        window_future_days=int(
            _positive_number(section, "window_future_days", defaults.window_future_days, path)
        ),
        timeout_seconds=float(
            _positive_number(section, "timeout_seconds", defaults.timeout_seconds, path)
        ),
    )


def _parse_storage(section: dict[str, Any]) -> StorageConfig:
    raw_backend = section.get("backend", StorageBackend.MEMORY.value)
    try:
        backend = StorageBackend(raw_backend)
    except ValueError as exc:
        raise ConfigError(
            f"Invalid unical.storage.backend: {raw_backend!r}. Must be 'memory' or 'postgres'."
        ) from exc

    dsn = section.get("dsn")
    if dsn is not None and not isinstance(dsn, str):
        raise ConfigError("unical.storage.dsn must be a string when set")
    if backend is StorageBackend.POSTGRES and not dsn:
        raise ConfigError("unical.storage.dsn is required when backend = 'postgres'")
    return StorageConfig(backend=backend, dsn=dsn)


def _parse_account(entry: Any, index: int) -> AccountConfig:
    entry_path = f"unical.accounts[{index}]"
    if not isinstance(entry, dict):
        raise ConfigError(f"{entry_path} must be a TOML table")

    account_id = entry.get("id")
    if not isinstance(account_id, str) or not account_id.strip():
        raise ConfigError(f"{entry_path}.id must be a non-empty string")

    raw_provider = entry.get("provider")
    try:
        provider = AccountProvider(raw_provider)
    except ValueError as exc:
        raise ConfigError(
            f"Invalid {entry_path}.provider: {raw_provider!r}. Must be 'google' or 'microsoft'."
        ) from exc

    secrets: dict[str, str] = {}
    for key in ("client_id", "client_secret", "refresh_token"):
        value = entry.get(key)
        if not isinstance(value, str) or not value.strip():
            raise ConfigError(f"{entry_path}.{key} must be a non-empty string")
        secrets[key] = value.strip()

    calendars = entry.get("calendars", [])
    if not isinstance(calendars, list) or not all(isinstance(c, str) for c in calendars):
        raise ConfigError(f"{entry_path}.calendars must be a list of strings")

    return AccountConfig(
        id=account_id.strip(),
        provider=provider,
        calendars=list(calendars),
        **secrets,
    )


def parse_config(data: dict[str, Any]) -> UnicalConfig:
    """Validate an already-decoded TOML document.

    Environment references must be resolved beforehand (see
    :func:`resolve_env_vars`).
    """
    section = data.get("unical")
    if not isinstance(section, dict):
        raise ConfigError("Missing [unical] section in config")

    default_time_zone = section.get("default_time_zone", "UTC")
    if not isinstance(default_time_zone, str):
        raise ConfigError("unical.default_time_zone must be a string")
    try:
        zone_info(default_time_zone)
    except RangeError as exc:
        raise ConfigError(f"Invalid unical.default_time_zone: {default_time_zone!r}") from exc

    raw_accounts = section.get("accounts", [])
    if not isinstance(raw_accounts, list):
        raise ConfigError("unical.accounts must be an array of tables")
    accounts = [_parse_account(entry, index) for index, entry in enumerate(raw_accounts)]

    seen: set[str] = set()
    for account in accounts:
        if account.id in seen:
            raise ConfigError(f"Duplicate account id: {account.id!r}")
        seen.add(account.id)

    return UnicalConfig(
        default_time_zone=default_time_zone,
        logging=_parse_logging(_require_table(section.get("logging"), "unical.logging")),
        sync=_parse_sync(_require_table(section.get("sync"), "unical.sync")),
        storage=_parse_storage(_require_table(section.get("storage"), "unical.storage")),
        accounts=accounts,
    )


def load_config(path: Path) -> UnicalConfig:
    """Load and validate a unical TOML file.

    Parameters
    ----------
    path:
        Path to the TOML file, or a directory containing ``unical.toml``.

    Returns
    -------
    UnicalConfig
        Fully parsed and validated configuration.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, references unset
        environment variables, or fails validation.
    """
    toml_path = Path(path)
    if toml_path.is_dir():
        toml_path = toml_path / DEFAULT_CONFIG_FILENAME

    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    # --- Resolve env var references before any validation ---
    return parse_config(resolve_env_vars(data))
