"""Tests for unical.config: TOML loading, env resolution and validation."""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest

from unical.config import (
    AccountProvider,
    ConfigError,
    StorageBackend,
    load_config,
    parse_config,
    resolve_env_vars,
)

pytestmark = pytest.mark.unit

MINIMAL_TOML = """\
[unical]
default_time_zone = "Europe/Berlin"

[unical.sync]
interval_minutes = 10
window_past_days = 7

[[unical.accounts]]
id = "work"
provider = "microsoft"
client_id = "cid"
client_secret = "${UNICAL_TEST_SECRET}"
refresh_token = "refresh"
calendars = ["primary", "team"]
"""


def _account(**overrides) -> dict:
    entry = {
        "id": "personal",
        "provider": "google",
        "client_id": "cid",
        "client_secret": "secret",
        "refresh_token": "refresh",
    }
    entry.update(overrides)
    return entry


class TestParseConfig:
    def test_defaults(self):
        config = parse_config({"unical": {}})
        assert config.default_time_zone == "UTC"
        assert config.storage.backend is StorageBackend.MEMORY
        assert config.sync.interval_seconds == 300
        assert config.sync.window_future == timedelta(days=365)
        assert config.logging.level == "INFO"
        assert config.accounts == []

    def test_missing_section(self):
        with pytest.raises(ConfigError, match=r"\[unical\]"):
            parse_config({})

    def test_invalid_time_zone(self):
        with pytest.raises(ConfigError, match="default_time_zone"):
            parse_config({"unical": {"default_time_zone": "Mars/Olympus"}})

    def test_account_credentials(self):
        config = parse_config({"unical": {"accounts": [_account(client_id="  cid  ")]}})
        account = config.account("personal")
        assert account.provider is AccountProvider.GOOGLE
        assert account.credentials().client_id == "cid"

    def test_unknown_account_lookup(self):
        config = parse_config({"unical": {"accounts": [_account()]}})
        with pytest.raises(ConfigError, match="ghost"):
            config.account("ghost")

    def test_duplicate_account_ids(self):
        with pytest.raises(ConfigError, match="Duplicate account id"):
            parse_config({"unical": {"accounts": [_account(), _account()]}})

    @pytest.mark.parametrize(
        "overrides,message",
        [
            ({"provider": "caldav"}, "provider"),
            ({"id": ""}, "id"),
            ({"refresh_token": "  "}, "refresh_token"),
            ({"calendars": "primary"}, "calendars"),
        ],
    )
    def test_invalid_account(self, overrides, message):
        with pytest.raises(ConfigError, match=message):
            parse_config({"unical": {"accounts": [_account(**overrides)]}})

    def test_postgres_requires_dsn(self):
        with pytest.raises(ConfigError, match="dsn is required"):
            parse_config({"unical": {"storage": {"backend": "postgres"}}})

    def test_postgres_with_dsn(self):
        config = parse_config(
            {"unical": {"storage": {"backend": "postgres", "dsn": "postgresql://localhost/x"}}}
        )
        assert config.storage.backend is StorageBackend.POSTGRES

    @pytest.mark.parametrize("value", [0, -5, "often", True])
    def test_sync_interval_must_be_positive_number(self, value):
        with pytest.raises(ConfigError, match="interval_minutes"):
            parse_config({"unical": {"sync": {"interval_minutes": value}}})

    def test_logging_validation(self):
        assert parse_config({"unical": {"logging": {"level": "debug"}}}).logging.level == "DEBUG"
        with pytest.raises(ConfigError, match="level"):
            parse_config({"unical": {"logging": {"level": "chatty"}}})
        with pytest.raises(ConfigError, match="format"):
            parse_config({"unical": {"logging": {"format": "xml"}}})


class TestResolveEnvVars:
    def test_nested_values(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("UNICAL_A", "alpha")
        resolved = resolve_env_vars({"x": ["${UNICAL_A}-1", 2], "y": {"z": "${UNICAL_A}"}})
        assert resolved == {"x": ["alpha-1", 2], "y": {"z": "alpha"}}

    def test_missing_variables_are_reported_together(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.delenv("UNICAL_MISSING_1", raising=False)
        monkeypatch.delenv("UNICAL_MISSING_2", raising=False)
        with pytest.raises(ConfigError, match="UNICAL_MISSING_1, UNICAL_MISSING_2"):
            resolve_env_vars("${UNICAL_MISSING_1}:${UNICAL_MISSING_2}")


class TestLoadConfig:
    def test_load_from_directory(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("UNICAL_TEST_SECRET", "s3cr3t")
        (tmp_path / "unical.toml").write_text(MINIMAL_TOML)

        config = load_config(tmp_path)

        assert config.default_time_zone == "Europe/Berlin"
        assert config.sync.interval_minutes == 10
        assert config.sync.window_past == timedelta(days=7)
        account = config.account("work")
        assert account.provider is AccountProvider.MICROSOFT
        assert account.client_secret == "s3cr3t"
        assert account.calendars == ["primary", "team"]

    def test_unset_env_var(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.delenv("UNICAL_TEST_SECRET", raising=False)
        path = tmp_path / "unical.toml"
        path.write_text(MINIMAL_TOML)
        with pytest.raises(ConfigError, match="UNICAL_TEST_SECRET"):
            load_config(path)

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "nope.toml")

    def test_invalid_toml(self, tmp_path: Path):
        path = tmp_path / "unical.toml"
        path.write_text("[unical\n")
        with pytest.raises(ConfigError, match="Invalid TOML"):
            load_config(path)
