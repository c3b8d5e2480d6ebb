"""Tests for the CLI commands."""

from __future__ import annotations

import json
import logging

import pytest
from click.testing import CliRunner

from unical.auth import StaticTokenSource
from unical.cli import cli, discover_calendars
from unical.config import parse_config
from unical.models import Calendar, CalendarEvent, EventsPage, SyncResult
from unical.providers.base import SyncOptions
from unical.providers.registry import ProviderRegistry
from unical.temporal import PlainDate

pytestmark = pytest.mark.unit

CONFIG_TOML = """\
[unical]

[[unical.accounts]]
id = "personal"
provider = "google"
client_id = "cid"
client_secret = "secret"
refresh_token = "refresh"
"""


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture(autouse=True)
def _reset_root_logger():
    yield
    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(logging.WARNING)


class FakeProvider:
    def __init__(self, account_id: str, calendars: list[Calendar]) -> None:
        self.account_id = account_id
        self._calendars = calendars
        self.synced: list[str] = []
        self.listed: list[CalendarEvent] = []
        self.windows: list[tuple] = []

    async def calendars(self) -> list[Calendar]:
        return list(self._calendars)

    async def calendar(self, calendar_id: str) -> Calendar:
        return next(c for c in self._calendars if c.id == calendar_id)

    async def events(self, calendar: Calendar, *, time_min, time_max, time_zone="UTC"):
        self.windows.append((time_min, time_max))
        return EventsPage(events=list(self.listed))

    async def sync(self, options: SyncOptions) -> SyncResult:
        self.synced.append(options.calendar.id)
        return SyncResult(changes=[], sync_token=f"tok-{options.calendar.id}", status="full")

    async def shutdown(self) -> None:
        return None


def _calendar(calendar_id: str, **overrides) -> Calendar:
    fields = {"id": calendar_id, "provider_id": "google", "account_id": "personal", "name": "C"}
    fields.update(overrides)
    return Calendar(**fields)


def _registry(provider: FakeProvider) -> ProviderRegistry:
    registry = ProviderRegistry(StaticTokenSource({}))
    registry.register("google", lambda **_: provider)
    return registry


class TestVersion:
    def test_version_flag(self, runner):
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output


class TestRruleCommands:
    def test_parse_prints_json(self, runner):
        result = runner.invoke(cli, ["rrule", "parse", "RRULE:FREQ=WEEKLY;BYDAY=mo,we;COUNT=4"])
        assert result.exit_code == 0, result.output
        payload = json.loads(result.output)
        assert payload["freq"] == "WEEKLY"
        assert payload["by_day"] == ["MO", "WE"]
        assert payload["count"] == 4

    def test_parse_rejects_missing_freq(self, runner):
        result = runner.invoke(cli, ["rrule", "parse", "RRULE:COUNT=4"])
        assert result.exit_code == 1
        assert "Error" in result.output

    def test_expand_all_day_series(self, runner):
        result = runner.invoke(
            cli,
            [
                "rrule",
                "expand",
                "RRULE:FREQ=DAILY;COUNT=5",
                "EXDATE;VALUE=DATE:20250107",
                "--start",
                "2025-01-06",
                "--count",
                "3",
            ],
        )
        assert result.exit_code == 0, result.output
        assert json.loads(result.output) == ["2025-01-06", "2025-01-08", "2025-01-09"]


class TestConfigErrors:
    def test_missing_config_exits_with_2(self, runner, tmp_path):
        result = runner.invoke(cli, ["sync", "--config", str(tmp_path / "missing.toml")])
        assert result.exit_code == 2
        assert "Config error" in result.output


class TestDiscoverCalendars:
    async def test_filter_keeps_primary_alias(self):
        provider = FakeProvider(
            "personal",
            [_calendar("me@example.com", primary=True), _calendar("team"), _calendar("other")],
        )
        config = parse_config(
            {
                "unical": {
                    "accounts": [
                        {
                            "id": "personal",
                            "provider": "google",
                            "client_id": "cid",
                            "client_secret": "secret",
                            "refresh_token": "refresh",
                            "calendars": ["primary", "team"],
                        }
                    ]
                }
            }
        )
        found = await discover_calendars(_registry(provider), config)
        assert [c.id for c in found] == ["me@example.com", "team"]


class TestSyncCommand:
    def test_sync_reports_each_calendar(self, runner, tmp_path, monkeypatch):
        provider = FakeProvider("personal", [_calendar("primary", primary=True)])
        monkeypatch.setattr(
            "unical.cli.default_registry", lambda token_source, **kwargs: _registry(provider)
        )
        config_path = tmp_path / "unical.toml"
        config_path.write_text(CONFIG_TOML)

        result = runner.invoke(cli, ["sync", "--config", str(config_path)])

        assert result.exit_code == 0, result.output
        assert "personal/primary" in result.output
        assert "full" in result.output
        assert provider.synced == ["primary"]


class TestIcsCommands:
    def test_import_prints_events_as_json(self, runner, tmp_path):
        ics_path = tmp_path / "team.ics"
        ics_path.write_text(
            "BEGIN:VCALENDAR\r\nVERSION:2.0\r\nPRODID:-//x//EN\r\n"
            "BEGIN:VEVENT\r\nUID:e1\r\nDTSTART:20250106T090000\r\n"
            "DTEND:20250106T100000\r\nSUMMARY:Sync\r\nEND:VEVENT\r\n"
            "END:VCALENDAR\r\n"
        )

        result = runner.invoke(
            cli,
            [
                "import",
                str(ics_path),
                "--account",
                "personal",
                "--calendar-id",
                "team",
                "--tz",
                "Europe/Paris",
            ],
        )

        assert result.exit_code == 0, result.output
        (event,) = json.loads(result.output)
        assert event["id"] == "e1"
        assert event["calendar_id"] == "team"
        assert event["start"] == {
            "kind": "zoned",
            "time_zone": "Europe/Paris",
            "value": "2025-01-06T09:00:00",
        }

    def test_import_rejects_non_icalendar_file(self, runner, tmp_path):
        path = tmp_path / "page.ics"
        path.write_text("<html></html>")
        result = runner.invoke(
            cli, ["import", str(path), "--account", "personal", "--calendar-id", "team"]
        )
        assert result.exit_code == 1
        assert "Not an iCalendar document" in result.output

    def test_export_writes_calendar_events(self, runner, tmp_path, monkeypatch):
        provider = FakeProvider("personal", [_calendar("primary", primary=True)])
        provider.listed = [
            CalendarEvent(
                id="e1",
                title="Offsite",
                start=PlainDate.of(2025, 1, 6),
                end=PlainDate.of(2025, 1, 7),
                provider_id="google",
                account_id="personal",
                calendar_id="primary",
            )
        ]
        monkeypatch.setattr(
            "unical.cli.default_registry", lambda token_source, **kwargs: _registry(provider)
        )
        config_path = tmp_path / "unical.toml"
        config_path.write_text(CONFIG_TOML)
        output = tmp_path / "out.ics"

        result = runner.invoke(
            cli,
            [
                "export",
                "--config",
                str(config_path),
                "--account",
                "personal",
                "--calendar-id",
                "primary",
                "--start",
                "2025-01-01",
                "--end",
                "2025-02-01",
                "--output",
                str(output),
            ],
        )

        assert result.exit_code == 0, result.output
        text = output.read_text()
        assert "BEGIN:VCALENDAR" in text
        assert "UID:e1" in text
        assert "SUMMARY:Offsite" in text
        assert provider.windows == [(PlainDate.of(2025, 1, 1), PlainDate.of(2025, 2, 1))]
