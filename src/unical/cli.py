"""CLI for unical: sync calendars, move .ics files and inspect recurrence rules."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path

import asyncpg
import click
import httpx

from unical.auth import OAuthRefreshTokenSource
from unical.config import ConfigError, StorageBackend, UnicalConfig, load_config
from unical.core.logging import configure_logging
from unical.core.metrics import init_metrics
from unical.core.telemetry import init_telemetry
from unical.errors import CalendarError, SyncFailedError
from unical.ical import export_events, import_events
from unical.models import Calendar
from unical.providers.base import DEFAULT_HTTP_TIMEOUT_SECONDS
from unical.providers.registry import ProviderRegistry, default_registry
from unical.recurrence import expand_occurrences, parse_recurrence_properties
from unical.storage import EventStore, InMemoryEventStore, PostgresEventStore
from unical.sync import SyncEngine
from unical.temporal import Instant, format_iso, parse_iso

logger = logging.getLogger(__name__)

SERVICE_NAME = "unical"
DEFAULT_CONFIG_PATH = Path("unical.toml")

_config_option = click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    default=DEFAULT_CONFIG_PATH,
    show_default=True,
    help="Path to unical.toml",
)


@click.group()
@click.version_option(version="0.1.0")
def cli() -> None:
    """unical: calendar sync across Google Calendar and Microsoft Graph."""


def _load_or_exit(config_path: Path) -> UnicalConfig:
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Config error: {exc}", err=True)
        sys.exit(2)
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_file=config.logging.log_file,
    )
    init_telemetry(SERVICE_NAME)
    init_metrics(SERVICE_NAME)
    return config


@asynccontextmanager
async def _open_runtime(config: UnicalConfig) -> AsyncIterator[tuple[ProviderRegistry, EventStore]]:
    """Build the provider registry and event store described by *config*."""
    http_client = httpx.AsyncClient(timeout=DEFAULT_HTTP_TIMEOUT_SECONDS)
    token_source = OAuthRefreshTokenSource(
        {account.id: account.credentials() for account in config.accounts},
        http_client,
    )
    registry = default_registry(
        token_source,
        http_client=http_client,
        default_time_zone=config.default_time_zone,
    )
    pool: asyncpg.Pool | None = None
    try:
        if config.storage.backend is StorageBackend.POSTGRES:
            pool = await asyncpg.create_pool(config.storage.dsn)
            postgres_store = PostgresEventStore(pool)
            await postgres_store.ensure_schema()
            store: EventStore = postgres_store
        else:
            store = InMemoryEventStore()
        yield registry, store
    finally:
        await registry.shutdown()
        if pool is not None:
            await pool.close()
        await http_client.aclose()


async def discover_calendars(
    registry: ProviderRegistry,
    config: UnicalConfig,
    account_id: str | None = None,
) -> list[Calendar]:
    """List the calendars of every configured account, honouring each filter."""
    accounts = [config.account(account_id)] if account_id else config.accounts
    discovered: list[Calendar] = []
    for account in accounts:
        provider = registry.get(account.provider.value, account.id)
        calendars = await provider.calendars()
        if account.calendars:
            wanted = set(account.calendars)
            calendars = [
                c for c in calendars if c.id in wanted or (c.primary and "primary" in wanted)
            ]
        discovered.extend(calendars)
    return discovered


def _engine(config: UnicalConfig, registry: ProviderRegistry, store: EventStore) -> SyncEngine:
    return SyncEngine(
        registry,
        store,
        default_time_zone=config.default_time_zone,
        window_past=config.sync.window_past,
        window_future=config.sync.window_future,
        timeout_seconds=config.sync.timeout_seconds,
    )


@cli.command()
@_config_option
@click.option("--account", "account_id", default=None, help="Sync only this account id")
@click.option("--full", is_flag=True, help="Ignore stored sync tokens and re-list the window")
def sync(config_path: Path, account_id: str | None, full: bool) -> None:
    """Run one sync cycle for every configured calendar."""
    config = _load_or_exit(config_path)

    async def _run() -> int:
        async with _open_runtime(config) as (registry, store):
            calendars = await discover_calendars(registry, config, account_id)
            results = await _engine(config, registry, store).sync_calendars(calendars, full=full)
        failed = 0
        for calendar, result in zip(calendars, results, strict=True):
            label = f"{calendar.account_id}/{calendar.id}"
            if isinstance(result, SyncFailedError):
                failed += 1
                click.echo(f"{label:<40} FAILED  {result.reason}")
            else:
                click.echo(
                    f"{label:<40} {result.status:<12} +{result.upserted} -{result.deleted}"
                )
        return 1 if failed else 0

    try:
        exit_code = asyncio.run(_run())
    except (CalendarError, ConfigError) as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    sys.exit(exit_code)


@cli.command()
@_config_option
def poll(config_path: Path) -> None:
    """Sync every configured calendar on the configured interval until interrupted."""
    config = _load_or_exit(config_path)

    async def _run() -> None:
        async with _open_runtime(config) as (registry, store):
            engine = _engine(config, registry, store)

            async def _calendars() -> list[Calendar]:
                return await discover_calendars(registry, config)

            await engine.run_poller(_calendars, config.sync.interval_seconds)

    interval = config.sync.interval_minutes
    click.echo(f"Polling {len(config.accounts)} account(s) every {interval} min")
    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        click.echo("Stopped.")


@cli.command()
@_config_option
@click.option("--account", "account_id", default=None, help="List only this account id")
def calendars(config_path: Path, account_id: str | None) -> None:
    """List the calendars discovered for each configured account."""
    config = _load_or_exit(config_path)

    async def _run() -> list[Calendar]:
        async with _open_runtime(config) as (registry, _store):
            return await discover_calendars(registry, config, account_id)

    try:
        found = asyncio.run(_run())
    except (CalendarError, ConfigError) as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    click.echo(f"{'Account':<16} {'Provider':<10} {'Calendar':<40} {'Flags'}")
    click.echo("-" * 80)
    for calendar in found:
        flags = ", ".join(
            flag
            for flag, on in (("primary", calendar.primary), ("read-only", calendar.read_only))
            if on
        )
        click.echo(
            f"{calendar.account_id:<16} {calendar.provider_id:<10} {calendar.id:<40} {flags}"
        )


# ---------------------------------------------------------------------------
# rrule utilities
# ---------------------------------------------------------------------------


@cli.group()
def rrule() -> None:
    """Recurrence codec utilities."""


@rrule.command("parse")
@click.argument("lines", nargs=-1, required=True)
@click.option(
    "--tz", "time_zone", default="UTC", show_default=True, help="Zone for floating values"
)
def rrule_parse(lines: tuple[str, ...], time_zone: str) -> None:
    """Decode RRULE/RDATE/EXDATE/DTSTART lines and print the recurrence as JSON."""
    try:
        recurrence = parse_recurrence_properties(lines, time_zone)
    except CalendarError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(recurrence.model_dump(mode="json", exclude_none=True), indent=2))


@rrule.command("expand")
@click.argument("lines", nargs=-1, required=True)
@click.option("--start", required=True, help="First occurrence start (ISO 8601)")
@click.option("--count", default=10, show_default=True, type=click.IntRange(min=1))
@click.option(
    "--tz", "time_zone", default="UTC", show_default=True, help="Zone for floating values"
)
def rrule_expand(lines: tuple[str, ...], start: str, count: int, time_zone: str) -> None:
    """Print the first COUNT occurrence starts of a recurrence as a JSON list."""
    try:
        recurrence = parse_recurrence_properties(lines, time_zone)
        occurrences = expand_occurrences(
            recurrence,
            parse_iso(start, time_zone),
            time_zone=time_zone,
            limit=count,
        )
    except CalendarError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps([format_iso(value) for value in occurrences], indent=2))


# ---------------------------------------------------------------------------
# iCalendar import / export
# ---------------------------------------------------------------------------


@cli.command("import")
@click.argument("ics_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--account", "account_id", required=True, help="Account that owns the events")
@click.option("--calendar-id", required=True, help="Calendar that owns the events")
@click.option(
    "--provider",
    "provider_id",
    type=click.Choice(["google", "microsoft"]),
    default="google",
    show_default=True,
)
@click.option("--tz", "time_zone", default=None, help="Zone for floating date-times")
def import_ics(
    ics_file: Path,
    account_id: str,
    calendar_id: str,
    provider_id: str,
    time_zone: str | None,
) -> None:
    """Parse an .ics file and print its events as JSON."""
    calendar = Calendar(
        id=calendar_id,
        provider_id=provider_id,
        account_id=account_id,
        name=calendar_id,
        time_zone=time_zone,
    )
    try:
        events = import_events(
            ics_file.read_text(encoding="utf-8"), calendar, time_zone=time_zone
        )
    except CalendarError as exc:
        raise click.ClickException(str(exc)) from exc
    payload = [event.model_dump(mode="json", exclude_none=True) for event in events]
    click.echo(json.dumps(payload, indent=2))


@cli.command("export")
@_config_option
@click.option("--account", "account_id", required=True, help="Account to export from")
@click.option("--calendar-id", required=True, help="Calendar to export")
@click.option("--start", default=None, help="Window start (ISO 8601); defaults to the sync window")
@click.option("--end", default=None, help="Window end (ISO 8601); defaults to the sync window")
@click.option(
    "--output",
    type=click.Path(dir_okay=False, writable=True, path_type=Path),
    default=None,
    help="Write the .ics here instead of stdout",
)
def export_ics(
    config_path: Path,
    account_id: str,
    calendar_id: str,
    start: str | None,
    end: str | None,
    output: Path | None,
) -> None:
    """Export one calendar's events in a window as an .ics document."""
    config = _load_or_exit(config_path)
    zone = config.default_time_zone

    async def _run() -> str:
        async with _open_runtime(config) as (registry, _store):
            account = config.account(account_id)
            provider = registry.get(account.provider.value, account.id)
            calendar = await provider.calendar(calendar_id)
            now = datetime.now(UTC)
            time_min = (
                parse_iso(start, zone) if start else Instant(value=now - config.sync.window_past)
            )
            time_max = (
                parse_iso(end, zone) if end else Instant(value=now + config.sync.window_future)
            )
            page = await provider.events(
                calendar,
                time_min=time_min,
                time_max=time_max,
                time_zone=calendar.time_zone or zone,
            )
            return export_events(page.events)

    try:
        document = asyncio.run(_run())
    except (CalendarError, ConfigError) as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    if output is None:
        click.echo(document, nl=False)
    else:
        output.write_text(document, encoding="utf-8")
        click.echo(f"Wrote {output}")
