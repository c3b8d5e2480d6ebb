"""OpenTelemetry metrics for sync cycles and confirmed mutations.

Instruments are created lazily from the global MeterProvider, so callers do
not need to pass a Meter around and may record before ``init_metrics`` runs.

Instruments
-----------
  unical.sync.cycles_total        Counter  (labels: provider, status)
  unical.sync.duration_ms         Histogram (label: provider)
  unical.sync.changes_total       Counter  (labels: provider, kind=updated|deleted)
  unical.sync.in_flight           UpDownCounter (gauge semantics)
  unical.mutations_total          Counter  (labels: provider, operation)
"""

from __future__ import annotations

import logging
import os

from opentelemetry import metrics

logger = logging.getLogger(__name__)

_METER_NAME = "unical"


def init_metrics(service_name: str) -> metrics.Meter:
    """Initialize OpenTelemetry metrics.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, configures a MeterProvider with
    a periodic OTLP gRPC exporter. Otherwise the global no-op provider is
    used and all recordings are silent.
    """
    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op meter")
        return metrics.get_meter(_METER_NAME)

    # Import SDK/exporter only when needed to avoid hard dependency at import time
    from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
    from opentelemetry.sdk.resources import Resource

    resource = Resource.create({"service.name": service_name})
    exporter = OTLPMetricExporter(endpoint=endpoint)
    reader = PeriodicExportingMetricReader(exporter, export_interval_millis=15_000)
    provider = MeterProvider(resource=resource, metric_readers=[reader])

    metrics.set_meter_provider(provider)
    logger.info("Metrics initialized: service=%s, endpoint=%s", service_name, endpoint)

    return metrics.get_meter(_METER_NAME)


def get_meter() -> metrics.Meter:
    """Return a Meter from the current global provider (no-op before init)."""
    return metrics.get_meter(_METER_NAME)


def _sync_cycles_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="unical.sync.cycles_total",
        description="Completed sync cycles by outcome",
        unit="cycles",
    )


def _sync_duration_ms() -> metrics.Histogram:
    return get_meter().create_histogram(
        name="unical.sync.duration_ms",
        description="Wall-clock duration of one calendar sync cycle in milliseconds",
        unit="ms",
    )


def _sync_changes_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="unical.sync.changes_total",
        description="Local store operations applied by sync cycles",
        unit="events",
    )


def _sync_in_flight() -> metrics.UpDownCounter:
    return get_meter().create_up_down_counter(
        name="unical.sync.in_flight",
        description="Sync cycles currently running",
        unit="cycles",
    )


def _mutations_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="unical.mutations_total",
        description="Confirmed event mutations written to providers",
        unit="mutations",
    )


class SyncMetrics:
    """Lazily-created instruments plus recording helpers.

    Safe to construct before ``init_metrics``; recordings are no-ops until
    a real provider is installed.
    """

    def __init__(self) -> None:
        self.__cycles: metrics.Counter | None = None
        self.__duration: metrics.Histogram | None = None
        self.__changes: metrics.Counter | None = None
        self.__in_flight: metrics.UpDownCounter | None = None
        self.__mutations: metrics.Counter | None = None

    @property
    def _cycles(self) -> metrics.Counter:
        if self.__cycles is None:
            self.__cycles = _sync_cycles_total()
        return self.__cycles

    @property
    def _duration(self) -> metrics.Histogram:
        if self.__duration is None:
            self.__duration = _sync_duration_ms()
        return self.__duration

    @property
    def _changes(self) -> metrics.Counter:
        if self.__changes is None:
            self.__changes = _sync_changes_total()
        return self.__changes

    @property
    def _in_flight(self) -> metrics.UpDownCounter:
        if self.__in_flight is None:
            self.__in_flight = _sync_in_flight()
        return self.__in_flight

    @property
    def _mutations(self) -> metrics.Counter:
        if self.__mutations is None:
            self.__mutations = _mutations_total()
        return self.__mutations

    def sync_started(self, provider_id: str) -> None:
        self._in_flight.add(1, {"provider": provider_id})

    def sync_finished(self, provider_id: str, status: str, duration_ms: float) -> None:
        """Record the outcome of a cycle: incremental, full, failed or cancelled."""
        attrs = {"provider": provider_id}
        self._in_flight.add(-1, attrs)
        self._cycles.add(1, {**attrs, "status": status})
        self._duration.record(duration_ms, attrs)

    def record_changes(self, provider_id: str, *, updated: int, deleted: int) -> None:
        if updated:
            self._changes.add(updated, {"provider": provider_id, "kind": "updated"})
        if deleted:
            self._changes.add(deleted, {"provider": provider_id, "kind": "deleted"})

    def record_mutation(self, provider_id: str, operation: str) -> None:
        self._mutations.add(1, {"provider": provider_id, "operation": operation})
