"""Tests for calendar_span and the SyncMetrics instruments."""

from __future__ import annotations

from typing import Any

import pytest
from opentelemetry import metrics, trace
from opentelemetry.metrics import _internal as _metrics_internal
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import InMemoryMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.util._once import Once

import unical.core.telemetry as _telemetry_mod
from unical.core.metrics import SyncMetrics, init_metrics
from unical.core.telemetry import calendar_span, init_telemetry

pytestmark = pytest.mark.unit


def _reset_otel_global_state() -> None:
    """Fully reset the OpenTelemetry global tracer provider state."""
    trace._TRACER_PROVIDER_SET_ONCE = trace.Once()
    trace._TRACER_PROVIDER = None
    _telemetry_mod._tracer_provider_installed = False


def _reset_metrics_global_state() -> None:
    _metrics_internal._METER_PROVIDER_SET_ONCE = Once()
    _metrics_internal._METER_PROVIDER = None


@pytest.fixture
def span_exporter():
    _reset_otel_global_state()
    exporter = InMemorySpanExporter()
    provider = TracerProvider(resource=Resource.create({"service.name": "unical-test"}))
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    yield exporter
    provider.shutdown()
    _reset_otel_global_state()


@pytest.fixture
def metric_reader():
    _reset_metrics_global_state()
    reader = InMemoryMetricReader()
    provider = MeterProvider(metric_readers=[reader])
    metrics.set_meter_provider(provider)
    yield reader
    provider.shutdown()
    _reset_metrics_global_state()


def _collect(reader: InMemoryMetricReader) -> dict[str, Any]:
    """Flatten metrics data into {metric_name: data_points}."""
    result: dict[str, Any] = {}
    data = reader.get_metrics_data()
    for rm in data.resource_metrics:
        for sm in rm.scope_metrics:
            for metric in sm.metrics:
                if metric.data.data_points:
                    result[metric.name] = list(metric.data.data_points)
    return result


class TestCalendarSpan:
    def test_span_name_and_attributes(self, span_exporter):
        with calendar_span("sync.cycle", account_id="acct", calendar_id="primary"):
            pass
        (span,) = span_exporter.get_finished_spans()
        assert span.name == "unical.sync.cycle"
        assert span.attributes["account.id"] == "acct"
        assert span.attributes["calendar.id"] == "primary"
        assert "provider.id" not in span.attributes

    def test_exception_sets_error_status(self, span_exporter):
        with pytest.raises(RuntimeError):
            with calendar_span("mutation.update", provider_id="google"):
                raise RuntimeError("boom")
        (span,) = span_exporter.get_finished_spans()
        assert span.status.status_code == trace.StatusCode.ERROR
        assert span.events[0].name == "exception"

    async def test_decorator_creates_span_per_call(self, span_exporter):
        @calendar_span("sync.calendar", account_id="acct")
        async def _work(value: int) -> int:
            return value * 2

        assert await _work(2) == 4
        assert await _work(3) == 6
        spans = span_exporter.get_finished_spans()
        assert [s.name for s in spans] == ["unical.sync.calendar"] * 2
        assert spans[0].context.span_id != spans[1].context.span_id

    def test_init_without_endpoint_is_noop(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.delenv("OTEL_EXPORTER_OTLP_ENDPOINT", raising=False)
        _reset_otel_global_state()
        tracer = init_telemetry("unical-test")
        assert tracer is not None
        assert _telemetry_mod._tracer_provider_installed is False


class TestSyncMetrics:
    def test_sync_cycle_recordings(self, metric_reader):
        recorder = SyncMetrics()
        recorder.sync_started("google")
        recorder.sync_finished("google", "incremental", 12.5)
        recorder.record_changes("google", updated=3, deleted=1)

        data = _collect(metric_reader)
        (cycle,) = data["unical.sync.cycles_total"]
        assert cycle.value == 1
        assert dict(cycle.attributes) == {"provider": "google", "status": "incremental"}
        assert data["unical.sync.in_flight"][0].value == 0
        assert data["unical.sync.duration_ms"][0].sum == 12.5
        changes = {p.attributes["kind"]: p.value for p in data["unical.sync.changes_total"]}
        assert changes == {"updated": 3, "deleted": 1}

    def test_zero_changes_are_not_recorded(self, metric_reader):
        SyncMetrics().record_changes("microsoft", updated=0, deleted=0)
        assert "unical.sync.changes_total" not in _collect(metric_reader)

    def test_mutation_counter(self, metric_reader):
        recorder = SyncMetrics()
        recorder.record_mutation("google", "update")
        recorder.record_mutation("google", "update")
        (point,) = _collect(metric_reader)["unical.mutations_total"]
        assert point.value == 2
        assert dict(point.attributes) == {"provider": "google", "operation": "update"}

    def test_init_without_endpoint_is_noop(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.delenv("OTEL_EXPORTER_OTLP_ENDPOINT", raising=False)
        assert init_metrics("unical-test") is not None
