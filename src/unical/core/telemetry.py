"""OpenTelemetry initialization and span wrappers for sync and mutation calls."""

from __future__ import annotations

import functools
import logging
import os

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider

logger = logging.getLogger(__name__)

_TRACER_NAME = "unical"

# Guard flag: True once the global TracerProvider has been installed, so a
# second init_telemetry() call does not trigger provider-override warnings.
_tracer_provider_installed: bool = False


def init_telemetry(service_name: str) -> trace.Tracer:
    """Initialize OpenTelemetry tracing.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, installs a TracerProvider with
    an OTLP gRPC exporter on the first call. Without it the global no-op
    provider is left in place.

    Args:
        service_name: Service name reported on every span (e.g. "unical-sync").

    Returns:
        A Tracer instance (real or no-op depending on config)
    """
    global _tracer_provider_installed

    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op tracer")
        return trace.get_tracer(service_name)

    if _tracer_provider_installed:
        logger.debug(
            "TracerProvider already initialized; reusing existing provider for service=%s",
            service_name,
        )
        return trace.get_tracer(service_name)

    # Import exporter only when needed
    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    resource = Resource.create({"service.name": service_name})
    provider = TracerProvider(resource=resource)

    exporter = OTLPSpanExporter(endpoint=endpoint)
    provider.add_span_processor(BatchSpanProcessor(exporter))

    trace.set_tracer_provider(provider)
    _tracer_provider_installed = True
    logger.info("Telemetry initialized: endpoint=%s", endpoint)

    return trace.get_tracer(service_name)


def get_tracer(name: str = _TRACER_NAME) -> trace.Tracer:
    """Get a tracer from the current provider."""
    return trace.get_tracer(name)


class calendar_span:
    """Create a span for one calendar operation.

    Can be used as a **context manager** or as a **decorator** on async functions::

        with calendar_span("sync.cycle", account_id="a1", calendar_id="primary"):
            ...

    The span is named ``unical.<operation>`` and carries ``account.id``,
    ``calendar.id`` and ``provider.id`` attributes when given. Exceptions are
    recorded on the span and its status set to ERROR before the exception is
    re-raised.
    """

    def __init__(
        self,
        operation: str,
        *,
        account_id: str | None = None,
        calendar_id: str | None = None,
        provider_id: str | None = None,
    ) -> None:
        self._operation = operation
        self._ids = {
            "account_id": account_id,
            "calendar_id": calendar_id,
            "provider_id": provider_id,
        }
        self._span_name = f"unical.{operation}"
        self._span: trace.Span | None = None
        self._token: object | None = None

    def __enter__(self) -> trace.Span:
        tracer = trace.get_tracer(_TRACER_NAME)
        self._span = tracer.start_span(self._span_name)
        for key, value in self._ids.items():
            if value is not None:
                # account_id -> account.id
                self._span.set_attribute(key.replace("_", "."), value)
        self._token = trace.context_api.attach(trace.set_span_in_context(self._span))
        return self._span

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        if self._span is None:
            return
        if exc_val is not None:
            self._span.set_status(trace.StatusCode.ERROR, str(exc_val))
            self._span.record_exception(exc_val)
        self._span.end()
        if self._token is not None:
            trace.context_api.detach(self._token)

    def __call__(self, func):  # noqa: ANN001, ANN204
        # A fresh span object per invocation keeps concurrent calls from
        # sharing _span/_token state.
        operation = self._operation
        ids = dict(self._ids)

        @functools.wraps(func)
        async def _wrapper(*args, **kwargs):  # noqa: ANN002, ANN003, ANN202
            with calendar_span(operation, **ids):
                return await func(*args, **kwargs)

        return _wrapper
