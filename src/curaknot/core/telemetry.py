"""OpenTelemetry initialization and span helpers for the feed service."""

from __future__ import annotations

import logging
import os

from opentelemetry import context as context_api
from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider

logger = logging.getLogger(__name__)

_TRACER_NAME = "curaknot"

# True once this process has installed the global TracerProvider.
_tracer_provider_installed: bool = False


def _otlp_provider(service_name: str, endpoint: str) -> TracerProvider:
    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    return provider


def init_telemetry(service_name: str) -> trace.Tracer:
    """Install an OTLP-exporting TracerProvider when OTEL_EXPORTER_OTLP_ENDPOINT is set.

    Without the variable the global no-op provider stays in place, so spans
    cost nothing.  Repeated calls (tests, app reloads) reuse the provider.
    """
    global _tracer_provider_installed

    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")
    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op tracer")
    elif not _tracer_provider_installed:
        trace.set_tracer_provider(_otlp_provider(service_name, endpoint))
        _tracer_provider_installed = True
        logger.info("Telemetry initialized: endpoint=%s", endpoint)
    return trace.get_tracer(service_name)


class feed_span:
    """Span named ``curaknot.feed.<operation>``, used as a context manager.

    Exceptions are recorded on the span and its status set to ERROR before
    the exception is re-raised.
    """

    def __init__(self, operation: str, **attributes: str | int | bool) -> None:
        self._operation = operation
        self._attributes = attributes
        self._span: trace.Span | None = None
        self._token: object | None = None

    def __enter__(self) -> trace.Span:
        tracer = trace.get_tracer(_TRACER_NAME)
        self._span = tracer.start_span(f"curaknot.feed.{self._operation}")
        for key, value in self._attributes.items():
            self._span.set_attribute(key, value)
        self._token = context_api.attach(trace.set_span_in_context(self._span))
        return self._span

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        if self._span is None:
            return
        if exc_val is not None:
            self._span.set_status(trace.StatusCode.ERROR, str(exc_val))
            self._span.record_exception(exc_val)
        self._span.end()
        if self._token is not None:
            context_api.detach(self._token)

