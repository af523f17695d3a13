"""OpenTelemetry metrics instruments for the calendar feed service.

Instruments are created lazily from the global MeterProvider, so callers do
not need to pass a Meter instance around.

Initialization
--------------
Call ``init_metrics(service_name)`` once during startup (alongside
``init_telemetry``).  When OTEL_EXPORTER_OTLP_ENDPOINT is not set, the SDK
falls back to a no-op MeterProvider and all recordings are silent no-ops.

Instruments
-----------
  curaknot.feed.requests_total         Counter  (label: outcome)
      Feed requests by outcome: ``ok`` or a token error code such as
      ``RATE_LIMITED``, or ``error`` for infrastructure failures.

  curaknot.feed.source_failures_total  Counter  (label: category)
      Event source fetches that were dropped (query error, timeout, bad row).

  curaknot.feed.events_per_feed        Histogram
      Number of VEVENTs in each successfully rendered feed.

  curaknot.feed.render_duration_ms     Histogram
      Wall time from token validation to serialized body.
"""

from __future__ import annotations

import logging
import os

from opentelemetry import metrics

logger = logging.getLogger(__name__)

_METER_NAME = "curaknot"


def init_metrics(service_name: str) -> metrics.Meter:
    """Initialize OpenTelemetry metrics.

    When OTEL_EXPORTER_OTLP_ENDPOINT is set, configures a real MeterProvider
    with a periodic OTLP gRPC exporter.  Otherwise, the global no-op
    MeterProvider is used and all recordings are silent.
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


def _requests_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="curaknot.feed.requests_total",
        description="Calendar feed requests by outcome",
        unit="requests",
    )


def _source_failures_total() -> metrics.Counter:
    return get_meter().create_counter(
        name="curaknot.feed.source_failures_total",
        description="Event source fetches dropped from a feed",
        unit="failures",
    )


def _events_per_feed() -> metrics.Histogram:
    return get_meter().create_histogram(
        name="curaknot.feed.events_per_feed",
        description="Number of events in a rendered feed",
        unit="events",
    )


def _render_duration_ms() -> metrics.Histogram:
    return get_meter().create_histogram(
        name="curaknot.feed.render_duration_ms",
        description="Time to render a calendar feed",
        unit="ms",
    )


class FeedMetrics:
    """Caches the feed instruments.

    Safe to construct before ``init_metrics``; recordings are no-ops until a
    real provider is installed.

    Typical usage::

        _metrics = FeedMetrics()
        _metrics.source_failed("TASK")
        _metrics.feed_rendered(event_count=12, duration_ms=48.0)
    """

    def __init__(self, service: str = "ical-feed") -> None:
        self._attrs = {"service": service}
        self.__requests: metrics.Counter | None = None
        self.__source_failures: metrics.Counter | None = None
        self.__events: metrics.Histogram | None = None
        self.__duration: metrics.Histogram | None = None

    @property
    def _requests(self) -> metrics.Counter:
        if self.__requests is None:
            self.__requests = _requests_total()
        return self.__requests

    @property
    def _source_failures(self) -> metrics.Counter:
        if self.__source_failures is None:
            self.__source_failures = _source_failures_total()
        return self.__source_failures

    @property
    def _events(self) -> metrics.Histogram:
        if self.__events is None:
            self.__events = _events_per_feed()
        return self.__events

    @property
    def _duration(self) -> metrics.Histogram:
        if self.__duration is None:
            self.__duration = _render_duration_ms()
        return self.__duration

    def request_outcome(self, outcome: str) -> None:
        """Count one feed request with its outcome label."""
        self._requests.add(1, {**self._attrs, "outcome": outcome})

    def source_failed(self, category: str) -> None:
        """Count one dropped event source fetch."""
        self._source_failures.add(1, {**self._attrs, "category": category})

    def feed_rendered(self, event_count: int, duration_ms: float) -> None:
        """Record a successful render."""
        self.request_outcome("ok")
        self._events.record(event_count, self._attrs)
        self._duration.record(duration_ms, self._attrs)
