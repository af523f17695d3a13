"""Feed rendering pipeline.

``FeedService.render`` is the whole request path minus HTTP:

    token -> validate -> sanitize config -> circle name
          -> fetch sources (concurrently) -> format -> serialize -> access log

Token refusals surface as :class:`TokenValidationError`.  Anything that
prevents a trustworthy document (token store down, patient allowlist or
circle lookup failing) surfaces as :class:`FeedUnavailableError`.  Failures
inside a single event source never surface at all.
"""

from __future__ import annotations

import functools
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Protocol
from uuid import UUID

from curaknot.core.audit import DEFAULT_AUDIT_TIMEOUT_SECONDS, Executor, write_feed_access
from curaknot.core.logging import reset_feed_context, set_feed_context
from curaknot.core.metrics import FeedMetrics
from curaknot.core.telemetry import feed_span
from curaknot.feed.formatter import DEFAULT_BRANDING, Branding, format_record
from curaknot.feed.ical import serialize
from curaknot.feed.models import CalendarEvent, DateWindow, EventCategory, FeedConfig
from curaknot.feed.scope import ScopeSanitizer
from curaknot.feed.sources import (
    DEFAULT_SOURCE_TIMEOUT_SECONDS,
    EventSource,
    Queryable,
    build_sources,
    gather,
)
from curaknot.feed.tokens import (
    TokenStore,
    TokenValidationError,
    TokenValidator,
    is_well_formed,
    token_prefix,
)

logger = logging.getLogger(__name__)

DEFAULT_CIRCLE_NAME = "Care Circle"

SourceFactory = Callable[[FeedConfig], Mapping[EventCategory, EventSource]]


class FeedUnavailableError(Exception):
    """A feed could not be rendered for infrastructure reasons."""


class CircleDirectory(Protocol):
    async def circle_name(self, circle_id: UUID) -> str | None: ...

    async def patient_ids(self, circle_id: UUID, candidates: list[UUID]) -> set[UUID]: ...


@dataclass(frozen=True)
class ClientInfo:
    ip: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class RenderedFeed:
    body: str
    calendar_name: str
    event_count: int
    circle_id: UUID
    token_id: UUID | None


class FeedService:
    """Renders the iCalendar document for a feed token."""

    def __init__(
        self,
        *,
        token_store: TokenStore,
        directory: CircleDirectory,
        db: Queryable | None = None,
        audit_db: Executor | None = None,
        branding: Branding = DEFAULT_BRANDING,
        default_circle_name: str = DEFAULT_CIRCLE_NAME,
        source_timeout_seconds: float = DEFAULT_SOURCE_TIMEOUT_SECONDS,
        audit_timeout_seconds: float = DEFAULT_AUDIT_TIMEOUT_SECONDS,
        source_factory: SourceFactory | None = None,
        metrics: FeedMetrics | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._metrics = metrics or FeedMetrics()
        if source_factory is None:
            if db is None:
                raise ValueError("FeedService needs either a database or a source factory")
            source_factory = functools.partial(
                build_sources, db, timeout_seconds=source_timeout_seconds, metrics=self._metrics
            )
        self._validator = TokenValidator(token_store)
        self._sanitizer = ScopeSanitizer(directory)
        self._directory = directory
        self._audit_db = audit_db
        self._branding = branding
        self._default_circle_name = default_circle_name
        self._audit_timeout = audit_timeout_seconds
        self._source_factory = source_factory
        self._clock = clock or (lambda: datetime.now(UTC))

    @property
    def product_id(self) -> str:
        return f"-//{self._branding.product_name}//Care Calendar//EN"

    async def _calendar_name(self, circle_id: UUID) -> str:
        name = await self._directory.circle_name(circle_id)
        if not name or not name.strip():
            name = self._default_circle_name
        return f"{self._branding.product_name} - {name}"

    def _format(self, records: list[Any], minimal: bool) -> list[CalendarEvent]:
        return [format_record(record, minimal, self._branding) for record in records]

    async def render(self, token: str, client: ClientInfo | None = None) -> RenderedFeed:
        label = token_prefix(token) if is_well_formed(token) else "<malformed>"
        context_token = set_feed_context(label)
        started = time.monotonic()
        try:
            with feed_span("render") as span:
                try:
                    scope = await self._validator.validate(token)
                except TokenValidationError as exc:
                    self._metrics.request_outcome(exc.code)
                    raise
                except Exception as exc:
                    self._metrics.request_outcome("error")
                    logger.error("Token validation failed for %s", label, exc_info=True)
                    raise FeedUnavailableError("token store unavailable") from exc

                span.set_attribute("curaknot.circle_id", str(scope.circle_id))

                try:
                    config = await self._sanitizer.sanitize(
                        scope.feed_config, scope.circle_id, label
                    )
                    calendar_name = await self._calendar_name(scope.circle_id)
                except Exception as exc:
                    self._metrics.request_outcome("error")
                    logger.error(
                        "Circle lookup failed for feed %s (circle %s)",
                        label,
                        scope.circle_id,
                        exc_info=True,
                    )
                    raise FeedUnavailableError("circle directory unavailable") from exc

                now = self._clock()
                window = DateWindow.for_lookahead(config.lookahead_days, now)
                results = await gather(
                    self._source_factory(config), scope.circle_id, config.patient_ids, window
                )
                events = self._format(results.ordered(), config.show_minimal_details)
                body = serialize(calendar_name, events, dtstamp=now, product_id=self.product_id)
                span.set_attribute("curaknot.event_count", len(events))

            self._metrics.feed_rendered(len(events), (time.monotonic() - started) * 1000)
            await write_feed_access(
                self._audit_db,
                token_id=scope.token_id,
                circle_id=scope.circle_id,
                event_count=len(events),
                client_ip=client.ip if client else None,
                user_agent=client.user_agent if client else None,
                timeout_seconds=self._audit_timeout,
            )
            return RenderedFeed(
                body=body,
                calendar_name=calendar_name,
                event_count=len(events),
                circle_id=scope.circle_id,
                token_id=scope.token_id,
            )
        finally:
            reset_feed_context(context_token)
