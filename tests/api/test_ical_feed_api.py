"""Tests for the HTTP surface of the calendar feed."""

from __future__ import annotations

import secrets
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import httpx
import pytest
from fastapi import FastAPI

from curaknot.api.app import create_app
from curaknot.api.middleware import feed_cors_headers
from curaknot.api.routers.ical_feed import client_info, extract_token
from curaknot.config import ServiceConfig
from curaknot.feed.models import EventCategory, TaskRecord
from curaknot.feed.service import FeedService, FeedUnavailableError, RenderedFeed
from curaknot.feed.tokens import RATE_LIMIT_PER_HOUR
from curaknot.testing.stores import (
    FakeFeedToken,
    InMemoryCircleDirectory,
    InMemoryTokenStore,
    RecordingExecutor,
    StaticSource,
)

pytestmark = pytest.mark.unit

BASE = "/functions/v1/ical-feed"
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
CIRCLE_ID = uuid4()


def _token() -> str:
    return secrets.token_urlsafe(32)


class _Env:
    def __init__(self, config: ServiceConfig | None = None) -> None:
        self.store = InMemoryTokenStore(clock=lambda: NOW)
        self.directory = InMemoryCircleDirectory(circles={CIRCLE_ID: "Smith Family"})
        self.audit = RecordingExecutor()
        self.task = TaskRecord(
            id=uuid4(), circle_id=CIRCLE_ID, title="Refill", due_at=NOW + timedelta(days=1)
        )
        self.service = FeedService(
            token_store=self.store,
            directory=self.directory,
            audit_db=self.audit,
            source_factory=lambda config: {
                EventCategory.TASK: StaticSource(EventCategory.TASK, [self.task])
            },
            clock=lambda: NOW,
        )
        self.app = create_app(config or ServiceConfig(), feed_service=self.service)

    def add_token(self, **kwargs) -> str:
        value = _token()
        self.store.add(FakeFeedToken(token=value, circle_id=CIRCLE_ID, **kwargs))
        return value

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=httpx.ASGITransport(app=self.app), base_url="http://test"
        )


@pytest.fixture
def env() -> _Env:
    return _Env()


# ---------------------------------------------------------------------------
# Success
# ---------------------------------------------------------------------------


class TestFeedSuccess:
    async def test_returns_calendar(self, env):
        token = env.add_token()
        async with env.client() as client:
            response = await client.get(f"{BASE}/{token}")
        assert response.status_code == 200
        assert response.headers["content-type"] == "text/calendar; charset=utf-8"
        assert response.text.startswith("BEGIN:VCALENDAR\r\n")
        assert "SUMMARY:CuraKnot Event\r\n" in response.text

    async def test_response_headers(self, env):
        token = env.add_token()
        async with env.client() as client:
            response = await client.get(f"{BASE}/{token}")
        assert response.headers["cache-control"] == "private, max-age=900"
        assert (
            response.headers["content-disposition"]
            == 'attachment; filename="curaknot-calendar.ics"'
        )
        assert response.headers["access-control-allow-origin"] == "*"

    async def test_token_taken_from_last_segment(self, env):
        token = env.add_token()
        async with env.client() as client:
            response = await client.get(f"{BASE}/ignored/prefix/{token}")
        assert response.status_code == 200

    async def test_forwarded_client_recorded(self, env):
        token = env.add_token()
        async with env.client() as client:
            await client.get(
                f"{BASE}/{token}",
                headers={
                    "x-forwarded-for": "203.0.113.9, 10.0.0.1",
                    "user-agent": "Calendar/1.0",
                },
            )
        insert_args = env.audit.statements[0][1]
        assert insert_args[3:5] == ("203.0.113.9", "Calendar/1.0")

    async def test_custom_base_path_and_product(self):
        env = _Env(ServiceConfig(base_path="/calendar", product_name="Acme"))
        token = env.add_token()
        async with env.client() as client:
            response = await client.get(f"/calendar/{token}")
            missing = await client.get(f"{BASE}/{token}")
        assert response.status_code == 200
        assert response.headers["content-disposition"].endswith('"acme-calendar.ics"')
        assert missing.status_code == 404


# ---------------------------------------------------------------------------
# Refusals
# ---------------------------------------------------------------------------


class TestFeedRefusals:
    async def test_missing_token(self, env):
        async with env.client() as client:
            bare = await client.get(BASE)
            trailing = await client.get(f"{BASE}/")
        assert (bare.status_code, bare.text) == (400, "Token required")
        assert (trailing.status_code, trailing.text) == (400, "Token required")

    async def test_malformed_token(self, env):
        async with env.client() as client:
            response = await client.get(f"{BASE}/not-a-real-token")
        assert (response.status_code, response.text) == (400, "Invalid token format")
        assert response.headers["content-type"].startswith("text/plain")
        assert env.store.calls == 0

    async def test_unknown_token(self, env):
        async with env.client() as client:
            response = await client.get(f"{BASE}/{_token()}")
        assert (response.status_code, response.text) == (404, "Invalid feed URL")

    async def test_revoked_token(self, env):
        token = env.add_token(revoked_at=NOW - timedelta(days=1))
        async with env.client() as client:
            response = await client.get(f"{BASE}/{token}")
        assert (response.status_code, response.text) == (403, "This feed URL has been revoked")

    async def test_expired_token(self, env):
        token = env.add_token(expires_at=NOW - timedelta(minutes=1))
        async with env.client() as client:
            response = await client.get(f"{BASE}/{token}")
        assert (response.status_code, response.text) == (403, "This feed URL has expired")

    async def test_rate_limited(self, env):
        token = env.add_token(
            access_count=RATE_LIMIT_PER_HOUR, last_accessed_at=NOW - timedelta(minutes=5)
        )
        async with env.client() as client:
            response = await client.get(f"{BASE}/{token}")
        assert response.status_code == 429
        assert response.text == "Too many requests. Please try again later."

    async def test_error_bodies_carry_cors_header(self, env):
        async with env.client() as client:
            response = await client.get(f"{BASE}/{_token()}")
        assert response.headers["access-control-allow-origin"] == "*"
        assert "BEGIN:VCALENDAR" not in response.text


# ---------------------------------------------------------------------------
# Methods
# ---------------------------------------------------------------------------


class TestMethods:
    async def test_options_returns_ok(self, env):
        async with env.client() as client:
            response = await client.options(f"{BASE}/{_token()}")
        assert (response.status_code, response.text) == (200, "ok")
        assert (
            response.headers["access-control-allow-headers"]
            == "authorization, x-client-info, apikey, content-type"
        )

    @pytest.mark.parametrize("method", ["POST", "PUT", "PATCH", "DELETE"])
    async def test_other_methods_refused(self, env, method):
        token = env.add_token()
        async with env.client() as client:
            response = await client.request(method, f"{BASE}/{token}")
        assert (response.status_code, response.text) == (405, "Method not allowed")
        assert env.store.get(token).access_count == 0

    async def test_head_refused(self, env):
        async with env.client() as client:
            response = await client.head(f"{BASE}/{_token()}")
        assert response.status_code == 405


# ---------------------------------------------------------------------------
# Server errors
# ---------------------------------------------------------------------------


class TestServerErrors:
    def _app_with(self, render: AsyncMock) -> FastAPI:
        service = AsyncMock(spec=FeedService)
        service.render = render
        return create_app(ServiceConfig(), feed_service=service)

    async def _get(self, app: FastAPI) -> httpx.Response:
        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app), base_url="http://test"
        ) as client:
            return await client.get(f"{BASE}/{_token()}")

    async def test_unavailable_is_generic_500(self):
        app = self._app_with(AsyncMock(side_effect=FeedUnavailableError("pool closed")))
        response = await self._get(app)
        assert (response.status_code, response.text) == (500, "Internal server error")
        assert "pool" not in response.text

    async def test_unexpected_exception_is_generic_500(self):
        app = self._app_with(AsyncMock(side_effect=KeyError("circle_id")))
        response = await self._get(app)
        assert (response.status_code, response.text) == (500, "Internal server error")

    async def test_service_not_initialized_is_500(self):
        app = create_app(ServiceConfig())
        response = await self._get(app)
        assert response.status_code == 500

    async def test_rendered_body_passed_through(self):
        feed = RenderedFeed(
            body="BEGIN:VCALENDAR\r\nEND:VCALENDAR\r\n",
            calendar_name="CuraKnot - Care Circle",
            event_count=0,
            circle_id=CIRCLE_ID,
            token_id=None,
        )
        app = self._app_with(AsyncMock(return_value=feed))
        response = await self._get(app)
        assert response.text == feed.body


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


class TestAppFactory:
    async def test_health(self, env):
        async with env.client() as client:
            response = await client.get("/api/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_redirect_slashes_disabled(self, env):
        assert env.app.router.redirect_slashes is False

    async def test_cors_preflight_for_configured_origin(self):
        env = _Env(ServiceConfig(cors_origins=["https://app.curaknot.test"]))
        async with env.client() as client:
            response = await client.options(
                f"{BASE}/{_token()}",
                headers={
                    "origin": "https://app.curaknot.test",
                    "access-control-request-method": "GET",
                },
            )
        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "https://app.curaknot.test"

    async def test_restricted_origins_not_widened_on_feed(self):
        env = _Env(ServiceConfig(cors_origins=["https://app.curaknot.test"]))
        token = env.add_token()
        async with env.client() as client:
            foreign = await client.get(
                f"{BASE}/{token}", headers={"origin": "https://evil.example"}
            )
            allowed = await client.get(
                f"{BASE}/{token}", headers={"origin": "https://app.curaknot.test"}
            )
        assert foreign.status_code == 200
        assert "access-control-allow-origin" not in foreign.headers
        assert allowed.headers["access-control-allow-origin"] == "https://app.curaknot.test"

    async def test_restricted_origins_on_error_and_options(self):
        env = _Env(ServiceConfig(cors_origins=["https://app.curaknot.test"]))
        headers = {"origin": "https://evil.example"}
        async with env.client() as client:
            refused = await client.get(f"{BASE}/{_token()}", headers=headers)
            options = await client.options(f"{BASE}/{_token()}", headers=headers)
        assert refused.status_code == 404
        assert "access-control-allow-origin" not in refused.headers
        assert options.text == "ok"
        assert "access-control-allow-origin" not in options.headers

    def test_feed_cors_headers(self):
        assert feed_cors_headers(["*"])["Access-Control-Allow-Origin"] == "*"
        assert "Access-Control-Allow-Origin" not in feed_cors_headers(["https://a.test"])


class TestRequestHelpers:
    def test_extract_token_last_segment(self):
        assert extract_token("a/b/c") == "c"
        assert extract_token("abc") == "abc"
        assert extract_token("abc/") == ""

    def test_client_info_without_forwarding(self):
        request = MagicMock()
        request.headers = {"user-agent": "iOS/17"}
        request.client.host = "192.0.2.1"
        info = client_info(request)
        assert (info.ip, info.user_agent) == ("192.0.2.1", "iOS/17")
