"""iCalendar subscription feed endpoint.

``GET {base_path}/{token}`` returns the calendar for the token's circle.
The token is the last path segment, so ``{base_path}/anything/{token}``
resolves the same way.  OPTIONS answers ``ok`` with CORS headers; every
other method is refused with 405.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse, Response

from curaknot.api.middleware import feed_cors_headers, plain_text_response
from curaknot.config import ServiceConfig
from curaknot.feed.service import ClientInfo, FeedService

logger = logging.getLogger(__name__)

CALENDAR_MEDIA_TYPE = "text/calendar; charset=utf-8"
CACHE_CONTROL = "private, max-age=900"
REFUSED_METHODS = ["POST", "PUT", "PATCH", "DELETE", "HEAD"]


def _get_feed_service() -> FeedService:
    """Dependency stub; overridden at app startup or in tests."""
    raise RuntimeError("FeedService not initialized")


def extract_token(token_path: str) -> str:
    """Return the last path segment (empty when the path ends in ``/``)."""
    return token_path.split("/")[-1]


def client_info(request: Request) -> ClientInfo:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        ip = forwarded.split(",")[0].strip() or None
    else:
        ip = request.client.host if request.client else None
    return ClientInfo(ip=ip, user_agent=request.headers.get("user-agent"))


def build_router(config: ServiceConfig) -> APIRouter:
    """Create the feed router mounted at ``config.base_path``."""
    router = APIRouter(prefix=config.base_path, tags=["ical-feed"])
    content_disposition = f'attachment; filename="{config.calendar_filename}"'
    cors_headers = feed_cors_headers(config.cors_origins)

    @router.options("")
    @router.options("/{token_path:path}")
    async def feed_options() -> PlainTextResponse:
        return PlainTextResponse("ok", headers=cors_headers)

    @router.api_route("", methods=REFUSED_METHODS, include_in_schema=False)
    @router.api_route("/{token_path:path}", methods=REFUSED_METHODS, include_in_schema=False)
    async def feed_method_not_allowed() -> PlainTextResponse:
        return plain_text_response(405, "Method not allowed", cors_headers)

    @router.get("", response_class=Response)
    async def feed_without_token() -> PlainTextResponse:
        return plain_text_response(400, "Token required", cors_headers)

    @router.get("/{token_path:path}", response_class=Response)
    async def get_feed(
        token_path: str,
        request: Request,
        service: FeedService = Depends(_get_feed_service),
    ) -> Response:
        """Render the calendar for the token in the last path segment."""
        token = extract_token(token_path)
        if not token:
            return plain_text_response(400, "Token required", cors_headers)

        feed = await service.render(token, client_info(request))
        return Response(
            content=feed.body,
            media_type=CALENDAR_MEDIA_TYPE,
            headers={
                **cors_headers,
                "Content-Disposition": content_disposition,
                "Cache-Control": CACHE_CONTROL,
            },
        )

    return router
