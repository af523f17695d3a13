"""API error handling: plain-text error responses for calendar clients.

Calendar apps only act on the status code, so every error is a short
``text/plain`` body that never carries calendar data, stack traces or
internal identifiers.

Status code mapping:
- ``TokenValidationError`` → 400 / 403 / 404 / 429 by error code
- ``FeedUnavailableError`` → 500
- Any other ``Exception`` → 500
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse
from starlette.middleware.base import BaseHTTPMiddleware

from curaknot.feed.service import FeedUnavailableError
from curaknot.feed.tokens import TokenErrorCode, TokenValidationError

logger = logging.getLogger(__name__)

FEED_CORS_ALLOW_HEADERS = "authorization, x-client-info, apikey, content-type"

INTERNAL_ERROR_MESSAGE = "Internal server error"

TOKEN_ERROR_RESPONSES: dict[TokenErrorCode, tuple[int, str]] = {
    TokenErrorCode.INVALID_TOKEN_FORMAT: (400, "Invalid token format"),
    TokenErrorCode.TOKEN_NOT_FOUND: (404, "Invalid feed URL"),
    TokenErrorCode.TOKEN_REVOKED: (403, "This feed URL has been revoked"),
    TokenErrorCode.TOKEN_EXPIRED: (403, "This feed URL has expired"),
    TokenErrorCode.RATE_LIMITED: (429, "Too many requests. Please try again later."),
}


def feed_cors_headers(cors_origins: Sequence[str]) -> dict[str, str]:
    """Headers added to every feed response, error bodies included.

    Only a wildcard configuration answers ``*`` unconditionally.  Explicit
    origins are echoed by ``CORSMiddleware`` when the request's ``Origin``
    is on the list, and omitted otherwise.
    """
    headers = {"Access-Control-Allow-Headers": FEED_CORS_ALLOW_HEADERS}
    if "*" in cors_origins:
        headers["Access-Control-Allow-Origin"] = "*"
    return headers


def _cors_headers_for(request: Request) -> dict[str, str]:
    return request.app.state.feed_cors_headers


def plain_text_response(
    status_code: int, message: str, cors_headers: dict[str, str]
) -> PlainTextResponse:
    return PlainTextResponse(message, status_code=status_code, headers=cors_headers)


async def _handle_token_error(
    request: Request,
    exc: TokenValidationError,
) -> PlainTextResponse:
    """Map a token refusal to its fixed status and message."""
    status_code, message = TOKEN_ERROR_RESPONSES[exc.code]
    logger.info("Feed request refused: %s", exc.code)
    return plain_text_response(status_code, message, _cors_headers_for(request))


async def _handle_feed_unavailable(
    request: Request,
    exc: FeedUnavailableError,
) -> PlainTextResponse:
    logger.error("Feed unavailable on %s: %s", request.method, exc)
    return plain_text_response(500, INTERNAL_ERROR_MESSAGE, _cors_headers_for(request))


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that catches any unhandled exception and returns a 500.

    Sits above the Starlette exception handler layer, so exceptions not
    covered by ``add_exception_handler`` still get the plain-text body.
    """

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception:
            # The path embeds the token; log the method only.
            logger.error("Unhandled exception on %s request", request.method, exc_info=True)
            return plain_text_response(500, INTERNAL_ERROR_MESSAGE, _cors_headers_for(request))


def register_error_handlers(app: FastAPI, cors_origins: Sequence[str]) -> None:
    """Attach all exception handlers to the FastAPI application.

    Call this from ``create_app()`` after constructing the ``FastAPI`` instance.
    """
    app.state.feed_cors_headers = feed_cors_headers(cors_origins)
    app.add_exception_handler(TokenValidationError, _handle_token_error)  # type: ignore[arg-type]
    app.add_exception_handler(
        FeedUnavailableError,
        _handle_feed_unavailable,  # type: ignore[arg-type]
    )
    app.add_middleware(CatchAllErrorMiddleware)
