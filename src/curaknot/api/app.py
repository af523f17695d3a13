"""Feed API: FastAPI application factory.

The app factory creates a FastAPI instance with:
- CORS middleware (configurable origins, GET/OPTIONS only)
- Lifespan handler for startup/shutdown of the DB pool and telemetry
- Health endpoint at GET /api/health
- The iCalendar feed router at ``config.base_path``
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from curaknot.api.deps import (
    init_feed_service,
    shutdown_dependencies,
    wire_feed_dependencies,
)
from curaknot.api.middleware import register_error_handlers
from curaknot.api.routers import ical_feed
from curaknot.api.routers.ical_feed import build_router
from curaknot.config import ServiceConfig
from curaknot.core.metrics import init_metrics
from curaknot.core.telemetry import init_telemetry
from curaknot.feed.service import FeedService

logger = logging.getLogger(__name__)

SERVICE_NAME = "curaknot-ical-feed"


def _make_lifespan(config: ServiceConfig, feed_service: FeedService | None):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Open the DB pool unless a FeedService was injected.

        A failed pool start is logged; feed requests then answer 500 until
        the process is restarted.
        """
        init_telemetry(SERVICE_NAME)
        init_metrics(SERVICE_NAME)

        if feed_service is None:
            try:
                await init_feed_service(config)
                wire_feed_dependencies(app)
                logger.info("Feed service initialized (base_path=%s)", config.base_path)
            except Exception:
                logger.warning(
                    "Failed to initialize database pool; feed endpoints will be unavailable",
                    exc_info=True,
                )

        yield

        await shutdown_dependencies()

    return lifespan


def create_app(
    config: ServiceConfig | None = None,
    feed_service: FeedService | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    config:
        Service configuration. Defaults to ``ServiceConfig()``.
    feed_service:
        Prebuilt service to serve feeds from.  When omitted, the lifespan
        handler connects to PostgreSQL using ``DATABASE_URL`` / ``POSTGRES_*``.
    """
    if config is None:
        config = ServiceConfig()

    app = FastAPI(
        title="CuraKnot Calendar Feed",
        version="0.1.0",
        lifespan=_make_lifespan(config, feed_service),
    )
    app.router.redirect_slashes = False

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_methods=["GET", "OPTIONS"],
        allow_headers=["authorization", "x-client-info", "apikey", "content-type"],
    )

    register_error_handlers(app, config.cors_origins)

    app.include_router(build_router(config))

    if feed_service is not None:
        app.dependency_overrides[ical_feed._get_feed_service] = lambda: feed_service

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    return app
