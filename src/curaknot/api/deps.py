"""Process-wide dependencies for the feed API.

Provides:
- the ``Database`` pool opened during the lifespan handler
- the ``FeedService`` built on top of it
- ``wire_feed_dependencies()`` to override router-level dependency stubs
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from curaknot.config import ServiceConfig
from curaknot.core.metrics import FeedMetrics
from curaknot.db import Database
from curaknot.feed.formatter import Branding
from curaknot.feed.service import FeedService
from curaknot.feed.store import PostgresCircleDirectory, PostgresTokenStore

if TYPE_CHECKING:
    from fastapi import FastAPI

logger = logging.getLogger(__name__)

_database: Database | None = None
_feed_service: FeedService | None = None


def build_feed_service(db: Database, config: ServiceConfig) -> FeedService:
    """Assemble a FeedService backed by PostgreSQL."""
    return FeedService(
        token_store=PostgresTokenStore(db),
        directory=PostgresCircleDirectory(db),
        db=db,
        audit_db=db,
        branding=Branding(
            product_name=config.product_name,
            uid_domain=config.uid_domain,
            summary_prefix=config.summary_prefix,
        ),
        default_circle_name=config.default_circle_name,
        source_timeout_seconds=config.source_timeout_seconds,
        metrics=FeedMetrics(),
    )


async def init_feed_service(config: ServiceConfig) -> FeedService:
    """Open the database pool and build the FeedService singleton.

    Called once during app startup (in the lifespan handler).
    """
    global _database, _feed_service  # noqa: PLW0603

    db = Database.from_env(config.db_name, schema=config.db_schema)
    await db.connect()
    _database = db
    _feed_service = build_feed_service(db, config)
    return _feed_service


def get_feed_service() -> FeedService:
    """FastAPI dependency: provides the FeedService singleton."""
    if _feed_service is None:
        raise RuntimeError("FeedService not initialized; call init_feed_service() first")
    return _feed_service


async def shutdown_dependencies() -> None:
    """Close the pool and drop singletons. Called during app shutdown."""
    global _database, _feed_service  # noqa: PLW0603
    if _database is not None:
        await _database.close()
        _database = None
    _feed_service = None


def wire_feed_dependencies(app: FastAPI) -> None:
    """Override the router-level ``_get_feed_service`` stub with the singleton."""
    from curaknot.api.routers import ical_feed

    app.dependency_overrides[ical_feed._get_feed_service] = get_feed_service
