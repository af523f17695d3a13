"""Feed access audit logging.

Each served feed produces a ``feed_access_log`` row and an
``ical_feed_accessed`` log line.  Fire-and-forget: exceptions are logged and
swallowed, and the database work is bounded by a timeout so a stalled pool
cannot hold a feed response hostage.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import Any, Protocol
from uuid import UUID

logger = logging.getLogger(__name__)

_USER_AGENT_MAX_CHARS = 512
DEFAULT_AUDIT_TIMEOUT_SECONDS = 2.0


class Executor(Protocol):
    async def execute(self, query: str, *args: Any, timeout: float | None = None) -> str: ...


async def write_feed_access(
    db: Executor | None,
    *,
    token_id: UUID | None,
    circle_id: UUID,
    event_count: int,
    client_ip: str | None = None,
    user_agent: str | None = None,
    timeout_seconds: float = DEFAULT_AUDIT_TIMEOUT_SECONDS,
) -> None:
    """Record one successful feed read.

    Parameters
    ----------
    db:
        Database (or pool) used for the insert.  If ``None``, only the log
        line is emitted.
    token_id:
        Primary key of the feed token; never the token value itself.
    event_count:
        Number of VEVENTs in the served document.
    timeout_seconds:
        Upper bound on the insert and update together; on expiry the write is
        abandoned with a warning.
    """
    accessed_at = datetime.now(UTC)
    logger.info(
        "ical_feed_accessed",
        extra={
            "token_id": str(token_id) if token_id else None,
            "circle_id": str(circle_id),
            "event_count": event_count,
            "accessed_at": accessed_at.isoformat(),
        },
    )

    if db is None:
        return

    if user_agent is not None:
        user_agent = user_agent[:_USER_AGENT_MAX_CHARS]

    async def _write(conn: Executor) -> None:
        await conn.execute(
            "INSERT INTO feed_access_log "
            "(token_id, circle_id, event_count, client_ip, user_agent, accessed_at) "
            "VALUES ($1, $2, $3, $4, $5, $6)",
            token_id,
            circle_id,
            event_count,
            client_ip,
            user_agent,
            accessed_at,
        )
        if token_id is not None:
            await conn.execute(
                "UPDATE ical_feed_tokens "
                "SET last_accessed_ip = $2, last_accessed_user_agent = $3 "
                "WHERE id = $1",
                token_id,
                client_ip,
                user_agent,
            )

    try:
        await asyncio.wait_for(_write(db), timeout=timeout_seconds)
    except TimeoutError:
        logger.warning(
            "Feed access entry timed out after %.1fs: token_id=%s circle_id=%s",
            timeout_seconds,
            token_id,
            circle_id,
        )
    except Exception:
        logger.warning(
            "Failed to write feed access entry: token_id=%s circle_id=%s",
            token_id,
            circle_id,
            exc_info=True,
        )
