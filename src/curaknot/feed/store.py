"""PostgreSQL-backed token store and circle directory."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any
from uuid import UUID

from curaknot.db import Database
from curaknot.feed.tokens import TokenCheck

logger = logging.getLogger(__name__)


def _normalize_json_object(value: object) -> dict[str, Any]:
    """Normalize a DB JSON/JSONB value into a dict."""
    if isinstance(value, Mapping):
        return dict(value)
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return {}
        if isinstance(parsed, Mapping):
            return dict(parsed)
    return {}


class PostgresTokenStore:
    """Runs ``validate_ical_token`` in its own implicit transaction.

    The function locks the token row, applies the revoked/expired checks and
    bumps the hourly counter in one statement, so concurrent requests for the
    same token serialize on the row lock and each sees a distinct count.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    async def validate_and_increment(self, token: str) -> TokenCheck:
        row = await self._db.fetchrow(
            "SELECT is_valid, circle_id, feed_config, error_code, token_id "
            "FROM validate_ical_token($1)",
            token,
        )
        if row is None:
            raise RuntimeError("validate_ical_token returned no row")
        return TokenCheck(
            is_valid=bool(row["is_valid"]),
            circle_id=row["circle_id"],
            feed_config=_normalize_json_object(row["feed_config"]),
            error_code=row["error_code"],
            token_id=row["token_id"],
        )


class PostgresCircleDirectory:
    """Read-only lookups against ``circles`` and ``patients``."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def circle_name(self, circle_id: UUID) -> str | None:
        return await self._db.fetchval("SELECT name FROM circles WHERE id = $1", circle_id)

    async def patient_ids(self, circle_id: UUID, candidates: list[UUID]) -> set[UUID]:
        """Return the subset of *candidates* that belong to *circle_id*."""
        if not candidates:
            return set()
        rows = await self._db.fetch(
            "SELECT id FROM patients WHERE circle_id = $1 AND id = ANY($2::uuid[])",
            circle_id,
            candidates,
        )
        return {row["id"] for row in rows}
