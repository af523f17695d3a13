"""Sanitize the feed configuration stored on a token before it drives queries.

The configuration is written by the circle member who created the feed, so
out-of-range values are corrected rather than rejected.  The patient
allowlist is the exception that needs a database round trip: ids are only
honoured when they belong to the token's circle.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any, Protocol
from uuid import UUID

from curaknot.feed.models import FeedConfig

logger = logging.getLogger(__name__)

DEFAULT_LOOKAHEAD_DAYS = 90
MAX_LOOKAHEAD_DAYS = 365

_FLAG_DEFAULTS = {
    "include_tasks": True,
    "include_shifts": True,
    "include_appointments": True,
    "include_handoff_followups": False,
}


class PatientDirectory(Protocol):
    async def patient_ids(self, circle_id: UUID, candidates: list[UUID]) -> set[UUID]: ...


def resolve_minimal_details(value: object) -> bool:
    """Only an explicit ``False`` turns off redaction."""
    return value is not False


def clamp_lookahead(value: object) -> int:
    """Coerce a lookahead value into ``[0, 365]`` days."""
    if value is None or isinstance(value, bool):
        return DEFAULT_LOOKAHEAD_DAYS
    try:
        days = int(value)  # type: ignore[call-overload]
    except (TypeError, ValueError, OverflowError):
        return DEFAULT_LOOKAHEAD_DAYS
    return max(0, min(days, MAX_LOOKAHEAD_DAYS))


def _coerce_flag(raw_config: Mapping[str, Any], key: str) -> bool:
    value = raw_config.get(key)
    if isinstance(value, bool):
        return value
    return _FLAG_DEFAULTS[key]


def parse_patient_ids(values: Iterable[object]) -> tuple[list[UUID], list[object]]:
    """Split raw allowlist entries into parsed UUIDs and rejects."""
    parsed: list[UUID] = []
    rejected: list[object] = []
    for value in values:
        if isinstance(value, UUID):
            candidate = value
        else:
            try:
                candidate = UUID(str(value))
            except ValueError:
                rejected.append(value)
                continue
        if candidate not in parsed:
            parsed.append(candidate)
    return parsed, rejected


class ScopeSanitizer:
    """Builds a :class:`FeedConfig` from the raw token config."""

    def __init__(self, directory: PatientDirectory) -> None:
        self._directory = directory

    async def sanitize(
        self, raw_config: Mapping[str, Any], circle_id: UUID, token_label: str
    ) -> FeedConfig:
        """Return the sanitized config.

        ``token_label`` is the loggable token prefix.  Errors raised by the
        patient directory propagate; a feed is never served with an
        allowlist that could not be checked.
        """
        patient_ids = await self._sanitize_patient_ids(
            raw_config.get("patient_ids"), circle_id, token_label
        )
        return FeedConfig(
            include_tasks=_coerce_flag(raw_config, "include_tasks"),
            include_shifts=_coerce_flag(raw_config, "include_shifts"),
            include_appointments=_coerce_flag(raw_config, "include_appointments"),
            include_handoff_followups=_coerce_flag(raw_config, "include_handoff_followups"),
            patient_ids=patient_ids,
            show_minimal_details=resolve_minimal_details(raw_config.get("show_minimal_details")),
            lookahead_days=clamp_lookahead(raw_config.get("lookahead_days")),
        )

    async def _sanitize_patient_ids(
        self, raw: object, circle_id: UUID, token_label: str
    ) -> tuple[UUID, ...] | None:
        if raw is None:
            return None
        if isinstance(raw, str | bytes) or not isinstance(raw, Iterable):
            logger.warning(
                "Feed %s has a malformed patient_ids value; matching nothing", token_label
            )
            return ()

        requested, rejected = parse_patient_ids(raw)
        if not requested and not rejected:
            return None

        valid = await self._directory.patient_ids(circle_id, requested) if requested else set()
        dropped = [str(pid) for pid in requested if pid not in valid]
        dropped.extend(str(value) for value in rejected)
        if dropped:
            logger.warning(
                "Feed %s: dropped %d patient id(s) not in circle %s: %s",
                token_label,
                len(dropped),
                circle_id,
                ", ".join(dropped),
            )
        return tuple(pid for pid in requested if pid in valid)
