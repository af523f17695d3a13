"""Feed token validation.

The validator rejects malformed tokens locally and hands everything else to
a :class:`TokenStore`, whose ``validate_and_increment`` must perform the
not-found / revoked / expired checks and the rate-limit increment as one
atomic step.  The PostgreSQL implementation lives in
:mod:`curaknot.feed.store` and delegates to the ``validate_ical_token``
function, which row-locks the token before its single ``UPDATE ... RETURNING``.
"""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Protocol
from uuid import UUID

from curaknot.feed.models import TokenScope

logger = logging.getLogger(__name__)

# 32 random bytes, base64url without padding.
TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9_-]{43}$")
TOKEN_LOG_PREFIX_LENGTH = 8
RATE_LIMIT_PER_HOUR = 100


class TokenErrorCode(enum.StrEnum):
    """Why a feed token was refused."""

    INVALID_TOKEN_FORMAT = "INVALID_TOKEN_FORMAT"
    TOKEN_NOT_FOUND = "TOKEN_NOT_FOUND"
    TOKEN_REVOKED = "TOKEN_REVOKED"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    RATE_LIMITED = "RATE_LIMITED"


class TokenValidationError(Exception):
    """Raised when a token cannot be used to read a feed."""

    def __init__(self, code: TokenErrorCode, token_id: UUID | None = None) -> None:
        self.code = code
        self.token_id = token_id
        super().__init__(code.value)


@dataclass(frozen=True)
class TokenCheck:
    """One row returned by the store's atomic validate-and-increment call."""

    is_valid: bool
    circle_id: UUID | None = None
    feed_config: dict[str, Any] = field(default_factory=dict)
    error_code: str | None = None
    token_id: UUID | None = None


class TokenStore(Protocol):
    async def validate_and_increment(self, token: str) -> TokenCheck: ...


def is_well_formed(token: object) -> bool:
    return isinstance(token, str) and TOKEN_PATTERN.fullmatch(token) is not None


def token_prefix(token: str) -> str:
    """Loggable form of a token; the full value is a credential."""
    return f"{token[:TOKEN_LOG_PREFIX_LENGTH]}..."


class TokenValidator:
    """Turns a bearer token into a :class:`TokenScope` or a specific refusal."""

    def __init__(self, store: TokenStore) -> None:
        self._store = store

    async def validate(self, token: str) -> TokenScope:
        if not is_well_formed(token):
            raise TokenValidationError(TokenErrorCode.INVALID_TOKEN_FORMAT)

        check = await self._store.validate_and_increment(token)

        if not check.is_valid:
            try:
                code = TokenErrorCode(check.error_code)
            except ValueError:
                logger.warning(
                    "Token store returned unknown error code %r for %s",
                    check.error_code,
                    token_prefix(token),
                )
                code = TokenErrorCode.TOKEN_NOT_FOUND
            if code is TokenErrorCode.RATE_LIMITED:
                logger.warning("Feed %s exceeded its hourly rate limit", token_prefix(token))
            raise TokenValidationError(code, token_id=check.token_id)

        if check.circle_id is None:
            raise RuntimeError("Token store reported a valid token without a circle")

        return TokenScope(
            token_id=check.token_id,
            circle_id=check.circle_id,
            feed_config=dict(check.feed_config),
        )
