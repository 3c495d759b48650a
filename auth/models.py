"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, almost no logic). Stores, the codec
and the session manager do the work; these types only carry shape.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


@dataclass
class User:
    """A record in the user directory.

    username and email are two separate login namespaces. A value is unique
    across both combined, so an identifier resolves to at most one user.
    """

    username: str
    email: str
    id: int | None = None
    hashed_password: str | None = None
    created_at: str | None = None
    is_active: bool = True


class TokenStatus(str, Enum):
    VALID = "valid"
    EXPIRED = "expired"
    INVALID = "invalid"


@dataclass(frozen=True)
class ParsedToken:
    """Result of TokenCodec.parse().

    identity is only populated when the signature verified (VALID or EXPIRED).
    An INVALID token never exposes a subject.
    """

    status: TokenStatus
    identity: str | None = None
    issued_at: datetime | None = None
    expires_at: datetime | None = None

    @property
    def valid(self) -> bool:
        return self.status is TokenStatus.VALID


@dataclass(frozen=True)
class SessionGrant:
    """Artifacts handed to the caller after login, signup, or refresh.

    refresh_artifact is None for a degraded login: nothing was persisted, so
    there is nothing a refresh could rotate. The route layer must deliver
    refresh_artifact through the cookie only, never in a response body.
    """

    identity: str
    access_token: str
    access_expires_in: int
    refresh_artifact: str | None
    refresh_expires_in: int
    degraded: bool = False


@dataclass(frozen=True)
class AuthResult:
    """Typed outcome of a SessionManager flow.

    Failures are uniform: the only detail a failure carries is `expired`,
    which verify() sets so callers know to try the refresh flow.
    """

    ok: bool
    identity: str | None = None
    grant: SessionGrant | None = None
    expired: bool = False

    @classmethod
    def success(cls, identity: str, grant: SessionGrant | None = None) -> "AuthResult":
        return cls(ok=True, identity=identity, grant=grant)

    @classmethod
    def failure(cls, expired: bool = False) -> "AuthResult":
        return cls(ok=False, expired=expired)
