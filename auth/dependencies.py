"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Requests prove identity with an `Authorization: Bearer <access token>` header.
The token is checked by SessionManager.verify(), which covers signature,
expiry and revocation in one call.

try_get_current_identity() is the soft variant (returns the failed result).
get_current_identity() wraps it and raises AuthenticationFailure, which
api/main.py turns into HTTP 401.

Layer rule: auth/dependencies.py may import from fastapi because this module
is part of the FastAPI dependency injection system. Nothing else in auth/ does.
"""

from __future__ import annotations

from fastapi import Request

from auth.models import AuthResult
from auth.sessions import SessionManager
from core.errors import AuthenticationFailure


def bearer_token(request: Request) -> str | None:
    """Return the bearer token from the Authorization header, if any."""
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def try_get_current_identity(request: Request) -> AuthResult:
    """Verify the bearer token on the request. Never raises."""
    token = bearer_token(request)
    if token is None:
        return AuthResult.failure()
    manager: SessionManager = request.app.state.session_manager
    return manager.verify(token)


def get_current_identity(request: Request) -> str:
    """Require authentication and return the caller's identity.

    An expired token raises AuthenticationFailure(expired=True) so the client
    gets code "token_expired" and knows to call POST /auth/refresh. Every
    other failure looks the same.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(identity: str = Depends(get_current_identity)): ...
    """
    result = try_get_current_identity(request)
    if not result.ok:
        raise AuthenticationFailure(expired=result.expired)
    return result.identity
