"""
api/routes/v1/auth.py -- Session lifecycle REST endpoints.

Routes:
  POST /api/v1/auth/signup    -- create account, open a session (201)
  POST /api/v1/auth/login     -- password login; access token in body, refresh cookie
  POST /api/v1/auth/refresh   -- rotate the refresh cookie into a new pair
  POST /api/v1/auth/logout    -- revoke the session; clears the refresh cookie
  GET  /api/v1/auth/verify    -- validate the bearer token (requires auth)
  GET  /api/v1/auth/me        -- current user info (requires auth)

Security:
  [R1] login, signup and refresh are rate-limited per IP (LOGIN_RATE_LIMIT).
  [R2] The refresh artifact is only ever sent as an httpOnly, SameSite=strict
       cookie scoped to /api/v1/auth, with max_age equal to the refresh TTL. It
       never appears in a response body or a log line.
  [R3] Every authentication failure returns the same body. Wrong password and
       unknown user are indistinguishable.
  [R4] Cache-Control: no-store on every response that carries a token.

Handlers are plain `def` so bcrypt and store round trips run in the threadpool
instead of blocking the event loop.
"""

# Annotations stay evaluated (no __future__ import): FastAPI reads the handler
# signatures through slowapi's wrapper, whose globals are not this module's.
from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import LoginRequest, MeResponse, MessageResponse, SignupRequest, TokenResponse, VerifyResponse
from auth.dependencies import bearer_token, get_current_identity
from auth.models import SessionGrant
from auth.sessions import SessionManager
from auth.store import UserStore
from core.config import Settings, get_settings
from core.errors import AuthenticationFailure, IdentifierTaken

# Auth policy:
# - POST /api/v1/auth/signup:   public
# - POST /api/v1/auth/login:    public
# - POST /api/v1/auth/refresh:  public -- proof is the refresh cookie itself
# - POST /api/v1/auth/logout:   public -- must work with an already-invalid token
# - GET  /api/v1/auth/verify:   requires auth (get_current_identity)
# - GET  /api/v1/auth/me:       requires auth (get_current_identity)
router = APIRouter()


def _auth_rate_limit() -> str:
    return get_settings().login_rate_limit


_BAD_CREDENTIALS = {"code": "bad_credentials", "message": "Invalid credentials."}
_BAD_REFRESH = {"code": "invalid_refresh", "message": "Invalid or expired refresh token."}


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/signup", response_model=TokenResponse, status_code=201)
@limiter.limit(_auth_rate_limit)  # [R1] must sit BELOW @router so the route registers the limited wrapper
def signup(request: Request, body: SignupRequest) -> JSONResponse:
    """Create a user account and log it in.

    Mismatched passwords -> 400. Username or email already used in either
    namespace -> 409.
    """
    if body.password != body.confirm_password:
        raise HTTPException(
            status_code=400,
            detail={"code": "password_mismatch", "message": "Passwords do not match."},
        )
    manager: SessionManager = request.app.state.session_manager
    try:
        result = manager.register(body.username, body.email, body.password)
    except IdentifierTaken as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "Email or username already exists."},
        ) from exc
    return _grant_response(request.app.state.settings, result.grant, status_code=201)


@router.post("/auth/login", response_model=TokenResponse)
@limiter.limit(_auth_rate_limit)  # [R1]
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username-or-email and password.

    Returns the access token in the body and sets the refresh cookie. When the
    session store is down the response has degraded=true and no cookie.
    """
    manager: SessionManager = request.app.state.session_manager
    result = manager.login(body.identifier, body.password)
    if not result.ok:
        resp = JSONResponse(status_code=401, content={"error": _BAD_CREDENTIALS})
        resp.headers["Cache-Control"] = "no-store"  # [R4]
        return resp
    return _grant_response(request.app.state.settings, result.grant)


@router.post("/auth/refresh", response_model=TokenResponse)
@limiter.limit(_auth_rate_limit)  # [R1]
def refresh(request: Request) -> JSONResponse:
    """Exchange the refresh cookie for a new access token and refresh cookie.

    The presented artifact is invalid afterwards. Failure clears the cookie.
    A session store outage surfaces as 503 (handled in api/main.py).
    """
    settings: Settings = request.app.state.settings
    manager: SessionManager = request.app.state.session_manager
    artifact = request.cookies.get(settings.refresh_cookie_name, "")
    result = manager.refresh(artifact)
    if not result.ok:
        resp = JSONResponse(status_code=401, content={"error": _BAD_REFRESH})
        clear_refresh_cookie(resp, settings)
        resp.headers["Cache-Control"] = "no-store"
        return resp
    return _grant_response(settings, result.grant)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request) -> JSONResponse:
    """Revoke the caller's session and clear the refresh cookie.

    Always 200: an unknown or already-revoked session is still "logged out"
    from the caller's point of view.
    """
    settings: Settings = request.app.state.settings
    manager: SessionManager = request.app.state.session_manager
    manager.logout(
        access_token=bearer_token(request),
        refresh_artifact=request.cookies.get(settings.refresh_cookie_name),
    )
    resp = JSONResponse(content=MessageResponse(message="Logged out.").model_dump())
    clear_refresh_cookie(resp, settings)
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/verify", response_model=VerifyResponse)
def verify(identity: str = Depends(get_current_identity)) -> VerifyResponse:
    """Confirm the bearer token is valid, unexpired, and not revoked."""
    return VerifyResponse(user_id=identity)


@router.get("/auth/me", response_model=MeResponse)
def me(request: Request, identity: str = Depends(get_current_identity)) -> MeResponse:
    """Return directory information for the authenticated identity."""
    user_store: UserStore = request.app.state.user_store
    user = user_store.get_by_id(int(identity)) if identity.isdigit() else None
    if user is None or not user.is_active:
        raise AuthenticationFailure()
    return MeResponse(user_id=user.id, username=user.username, email=user.email)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def set_refresh_cookie(response: Response, settings: Settings, artifact: str) -> None:
    """Write the refresh artifact as an httpOnly cookie [R2].

    httponly=True: scripts cannot read it.
    samesite="strict": never sent on cross-site requests.
    secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).
    path: only sent to the auth routes, not to every API call.
    max_age: matches the refresh TTL so cookie and server record expire together.
    """
    response.set_cookie(
        settings.refresh_cookie_name,
        value=artifact,
        httponly=True,
        samesite="strict",
        secure=settings.secure_cookies,
        max_age=settings.refresh_token_ttl_seconds,
        path=settings.refresh_cookie_path,
    )


def clear_refresh_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        settings.refresh_cookie_name,
        path=settings.refresh_cookie_path,
        httponly=True,
        samesite="strict",
        secure=settings.secure_cookies,
    )


def _grant_response(settings: Settings, grant: SessionGrant, status_code: int = 200) -> JSONResponse:
    resp = JSONResponse(
        status_code=status_code,
        content=TokenResponse(
            access_token=grant.access_token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=grant.access_expires_in,
            degraded=grant.degraded,
        ).model_dump(),
    )
    if grant.refresh_artifact:
        set_refresh_cookie(resp, settings, grant.refresh_artifact)
    else:
        clear_refresh_cookie(resp, settings)
    resp.headers["Cache-Control"] = "no-store"  # [R4]
    return resp
