"""
api/routes/v1/auth.py -- Authentication REST endpoints.

Routes:
  POST /api/v1/auth/login        -- username-or-email + password; token pair + cookies
  POST /api/v1/auth/register     -- self-service sign-up (USER role)
  POST /api/v1/auth/refresh      -- rotate a refresh token (body or cookie)
  POST /api/v1/auth/logout       -- revoke one refresh token, clear cookies
  POST /api/v1/auth/logout-all   -- revoke every refresh token of the caller
  GET  /api/v1/auth/me           -- current user and permissions
  POST /api/v1/auth/password     -- change own password (signs out everywhere)

Security:
  POST /login is rate-limited per IP (LOGIN_RATE_LIMIT) on top of the
      per-account lockout enforced by AuthService.
  Cache-Control: no-store on every response that carries tokens.
  The refresh cookie is httpOnly, samesite=strict and scoped to /api/v1/auth
      so it is only ever sent to the endpoints that consume it.
  Error responses come from the AuthError handler in api/main.py; handlers
      here only cover the success path.

Handlers that hash or verify passwords are plain `def` so FastAPI runs them
in its threadpool and bcrypt never blocks the event loop.
"""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_rate_limit
from api.models import (
    LoginRequest,
    LoginResponse,
    MeResponse,
    MessageResponse,
    PasswordChangeRequest,
    RefreshRequest,
    RegisterRequest,
    TokenResponse,
    UserResponse,
)
from auth.dependencies import get_auth_service, get_identity
from auth.errors import TokenInvalid
from auth.models import Identity, TokenPair
from core.config import Settings

_REFRESH_COOKIE_PATH = "/api/v1/auth"

# Auth policy:
# - POST /api/v1/auth/login:       public, rate-limited
# - POST /api/v1/auth/register:    public (disabled by SELF_REGISTRATION_ENABLED=false)
# - POST /api/v1/auth/refresh:     public -- the refresh token is the credential
# - POST /api/v1/auth/logout:      requires auth (get_identity)
# - POST /api/v1/auth/logout-all:  requires auth (get_identity)
# - GET  /api/v1/auth/me:          requires auth (get_identity)
# - POST /api/v1/auth/password:    requires auth (get_identity)
router = APIRouter()


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=LoginResponse)
@limiter.limit(login_rate_limit)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username (or email) and password.

    Unknown account and wrong password produce the same 401 body.
    """
    service = get_auth_service(request)
    result = service.authenticate(body.username, body.password)
    content = LoginResponse(
        **TokenResponse.from_pair(result.tokens).model_dump(),
        user_id=result.identity.id,
        username=result.username,
        email=result.identity.email,
        role=result.identity.role,
    )
    resp = JSONResponse(status_code=200, content=content.model_dump(mode="json"))
    set_auth_cookies(resp, result.tokens, request.app.state.settings)
    return resp


@router.post("/auth/register", response_model=UserResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> UserResponse:
    service = get_auth_service(request)
    user = service.register(body.username, body.email, body.password)
    return UserResponse.from_user(user)


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(request: Request, body: RefreshRequest | None = None) -> JSONResponse:
    """Exchange a refresh token for a new pair. The old token stops working."""
    settings: Settings = request.app.state.settings
    token = _refresh_token_from(request, body, settings)
    if token is None:
        raise TokenInvalid()
    pair = get_auth_service(request).refresh(token)
    resp = JSONResponse(content=TokenResponse.from_pair(pair).model_dump())
    set_auth_cookies(resp, pair, settings)
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=MessageResponse)
def logout(
    request: Request,
    body: RefreshRequest | None = None,
    identity: Identity = Depends(get_identity),
) -> JSONResponse:
    settings: Settings = request.app.state.settings
    token = _refresh_token_from(request, body, settings)
    get_auth_service(request).logout(identity.id, token)
    resp = JSONResponse(content={"message": "Logged out."})
    clear_auth_cookies(resp, settings)
    return resp


@router.post("/auth/logout-all", response_model=MessageResponse)
def logout_all(request: Request, identity: Identity = Depends(get_identity)) -> JSONResponse:
    get_auth_service(request).logout_everywhere(identity.id)
    resp = JSONResponse(content={"message": "Logged out from all devices."})
    clear_auth_cookies(resp, request.app.state.settings)
    return resp


@router.get("/auth/me", response_model=MeResponse)
def me(request: Request, identity: Identity = Depends(get_identity)) -> MeResponse:
    user = get_auth_service(request).get_user(identity, identity.id)
    return MeResponse.from_user(user)


@router.post("/auth/password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: PasswordChangeRequest,
    identity: Identity = Depends(get_identity),
) -> JSONResponse:
    """Change the caller's password. Every refresh token is revoked."""
    get_auth_service(request).change_password(identity, body.current_password, body.new_password)
    resp = JSONResponse(content={"message": "Password changed. Please log in again."})
    clear_auth_cookies(resp, request.app.state.settings)
    return resp


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_auth_cookies(response, pair: TokenPair, settings: Settings) -> None:
    """Write both tokens as httpOnly cookies and mark the response no-store.

    max_age matches each token's lifetime so cookie and token expire together.
    """
    response.set_cookie(
        settings.access_cookie_name,
        value=pair.access_token,
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
        max_age=pair.access_expires_in,
    )
    response.set_cookie(
        settings.refresh_cookie_name,
        value=pair.refresh_token,
        httponly=True,
        samesite="strict",
        secure=settings.secure_cookies,
        max_age=pair.refresh_expires_in,
        path=_REFRESH_COOKIE_PATH,
    )
    response.headers["Cache-Control"] = "no-store"


def clear_auth_cookies(response, settings: Settings) -> None:
    response.delete_cookie(settings.access_cookie_name)
    response.delete_cookie(settings.refresh_cookie_name, path=_REFRESH_COOKIE_PATH)
    response.headers["Cache-Control"] = "no-store"


def _refresh_token_from(request: Request, body: RefreshRequest | None, settings: Settings) -> str | None:
    if body is not None and body.refresh_token:
        return body.refresh_token
    return request.cookies.get(settings.refresh_cookie_name) or None
