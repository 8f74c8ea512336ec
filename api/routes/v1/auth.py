"""
api/routes/v1/auth.py -- Login, registration and session renewal endpoints.

Routes:
  POST /api/v1/auth/login            -- email + password -> access token + refresh token
  POST /api/v1/auth/refresh-token    -- exchange access token + refresh token for a new pair
  POST /api/v1/auth/register         -- self-service sign-up (SELF_REGISTRATION_ENABLED)
  GET  /api/v1/auth/me               -- current identity (requires auth)
  POST /api/v1/auth/revoke           -- revoke one of the caller's refresh tokens (requires auth)
  POST /api/v1/auth/logout           -- revoke every refresh token of the caller (requires auth)

Security:
  [H2] POST /login and /refresh-token are rate-limited per IP.
  [C1] AuthService.login() provides timing equalization -- never inline the lookup.
  [M5] Cache-Control: no-store on every response that carries a token.
  Login failures surface as AuthenticationError and are mapped to one generic
  401 by api/main.py, so the response never reveals which check failed.
  IDOR guard: /revoke passes the caller's user id to the store; the store's
  WHERE clause requires both to match.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    LoginRequest,
    LoginResponse,
    LogoutResponse,
    MeResponse,
    RefreshResponse,
    RegisterRequest,
    RevokeRequest,
    TokenRequest,
)
from auth.claims import ClaimsExtractor
from auth.dependencies import get_current_user, get_current_user_id
from auth.errors import TokenError
from auth.models import LoginResult, RefreshSucceeded, User
from auth.service import AuthService

# Auth policy:
# - POST /api/v1/auth/login:          public -- login endpoint must be unauthenticated
# - POST /api/v1/auth/refresh-token:  public -- the access token is expected to be expired
# - POST /api/v1/auth/register:       public, unless SELF_REGISTRATION_ENABLED=false
# - GET  /api/v1/auth/me:             requires auth (get_current_user)
# - POST /api/v1/auth/revoke:         requires auth (get_current_user_id)
# - POST /api/v1/auth/logout:         requires auth (get_current_user_id)
router = APIRouter()

_claims = ClaimsExtractor()


def _no_store(resp: JSONResponse) -> JSONResponse:
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _login_response(result: LoginResult) -> JSONResponse:
    body = LoginResponse(
        id=result.user.id,
        token=result.tokens.access_token,
        email=result.user.email,
        username=result.user.username,
        refresh_token=result.tokens.refresh_token,
    )
    return _no_store(JSONResponse(status_code=200, content=body.model_dump(by_alias=True)))


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit("10/minute")  # [H2] brute-force mitigation -- must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
async def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; return a fresh token pair.

    AuthenticationError propagates to the handler in api/main.py, which
    answers with the same generic 401 for unknown email, wrong password,
    disabled account and directory failure.
    """
    service: AuthService = request.app.state.auth_service
    result = await service.login(body.email, body.password)
    return _login_response(result)


@limiter.limit("30/minute")  # [H2]
@router.post("/auth/refresh-token", response_model=RefreshResponse)
async def refresh_token(request: Request, body: TokenRequest) -> JSONResponse:
    """Rotate a refresh token.

    Routine rejections (expired, replayed, revoked, mismatched) are NOT HTTP
    errors: they come back as 200 with success=false and a reason in errors.
    """
    service: AuthService = request.app.state.auth_service
    outcome = await service.refresh(body.token, body.refresh_token)
    if isinstance(outcome, RefreshSucceeded):
        body_out = RefreshResponse(
            token=outcome.tokens.access_token,
            refresh_token=outcome.tokens.refresh_token,
            success=True,
        )
    else:
        body_out = RefreshResponse(success=False, errors=outcome.errors)
    return _no_store(JSONResponse(status_code=200, content=body_out.model_dump(by_alias=True)))


@limiter.limit("5/minute")  # [H2]
@router.post("/auth/register", response_model=LoginResponse)
async def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create a local account and log it in.

    Duplicate username/email raises RegistrationError, mapped to 409 by
    api/main.py.
    """
    if not request.app.state.settings.self_registration_enabled:
        raise HTTPException(
            status_code=403,
            detail={"code": "registration_disabled", "message": "Self-registration is disabled."},
        )
    service: AuthService = request.app.state.auth_service
    result = await service.register(body.username, body.email, body.password)
    return _login_response(result)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
async def me(request: Request, current_user: User = Depends(get_current_user)) -> MeResponse:
    """Return identity information for the currently authenticated user.

    Roles are read from the verified access token, so they reflect what was
    granted when the token was minted.
    """
    roles: list[str] = []
    token = request.state.access_token
    if token:
        try:
            roles = _claims.read_claims(token).roles
        except TokenError:
            roles = []
    return MeResponse(
        id=current_user.id,
        username=current_user.username,
        email=current_user.email,
        roles=roles,
    )


@router.post("/auth/revoke", status_code=204)
async def revoke(
    request: Request,
    body: RevokeRequest,
    user_id: str = Depends(get_current_user_id),
) -> Response:
    """Revoke one refresh token owned by the caller. Ownership is verified server-side [IDOR guard]."""
    service: AuthService = request.app.state.auth_service
    if not await service.revoke(user_id, body.refresh_token):
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Refresh token not found."},
        )
    return Response(status_code=204)


@router.post("/auth/logout", response_model=LogoutResponse)
async def logout(request: Request, user_id: str = Depends(get_current_user_id)) -> LogoutResponse:
    """Revoke every outstanding refresh token of the caller (logout everywhere).

    The current access token stays valid until it expires; it cannot be
    renewed any more.
    """
    service: AuthService = request.app.state.auth_service
    count = await service.revoke_all(user_id)
    return LogoutResponse(revoked=count)
