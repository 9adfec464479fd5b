"""
api/routes/v1/auth.py -- Authentication and session lifecycle REST endpoints.

Routes:
  POST   /api/v1/auth/register                        -- create account; 201 {user, tokens}
  POST   /api/v1/auth/login                           -- password login; 200 {user, tokens}
  POST   /api/v1/auth/refresh                         -- rotate refresh token; 200 {tokens}
  POST   /api/v1/auth/logout                          -- revoke refresh token; always 200
  GET    /api/v1/auth/me                              -- current user (requires auth)
  DELETE /api/v1/auth/me                              -- soft-delete own account (requires auth)
  POST   /api/v1/auth/change-password                 -- change password, revoke all sessions (requires auth)
  POST   /api/v1/auth/revoke-all-tokens               -- log out everywhere (requires auth)
  POST   /api/v1/auth/users/{user_id}/revoke-all-tokens -- force logout of another user (admin only)

Security:
  register and login pass through the shared AttemptLimiter: 5 failed attempts
  per email (or IP) per 15 minutes, successful attempts not counted.
  Cache-Control: no-store on every response that carries tokens.

Handlers are plain `def` so FastAPI runs them in its thread pool; bcrypt and
the SQLite driver both block.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from fastapi import APIRouter, Depends, Request, Response

from api.limiter import AttemptLimiter, attempt_key
from api.models import (
    AuthResponse,
    ChangePasswordRequest,
    LoginRequest,
    MeResponse,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    TokensOut,
    TokensResponse,
    UserOut,
)
from auth.dependencies import get_auth_service, get_current_principal, require_admin
from auth.errors import AuthError
from auth.models import AuthResult, Principal
from auth.service import AuthService

# Auth policy:
# - POST   /auth/register, /auth/login:   public, rate limited
# - POST   /auth/refresh, /auth/logout:   public -- the refresh token is the credential
# - GET    /auth/me, DELETE /auth/me:     requires auth (get_current_principal)
# - POST   /auth/change-password:         requires auth
# - POST   /auth/revoke-all-tokens:       requires auth
# - POST   /auth/users/{id}/revoke-all-tokens: requires admin (require_admin)
router = APIRouter()


@contextmanager
def _counted_attempt(request: Request, email: str | None) -> Iterator[None]:
    """Gate one register/login attempt on the limiter and record it if it fails authentication."""
    limiter: AttemptLimiter = request.app.state.attempt_limiter
    key = attempt_key(request, email)
    limiter.check(key)
    try:
        yield
    except AuthError:
        limiter.record_failure(key)
        raise


def _auth_response(message: str, result: AuthResult) -> AuthResponse:
    return AuthResponse(
        message=message,
        user=UserOut.from_user(result.user),
        tokens=TokensOut.from_pair(result.tokens),
    )


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=AuthResponse, status_code=201)
def register(
    request: Request,
    response: Response,
    body: RegisterRequest,
    service: AuthService = Depends(get_auth_service),
) -> AuthResponse:
    """Create an account and open a session on the given device."""
    with _counted_attempt(request, body.email):
        result = service.register(
            email=body.email,
            password=body.password,
            device_id=body.device_id,
            first_name=body.first_name,
            last_name=body.last_name,
        )
    response.headers["Cache-Control"] = "no-store"
    return _auth_response("Registration successful", result)


@router.post("/auth/login", response_model=AuthResponse)
def login(
    request: Request,
    response: Response,
    body: LoginRequest,
    service: AuthService = Depends(get_auth_service),
) -> AuthResponse:
    """Authenticate with email and password and open a session on the given device.

    Sessions on other devices are left alone. Unknown email and wrong password
    produce the same INVALID_CREDENTIALS error.
    """
    with _counted_attempt(request, body.email):
        result = service.login(email=body.email, password=body.password, device_id=body.device_id)
    response.headers["Cache-Control"] = "no-store"
    return _auth_response("Login successful", result)


@router.post("/auth/refresh", response_model=TokensResponse)
def refresh(
    response: Response,
    body: RefreshRequest,
    service: AuthService = Depends(get_auth_service),
) -> TokensResponse:
    """Exchange a refresh token for a new token pair. The presented token is revoked."""
    pair = service.refresh_tokens(body.refresh_token)
    response.headers["Cache-Control"] = "no-store"
    return TokensResponse(message="Token refreshed successfully", tokens=TokensOut.from_pair(pair))


@router.post("/auth/logout", response_model=MessageResponse)
def logout(body: RefreshRequest, service: AuthService = Depends(get_auth_service)) -> MessageResponse:
    """Revoke a refresh token. Succeeds whether or not the token existed or was live."""
    service.logout(body.refresh_token)
    return MessageResponse(message="Logout successful")


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
def me(principal: Principal = Depends(get_current_principal)) -> MeResponse:
    """Return the currently authenticated user."""
    return MeResponse(user=UserOut.from_user(principal.user))


@router.delete("/auth/me", response_model=MessageResponse)
def delete_me(
    principal: Principal = Depends(get_current_principal),
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    service.delete_account(principal.user.id)
    return MessageResponse(message="Account deleted successfully")


@router.post("/auth/change-password", response_model=MessageResponse)
def change_password(
    body: ChangePasswordRequest,
    principal: Principal = Depends(get_current_principal),
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """Change the password and revoke every session, including this one."""
    service.change_password(principal.user.id, body.current_password, body.new_password)
    return MessageResponse(message="Password changed successfully. Please login again.")


@router.post("/auth/revoke-all-tokens", response_model=MessageResponse)
def revoke_all_tokens(
    principal: Principal = Depends(get_current_principal),
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    service.revoke_all_tokens(principal.user.id)
    return MessageResponse(message="All tokens revoked successfully. Please login again.")


# ---------------------------------------------------------------------------
# Admin endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/users/{user_id}/revoke-all-tokens", response_model=MessageResponse)
def admin_revoke_all_tokens(
    user_id: str,
    principal: Principal = Depends(require_admin),
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """Force-logout another user on every device. Admin only."""
    revoked = service.revoke_all_tokens(user_id)
    return MessageResponse(message=f"Revoked {revoked} token(s).")
