"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Protected routes authenticate with an `Authorization: Bearer <access token>`
header. The token is verified by AuthService.authenticate(), which also
requires the token's device to still hold a live refresh token.

get_current_principal() raises AuthenticationError (401) when the header is
missing or the token does not verify.
require_admin() wraps get_current_principal() and raises PermissionDeniedError (403).

Both errors are rendered by the AuthError handler in api/main.py.

Layer rule: auth/dependencies.py may import from fastapi (for Depends/Request)
because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Depends, Request

from auth.errors import AuthenticationError, PermissionDeniedError
from auth.models import Principal, Role
from auth.service import AuthService


def get_auth_service(request: Request) -> AuthService:
    """Return the AuthService created in the app lifespan."""
    return request.app.state.auth_service


def _bearer_token(request: Request) -> str | None:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_current_principal(request: Request) -> Principal:
    """Require authentication.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(principal: Principal = Depends(get_current_principal)): ...
    """
    token = _bearer_token(request)
    if token is None:
        raise AuthenticationError("Missing or invalid authorization header.")
    return get_auth_service(request).authenticate(token)


def require_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
    """Require the ADMIN role on top of authentication."""
    if principal.user.role != Role.ADMIN:
        raise PermissionDeniedError()
    return principal
