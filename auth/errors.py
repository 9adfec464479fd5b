"""
auth/errors.py -- Typed failures raised by the auth service.

Every class carries the wire code, HTTP status, and client-facing message it
renders as. api/main.py registers one exception handler for AuthError and
turns any subclass into the standard error envelope, so route handlers never
build error responses for these cases themselves.

Messages are fixed strings. Authentication failures must not reveal which
factor was wrong (unknown email vs bad password, revoked vs expired token).
"""

from __future__ import annotations


class AuthError(Exception):
    code = "AUTH_ERROR"
    status_code = 400
    message = "Authentication request failed."

    def __init__(self, message: str | None = None, *, details: list[dict] | None = None) -> None:
        if message is not None:
            self.message = message
        self.details = details
        super().__init__(self.message)


class ConflictError(AuthError):
    code = "USER_ALREADY_EXISTS"
    status_code = 409
    message = "A user with this email address already exists."


class InvalidCredentialsError(AuthError):
    code = "INVALID_CREDENTIALS"
    status_code = 401
    message = "Invalid email or password."


class InvalidTokenError(AuthError):
    code = "INVALID_REFRESH_TOKEN"
    status_code = 401
    message = "Invalid or expired refresh token."


class InvalidCurrentPasswordError(AuthError):
    code = "INVALID_CURRENT_PASSWORD"
    status_code = 400
    message = "Current password is incorrect."


class AuthenticationError(AuthError):
    code = "UNAUTHORIZED"
    status_code = 401
    message = "Authentication required."


class PermissionDeniedError(AuthError):
    code = "FORBIDDEN"
    status_code = 403
    message = "Insufficient permissions."


class RateLimitExceededError(AuthError):
    code = "RATE_LIMIT_EXCEEDED"
    status_code = 429
    message = "Too many authentication attempts, please try again later."

    def __init__(self, retry_after: int, message: str | None = None) -> None:
        self.retry_after = retry_after
        super().__init__(message)
