"""
API request and response models for PlantCare REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

JSON field names are camelCase (the frontend's convention). Request models
also accept snake_case names via populate_by_name. Response models serialize
by alias because FastAPI's response_model does so by default.

Everything a request model rejects fails before the auth service runs, so the
service can assume: emails are syntactically valid, device ids are non-empty
and bounded, and new passwords meet the complexity rule and fit bcrypt's
72-byte input limit.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel

from auth.models import TokenPair, User

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

PASSWORD_MIN_LENGTH = 8
# bcrypt ignores (bcrypt>=4.1: rejects) input beyond 72 bytes.
PASSWORD_MAX_BYTES = 72


def _check_password_strength(value: str) -> str:
    """Collect every missing character class into one message so clients can fix them all at once."""
    missing: list[str] = []
    if not any(c.isupper() for c in value):
        missing.append("an uppercase letter")
    if not any(c.islower() for c in value):
        missing.append("a lowercase letter")
    if not any(c.isdigit() for c in value):
        missing.append("a number")
    if all(c.isalnum() for c in value):
        missing.append("a special character")
    if missing:
        raise ValueError(f"Password must contain {', '.join(missing)}")
    if len(value.encode("utf-8")) > PASSWORD_MAX_BYTES:
        raise ValueError(f"Password must be at most {PASSWORD_MAX_BYTES} bytes")
    return value


StrongPassword = Annotated[
    str,
    Field(min_length=PASSWORD_MIN_LENGTH),
    AfterValidator(_check_password_strength),
]
DeviceId = Annotated[str, Field(min_length=1, max_length=128)]
PersonName = Annotated[str, Field(min_length=1, max_length=50)]


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(_CamelModel):
    """Request body for POST /api/v1/auth/register."""

    email: EmailStr
    password: StrongPassword
    device_id: DeviceId
    first_name: Optional[PersonName] = None
    last_name: Optional[PersonName] = None


class LoginRequest(_CamelModel):
    """Request body for POST /api/v1/auth/login.

    No complexity rule on the password here: accounts created under an older
    rule must still be able to log in.
    """

    email: EmailStr
    password: str = Field(min_length=1, max_length=1024)
    device_id: DeviceId


class RefreshRequest(_CamelModel):
    """Request body for POST /api/v1/auth/refresh and POST /api/v1/auth/logout."""

    refresh_token: str = Field(min_length=1, max_length=512)


class ChangePasswordRequest(_CamelModel):
    current_password: str = Field(min_length=1, max_length=1024)
    new_password: StrongPassword


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserOut(_CamelModel):
    """Public view of a user. The password hash never appears here."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: str
    is_email_verified: bool
    created_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: User) -> "UserOut":
        return cls(
            id=user.id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            role=user.role.value,
            is_email_verified=user.is_email_verified,
            created_at=user.created_at,
            last_login_at=user.last_login_at,
        )


class TokensOut(_CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int  # access-token lifetime, seconds

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "TokensOut":
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
            expires_in=pair.expires_in,
        )


class AuthResponse(BaseModel):
    """Response body for register and login."""

    message: str
    user: UserOut
    tokens: TokensOut


class TokensResponse(BaseModel):
    message: str
    tokens: TokensOut


class MeResponse(BaseModel):
    user: UserOut


class MessageResponse(BaseModel):
    message: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload.

    details is present only for validation errors: one {field, message}
    entry per offending field.
    """

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    details: Optional[list[dict[str, str]]] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
