"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class. Dataclasses own domain shape; stores and the service do
the work. The one exception is RefreshToken.is_live(), which is the single
definition of token validity used everywhere.

Timestamps are timezone-aware UTC datetimes. The store converts them to and
from ISO 8601 text at the persistence boundary.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"


@dataclass
class User:
    """A registered account.

    hashed_password is a bcrypt hash and never leaves the auth layer; API
    response models are built from the public fields only.

    deleted_at set means the account is soft-deleted: it cannot log in, its
    tokens are revoked, and its email is free to be registered again.
    """

    email: str
    hashed_password: str
    id: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    role: Role = Role.USER
    is_email_verified: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None
    last_login_at: datetime | None = None
    password_changed_at: datetime | None = None
    deleted_at: datetime | None = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


@dataclass
class RefreshToken:
    """One device session.

    token_hash is HMAC-SHA256(SECRET_KEY, raw_token). The raw value is handed
    to the client once and never persisted. Rows are never deleted; revoked
    and expired rows stay as the audit trail.
    """

    token_hash: str
    user_id: str
    device_id: str
    expires_at: datetime
    id: str | None = None
    created_at: datetime | None = None
    revoked_at: datetime | None = None

    def is_live(self, now: datetime) -> bool:
        """A token is valid iff it has not been revoked and has not expired."""
        return self.revoked_at is None and now < self.expires_at


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "bearer"


@dataclass(frozen=True)
class AuthResult:
    user: User
    tokens: TokenPair


@dataclass(frozen=True)
class Principal:
    """The caller behind a verified access token."""

    user: User
    device_id: str
    token_id: str
