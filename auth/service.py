"""
auth/service.py -- Session lifecycle orchestration.

AuthService ties the credential store, the token store, and the token
utilities together. Every public method is one auth operation; failures are
raised as the typed errors in auth/errors.py and never as None returns.

Security invariants enforced here:
  - Unknown email, soft-deleted account, and wrong password all raise the
    same InvalidCredentialsError, and all three paths run bcrypt once.
  - A refresh token is single use. Rotation revokes the presented token and
    inserts its successor in one transaction; a replayed token fails.
  - Password change and account deletion revoke every refresh token the user
    holds, in the same transaction as the credential update.
  - Access tokens only authenticate while their device still holds a live
    refresh token, so revocation takes effect immediately.
  - Logs carry user ids and device ids. Passwords and token values are never
    logged; emails are masked.

The clock is injected so expiry behaviour is testable without sleeping.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import (
    AuthenticationError,
    ConflictError,
    InvalidCredentialsError,
    InvalidCurrentPasswordError,
    InvalidTokenError,
)
from auth.models import AuthResult, Principal, RefreshToken, TokenPair, User
from auth.store import AuthDatabase
from auth.tokens import (
    burn_password_check,
    create_access_token,
    decode_access_token,
    generate_refresh_token,
    hash_password,
    hash_refresh_token,
    refresh_token_expiry,
    verify_password,
)
from core.config import get_settings

logger = logging.getLogger("plantcare.auth.service")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(email: str) -> str:
    return email.strip().lower()


def mask_email(email: str) -> str:
    local, _, domain = email.partition("@")
    return f"{local[:3]}***@{domain}" if domain else f"{local[:3]}***"


class AuthService:
    """Registration, login, refresh rotation, logout, and revocation.

    Usage:
        service = AuthService(AuthDatabase(url))
        result = service.register("alice@example.com", "Passw0rd!", device_id="d1")
        pair = service.refresh_tokens(result.tokens.refresh_token)
    """

    def __init__(self, db: AuthDatabase, clock: Callable[[], datetime] = utcnow) -> None:
        self.db = db
        self._clock = clock
        self._access_ttl = get_settings().access_token_expire_seconds

    # ------------------------------------------------------------------
    # Registration / login
    # ------------------------------------------------------------------

    def register(
        self,
        email: str,
        password: str,
        device_id: str,
        first_name: str | None = None,
        last_name: str | None = None,
    ) -> AuthResult:
        email = normalize_email(email)
        if self.db.users.get_by_email(email) is not None:
            logger.info("Registration rejected: email %s already registered", mask_email(email))
            raise ConflictError()

        now = self._clock()
        candidate = User(
            email=email,
            hashed_password=hash_password(password),
            first_name=first_name,
            last_name=last_name,
            last_login_at=now,
        )
        try:
            with self.db.transaction() as conn:
                user = self.db.users.create_user(candidate, now, conn=conn)
                refresh_token = self._store_refresh_token(user.id, device_id, now, conn=conn)
        except IntegrityError as exc:
            # Lost the race against a concurrent registration for the same email.
            logger.info("Registration rejected: email %s taken concurrently", mask_email(email))
            raise ConflictError() from exc

        logger.info("User registered: user_id=%s device_id=%s", user.id, device_id)
        return AuthResult(user=user, tokens=self._pair(user, device_id, refresh_token, now))

    def login(self, email: str, password: str, device_id: str) -> AuthResult:
        email = normalize_email(email)
        user = self.db.users.get_by_email(email)
        if user is None:
            burn_password_check(password)
            logger.info("Login failed for %s", mask_email(email))
            raise InvalidCredentialsError()
        if not verify_password(password, user.hashed_password):
            logger.info("Login failed for user_id=%s", user.id)
            raise InvalidCredentialsError()

        now = self._clock()
        with self.db.transaction() as conn:
            self.db.users.update_last_login(user.id, now, conn=conn)
            refresh_token = self._store_refresh_token(user.id, device_id, now, conn=conn)

        user = dataclasses.replace(user, last_login_at=now, updated_at=now)
        logger.info("User logged in: user_id=%s device_id=%s", user.id, device_id)
        return AuthResult(user=user, tokens=self._pair(user, device_id, refresh_token, now))

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def refresh_tokens(self, refresh_token: str) -> TokenPair:
        """Rotate a refresh token. Returns a new TokenPair; the presented token is dead afterwards."""
        now = self._clock()
        token_hash = hash_refresh_token(refresh_token)
        stored = self.db.tokens.get_by_hash(token_hash)
        if stored is None or not stored.is_live(now):
            logger.warning("Token refresh failed: unknown, revoked, or expired token")
            raise InvalidTokenError()

        user = self.db.users.get_by_id(stored.user_id)
        if user is None or user.is_deleted:
            logger.warning("Token refresh failed: owner user_id=%s is gone", stored.user_id)
            raise InvalidTokenError()

        new_raw = generate_refresh_token()
        replacement = RefreshToken(
            token_hash=hash_refresh_token(new_raw),
            user_id=user.id,
            device_id=stored.device_id,
            expires_at=refresh_token_expiry(now),
        )
        if self.db.tokens.rotate(token_hash, replacement, now) is None:
            logger.warning("Token refresh failed: token for user_id=%s already rotated", user.id)
            raise InvalidTokenError()

        logger.info("Tokens refreshed: user_id=%s device_id=%s", user.id, stored.device_id)
        return self._pair(user, stored.device_id, new_raw, now)

    def logout(self, refresh_token: str) -> None:
        """Revoke one refresh token. Always succeeds from the caller's point of view."""
        if not refresh_token:
            return
        try:
            revoked = self.db.tokens.revoke(hash_refresh_token(refresh_token), self._clock())
        except SQLAlchemyError:
            logger.warning("Logout could not revoke token", exc_info=True)
            return
        logger.info("Logout processed (token revoked=%s)", revoked)

    def revoke_all_tokens(self, user_id: str) -> int:
        revoked = self.db.tokens.revoke_all_for_user(user_id, self._clock())
        logger.info("All tokens revoked: user_id=%s count=%d", user_id, revoked)
        return revoked

    # ------------------------------------------------------------------
    # Account changes
    # ------------------------------------------------------------------

    def change_password(self, user_id: str, current_password: str, new_password: str) -> None:
        user = self.db.users.get_by_id(user_id)
        if user is None or user.is_deleted:
            raise AuthenticationError()
        if not verify_password(current_password, user.hashed_password):
            logger.info("Password change rejected: wrong current password for user_id=%s", user_id)
            raise InvalidCurrentPasswordError()

        new_hash = hash_password(new_password)
        now = self._clock()
        with self.db.transaction() as conn:
            self.db.users.set_password(user_id, new_hash, now, conn=conn)
            revoked = self.db.tokens.revoke_all_for_user(user_id, now, conn=conn)
        logger.info("Password changed: user_id=%s sessions_revoked=%d", user_id, revoked)

    def delete_account(self, user_id: str) -> None:
        """Soft-delete the user and end every session they hold."""
        now = self._clock()
        with self.db.transaction() as conn:
            deleted = self.db.users.soft_delete(user_id, now, conn=conn)
            revoked = self.db.tokens.revoke_all_for_user(user_id, now, conn=conn)
        if not deleted:
            raise AuthenticationError()
        logger.info("Account deleted: user_id=%s sessions_revoked=%d", user_id, revoked)

    # ------------------------------------------------------------------
    # Access-token authentication
    # ------------------------------------------------------------------

    def authenticate(self, access_token: str) -> Principal:
        """Resolve a bearer access token to its Principal or raise AuthenticationError."""
        now = self._clock()
        payload = decode_access_token(access_token, now)
        if payload is None:
            raise AuthenticationError("Invalid or expired access token.")

        user = self.db.users.get_by_id(payload["sub"])
        if user is None or user.is_deleted:
            raise AuthenticationError()
        if not self.db.tokens.has_live_session(user.id, payload["device_id"], now):
            raise AuthenticationError("Session expired.")
        return Principal(user=user, device_id=payload["device_id"], token_id=payload["jti"])

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _store_refresh_token(self, user_id: str, device_id: str, now: datetime, conn=None) -> str:
        """Persist a new refresh token for (user, device) and return its raw value."""
        raw = generate_refresh_token()
        self.db.tokens.create(
            RefreshToken(
                token_hash=hash_refresh_token(raw),
                user_id=user_id,
                device_id=device_id,
                expires_at=refresh_token_expiry(now),
            ),
            now,
            conn=conn,
        )
        return raw

    def _pair(self, user: User, device_id: str, refresh_token: str, now: datetime) -> TokenPair:
        access_token, _ = create_access_token(user.id, device_id, user.role.value, now)
        return TokenPair(access_token=access_token, refresh_token=refresh_token, expires_in=self._access_ttl)
