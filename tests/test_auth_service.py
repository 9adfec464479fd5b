"""
tests/test_auth_service.py -- AuthService and store tests with a fake clock.

Covers:
  - Email normalisation and duplicate detection
  - Refresh token expiry, rotation race, revoked-token reuse
  - Access token expiry against the service clock
  - revoke_all_tokens counts only live tokens
  - Password change and deletion are atomic with token revocation
  - Stored refresh tokens are digests, never raw values
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from auth.errors import (
    AuthenticationError,
    ConflictError,
    InvalidCredentialsError,
    InvalidCurrentPasswordError,
    InvalidTokenError,
)
from auth.models import RefreshToken
from auth.service import mask_email, normalize_email
from auth.tokens import (
    create_access_token,
    decode_access_token,
    hash_password,
    hash_refresh_token,
    verify_password,
)

PASSWORD = "Passw0rd!"


def _register(service, email="alice@example.com", device_id="d1"):
    return service.register(email, PASSWORD, device_id=device_id)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def test_normalize_and_mask_email():
    assert normalize_email("  Alice@Example.COM ") == "alice@example.com"
    assert mask_email("alice@example.com") == "ali***@example.com"
    assert mask_email("x") == "x***"


def test_password_hash_round_trip():
    hashed = hash_password(PASSWORD)
    assert hashed != PASSWORD
    assert verify_password(PASSWORD, hashed)
    assert not verify_password("other", hashed)
    assert not verify_password(PASSWORD, "not-a-bcrypt-hash")


# ---------------------------------------------------------------------------
# Registration / login
# ---------------------------------------------------------------------------


def test_register_normalises_email_and_rejects_duplicates(service):
    result = service.register("  Alice@Example.com", PASSWORD, device_id="d1")
    assert result.user.email == "alice@example.com"
    assert result.user.id

    with pytest.raises(ConflictError):
        service.register("alice@example.com", PASSWORD, device_id="d2")


def test_register_persists_digest_not_raw_token(service, auth_db):
    result = _register(service)
    (stored,) = auth_db.tokens.list_for_user(result.user.id)
    assert stored.token_hash == hash_refresh_token(result.tokens.refresh_token)
    assert stored.token_hash != result.tokens.refresh_token
    assert stored.device_id == "d1"


def test_login_unknown_and_wrong_password_raise_same_error(service):
    _register(service)
    with pytest.raises(InvalidCredentialsError) as unknown:
        service.login("ghost@example.com", PASSWORD, device_id="d1")
    with pytest.raises(InvalidCredentialsError) as wrong:
        service.login("alice@example.com", "Nope!1234", device_id="d1")
    assert unknown.value.message == wrong.value.message


def test_login_stamps_last_login(service, date_clock):
    _register(service)
    date_clock.advance(hours=1)
    result = service.login("alice@example.com", PASSWORD, device_id="d2")
    assert result.user.last_login_at == date_clock.now


# ---------------------------------------------------------------------------
# Refresh tokens
# ---------------------------------------------------------------------------


def test_refresh_token_expires(service, date_clock):
    result = _register(service)
    date_clock.advance(days=7)
    with pytest.raises(InvalidTokenError):
        service.refresh_tokens(result.tokens.refresh_token)


def test_refresh_token_valid_just_before_expiry(service, date_clock):
    result = _register(service)
    date_clock.advance(days=7, seconds=-1)
    pair = service.refresh_tokens(result.tokens.refresh_token)
    assert pair.refresh_token != result.tokens.refresh_token


def test_rotate_loses_race_returns_none(service, auth_db, date_clock):
    result = _register(service)
    token_hash = hash_refresh_token(result.tokens.refresh_token)
    now = date_clock()

    def replacement(raw):
        return RefreshToken(
            token_hash=hash_refresh_token(raw),
            user_id=result.user.id,
            device_id="d1",
            expires_at=now + timedelta(days=7),
        )

    assert auth_db.tokens.rotate(token_hash, replacement("first"), now) is not None
    assert auth_db.tokens.rotate(token_hash, replacement("second"), now) is None
    assert auth_db.tokens.get_by_hash(hash_refresh_token("second")) is None


def test_refresh_token_is_live():
    now = datetime.now(timezone.utc)
    token = RefreshToken(token_hash="h", user_id="u", device_id="d", expires_at=now + timedelta(seconds=1))
    assert token.is_live(now)
    assert not token.is_live(now + timedelta(seconds=1))
    token.revoked_at = now
    assert not token.is_live(now)


def test_revoke_all_counts_live_tokens_only(service, date_clock):
    result = _register(service, device_id="d1")
    service.login("alice@example.com", PASSWORD, device_id="d2")
    service.logout(result.tokens.refresh_token)

    assert service.revoke_all_tokens(result.user.id) == 1
    assert service.revoke_all_tokens(result.user.id) == 0


def test_logout_with_empty_token_is_noop(service):
    service.logout("")


# ---------------------------------------------------------------------------
# Access tokens
# ---------------------------------------------------------------------------


def test_access_token_expires_on_service_clock(service, date_clock):
    result = _register(service)
    principal = service.authenticate(result.tokens.access_token)
    assert principal.user.id == result.user.id
    assert principal.device_id == "d1"

    date_clock.advance(seconds=900)
    with pytest.raises(AuthenticationError):
        service.authenticate(result.tokens.access_token)


def test_access_token_requires_live_device_session(service):
    result = _register(service)
    service.logout(result.tokens.refresh_token)
    with pytest.raises(AuthenticationError):
        service.authenticate(result.tokens.access_token)


def test_decode_rejects_tampered_token(date_clock):
    token, token_id = create_access_token("user-1", "d1", "USER", date_clock())
    payload = decode_access_token(token, date_clock())
    assert payload["sub"] == "user-1"
    assert payload["jti"] == token_id
    assert decode_access_token(token.rsplit(".", 1)[0] + ".forged", date_clock()) is None


# ---------------------------------------------------------------------------
# Account changes
# ---------------------------------------------------------------------------


def test_change_password_revokes_and_rehashes(service, auth_db):
    result = _register(service)
    service.change_password(result.user.id, PASSWORD, "N3w!Password")

    user = auth_db.users.get_by_id(result.user.id)
    assert verify_password("N3w!Password", user.hashed_password)
    assert user.password_changed_at is not None
    assert all(t.revoked_at is not None for t in auth_db.tokens.list_for_user(user.id))


def test_change_password_wrong_current(service):
    result = _register(service)
    with pytest.raises(InvalidCurrentPasswordError):
        service.change_password(result.user.id, "Wr0ng!pass", "N3w!Password")


def test_delete_account_twice_is_unauthorised(service, auth_db):
    result = _register(service)
    service.delete_account(result.user.id)
    assert auth_db.users.get_by_id(result.user.id).is_deleted
    with pytest.raises(AuthenticationError):
        service.delete_account(result.user.id)
    with pytest.raises(InvalidCredentialsError):
        service.login("alice@example.com", PASSWORD, device_id="d1")
