"""
auth/tokens.py -- Password hashing, JWT access tokens, and refresh-token utilities.

Security design decisions:
  Passwords: bcrypt directly (no passlib wrapper). The cost factor comes from
       Settings.bcrypt_rounds. The _DUMMY_HASH constant enables timing
       equalization in the service's login path so response time does not
       reveal whether an email is registered.

  Access tokens: python-jose with HS256. Claims carry the user id (sub),
       device id, token id (jti), role, type="access", and a version number.
       Issuer and audience are pinned. Expiry is checked against the caller's
       clock rather than the wall clock so the service stays deterministic
       under an injected clock. Verification returns None on any failure --
       the service turns that into AuthenticationError.

  Refresh tokens: opaque secrets.token_urlsafe(48) values (384 bits). We store
       HMAC-SHA256(SECRET_KEY, raw_token) so a leaked database does not leak
       usable sessions, and lookup stays O(1) via a unique index. bcrypt's
       slowness is unnecessary for high-entropy random values.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import uuid
from datetime import datetime, timedelta

import bcrypt
from jose import JWTError, jwt

from core.config import get_settings

logger = logging.getLogger("plantcare.auth")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"
_ACCESS_TYPE = "access"

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt rejects inputs longer than 72 bytes. The API layer caps new
    passwords at 72 UTF-8 bytes so this never raises for validated input.
    """
    salt = bcrypt.gensalt(rounds=_settings.bcrypt_rounds)
    return bcrypt.hashpw(plain.encode("utf-8"), salt).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    Over-long input or a malformed hash counts as a mismatch.
    """
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("plantcare_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Run one bcrypt comparison against a dummy hash and discard the result.

    Called on login paths where no real hash exists, so an unknown email
    costs the same as a wrong password.
    """
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# JWT access tokens
# ---------------------------------------------------------------------------


def create_access_token(user_id: str, device_id: str, role: str, now: datetime) -> tuple[str, str]:
    """Encode a signed access token. Returns (token, token_id).

    Args:
        user_id:   User primary key, stored as the subject claim.
        device_id: Device the session belongs to. Authentication later checks
                   that this device still holds a live refresh token.
        role:      "USER" or "ADMIN".
        now:       Issue time from the service clock.
    """
    token_id = uuid.uuid4().hex
    expire = now + timedelta(seconds=_settings.access_token_expire_seconds)
    payload = {
        "sub": user_id,
        "device_id": device_id,
        "jti": token_id,
        "role": role,
        "type": _ACCESS_TYPE,
        "ver": _settings.token_version,
        "iss": _settings.jwt_issuer,
        "aud": _settings.jwt_audience,
        "iat": int(now.timestamp()),
        "exp": int(expire.timestamp()),
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM), token_id


def decode_access_token(token: str, now: datetime) -> dict | None:
    """Decode and verify an access token. Returns the payload dict or None on any failure.

    Signature, issuer, and audience are verified by jose. Expiry is verified
    here against `now` (jose's own exp check uses the wall clock).
    """
    try:
        payload = jwt.decode(
            token,
            _settings.secret_key,
            algorithms=[_ALGORITHM],
            audience=_settings.jwt_audience,
            issuer=_settings.jwt_issuer,
            options={"verify_exp": False},
        )
    except JWTError:
        return None

    if payload.get("type") != _ACCESS_TYPE:
        return None
    if payload.get("ver") != _settings.token_version:
        return None
    if not all(payload.get(claim) for claim in ("sub", "device_id", "jti")):
        return None
    exp = payload.get("exp")
    if not isinstance(exp, (int, float)) or exp <= now.timestamp():
        return None
    return payload


# ---------------------------------------------------------------------------
# Refresh tokens
# ---------------------------------------------------------------------------


def generate_refresh_token() -> str:
    """Return a new opaque refresh token value (URL-safe, 384 bits of entropy)."""
    return secrets.token_urlsafe(48)


def hash_refresh_token(raw_token: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw_token) as a hex string.

    Deterministic, so the store can look tokens up by digest.
    """
    return hmac.new(
        _settings.secret_key.encode(),
        raw_token.encode(),
        hashlib.sha256,
    ).hexdigest()


def refresh_token_expiry(now: datetime) -> datetime:
    return now + timedelta(days=_settings.refresh_token_expire_days)
