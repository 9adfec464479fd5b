"""
tests/test_rate_limit.py -- AttemptLimiter unit tests and login/register throttling.

Covers:
  - Limit reached after max failures; retry_after counts down to window end
  - Failures age out of the sliding window
  - purge() drops idle keys, reset() clears one key
  - Keying by email (case-insensitive) with IP fallback
  - 6th failed login in the window is 429 with Retry-After
  - Successful logins are not counted
"""

from __future__ import annotations

import pytest
from conftest import FakeClock, STRONG_PASSWORD, register_user
from starlette.requests import Request

from api.limiter import AttemptLimiter, attempt_key, get_client_ip
from auth.errors import RateLimitExceededError


def _request(headers: dict[str, str] | None = None, client: tuple[str, int] | None = ("10.0.0.9", 5000)) -> Request:
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": client,
    }
    return Request(scope)


# ---------------------------------------------------------------------------
# AttemptLimiter
# ---------------------------------------------------------------------------


def test_limiter_blocks_after_max_failures():
    clock = FakeClock()
    limiter = AttemptLimiter(max_attempts=3, window_seconds=60, clock=clock)
    for _ in range(3):
        limiter.check("email:a")
        limiter.record_failure("email:a")

    with pytest.raises(RateLimitExceededError) as excinfo:
        limiter.check("email:a")
    assert excinfo.value.retry_after == 60
    assert excinfo.value.status_code == 429

    clock.advance(45)
    with pytest.raises(RateLimitExceededError) as excinfo:
        limiter.check("email:a")
    assert excinfo.value.retry_after == 15


def test_limiter_window_slides():
    clock = FakeClock()
    limiter = AttemptLimiter(max_attempts=2, window_seconds=60, clock=clock)
    limiter.record_failure("k")
    clock.advance(30)
    limiter.record_failure("k")
    assert limiter.remaining("k") == 0

    clock.advance(30)  # first failure is exactly one window old
    assert limiter.remaining("k") == 1
    limiter.check("k")


def test_limiter_keys_are_independent():
    limiter = AttemptLimiter(max_attempts=1, window_seconds=60, clock=FakeClock())
    limiter.record_failure("email:a")
    with pytest.raises(RateLimitExceededError):
        limiter.check("email:a")
    limiter.check("email:b")


def test_limiter_purge_and_reset():
    clock = FakeClock()
    limiter = AttemptLimiter(max_attempts=2, window_seconds=10, clock=clock)
    limiter.record_failure("old")
    clock.advance(11)
    limiter.record_failure("fresh")

    assert limiter.purge() == 1
    assert limiter.remaining("fresh") == 1

    limiter.reset("fresh")
    assert limiter.remaining("fresh") == 2


def test_limiter_rejects_bad_configuration():
    with pytest.raises(ValueError):
        AttemptLimiter(max_attempts=0)
    with pytest.raises(ValueError):
        AttemptLimiter(window_seconds=0)


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------


def test_attempt_key_prefers_email():
    request = _request()
    assert attempt_key(request, " Alice@Example.com ") == "email:alice@example.com"
    assert attempt_key(request, None) == "ip:10.0.0.9"


def test_client_ip_resolution_order():
    assert get_client_ip(_request({"X-Forwarded-For": "1.1.1.1, 2.2.2.2"})) == "1.1.1.1"
    assert get_client_ip(_request({"X-Real-IP": "3.3.3.3"})) == "3.3.3.3"
    assert get_client_ip(_request()) == "10.0.0.9"
    assert get_client_ip(_request(client=None)) == "unknown"


# ---------------------------------------------------------------------------
# HTTP throttling
# ---------------------------------------------------------------------------


def _bad_login(client, email="alice@example.com"):
    return client.post(
        "/api/v1/auth/login",
        json={"email": email, "password": "Wr0ng!pass", "deviceId": "d1"},
    )


def test_sixth_failed_login_is_rate_limited(client, limiter_clock):
    register_user(client)
    for _ in range(5):
        assert _bad_login(client).status_code == 401

    resp = _bad_login(client)
    assert resp.status_code == 429
    assert resp.json()["error"]["code"] == "RATE_LIMIT_EXCEEDED"
    assert int(resp.headers["retry-after"]) == 900

    # The correct password is refused too while the key is blocked.
    ok = client.post(
        "/api/v1/auth/login",
        json={"email": "alice@example.com", "password": STRONG_PASSWORD, "deviceId": "d1"},
    )
    assert ok.status_code == 429

    limiter_clock.advance(901)
    assert _bad_login(client).status_code == 401


def test_successful_logins_are_not_counted(client):
    register_user(client)
    for _ in range(10):
        resp = client.post(
            "/api/v1/auth/login",
            json={"email": "alice@example.com", "password": STRONG_PASSWORD, "deviceId": "d1"},
        )
        assert resp.status_code == 200


def test_limit_is_per_email(client):
    register_user(client)
    for _ in range(5):
        _bad_login(client)
    assert _bad_login(client).status_code == 429
    assert _bad_login(client, email="other@example.com").status_code == 401


def test_validation_failures_are_not_counted(client):
    for _ in range(10):
        resp = client.post("/api/v1/auth/login", json={"email": "alice@example.com"})
        assert resp.status_code == 400
    assert _bad_login(client).status_code == 401
