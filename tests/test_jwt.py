"""Tests for session and verification tokens."""

from datetime import datetime, timedelta, timezone

import jwt
import pytest

from latchkey.auth.jwt import (
    TokenError,
    TokenExpiredError,
    create_session_token,
    create_verification_token,
    verify_token,
)
from latchkey.config import settings

NOW = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)


def test_session_token_round_trip():
    token = create_session_token(user_id=1, email="a@example.com", external_id="ext", now=NOW)
    payload = verify_token(token)
    assert payload == {
        "id_user": 1,
        "email": "a@example.com",
        "external_id": "ext",
        "iat": int(NOW.timestamp()),
    }


def test_verification_token_expiry_against_clock():
    token = create_verification_token("a@example.com", now=NOW)

    payload = verify_token(token, now=NOW + timedelta(minutes=14))
    assert payload["verified"] is True
    assert payload["exp"] - payload["iat"] == 15 * 60

    with pytest.raises(TokenExpiredError):
        verify_token(token, now=NOW + timedelta(minutes=15))


def test_expired_token_against_wall_clock():
    token = create_verification_token(
        "a@example.com", now=datetime.now(timezone.utc) - timedelta(hours=1)
    )
    with pytest.raises(TokenExpiredError):
        verify_token(token)


def test_wrong_secret_rejected():
    token = jwt.encode({"id_user": 1}, "some-other-secret", algorithm="HS256")
    with pytest.raises(TokenError):
        verify_token(token)


def test_unsigned_token_rejected():
    token = jwt.encode({"id_user": 1}, None, algorithm="none")
    with pytest.raises(TokenError):
        verify_token(token)


def test_token_uses_configured_secret():
    token = create_session_token(user_id=1, email="a@example.com", external_id="ext", now=NOW)
    decoded = jwt.decode(token, settings.jwt_secret, algorithms=["HS256"])
    assert decoded["id_user"] == 1
