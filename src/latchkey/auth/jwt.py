"""JWT token creation and verification.

Learn: Two kinds of tokens, both HMAC-signed with the server secret:
- Session token: long-lived bearer token issued after Apple sign-in or a
  passkey ceremony. Carries {id_user, email, external_id, iat} and no
  expiry, same as the legacy Apple flow.
- Verification token: 15-minute proof that the holder read a code sent to
  an email address. The only thing that lets an anonymous client start a
  new-account passkey registration.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from latchkey.config import settings


class TokenError(Exception):
    """Raised when token verification fails."""


class TokenExpiredError(TokenError):
    """Raised when a token's exp claim is in the past."""


def create_session_token(
    *, user_id: int, email: str, external_id: str, now: Optional[datetime] = None
) -> str:
    """Create a session (bearer) token for a user."""
    issued_at = now or datetime.now(timezone.utc)
    payload = {
        "id_user": user_id,
        "email": email,
        "external_id": external_id,
        "iat": int(issued_at.timestamp()),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def create_verification_token(
    email: str,
    *,
    expires_minutes: Optional[int] = None,
    now: Optional[datetime] = None,
) -> str:
    """Create a short-lived token binding a verified email address."""
    issued_at = now or datetime.now(timezone.utc)
    expires = issued_at + timedelta(
        minutes=expires_minutes or settings.verification_token_expiry_minutes
    )
    payload = {
        "email": email,
        "verified": True,
        "iat": int(issued_at.timestamp()),
        "exp": int(expires.timestamp()),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def verify_token(token: str, *, now: Optional[datetime] = None) -> dict:
    """Verify and decode a JWT token.

    Returns the payload dict on success. When `now` is given, expiry is
    checked against it instead of the wall clock.
    Raises TokenExpiredError or TokenError on failure.
    """
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            options={"verify_exp": now is None, "verify_iat": False},
        )
    except jwt.ExpiredSignatureError:
        raise TokenExpiredError("Token has expired")
    except jwt.InvalidTokenError as e:
        raise TokenError(f"Invalid token: {e}")

    if now is not None and "exp" in payload:
        if int(payload["exp"]) <= int(now.timestamp()):
            raise TokenExpiredError("Token has expired")
    return payload
