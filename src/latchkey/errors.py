"""Typed auth failures, each carrying the HTTP status it maps to.

Learn: The routes never match on error message text. Every failure the
auth core can raise is a subclass of AuthError with a status_code, and a
single exception handler (see main.py) turns it into a JSON response.
"""

from typing import Optional


class AuthError(Exception):
    """Base class for all expected auth failures."""

    status_code: int = 400
    error_code: Optional[str] = None

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


# ─── Input validation ─────────────────────────────────


class ValidationFailed(AuthError):
    status_code = 422


# ─── Email verification ───────────────────────────────


class EmailAlreadyRegistered(AuthError):
    status_code = 409
    error_code = "EMAIL_ALREADY_REGISTERED"


class RateLimited(AuthError):
    status_code = 429
    error_code = "RATE_LIMITED"


class VerificationCodeError(AuthError):
    """Wrong, expired, missing or exhausted verification code."""

    status_code = 400


class VerificationTokenExpired(AuthError):
    status_code = 422
    error_code = "VERIFICATION_TOKEN_EXPIRED"


class VerificationTokenInvalid(AuthError):
    status_code = 422
    error_code = "VERIFICATION_TOKEN_INVALID"


# ─── Ceremonies ───────────────────────────────────────


class ChallengeNotFound(AuthError):
    """The ceremony's challenge was never issued, already used, or expired."""

    status_code = 422
    error_code = "CHALLENGE_EXPIRED"


class CredentialNotFound(AuthError):
    status_code = 404
    error_code = "CREDENTIAL_NOT_FOUND"


class CeremonyVerificationFailed(AuthError):
    """Attestation/assertion rejected by the WebAuthn verifier."""

    status_code = 400
    error_code = "VERIFICATION_FAILED"


class UserNotFound(AuthError):
    status_code = 401
    error_code = "USER_NOT_FOUND"


# ─── Credential registry ──────────────────────────────


class LastAuthMethod(AuthError):
    status_code = 403
    error_code = "LAST_AUTH_METHOD"


# ─── Sign in with Apple ───────────────────────────────


class AppleIdentityError(AuthError):
    status_code = 422
    error_code = "INVALID_APPLE_ID"


class AppleIdentityConflict(AuthError):
    status_code = 409
    error_code = "APPLE_ID_CONFLICT"
