"""Collaborator providers for route handlers.

Learn: Services take their collaborators (mailer, relying party, Apple
verifier, clock) through their constructors. Routes get them from these
providers via Depends(), so tests swap any of them with
app.dependency_overrides instead of patching module globals.
"""

from datetime import datetime
from functools import lru_cache
from typing import Callable

from latchkey.auth.apple import AppleIdentityVerifier
from latchkey.auth.webauthn import RelyingParty
from latchkey.db.models import utcnow
from latchkey.services.email_service import Mailer


def get_clock() -> Callable[[], datetime]:
    return utcnow


@lru_cache
def get_mailer() -> Mailer:
    return Mailer.from_settings()


@lru_cache
def get_relying_party() -> RelyingParty:
    return RelyingParty.from_settings()


@lru_cache
def get_apple_verifier() -> AppleIdentityVerifier:
    # One instance so PyJWKClient's key cache survives between requests
    return AppleIdentityVerifier.from_settings()
