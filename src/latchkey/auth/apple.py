"""Sign in with Apple identity token verification.

Learn: The iOS app hands us the identity token Apple issued to it. That
token is an RS256 JWT signed with one of Apple's rotating keys, published
as a JWKS. PyJWKClient fetches and caches the key set and picks the key
matching the token's "kid" header. We then check issuer and audience (our
bundle / services id) like any other JWT.
"""

import asyncio
from dataclasses import dataclass
from typing import Optional

import jwt
import structlog
from jwt import PyJWKClient

from latchkey.config import settings

logger = structlog.get_logger()


@dataclass(frozen=True)
class AppleClaims:
    subject: str
    email: Optional[str]


class AppleIdentityVerifier:
    """Checks Apple identity tokens against Apple's published keys."""

    def __init__(self, client_id: str, jwks_url: str, issuer: str):
        self.client_id = client_id
        self.issuer = issuer
        self._jwks = PyJWKClient(jwks_url)

    @classmethod
    def from_settings(cls) -> "AppleIdentityVerifier":
        return cls(
            client_id=settings.apple_client_id,
            jwks_url=settings.apple_jwks_url,
            issuer=settings.apple_issuer,
        )

    def _decode(self, identity_token: str) -> dict:
        key = self._jwks.get_signing_key_from_jwt(identity_token).key
        return jwt.decode(
            identity_token,
            key=key,
            algorithms=["RS256"],
            audience=self.client_id,
            issuer=self.issuer,
        )

    async def verify(self, identity_token: str) -> Optional[AppleClaims]:
        """Claims of a valid token, or None if Apple didn't sign it for us."""
        try:
            # Key fetch is blocking network I/O
            claims = await asyncio.to_thread(self._decode, identity_token)
        except jwt.PyJWTError as e:
            logger.warning("apple.token_rejected", error=str(e))
            return None

        subject = claims.get("sub")
        if not subject:
            return None
        email = claims.get("email")
        return AppleClaims(subject=subject, email=email.lower() if email else None)
