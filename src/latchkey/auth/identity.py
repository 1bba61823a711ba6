"""External identities — what an AuthMethod row points at.

Learn: Storage keeps a flat (auth_type, external_id) pair. In code we pass
one of two small value types instead, so a passkey identity can't be built
from an Apple subject by accident and the base64url encoding of credential
ids happens in exactly one place.
"""

from dataclasses import dataclass
from typing import ClassVar, Union

from webauthn.helpers import base64url_to_bytes, bytes_to_base64url

from latchkey.db.models import AuthType


@dataclass(frozen=True)
class AppleIdentity:
    """A Sign in with Apple subject ("sub" claim)."""

    subject: str

    auth_type: ClassVar[AuthType] = AuthType.APPLE

    @property
    def external_id(self) -> str:
        return self.subject


@dataclass(frozen=True)
class PasskeyIdentity:
    """A WebAuthn credential handle."""

    credential_id: bytes

    auth_type: ClassVar[AuthType] = AuthType.PASSKEY

    @classmethod
    def from_base64url(cls, value: str) -> "PasskeyIdentity":
        return cls(credential_id=base64url_to_bytes(value))

    @property
    def external_id(self) -> str:
        return bytes_to_base64url(self.credential_id)


ExternalIdentity = Union[AppleIdentity, PasskeyIdentity]


def normalize_email(email: str) -> str:
    """Emails are compared and stored trimmed and lower-cased."""
    return email.strip().lower()
