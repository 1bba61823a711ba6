"""WebAuthn relying party — thin wrapper around py_webauthn.

Learn: We never do elliptic-curve or COSE math ourselves. This class holds
the relying-party identity (rp_id, name, origin) and turns the library's
option builders and verifiers into the few calls the ceremony engine needs.
Every library rejection is re-raised as CeremonyVerificationFailed.

The ceremony engine takes a RelyingParty in its constructor, so tests swap
in a subclass with canned verification results instead of real
authenticator output.
"""

import binascii
from dataclasses import dataclass
from typing import Optional

from webauthn import (
    generate_authentication_options,
    generate_registration_options,
    verify_authentication_response,
    verify_registration_response,
)
from webauthn.helpers.exceptions import WebAuthnException
from webauthn.helpers.structs import (
    AttestationConveyancePreference,
    AuthenticatorAttachment,
    AuthenticatorSelectionCriteria,
    AuthenticatorTransport,
    CredentialDeviceType,
    PublicKeyCredentialCreationOptions,
    PublicKeyCredentialDescriptor,
    PublicKeyCredentialRequestOptions,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from latchkey.config import settings
from latchkey.errors import CeremonyVerificationFailed

# Parser errors (backup flags, COSE keys) surface as their own
# WebAuthnException subclasses, not only InvalidRegistrationResponse.
_VERIFY_ERRORS = (
    WebAuthnException,
    binascii.Error,
    KeyError,
    ValueError,
)

_DEVICE_TYPES = {
    CredentialDeviceType.SINGLE_DEVICE: "singleDevice",
    CredentialDeviceType.MULTI_DEVICE: "multiDevice",
}


@dataclass
class VerifiedCredential:
    """What a successful registration ceremony gives us to store."""

    credential_id: bytes
    public_key: bytes
    sign_count: int
    device_type: str  # singleDevice, multiDevice
    backed_up: bool


def descriptor(credential_id: bytes, transports: Optional[list[str]] = None):
    """Build a credential descriptor, skipping transports the library doesn't know."""
    known = []
    for t in transports or []:
        try:
            known.append(AuthenticatorTransport(t))
        except ValueError:
            continue
    return PublicKeyCredentialDescriptor(id=credential_id, transports=known or None)


class RelyingParty:
    """Relying-party configuration plus the four ceremony primitives."""

    def __init__(self, rp_id: str, rp_name: str, origin: str, timeout_ms: int = 60000):
        self.rp_id = rp_id
        self.rp_name = rp_name
        self.origin = origin
        self.timeout_ms = timeout_ms

    @classmethod
    def from_settings(cls) -> "RelyingParty":
        return cls(
            rp_id=settings.webauthn_rp_id,
            rp_name=settings.webauthn_rp_name,
            origin=settings.expected_origin,
            timeout_ms=settings.webauthn_timeout_ms,
        )

    # ─── Options ──────────────────────────────────────────

    def registration_options(
        self,
        *,
        user_handle: bytes,
        user_name: str,
        exclude: list[PublicKeyCredentialDescriptor],
    ) -> PublicKeyCredentialCreationOptions:
        """Platform authenticator, resident key and user verification required."""
        return generate_registration_options(
            rp_id=self.rp_id,
            rp_name=self.rp_name,
            user_id=user_handle,
            user_name=user_name,
            user_display_name=user_name,
            timeout=self.timeout_ms,
            attestation=AttestationConveyancePreference.NONE,
            authenticator_selection=AuthenticatorSelectionCriteria(
                authenticator_attachment=AuthenticatorAttachment.PLATFORM,
                resident_key=ResidentKeyRequirement.REQUIRED,
                user_verification=UserVerificationRequirement.REQUIRED,
            ),
            exclude_credentials=exclude,
        )

    def authentication_options(
        self, *, allow: Optional[list[PublicKeyCredentialDescriptor]] = None
    ) -> PublicKeyCredentialRequestOptions:
        return generate_authentication_options(
            rp_id=self.rp_id,
            timeout=self.timeout_ms,
            allow_credentials=allow,
            user_verification=UserVerificationRequirement.REQUIRED,
        )

    # ─── Verification ─────────────────────────────────────

    def verify_registration(
        self, *, credential: dict, expected_challenge: bytes
    ) -> VerifiedCredential:
        try:
            verified = verify_registration_response(
                credential=credential,
                expected_challenge=expected_challenge,
                expected_rp_id=self.rp_id,
                expected_origin=self.origin,
                require_user_verification=True,
            )
        except _VERIFY_ERRORS as e:
            raise CeremonyVerificationFailed(
                f"Registration verification failed: {e}"
            ) from e

        return VerifiedCredential(
            credential_id=verified.credential_id,
            public_key=verified.credential_public_key,
            sign_count=verified.sign_count,
            device_type=_DEVICE_TYPES.get(verified.credential_device_type, "singleDevice"),
            backed_up=bool(verified.credential_backed_up),
        )

    def verify_authentication(
        self,
        *,
        credential: dict,
        expected_challenge: bytes,
        public_key: bytes,
        current_counter: int,
    ) -> int:
        """Verify an assertion. Returns the authenticator's new sign count."""
        try:
            verified = verify_authentication_response(
                credential=credential,
                expected_challenge=expected_challenge,
                expected_rp_id=self.rp_id,
                expected_origin=self.origin,
                credential_public_key=public_key,
                credential_current_sign_count=current_counter,
                require_user_verification=True,
            )
        except _VERIFY_ERRORS as e:
            raise CeremonyVerificationFailed(
                f"Authentication verification failed: {e}", status_code=401
            ) from e
        return verified.new_sign_count
