"""RelyingParty tests — real py_webauthn verification against a software authenticator.

Learn: SoftAuthenticator builds the bytes a platform authenticator would:
authenticator data with flags and sign count, a "none" attestation object
carrying an ES256 COSE key, and ECDSA assertions over
authData || SHA-256(clientDataJSON). That lets these tests drive the real
library instead of the canned FakeRelyingParty used elsewhere.
"""

import hashlib
import json

import cbor2
import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from webauthn.helpers import base64url_to_bytes
from webauthn.helpers.structs import (
    AuthenticatorAttachment,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from latchkey.auth.webauthn import RelyingParty, descriptor
from latchkey.errors import CeremonyVerificationFailed
from latchkey.services.passkey_service import PasskeyService
from conftest import b64url

RP_ID = "localhost"
ORIGIN = "https://localhost"

UP, UV, BE, BS, AT = 0x01, 0x04, 0x08, 0x10, 0x40


class SoftAuthenticator:
    def __init__(self, credential_id: bytes = b"soft-cred-1"):
        self.credential_id = credential_id
        self.key = ec.generate_private_key(ec.SECP256R1())
        self.sign_count = 0

    def cose_key(self) -> bytes:
        numbers = self.key.public_key().public_numbers()
        return cbor2.dumps({
            1: 2,
            3: -7,
            -1: 1,
            -2: numbers.x.to_bytes(32, "big"),
            -3: numbers.y.to_bytes(32, "big"),
        })

    def auth_data(self, flags: int, attested: bytes = b"") -> bytes:
        return (
            hashlib.sha256(RP_ID.encode()).digest()
            + bytes([flags])
            + self.sign_count.to_bytes(4, "big")
            + attested
        )

    def attestation(
        self,
        challenge: bytes,
        *,
        flags: int = UP | UV | AT | BE | BS,
        origin: str = ORIGIN,
        attestation_object: str | None = None,
    ) -> dict:
        attested = (
            bytes(16)
            + len(self.credential_id).to_bytes(2, "big")
            + self.credential_id
            + self.cose_key()
        )
        att_obj = cbor2.dumps(
            {"fmt": "none", "attStmt": {}, "authData": self.auth_data(flags, attested)}
        )
        cred_id = b64url(self.credential_id)
        return {
            "id": cred_id,
            "rawId": cred_id,
            "response": {
                "attestationObject": attestation_object or b64url(att_obj),
                "clientDataJSON": b64url(_client_data("webauthn.create", challenge, origin)),
                "transports": ["internal"],
            },
            "type": "public-key",
            "clientExtensionResults": {},
        }

    def assertion(
        self,
        challenge: bytes,
        *,
        flags: int = UP | UV | BE | BS,
        origin: str = ORIGIN,
        authenticator_data: str | None = None,
    ) -> dict:
        self.sign_count += 1
        auth_data = self.auth_data(flags)
        client_data = _client_data("webauthn.get", challenge, origin)
        signature = self.key.sign(
            auth_data + hashlib.sha256(client_data).digest(), ec.ECDSA(hashes.SHA256())
        )
        cred_id = b64url(self.credential_id)
        return {
            "id": cred_id,
            "rawId": cred_id,
            "response": {
                "authenticatorData": authenticator_data or b64url(auth_data),
                "clientDataJSON": b64url(client_data),
                "signature": b64url(signature),
                "userHandle": None,
            },
            "type": "public-key",
            "clientExtensionResults": {},
        }


def _client_data(ceremony: str, challenge: bytes, origin: str) -> bytes:
    return json.dumps(
        {"type": ceremony, "challenge": b64url(challenge), "origin": origin}
    ).encode()


@pytest.fixture()
def rp():
    return RelyingParty(rp_id=RP_ID, rp_name="Latchkey", origin=ORIGIN)


@pytest.fixture()
def authenticator():
    return SoftAuthenticator()


def _registered(rp, authenticator):
    challenge = b"registration-challenge"
    return rp.verify_registration(
        credential=authenticator.attestation(challenge), expected_challenge=challenge
    )


# ─── Options ──────────────────────────────────────────

def test_registration_options_require_platform_and_user_verification(rp):
    options = rp.registration_options(
        user_handle=b"handle-1",
        user_name="a@example.com",
        exclude=[descriptor(b"old-cred", ["internal", "carrier-pigeon"])],
    )

    selection = options.authenticator_selection
    assert selection.authenticator_attachment == AuthenticatorAttachment.PLATFORM
    assert selection.resident_key == ResidentKeyRequirement.REQUIRED
    assert selection.user_verification == UserVerificationRequirement.REQUIRED
    assert options.timeout == 60000
    assert options.rp.id == RP_ID
    assert options.exclude_credentials[0].id == b"old-cred"
    # Unknown transports are dropped
    assert [t.value for t in options.exclude_credentials[0].transports] == ["internal"]


def test_authentication_options_require_user_verification(rp):
    options = rp.authentication_options()
    assert options.user_verification == UserVerificationRequirement.REQUIRED
    assert options.rp_id == RP_ID
    assert len(options.challenge) >= 16


# ─── Registration ─────────────────────────────────────

def test_verify_registration_multi_device(rp, authenticator):
    verified = _registered(rp, authenticator)

    assert verified.credential_id == b"soft-cred-1"
    assert verified.sign_count == 0
    assert verified.device_type == "multiDevice"
    assert verified.backed_up is True
    assert verified.public_key


def test_verify_registration_single_device(rp, authenticator):
    challenge = b"registration-challenge"
    verified = rp.verify_registration(
        credential=authenticator.attestation(challenge, flags=UP | UV | AT),
        expected_challenge=challenge,
    )
    assert verified.device_type == "singleDevice"
    assert verified.backed_up is False


def test_malformed_attestation_object_is_400(rp, authenticator):
    challenge = b"registration-challenge"
    credential = authenticator.attestation(
        challenge, attestation_object=b64url(b"definitely not cbor")
    )

    with pytest.raises(CeremonyVerificationFailed) as exc:
        rp.verify_registration(credential=credential, expected_challenge=challenge)
    assert exc.value.status_code == 400
    assert "attestationObject was malformed" in exc.value.message


def test_registration_challenge_mismatch(rp, authenticator):
    credential = authenticator.attestation(b"issued-challenge")

    with pytest.raises(CeremonyVerificationFailed) as exc:
        rp.verify_registration(credential=credential, expected_challenge=b"other-challenge")
    assert exc.value.status_code == 400
    assert "challenge" in exc.value.message


def test_registration_requires_user_verification(rp, authenticator):
    challenge = b"registration-challenge"
    credential = authenticator.attestation(challenge, flags=UP | AT)

    with pytest.raises(CeremonyVerificationFailed) as exc:
        rp.verify_registration(credential=credential, expected_challenge=challenge)
    assert exc.value.status_code == 400


def test_registration_wrong_origin(rp, authenticator):
    challenge = b"registration-challenge"
    credential = authenticator.attestation(challenge, origin="https://evil.example")

    with pytest.raises(CeremonyVerificationFailed):
        rp.verify_registration(credential=credential, expected_challenge=challenge)


def test_impossible_backup_flags_rejected(rp, authenticator):
    """Backed up but not backup-eligible is rejected, not a 500."""
    challenge = b"registration-challenge"
    credential = authenticator.attestation(challenge, flags=UP | UV | AT | BS)

    with pytest.raises(CeremonyVerificationFailed) as exc:
        rp.verify_registration(credential=credential, expected_challenge=challenge)
    assert exc.value.status_code == 400


# ─── Authentication ───────────────────────────────────

def test_verify_authentication_returns_new_count(rp, authenticator):
    verified = _registered(rp, authenticator)
    challenge = b"authentication-challenge"

    new_count = rp.verify_authentication(
        credential=authenticator.assertion(challenge),
        expected_challenge=challenge,
        public_key=verified.public_key,
        current_counter=0,
    )
    assert new_count == 1


def test_malformed_authenticator_data_is_401(rp, authenticator):
    verified = _registered(rp, authenticator)
    challenge = b"authentication-challenge"
    credential = authenticator.assertion(challenge, authenticator_data=b64url(b"short"))

    with pytest.raises(CeremonyVerificationFailed) as exc:
        rp.verify_authentication(
            credential=credential,
            expected_challenge=challenge,
            public_key=verified.public_key,
            current_counter=0,
        )
    assert exc.value.status_code == 401
    assert "authenticatorData was malformed" in exc.value.message


def test_authentication_challenge_mismatch(rp, authenticator):
    verified = _registered(rp, authenticator)

    with pytest.raises(CeremonyVerificationFailed) as exc:
        rp.verify_authentication(
            credential=authenticator.assertion(b"issued-challenge"),
            expected_challenge=b"other-challenge",
            public_key=verified.public_key,
            current_counter=0,
        )
    assert exc.value.status_code == 401


def test_authentication_requires_user_verification(rp, authenticator):
    verified = _registered(rp, authenticator)
    challenge = b"authentication-challenge"

    with pytest.raises(CeremonyVerificationFailed) as exc:
        rp.verify_authentication(
            credential=authenticator.assertion(challenge, flags=UP),
            expected_challenge=challenge,
            public_key=verified.public_key,
            current_counter=0,
        )
    assert exc.value.status_code == 401


def test_stale_sign_count_rejected(rp, authenticator):
    verified = _registered(rp, authenticator)
    challenge = b"authentication-challenge"

    with pytest.raises(CeremonyVerificationFailed) as exc:
        rp.verify_authentication(
            credential=authenticator.assertion(challenge),
            expected_challenge=challenge,
            public_key=verified.public_key,
            current_counter=7,
        )
    assert exc.value.status_code == 401


def test_signature_from_another_key_rejected(rp, authenticator):
    verified = _registered(rp, authenticator)
    impostor = SoftAuthenticator(credential_id=authenticator.credential_id)
    challenge = b"authentication-challenge"

    with pytest.raises(CeremonyVerificationFailed) as exc:
        rp.verify_authentication(
            credential=impostor.assertion(challenge),
            expected_challenge=challenge,
            public_key=verified.public_key,
            current_counter=0,
        )
    assert exc.value.status_code == 401


# ─── Through the ceremony engine ──────────────────────

@pytest.mark.asyncio
async def test_ceremonies_end_to_end_with_real_verifier(db_session, rp, authenticator, clock):
    svc = PasskeyService(db_session, rp, clock=clock)

    options = await svc.generate_registration_options(email="a@example.com")
    attestation = authenticator.attestation(base64url_to_bytes(options["challenge"]))
    registered = await svc.verify_registration(
        email="a@example.com",
        credential_id=attestation["id"],
        attestation_object=attestation["response"]["attestationObject"],
        client_data_json=attestation["response"]["clientDataJSON"],
        transports=attestation["response"]["transports"],
        device_name="Test device",
    )
    assert registered.user.email == "a@example.com"

    options = await svc.generate_authentication_options(email="a@example.com")
    assertion = authenticator.assertion(base64url_to_bytes(options["challenge"]))
    signed_in = await svc.verify_authentication(
        credential_id=assertion["id"],
        authenticator_data=assertion["response"]["authenticatorData"],
        client_data_json=assertion["response"]["clientDataJSON"],
        signature=assertion["response"]["signature"],
    )
    assert signed_in.user.id == registered.user.id