"""Passkey service — WebAuthn registration and authentication ceremonies.

Learn: Each ceremony is two requests.
1. options: mint a challenge, persist it, hand the client what it needs
   to call navigator.credentials.create()/get()
2. verify: recover the challenge from clientDataJSON, consume it (at most
   once), have py_webauthn check the signature, then write state and
   issue a session token

Both ceremonies consume their challenge up front and commit, so a rejected
response can't be retried against the same challenge. Registration then
writes the user, auth method and credential in a single transaction, so a
failure after that point leaves no partial account behind.

The signature counter is updated with a compare-and-swap
(WHERE counter = <value we verified against>). If another request moved the
counter in between, this one is rejected as a possible cloned credential.
"""

import binascii
import json
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

import structlog
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from webauthn.helpers import base64url_to_bytes, bytes_to_base64url

from latchkey.auth.identity import PasskeyIdentity, normalize_email
from latchkey.auth.webauthn import RelyingParty, descriptor
from latchkey.db.models import ChallengeType, PasskeyCredential, User, utcnow
from latchkey.errors import (
    AuthError,
    CeremonyVerificationFailed,
    ChallengeNotFound,
    CredentialNotFound,
    UserNotFound,
)
from latchkey.services.challenge_store import ChallengeStore
from latchkey.services.credential_registry import CredentialRegistry
from latchkey.services.identity_service import IdentityService

logger = structlog.get_logger()


@dataclass
class CeremonyResult:
    user: User
    token: str


def challenge_from_client_data(client_data_json: str, *, status_code: int = 400) -> bytes:
    """Pull the raw challenge out of base64url-encoded clientDataJSON."""
    try:
        client_data = json.loads(base64url_to_bytes(client_data_json))
        return base64url_to_bytes(client_data["challenge"])
    except (binascii.Error, ValueError, KeyError, TypeError) as e:
        raise CeremonyVerificationFailed(
            "Invalid client data", status_code=status_code
        ) from e


def _serialize_descriptors(passkeys: list[PasskeyCredential]) -> list[dict]:
    return [
        {
            "id": bytes_to_base64url(p.credential_id),
            "type": "public-key",
            "transports": list(p.transports or []),
        }
        for p in passkeys
    ]


class PasskeyService:
    """Registration and authentication ceremonies."""

    def __init__(
        self,
        db: AsyncSession,
        relying_party: RelyingParty,
        *,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.rp = relying_party
        self.clock = clock
        self.challenges = ChallengeStore(db, clock=clock)
        self.registry = CredentialRegistry(db, clock=clock)
        self.identity = IdentityService(db, clock=clock)

    # ─── Registration ─────────────────────────────────────

    async def generate_registration_options(
        self, *, email: str, user_id: Optional[int] = None
    ) -> dict:
        """Creation options for a new platform passkey.

        Learn: An existing user's passkeys go into excludeCredentials so the
        same authenticator isn't registered twice, and their external_id
        becomes the WebAuthn user handle. A brand-new email gets a random
        handle; the account itself isn't created until verify succeeds.
        """
        normalized = normalize_email(email)
        existing = await self.registry.get_user_by_email(normalized)
        owner_id = user_id or (existing.id if existing else None)

        passkeys = await self.registry.get_user_passkeys(owner_id) if owner_id else []
        user_handle = existing.external_id if existing else str(uuid.uuid4())

        options = self.rp.registration_options(
            user_handle=user_handle.encode(),
            user_name=normalized,
            exclude=[descriptor(p.credential_id, p.transports) for p in passkeys],
        )

        await self.challenges.store_challenge(
            options.challenge,
            challenge_type=ChallengeType.REGISTRATION,
            user_id=owner_id,
            email=normalized,
        )

        logger.info("passkey.registration_options", email=normalized, user_id=owner_id)
        return {
            "challenge": bytes_to_base64url(options.challenge),
            "user_id": user_handle,
            "rp_id": self.rp.rp_id,
            "rp_name": self.rp.rp_name,
            "timeout": self.rp.timeout_ms,
            "user_name": normalized,
            "user_display_name": normalized,
            "exclude_credentials": _serialize_descriptors(passkeys),
        }

    async def verify_registration(
        self,
        *,
        email: str,
        credential_id: str,
        attestation_object: str,
        client_data_json: str,
        transports: Optional[list[str]] = None,
        device_name: Optional[str] = None,
        user_id: Optional[int] = None,
    ) -> CeremonyResult:
        """Verify an attestation and create the account/credential.

        With user_id (a signed-in caller) the passkey is added to that user;
        otherwise the user is found or created by email.
        Raises ChallengeNotFound (422), CeremonyVerificationFailed (400),
        UserNotFound (401).
        """
        normalized = normalize_email(email)
        now = self.clock()
        try:
            challenge = challenge_from_client_data(client_data_json)
            consumed = await self.challenges.get_and_delete_challenge(challenge)
            await self.db.commit()
            if consumed is None or consumed.challenge_type != ChallengeType.REGISTRATION.value:
                raise ChallengeNotFound("Challenge not found or expired")
            # Options were issued for one (verified) email; only that one may use them
            if consumed.email and consumed.email != normalized:
                raise CeremonyVerificationFailed("Challenge was issued for a different email")

            verified = self.rp.verify_registration(
                credential={
                    "id": credential_id,
                    "rawId": credential_id,
                    "response": {
                        "attestationObject": attestation_object,
                        "clientDataJSON": client_data_json,
                        "transports": transports or [],
                    },
                    "type": "public-key",
                    "clientExtensionResults": {},
                },
                expected_challenge=challenge,
            )

            if user_id:
                user = await self.registry.get_user(user_id)
                if not user:
                    raise UserNotFound("User not found")
            else:
                user = await self.registry.get_user_by_email(normalized)
            if not user:
                user = User(
                    email=normalized,
                    external_id=str(uuid.uuid4()),
                    password="",
                    active=True,
                    created_at=now,
                    updated_at=now,
                )
                self.db.add(user)
                await self.db.flush()

            method = await self.registry.add_auth_method(
                user.id,
                PasskeyIdentity(verified.credential_id),
                metadata={"device_name": device_name},
            )
            if method is None:
                raise CeremonyVerificationFailed("Passkey already registered")

            self.db.add(
                PasskeyCredential(
                    auth_method_id=method.id,
                    credential_id=verified.credential_id,
                    public_key=verified.public_key,
                    counter=verified.sign_count,
                    device_type=verified.device_type,
                    backed_up=verified.backed_up,
                    transports=list(transports or []),
                    device_name=device_name,
                    active=True,
                    created_at=now,
                    updated_at=now,
                )
            )
            await self.db.commit()
        except AuthError as e:
            await self.db.rollback()
            logger.warning(
                "passkey.registration_rejected",
                origin="PasskeyService.verify_registration",
                email=normalized,
                reason=e.message,
            )
            raise
        except Exception as e:
            await self.db.rollback()
            logger.error(
                "passkey.registration_failed",
                origin="PasskeyService.verify_registration",
                email=normalized,
                error=str(e),
            )
            raise

        logger.info("passkey.registered", user_id=user.id, auth_method_id=method.id)
        return CeremonyResult(user=user, token=self.identity.generate_token(user))

    # ─── Authentication ───────────────────────────────────

    async def generate_authentication_options(self, *, email: Optional[str] = None) -> dict:
        """Request options. With a known email, allowCredentials is narrowed
        to that user's passkeys; otherwise it stays empty for discoverable
        credentials."""
        normalized = normalize_email(email) if email else None
        user = await self.registry.get_user_by_email(normalized) if normalized else None

        allow = None
        passkeys: list[PasskeyCredential] = []
        if user:
            passkeys = await self.registry.get_user_passkeys(user.id)
            allow = [descriptor(p.credential_id, p.transports) for p in passkeys]

        options = self.rp.authentication_options(allow=allow)

        await self.challenges.store_challenge(
            options.challenge,
            challenge_type=ChallengeType.AUTHENTICATION,
            user_id=user.id if user else None,
            email=normalized,
        )

        return {
            "challenge": bytes_to_base64url(options.challenge),
            "timeout": self.rp.timeout_ms,
            "rp_id": self.rp.rp_id,
            "allow_credentials": _serialize_descriptors(passkeys) if user else None,
        }

    async def verify_authentication(
        self,
        *,
        credential_id: str,
        authenticator_data: str,
        client_data_json: str,
        signature: str,
        user_handle: Optional[str] = None,
    ) -> CeremonyResult:
        """Verify an assertion and issue a session token.

        A credential id that isn't base64url is a rejected assertion (401).
        Raises CredentialNotFound (404) before touching any challenge,
        then ChallengeNotFound (422), CeremonyVerificationFailed (401),
        UserNotFound (401).
        """
        try:
            raw_id = base64url_to_bytes(credential_id)
        except (binascii.Error, ValueError) as e:
            raise CeremonyVerificationFailed("Invalid credential id", status_code=401) from e

        passkey = await self.registry.get_passkey_by_credential_id(raw_id)
        if not passkey:
            logger.warning("passkey.unknown_credential", credential_id=credential_id)
            raise CredentialNotFound("Credential not found")

        challenge = challenge_from_client_data(client_data_json, status_code=401)
        consumed = await self.challenges.get_and_delete_challenge(challenge)
        await self.db.commit()
        if consumed is None or consumed.challenge_type != ChallengeType.AUTHENTICATION.value:
            raise ChallengeNotFound("Challenge not found or expired")

        previous_counter = passkey.counter
        new_counter = self.rp.verify_authentication(
            credential={
                "id": credential_id,
                "rawId": credential_id,
                "response": {
                    "authenticatorData": authenticator_data,
                    "clientDataJSON": client_data_json,
                    "signature": signature,
                    "userHandle": user_handle,
                },
                "type": "public-key",
                "clientExtensionResults": {},
            },
            expected_challenge=challenge,
            public_key=passkey.public_key,
            current_counter=previous_counter,
        )

        now = self.clock()
        result = await self.db.execute(
            update(PasskeyCredential)
            .where(PasskeyCredential.id == passkey.id)
            .where(PasskeyCredential.counter == previous_counter)
            .values(counter=new_counter, last_used_at=now, updated_at=now)
        )
        if not result.rowcount:
            await self.db.rollback()
            logger.warning(
                "passkey.counter_conflict",
                passkey_id=passkey.id,
                expected_counter=previous_counter,
                new_counter=new_counter,
            )
            raise CeremonyVerificationFailed(
                "Authentication verification failed", status_code=401
            )
        await self.db.commit()

        user = await self.registry.get_user_by_credential_id(raw_id)
        if not user:
            logger.error("passkey.orphan_credential", passkey_id=passkey.id)
            raise UserNotFound("User not found")

        logger.info("passkey.authenticated", user_id=user.id, passkey_id=passkey.id)
        return CeremonyResult(user=user, token=self.identity.generate_token(user))
