"""Sign in with Apple — reconcile an Apple subject with our users.

Learn: Apple's "sub" claim is the stable identity; the email in the token
can change between logins (hide-my-email relays, user edits). Resolution
order:
1. an active apple auth method for the subject → that user, and the email
   we stored wins over whatever Apple sent this time
2. an active user with the token's email:
   - already linked to a *different* Apple subject → AppleIdentityConflict
   - not linked yet → link this subject to them (passkey-first users)
3. nobody → create a user whose external_id is the subject, with a primary
   apple auth method

If add_auth_method reports the subject as already linked, another request
got there first and we resolve through step 1 again instead of creating a
second account.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from latchkey.auth.apple import AppleIdentityVerifier
from latchkey.auth.identity import AppleIdentity, normalize_email
from latchkey.db.models import AuthMethod, AuthType, User, utcnow
from latchkey.errors import AppleIdentityConflict, AppleIdentityError, ValidationFailed
from latchkey.services.credential_registry import CredentialRegistry
from latchkey.services.identity_service import IdentityService

logger = structlog.get_logger()


@dataclass
class SignInResult:
    user: User
    token: str
    created: bool = False


class AppleSignInService:
    """Apple identity token → our user + session token."""

    def __init__(
        self,
        db: AsyncSession,
        verifier: AppleIdentityVerifier,
        *,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.verifier = verifier
        self.clock = clock
        self.registry = CredentialRegistry(db, clock=clock)
        self.identity = IdentityService(db, clock=clock)

    async def sign_in(self, identity_token: Optional[str]) -> SignInResult:
        if not identity_token:
            raise ValidationFailed("The authentication is missing")

        claims = await self.verifier.verify(identity_token)
        if not claims or not claims.email:
            raise AppleIdentityError("Invalid apple id")

        apple = AppleIdentity(claims.subject)

        user = await self._user_for(apple)
        if user:
            logger.info("apple.sign_in", user_id=user.id)
            return SignInResult(user=user, token=self.identity.generate_token(user))

        try:
            user, created = await self._link_or_create(apple, normalize_email(claims.email))
        except IntegrityError:
            # A concurrent sign-in for the same subject or email committed first
            await self.db.rollback()
            user, created = await self._user_for(apple), False
            if not user:
                raise

        logger.info("apple.sign_in", user_id=user.id, created=created)
        return SignInResult(
            user=user, token=self.identity.generate_token(user), created=created
        )

    async def _user_for(self, apple: AppleIdentity) -> Optional[User]:
        owner = await self.registry.get_auth_method_by_external_id(apple)
        if owner is None:
            return None
        return await self.registry.get_user(owner.user_id)

    async def _link_or_create(self, apple: AppleIdentity, email: str) -> tuple[User, bool]:
        user = await self.registry.get_user_by_email(email)

        if user:
            linked = await self.db.execute(
                select(AuthMethod.id)
                .where(AuthMethod.user_id == user.id)
                .where(AuthMethod.auth_type == AuthType.APPLE.value)
                .where(AuthMethod.active.is_(True))
            )
            if linked.first() is not None:
                logger.warning("apple.identity_conflict", user_id=user.id)
                raise AppleIdentityConflict("The user exist with different apple id")

            method = await self.registry.add_auth_method(user.id, apple)
            if method is None:
                await self.db.rollback()
                return await self._resolve_race(apple), False
            await self.db.commit()
            logger.info("apple.linked", user_id=user.id)
            return user, False

        now = self.clock()
        user = User(
            email=email,
            external_id=await self._free_external_id(apple.subject),
            password="",
            active=True,
            created_at=now,
            updated_at=now,
        )
        self.db.add(user)
        await self.db.flush()

        method = await self.registry.add_auth_method(user.id, apple, is_primary=True)
        if method is None:
            await self.db.rollback()
            return await self._resolve_race(apple), False
        await self.db.commit()
        return user, True

    async def _resolve_race(self, apple: AppleIdentity) -> User:
        user = await self._user_for(apple)
        if not user:
            raise AppleIdentityError("Invalid apple id")
        return user

    async def _free_external_id(self, subject: str) -> str:
        """The subject, unless a deactivated account still holds it."""
        taken = await self.db.execute(select(User.id).where(User.external_id == subject))
        if taken.first() is None:
            return subject
        return str(uuid.uuid4())
