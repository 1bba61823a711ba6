"""Credential registry — users → auth methods → passkey credentials.

Learn: Every lookup that walks the chain filters all three links for
active=True. A user whose auth method was deactivated, or an auth method
whose credential was, is simply "not found", never a half-populated result.

Two rules live here:
- A user always keeps at least one active auth method. delete_passkey
  refuses to remove the last one (LastAuthMethod → 403).
- add_auth_method never creates a second active row for the same
  (auth_type, external_id). It returns None instead, and callers fall back
  to a lookup. The partial unique index backs this up under races.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from latchkey.auth.identity import ExternalIdentity, normalize_email
from latchkey.db.models import AuthMethod, PasskeyCredential, User, utcnow
from latchkey.errors import LastAuthMethod

logger = structlog.get_logger()


@dataclass
class AuthMethodOwner:
    """Who holds an external identity."""

    user_id: int
    auth_method_id: int
    email: str


class CredentialRegistry:
    """Queries and mutations over users, auth methods and passkeys."""

    def __init__(self, db: AsyncSession, *, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock

    # ─── Users ────────────────────────────────────────────

    async def get_user(self, user_id: int) -> Optional[User]:
        result = await self.db.execute(
            select(User).where(User.id == user_id).where(User.active.is_(True))
        )
        return result.scalar_one_or_none()

    async def get_user_by_email(self, email: str) -> Optional[User]:
        result = await self.db.execute(
            select(User)
            .where(User.email == normalize_email(email))
            .where(User.active.is_(True))
        )
        return result.scalar_one_or_none()

    async def get_user_by_credential_id(self, credential_id: bytes) -> Optional[User]:
        """Owner of a credential, through active credential → auth method → user."""
        result = await self.db.execute(
            select(User)
            .join(AuthMethod, AuthMethod.user_id == User.id)
            .join(PasskeyCredential, PasskeyCredential.auth_method_id == AuthMethod.id)
            .where(PasskeyCredential.credential_id == credential_id)
            .where(PasskeyCredential.active.is_(True))
            .where(AuthMethod.active.is_(True))
            .where(User.active.is_(True))
        )
        return result.scalar_one_or_none()

    # ─── Passkeys ─────────────────────────────────────────

    async def get_user_passkeys(self, user_id: int) -> list[PasskeyCredential]:
        """Active passkeys of a user, oldest first."""
        result = await self.db.execute(
            select(PasskeyCredential)
            .join(AuthMethod, PasskeyCredential.auth_method_id == AuthMethod.id)
            .where(AuthMethod.user_id == user_id)
            .where(AuthMethod.active.is_(True))
            .where(PasskeyCredential.active.is_(True))
            .order_by(PasskeyCredential.id)
        )
        return list(result.scalars().all())

    async def get_passkey_by_credential_id(
        self, credential_id: bytes
    ) -> Optional[PasskeyCredential]:
        result = await self.db.execute(
            select(PasskeyCredential)
            .join(AuthMethod, PasskeyCredential.auth_method_id == AuthMethod.id)
            .where(PasskeyCredential.credential_id == credential_id)
            .where(PasskeyCredential.active.is_(True))
            .where(AuthMethod.active.is_(True))
        )
        return result.scalar_one_or_none()

    async def _get_owned_passkey(
        self, user_id: int, passkey_id: int
    ) -> Optional[PasskeyCredential]:
        result = await self.db.execute(
            select(PasskeyCredential)
            .join(AuthMethod, PasskeyCredential.auth_method_id == AuthMethod.id)
            .where(PasskeyCredential.id == passkey_id)
            .where(PasskeyCredential.active.is_(True))
            .where(AuthMethod.user_id == user_id)
            .where(AuthMethod.active.is_(True))
        )
        return result.scalar_one_or_none()

    async def delete_passkey(self, *, user_id: int, passkey_id: int) -> bool:
        """Soft-delete a passkey and its auth method.

        Returns False if the passkey doesn't exist or isn't the user's.
        Raises LastAuthMethod if it's the user's only way to sign in.
        """
        # Concurrent deletes for one user queue here, so the count can't go stale
        await self.db.execute(
            select(User.id).where(User.id == user_id).with_for_update()
        )

        passkey = await self._get_owned_passkey(user_id, passkey_id)
        if not passkey:
            await self.db.commit()
            return False

        if await self.get_auth_method_count(user_id) <= 1:
            await self.db.commit()
            logger.warning("passkey.delete_refused", user_id=user_id, passkey_id=passkey_id)
            raise LastAuthMethod("Cannot delete last authentication method")

        now = self.clock()
        try:
            await self.db.execute(
                update(PasskeyCredential)
                .where(PasskeyCredential.id == passkey.id)
                .values(active=False, updated_at=now)
            )
            await self.db.execute(
                update(AuthMethod)
                .where(AuthMethod.id == passkey.auth_method_id)
                .values(active=False, updated_at=now)
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info("passkey.deleted", user_id=user_id, passkey_id=passkey_id)
        return True

    async def rename_passkey(
        self, *, user_id: int, passkey_id: int, device_name: str
    ) -> bool:
        """Change a passkey's display label. False if not found or not owned."""
        passkey = await self._get_owned_passkey(user_id, passkey_id)
        if not passkey:
            return False

        await self.db.execute(
            update(PasskeyCredential)
            .where(PasskeyCredential.id == passkey.id)
            .values(device_name=device_name, updated_at=self.clock())
        )
        await self.db.commit()
        return True

    # ─── Auth methods ─────────────────────────────────────

    async def get_user_auth_methods(self, user_id: int) -> list[AuthMethod]:
        result = await self.db.execute(
            select(AuthMethod)
            .where(AuthMethod.user_id == user_id)
            .where(AuthMethod.active.is_(True))
            .order_by(AuthMethod.created_at.asc(), AuthMethod.id.asc())
        )
        return list(result.scalars().all())

    async def get_auth_method_count(self, user_id: int) -> int:
        result = await self.db.execute(
            select(func.count(AuthMethod.id))
            .where(AuthMethod.user_id == user_id)
            .where(AuthMethod.active.is_(True))
        )
        return result.scalar() or 0

    async def get_auth_method_by_external_id(
        self, identity: ExternalIdentity
    ) -> Optional[AuthMethodOwner]:
        """Active owner of an external identity, or None."""
        result = await self.db.execute(
            select(AuthMethod.user_id, AuthMethod.id, User.email)
            .join(User, User.id == AuthMethod.user_id)
            .where(AuthMethod.auth_type == identity.auth_type.value)
            .where(AuthMethod.external_id == identity.external_id)
            .where(AuthMethod.active.is_(True))
            .where(User.active.is_(True))
        )
        row = result.first()
        if row is None:
            return None
        return AuthMethodOwner(user_id=row[0], auth_method_id=row[1], email=row[2])

    async def add_auth_method(
        self,
        user_id: int,
        identity: ExternalIdentity,
        *,
        is_primary: bool = False,
        metadata: Optional[dict] = None,
    ) -> Optional[AuthMethod]:
        """Link an external identity to a user. Flushes, does not commit.

        Returns None, creating nothing, if the identity is already actively
        linked (to this user or any other).
        """
        existing = await self.db.execute(
            select(AuthMethod.id)
            .where(AuthMethod.auth_type == identity.auth_type.value)
            .where(AuthMethod.external_id == identity.external_id)
            .where(AuthMethod.active.is_(True))
        )
        if existing.first() is not None:
            logger.info(
                "auth_method.duplicate",
                user_id=user_id,
                auth_type=identity.auth_type.value,
            )
            return None

        now = self.clock()
        method = AuthMethod(
            user_id=user_id,
            auth_type=identity.auth_type.value,
            external_id=identity.external_id,
            metadata_=metadata or {},
            is_primary=is_primary,
            active=True,
            created_at=now,
            updated_at=now,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(method)
                await self.db.flush()
        except IntegrityError:
            # Lost a race with a concurrent insert of the same identity
            logger.info(
                "auth_method.duplicate",
                user_id=user_id,
                auth_type=identity.auth_type.value,
            )
            return None
        return method
