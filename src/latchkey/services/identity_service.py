"""Identity service — session tokens, billing identity and account lifecycle.

Learn: A user can sign in with Apple, with one or more passkeys, or both.
Billing (RevenueCat) was keyed on the Apple subject long before passkeys
existed, so an Apple-linked user keeps reporting that subject as their
revenuecat_id. Passkey-only users report their own external_id.
"""

from datetime import datetime
from typing import Callable

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from latchkey.auth.jwt import create_session_token
from latchkey.db.models import (
    AuthMethod,
    AuthType,
    User,
    UserParam,
    utcnow,
)

logger = structlog.get_logger()

SUBSCRIPTION_PARAM = "subscription"


class IdentityService:
    """Who a user is to the rest of the system."""

    def __init__(self, db: AsyncSession, *, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock

    def generate_token(self, user: User) -> str:
        """Long-lived session token. No exp claim."""
        return create_session_token(
            user_id=user.id,
            email=user.email,
            external_id=user.external_id,
            now=self.clock(),
        )

    async def get_revenuecat_id(self, user_id: int, fallback_external_id: str) -> str:
        result = await self.db.execute(
            select(AuthMethod.external_id)
            .where(AuthMethod.user_id == user_id)
            .where(AuthMethod.auth_type == AuthType.APPLE.value)
            .where(AuthMethod.active.is_(True))
            .order_by(AuthMethod.id)
            .limit(1)
        )
        apple_subject = result.scalar()
        return apple_subject or fallback_external_id

    async def has_subscription(self, user_id: int) -> bool:
        result = await self.db.execute(
            select(UserParam.id)
            .where(UserParam.user_id == user_id)
            .where(UserParam.param == SUBSCRIPTION_PARAM)
            .where(UserParam.active.is_(True))
            .limit(1)
        )
        return result.first() is not None

    async def session_response(self, user: User, token: str) -> dict:
        """Body returned by both passkey ceremonies on success."""
        return {
            "email": user.email,
            "token": token,
            "external_id": user.external_id,
            "revenuecat_id": await self.get_revenuecat_id(user.id, user.external_id),
            "has_subscription": await self.has_subscription(user.id),
        }

    # ─── Account lifecycle ────────────────────────────────

    async def deactivate_account(self, user_id: int) -> bool:
        """Soft-delete a user with everything hanging off it.

        Learn: Deactivation cascades User → AuthMethods → PasskeyCredentials,
        never credential-only. The email gets a "-deleted<unix>" suffix so
        the address can register again.
        """
        now = self.clock()
        suffix = f"-deleted{int(now.timestamp())}"
        try:
            result = await self.db.execute(
                select(User).where(User.id == user_id).where(User.active.is_(True))
            )
            user = result.scalar_one_or_none()
            if not user:
                return False

            user.active = False
            user.email = f"{user.email}{suffix}"
            user.updated_at = now

            methods = await self.db.execute(
                select(AuthMethod)
                .options(selectinload(AuthMethod.passkey))
                .where(AuthMethod.user_id == user_id)
                .where(AuthMethod.active.is_(True))
            )
            for method in methods.scalars().all():
                method.active = False
                method.updated_at = now
                if method.passkey is not None and method.passkey.active:
                    method.passkey.active = False
                    method.passkey.updated_at = now

            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.error(
                "account.deactivate_failed",
                origin="IdentityService.deactivate_account",
                user_id=user_id,
                error=str(e),
            )
            raise

        logger.info("account.deactivated", user_id=user_id)
        return True
