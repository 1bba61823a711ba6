"""Challenge store — one-time WebAuthn nonces with a fixed TTL.

Learn: A challenge is minted when ceremony options are generated and
consumed when the matching response comes back. Consumption is a single
DELETE ... WHERE challenge = ? AND expires_at > now RETURNING ..., so two
requests racing on the same value resolve to one winner; the loser sees
None, exactly like an expired or never-issued challenge.

get_and_delete_challenge does not commit; callers commit the consumption
before doing anything that might roll back, so a failed ceremony still
burns its challenge.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog
from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from latchkey.config import settings
from latchkey.db.models import ChallengeType, WebAuthnChallenge, utcnow

logger = structlog.get_logger()


@dataclass
class ConsumedChallenge:
    user_id: Optional[int]
    email: Optional[str]
    challenge_type: str


class ChallengeStore:
    """Persistence for ceremony challenges."""

    def __init__(self, db: AsyncSession, *, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock
        self.ttl = timedelta(seconds=settings.challenge_ttl_seconds)

    async def store_challenge(
        self,
        challenge: bytes,
        *,
        challenge_type: ChallengeType,
        user_id: Optional[int] = None,
        email: Optional[str] = None,
    ) -> int:
        """Persist a challenge expiring TTL seconds from now. Returns its id.

        A duplicate challenge value is a generation failure: the
        IntegrityError propagates after rollback.
        """
        now = self.clock()
        row = WebAuthnChallenge(
            challenge=challenge,
            user_id=user_id,
            email=email,
            challenge_type=challenge_type.value,
            expires_at=now + self.ttl,
            created_at=now,
        )
        self.db.add(row)
        try:
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            logger.error(
                "challenge.store_failed",
                origin="ChallengeStore.store_challenge",
                challenge_type=challenge_type.value,
                error=str(e),
            )
            raise
        return row.id

    async def get_and_delete_challenge(
        self, challenge: bytes
    ) -> Optional[ConsumedChallenge]:
        """Consume an unexpired challenge. None if absent, expired or already used."""
        result = await self.db.execute(
            delete(WebAuthnChallenge)
            .where(WebAuthnChallenge.challenge == challenge)
            .where(WebAuthnChallenge.expires_at > self.clock())
            .returning(
                WebAuthnChallenge.user_id,
                WebAuthnChallenge.email,
                WebAuthnChallenge.challenge_type,
            )
            .execution_options(synchronize_session=False)
        )
        row = result.first()
        if row is None:
            return None
        return ConsumedChallenge(
            user_id=row.user_id, email=row.email, challenge_type=row.challenge_type
        )

    async def cleanup_expired_challenges(self) -> int:
        result = await self.db.execute(
            delete(WebAuthnChallenge)
            .where(WebAuthnChallenge.expires_at < self.clock())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount or 0
