"""Email verification service — one-time codes that gate new-account registration.

Learn: Before an anonymous client may register a passkey for an email it
must prove it can read that mailbox:
1. send_verification_code → 6-digit code stored (5 min expiry) and emailed
2. verify_code → code checked (max 5 attempts), returns a signed
   15-minute verification token
3. The registration options endpoint calls validate_verification_token

Rules enforced here, all against the database:
- at most 3 codes per email per rolling hour, counting every code sent
- a new send expires the email's older unverified codes on the spot
- attempts are counted before the comparison, and a code that already
  used all its attempts is deleted on the next check
"""

import hmac
import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from latchkey.auth.identity import normalize_email
from latchkey.auth.jwt import (
    TokenError,
    TokenExpiredError,
    create_verification_token,
    verify_token,
)
from latchkey.config import settings
from latchkey.db.models import EmailVerificationCode, User, utcnow
from latchkey.errors import (
    EmailAlreadyRegistered,
    RateLimited,
    VerificationCodeError,
    VerificationTokenExpired,
    VerificationTokenInvalid,
)
from latchkey.services.email_service import Mailer

logger = structlog.get_logger()


def generate_code(length: int) -> str:
    """Uniform random numeric code, zero-padded (000000–999999 for length 6)."""
    return f"{secrets.randbelow(10 ** length):0{length}d}"


def _render_code_email(code: str, expiry_minutes: int) -> str:
    return f"""
    <div style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
      <h2 style="color: #333;">Your {settings.mailer_name} verification code</h2>
      <p style="color: #666; font-size: 16px;">Use the following code to verify your email address:</p>
      <div style="background-color: #f5f5f5; padding: 20px; border-radius: 8px; text-align: center; margin: 20px 0;">
        <span style="font-size: 32px; font-weight: bold; letter-spacing: 8px; color: #333;">{code}</span>
      </div>
      <p style="color: #999; font-size: 14px;">This code expires in {expiry_minutes} minutes.</p>
      <p style="color: #999; font-size: 14px;">If you didn't request this code, you can safely ignore this email.</p>
    </div>
    """


class EmailVerificationService:
    """Issues and checks email verification codes."""

    def __init__(
        self,
        db: AsyncSession,
        mailer: Mailer,
        *,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.mailer = mailer
        self.clock = clock
        self.code_length = settings.verification_code_length
        self.expiry_minutes = settings.verification_code_expiry_minutes
        self.max_attempts = settings.verification_max_attempts
        self.rate_limit_per_hour = settings.verification_rate_limit_per_hour

    # ─── Send ─────────────────────────────────────────────

    async def send_verification_code(self, email: str) -> dict:
        """Generate, store and email a fresh code.

        Raises EmailAlreadyRegistered (409) or RateLimited (429).
        Returns {"success": True, "expires_in": <seconds>}.
        """
        normalized = normalize_email(email)
        now = self.clock()

        if await self._email_registered(normalized):
            raise EmailAlreadyRegistered(
                "An account with this email already exists. Please sign in instead."
            )

        if await self._is_rate_limited(normalized, now):
            raise RateLimited("Too many verification attempts. Please try again later.")

        code = generate_code(self.code_length)
        try:
            # Older live codes stop working now. The rows stay until cleanup
            # so they still count toward the hourly limit.
            await self.db.execute(
                update(EmailVerificationCode)
                .where(EmailVerificationCode.email == normalized)
                .where(EmailVerificationCode.verified.is_(False))
                .where(EmailVerificationCode.expires_at > now)
                .values(expires_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            self.db.add(
                EmailVerificationCode(
                    email=normalized,
                    code=code,
                    expires_at=now + timedelta(minutes=self.expiry_minutes),
                    verified=False,
                    attempts=0,
                    created_at=now,
                    updated_at=now,
                )
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(
                "verification.store_failed",
                origin="EmailVerificationService.send_verification_code",
                email=normalized,
                error=str(e),
            )
            raise

        # The code is stored; a delivery failure doesn't undo that.
        try:
            message_id = await self.mailer.send_email(
                to=normalized,
                subject=f"Your {settings.mailer_name} verification code",
                html=_render_code_email(code, self.expiry_minutes),
            )
        except Exception as e:
            logger.error(
                "verification.email_failed",
                origin="EmailVerificationService.send_verification_code",
                email=normalized,
                error=str(e),
            )
            message_id = None

        logger.info("verification.code_sent", email=normalized, message_id=message_id)
        return {"success": True, "expires_in": self.expiry_minutes * 60}

    # ─── Verify ───────────────────────────────────────────

    async def verify_code(self, email: str, code: str) -> str:
        """Check a code. Returns a signed verification token on success.

        Raises VerificationCodeError with a user-facing message otherwise.
        """
        normalized = normalize_email(email)
        now = self.clock()

        result = await self.db.execute(
            select(EmailVerificationCode)
            .where(EmailVerificationCode.email == normalized)
            .where(EmailVerificationCode.verified.is_(False))
            .where(EmailVerificationCode.expires_at > now)
            .order_by(
                EmailVerificationCode.created_at.desc(),
                EmailVerificationCode.id.desc(),
            )
            .limit(1)
        )
        record = result.scalars().first()

        if not record:
            raise VerificationCodeError(
                "Verification code expired or not found. Please request a new code."
            )

        if record.attempts >= self.max_attempts:
            await self.db.delete(record)
            await self.db.commit()
            logger.warning("verification.attempts_exhausted", email=normalized)
            raise VerificationCodeError(
                "Too many incorrect attempts. Please request a new code."
            )

        # Count the attempt before comparing, successful or not
        attempts = record.attempts + 1
        await self.db.execute(
            update(EmailVerificationCode)
            .where(EmailVerificationCode.id == record.id)
            .values(attempts=EmailVerificationCode.attempts + 1, updated_at=now)
        )

        if not hmac.compare_digest(record.code.encode(), code.strip().encode()):
            await self.db.commit()
            remaining = self.max_attempts - attempts
            if remaining > 0:
                message = f"Incorrect code. {remaining} attempts remaining."
            else:
                message = "Incorrect code. Please request a new code."
            raise VerificationCodeError(message)

        await self.db.execute(
            update(EmailVerificationCode)
            .where(EmailVerificationCode.id == record.id)
            .values(verified=True, updated_at=now)
        )
        await self.db.commit()

        logger.info("verification.email_verified", email=normalized)
        return create_verification_token(
            normalized, expires_minutes=settings.verification_token_expiry_minutes, now=now
        )

    def validate_verification_token(self, token: str) -> str:
        """Return the email a verification token is bound to.

        Raises VerificationTokenExpired or VerificationTokenInvalid.
        """
        try:
            payload = verify_token(token, now=self.clock())
        except TokenExpiredError:
            raise VerificationTokenExpired(
                "Verification token expired. Please verify your email again."
            )
        except TokenError:
            raise VerificationTokenInvalid("Invalid verification token")

        email = payload.get("email")
        if payload.get("verified") is not True or not isinstance(email, str) or not email:
            raise VerificationTokenInvalid("Invalid verification token")
        return email

    # ─── Maintenance ──────────────────────────────────────

    async def cleanup_expired_codes(self) -> int:
        """Delete every code past its expiry. Returns the number deleted."""
        result = await self.db.execute(
            delete(EmailVerificationCode)
            .where(EmailVerificationCode.expires_at < self.clock())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount or 0

    # ─── Internals ────────────────────────────────────────

    async def _email_registered(self, email: str) -> bool:
        result = await self.db.execute(
            select(User.id).where(User.email == email).where(User.active.is_(True))
        )
        return result.first() is not None

    async def _is_rate_limited(self, email: str, now: datetime) -> bool:
        one_hour_ago = now - timedelta(hours=1)
        result = await self.db.execute(
            select(func.count(EmailVerificationCode.id))
            .where(EmailVerificationCode.email == email)
            .where(EmailVerificationCode.created_at > one_hour_ago)
        )
        count: Optional[int] = result.scalar()
        return (count or 0) >= self.rate_limit_per_hour
