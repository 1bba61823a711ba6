"""FastAPI auth dependencies.

Learn: These are used as Depends() in route handlers to resolve the user
behind an `Authorization: Bearer <session token>` header.

The optional variant is soft: a missing, malformed or forged token simply
means "anonymous", so endpoints like registration options can serve both
signed-in users (adding a passkey) and new visitors. The token's user must
still be active; a deactivated account's old tokens resolve to nobody.
"""

from typing import Optional

import structlog
from fastapi import Depends, Header, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from latchkey.auth.jwt import TokenError, verify_token
from latchkey.db.engine import get_db
from latchkey.db.models import User

logger = structlog.get_logger()


async def get_current_user_optional(
    authorization: Optional[str] = Header(None),
    db: AsyncSession = Depends(get_db),
) -> Optional[User]:
    """Active user for the bearer token, or None."""
    if not authorization or not authorization.startswith("Bearer "):
        return None

    token = authorization[7:].strip()
    try:
        payload = verify_token(token)
    except TokenError as e:
        logger.info("auth.token_rejected", error=str(e))
        return None

    user_id = payload.get("id_user")
    if not isinstance(user_id, int):
        return None

    result = await db.execute(
        select(User).where(User.id == user_id).where(User.active.is_(True))
    )
    return result.scalar_one_or_none()


async def get_current_user(
    user: Optional[User] = Depends(get_current_user_optional),
) -> User:
    """Active user for the bearer token (required, 401 if missing)."""
    if not user:
        raise HTTPException(
            status_code=401,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user
