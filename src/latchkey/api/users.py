"""User API — Sign in with Apple, current identity, account deletion.

Learn: The original sign-in path. The client sends the identity token it
got from Apple ("token_id"); we verify it, reconcile it with existing
accounts (see AppleSignInService) and return a session token.
"""

from datetime import datetime
from typing import Callable

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from latchkey.api.deps import get_apple_verifier, get_clock
from latchkey.auth.apple import AppleIdentityVerifier
from latchkey.auth.dependencies import get_current_user
from latchkey.db.engine import get_db
from latchkey.db.models import User
from latchkey.schemas.user import (
    AppleLoginRequest,
    AppleLoginResponse,
    CurrentUserResponse,
    MessageResponse,
    UserRead,
)
from latchkey.services.apple_signin_service import AppleSignInService
from latchkey.services.identity_service import IdentityService

router = APIRouter(prefix="/user")


def _apple(
    db: AsyncSession = Depends(get_db),
    verifier: AppleIdentityVerifier = Depends(get_apple_verifier),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> AppleSignInService:
    return AppleSignInService(db, verifier, clock=clock)


def _identity(
    db: AsyncSession = Depends(get_db),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> IdentityService:
    return IdentityService(db, clock=clock)


@router.post("/login", response_model=AppleLoginResponse)
async def apple_login(
    body: AppleLoginRequest,
    svc: AppleSignInService = Depends(_apple),
):
    result = await svc.sign_in(body.token_id)
    return AppleLoginResponse(email=result.user.email, token=result.token)


@router.get("", response_model=CurrentUserResponse)
async def get_me(
    user: User = Depends(get_current_user),
    identity: IdentityService = Depends(_identity),
):
    return CurrentUserResponse(
        user=UserRead.model_validate(user),
        revenuecat_id=await identity.get_revenuecat_id(user.id, user.external_id),
        has_subscription=await identity.has_subscription(user.id),
    )


@router.delete("", response_model=MessageResponse)
async def delete_account(
    user: User = Depends(get_current_user),
    identity: IdentityService = Depends(_identity),
):
    """Deactivate the caller's account and every sign-in method on it."""
    await identity.deactivate_account(user.id)
    return MessageResponse(message="The account has been successfully deleted")
