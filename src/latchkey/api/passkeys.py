"""Passkey API — email verification, WebAuthn ceremonies, credential management.

Learn: Routes for the passwordless flow:
- POST /passkey/verify-email/send → email a 6-digit code
- POST /passkey/verify-email/check → code → verification token
- POST /passkey/register/options → creation options (needs a verification
  token unless the caller is already signed in)
- POST /passkey/register/verify → attestation → account + session token
- POST /passkey/auth/options → request options
- POST /passkey/auth/verify → assertion → session token
- GET/DELETE/PATCH /passkey/credentials[/{id}] → manage own passkeys
- GET /passkey/auth-methods → list own sign-in methods

Failures are raised as AuthError subclasses; main.py renders them.
"""

from datetime import datetime
from typing import Callable, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from latchkey.api.deps import get_clock, get_mailer, get_relying_party
from latchkey.auth.dependencies import get_current_user, get_current_user_optional
from latchkey.auth.identity import normalize_email
from latchkey.auth.webauthn import RelyingParty
from latchkey.db.engine import get_db
from latchkey.db.models import User
from latchkey.errors import (
    CredentialNotFound,
    ValidationFailed,
    VerificationCodeError,
    VerificationTokenInvalid,
)
from latchkey.schemas.passkey import (
    AuthenticationOptionsRequest,
    AuthenticationOptionsResponse,
    AuthenticationVerifyRequest,
    AuthMethodList,
    AuthMethodRead,
    CheckCodeRequest,
    CheckCodeResponse,
    PasskeyList,
    PasskeyRead,
    PasskeyRename,
    RegistrationOptionsRequest,
    RegistrationOptionsResponse,
    RegistrationVerifyRequest,
    SendCodeRequest,
    SendCodeResponse,
    SessionResponse,
)
from latchkey.services.credential_registry import CredentialRegistry
from latchkey.services.email_service import Mailer
from latchkey.services.passkey_service import PasskeyService
from latchkey.services.verification_service import EmailVerificationService

router = APIRouter(prefix="/passkey")


def _verification(
    db: AsyncSession = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> EmailVerificationService:
    return EmailVerificationService(db, mailer, clock=clock)


def _passkeys(
    db: AsyncSession = Depends(get_db),
    rp: RelyingParty = Depends(get_relying_party),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> PasskeyService:
    return PasskeyService(db, rp, clock=clock)


def _registry(
    db: AsyncSession = Depends(get_db),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> CredentialRegistry:
    return CredentialRegistry(db, clock=clock)


# ─── Email verification ─────────────────────────────────

@router.post("/verify-email/send", response_model=SendCodeResponse)
async def send_verification_code(
    body: SendCodeRequest,
    svc: EmailVerificationService = Depends(_verification),
):
    return await svc.send_verification_code(body.email)


@router.post("/verify-email/check", response_model=CheckCodeResponse)
async def check_verification_code(
    body: CheckCodeRequest,
    svc: EmailVerificationService = Depends(_verification),
):
    try:
        token = await svc.verify_code(body.email, body.code)
    except VerificationCodeError as e:
        return JSONResponse(
            status_code=e.status_code,
            content={"verified": False, "message": e.message},
        )
    return CheckCodeResponse(verified=True, verification_token=token)


# ─── Registration ───────────────────────────────────────

@router.post("/register/options", response_model=RegistrationOptionsResponse)
async def registration_options(
    body: RegistrationOptionsRequest,
    user: Optional[User] = Depends(get_current_user_optional),
    verification: EmailVerificationService = Depends(_verification),
    svc: PasskeyService = Depends(_passkeys),
):
    """Signed-in users add a passkey to their own account. Everyone else
    must prove the email first with a verification token."""
    if user:
        return await svc.generate_registration_options(email=user.email, user_id=user.id)

    if not body.email:
        raise ValidationFailed("Email is required")
    if not body.verification_token:
        raise ValidationFailed("Email verification required. Please verify your email first.")

    token_email = verification.validate_verification_token(body.verification_token)
    if normalize_email(token_email) != body.email:
        raise VerificationTokenInvalid(
            "Verification token does not match the provided email"
        )

    return await svc.generate_registration_options(email=body.email)


@router.post("/register/verify", response_model=SessionResponse)
async def registration_verify(
    body: RegistrationVerifyRequest,
    user: Optional[User] = Depends(get_current_user_optional),
    svc: PasskeyService = Depends(_passkeys),
):
    email = user.email if user else body.email
    if not email:
        raise ValidationFailed("Email is required")

    result = await svc.verify_registration(
        email=email,
        credential_id=body.credential_id,
        attestation_object=body.response.attestation_object,
        client_data_json=body.response.client_data_json,
        transports=body.response.transports,
        device_name=body.device_name,
        user_id=user.id if user else None,
    )
    return await svc.identity.session_response(result.user, result.token)


# ─── Authentication ─────────────────────────────────────

@router.post("/auth/options", response_model=AuthenticationOptionsResponse)
async def authentication_options(
    body: AuthenticationOptionsRequest,
    svc: PasskeyService = Depends(_passkeys),
):
    return await svc.generate_authentication_options(email=body.email)


@router.post("/auth/verify", response_model=SessionResponse)
async def authentication_verify(
    body: AuthenticationVerifyRequest,
    svc: PasskeyService = Depends(_passkeys),
):
    result = await svc.verify_authentication(
        credential_id=body.credential_id,
        authenticator_data=body.response.authenticator_data,
        client_data_json=body.response.client_data_json,
        signature=body.response.signature,
        user_handle=body.response.user_handle,
    )
    return await svc.identity.session_response(result.user, result.token)


# ─── Credential management ──────────────────────────────

@router.get("/credentials", response_model=PasskeyList)
async def list_passkeys(
    user: User = Depends(get_current_user),
    registry: CredentialRegistry = Depends(_registry),
):
    passkeys = await registry.get_user_passkeys(user.id)
    return PasskeyList(passkeys=[PasskeyRead.model_validate(p) for p in passkeys])


@router.delete("/credentials/{passkey_id}")
async def delete_passkey(
    passkey_id: int,
    user: User = Depends(get_current_user),
    registry: CredentialRegistry = Depends(_registry),
):
    """Remove a passkey. The last remaining sign-in method can't be removed (403)."""
    deleted = await registry.delete_passkey(user_id=user.id, passkey_id=passkey_id)
    if not deleted:
        raise CredentialNotFound("Passkey not found")
    return {"success": True, "message": "Passkey deleted successfully"}


@router.patch("/credentials/{passkey_id}")
async def rename_passkey(
    passkey_id: int,
    body: PasskeyRename,
    user: User = Depends(get_current_user),
    registry: CredentialRegistry = Depends(_registry),
):
    updated = await registry.rename_passkey(
        user_id=user.id, passkey_id=passkey_id, device_name=body.device_name
    )
    if not updated:
        raise CredentialNotFound("Passkey not found")
    return {"success": True}


@router.get("/auth-methods", response_model=AuthMethodList)
async def list_auth_methods(
    user: User = Depends(get_current_user),
    registry: CredentialRegistry = Depends(_registry),
):
    methods = await registry.get_user_auth_methods(user.id)
    return AuthMethodList(methods=[AuthMethodRead.model_validate(m) for m in methods])
