"""Pydantic schemas for email verification and passkey ceremonies.

Learn: Pydantic v2 models validate request/response data. Binary WebAuthn
fields travel as base64url strings; the service layer decodes them.
A request that fails validation never reaches a service (FastAPI → 422).
"""

from datetime import datetime
from typing import Optional

from pydantic import AliasChoices, BaseModel, EmailStr, Field, field_validator


def _strip_email(value):
    """Trim before syntax checking; a blank optional email counts as absent."""
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


# ─── Email verification ─────────────────────────────────

class SendCodeRequest(BaseModel):
    email: EmailStr

    @field_validator("email", mode="before")
    @classmethod
    def strip_email(cls, v):
        return _strip_email(v)

    @field_validator("email")
    @classmethod
    def lowercase_email(cls, v: str) -> str:
        return v.lower()


class SendCodeResponse(BaseModel):
    success: bool
    expires_in: int


class CheckCodeRequest(BaseModel):
    email: EmailStr
    code: str = Field(..., min_length=1, max_length=12)

    @field_validator("email", mode="before")
    @classmethod
    def strip_email(cls, v):
        return _strip_email(v)

    @field_validator("email")
    @classmethod
    def lowercase_email(cls, v: str) -> str:
        return v.lower()


class CheckCodeResponse(BaseModel):
    verified: bool
    verification_token: str


# ─── Registration ───────────────────────────────────────

class RegistrationOptionsRequest(BaseModel):
    email: Optional[EmailStr] = None
    device_name: Optional[str] = Field(default=None, max_length=255)
    verification_token: Optional[str] = None

    @field_validator("email", mode="before")
    @classmethod
    def strip_email(cls, v):
        return _strip_email(v)

    @field_validator("email")
    @classmethod
    def lowercase_email(cls, v: Optional[str]) -> Optional[str]:
        return v.lower() if v else None


class CredentialDescriptor(BaseModel):
    id: str
    type: str = "public-key"
    transports: list[str] = []


class RegistrationOptionsResponse(BaseModel):
    challenge: str
    user_id: str
    rp_id: str
    rp_name: str
    timeout: int
    user_name: str
    user_display_name: str
    exclude_credentials: list[CredentialDescriptor]


class AttestationResponse(BaseModel):
    attestation_object: str
    client_data_json: str
    transports: list[str] = []


class RegistrationVerifyRequest(BaseModel):
    email: Optional[EmailStr] = None
    credential_id: str = Field(..., min_length=1)
    response: AttestationResponse
    device_name: Optional[str] = Field(default=None, max_length=255)

    @field_validator("email", mode="before")
    @classmethod
    def strip_email(cls, v):
        return _strip_email(v)

    @field_validator("email")
    @classmethod
    def lowercase_email(cls, v: Optional[str]) -> Optional[str]:
        return v.lower() if v else None


# ─── Authentication ─────────────────────────────────────

class AuthenticationOptionsRequest(BaseModel):
    email: Optional[str] = Field(default=None, max_length=255)


class AuthenticationOptionsResponse(BaseModel):
    challenge: str
    timeout: int
    rp_id: str
    allow_credentials: Optional[list[CredentialDescriptor]] = None


class AssertionResponse(BaseModel):
    authenticator_data: str
    client_data_json: str
    signature: str
    user_handle: Optional[str] = None


class AuthenticationVerifyRequest(BaseModel):
    credential_id: str = Field(..., min_length=1)
    response: AssertionResponse


class SessionResponse(BaseModel):
    """Returned by both ceremonies on success."""
    email: str
    token: str
    external_id: str
    revenuecat_id: str
    has_subscription: bool


# ─── Credential management ──────────────────────────────

class PasskeyRead(BaseModel):
    id: int
    device_name: Optional[str]
    device_type: str
    backed_up: bool
    last_used_at: Optional[datetime]
    created_at: datetime

    model_config = {"from_attributes": True}


class PasskeyList(BaseModel):
    passkeys: list[PasskeyRead]


class PasskeyRename(BaseModel):
    device_name: str = Field(..., min_length=1, max_length=255)


class AuthMethodRead(BaseModel):
    id: int
    type: str = Field(validation_alias=AliasChoices("type", "auth_type"))
    is_primary: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class AuthMethodList(BaseModel):
    methods: list[AuthMethodRead]
