"""Pydantic schemas for Apple sign-in and the current user."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class AppleLoginRequest(BaseModel):
    token_id: Optional[str] = None


class AppleLoginResponse(BaseModel):
    email: str
    token: str


class UserRead(BaseModel):
    id: int
    email: str
    external_id: str
    created_at: datetime

    model_config = {"from_attributes": True}


class CurrentUserResponse(BaseModel):
    user: UserRead
    revenuecat_id: str
    has_subscription: bool


class MessageResponse(BaseModel):
    message: str
