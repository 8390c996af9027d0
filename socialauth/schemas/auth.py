from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class CsrfTokenResponse(BaseModel):
    csrf_token: str


class DevLoginRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    display_name: str | None = Field(default=None, max_length=200)
    is_admin: bool = False


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    email: str
    display_name: str | None
    is_admin: bool


class SessionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    method: str
    created_at: datetime
    expires_at: datetime


class LoginResponse(BaseModel):
    user: UserOut
    session: SessionOut
    csrf_token: str


class MeResponse(BaseModel):
    user: UserOut
    session: SessionOut
