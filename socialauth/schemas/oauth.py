from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from socialauth.models.enums import BindingBatchAction, BindingStatus
from socialauth.schemas.auth import SessionOut, UserOut


class ProviderOut(BaseModel):
    name: str
    display_name: str
    supports_refresh: bool
    is_bound: bool | None = None


class AuthorizeResponse(BaseModel):
    provider: str
    authorization_url: str
    state: str
    expires_at: datetime


class BindingOut(BaseModel):
    """Binding as seen by its owner. Tokens never leave the server."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    provider: str
    provider_user_id: str
    provider_username: str | None
    provider_display_name: str | None
    provider_email: str | None
    provider_avatar: str | None
    status: BindingStatus
    token_expires_at: datetime | None
    last_login_at: datetime | None
    created_at: datetime
    updated_at: datetime


class AdminBindingOut(BindingOut):
    user_id: UUID
    token_scope: str | None
    last_login_ip: str | None
    last_refresh_error: str | None
    remark: str | None


class BindingPageOut(BaseModel):
    items: list[AdminBindingOut]
    total: int
    limit: int
    offset: int


class CallbackResponse(BaseModel):
    status: Literal["bound", "logged_in"]
    provider: str
    binding: BindingOut
    redirect_to: str | None = None
    user: UserOut | None = None
    session: SessionOut | None = None
    csrf_token: str | None = None


class RefreshResponse(BaseModel):
    provider: str
    outcome: str
    reason: str | None = None
    token_expires_at: datetime | None = None


class ProviderConfigOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    display_name: str
    client_id: str
    has_client_secret: bool
    redirect_uri: str
    scopes: list[str]
    extra_config: dict[str, Any]
    enabled: bool
    sort: int
    remark: str | None
    created_at: datetime
    updated_at: datetime


class ProviderConfigIn(BaseModel):
    display_name: str | None = Field(default=None, max_length=100)
    client_id: str | None = Field(default=None, max_length=500)
    # Write-only; omitted on update keeps the stored secret.
    client_secret: str | None = Field(default=None, max_length=1000)
    redirect_uri: str | None = Field(default=None, max_length=2000)
    scopes: list[str] | None = None
    extra_config: dict[str, Any] = Field(default_factory=dict)
    enabled: bool | None = None
    sort: int | None = Field(default=None, ge=0, le=10_000)
    remark: str | None = Field(default=None, max_length=500)


class ProviderToggleRequest(BaseModel):
    enabled: bool | None = None


class ProviderImportItem(ProviderConfigIn):
    name: str = Field(min_length=1, max_length=32)


class ProviderImportRequest(BaseModel):
    providers: list[ProviderImportItem] = Field(min_length=1, max_length=50)


class ProviderImportResponse(BaseModel):
    created: int
    updated: int
    errors: dict[str, str]


class InitializeProvidersResponse(BaseModel):
    created: list[str]


class ForceUnbindRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class BindingBatchRequest(BaseModel):
    binding_ids: list[UUID] = Field(min_length=1, max_length=200)
    action: BindingBatchAction


class BindingBatchResponse(BaseModel):
    action: BindingBatchAction
    affected: int
    skipped: int


class StateStatsOut(BaseModel):
    total: int
    valid: int
    used: int
    expired: int
    cleanup_needed: int


class OAuthStatsResponse(BaseModel):
    total_bindings: int
    bindings: dict[str, dict[str, int]]
    states: StateStatsOut


class RefreshResultOut(BaseModel):
    binding_id: UUID
    provider: str
    outcome: str
    reason: str | None = None


class MaintenanceResponse(BaseModel):
    states_expired: int
    states_deleted: int
    bindings_purged: int
    refresh: dict[str, int]
    refresh_results: list[RefreshResultOut]


class AuditEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    actor_user_id: UUID | None
    event_type: str
    event_data: dict[str, Any]
    created_at: datetime
