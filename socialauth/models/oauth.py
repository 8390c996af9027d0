from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    Enum,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
    false,
)
from sqlalchemy.orm import Mapped, mapped_column

from socialauth.models.base import Base, JSONType, UTCDateTime, utcnow
from socialauth.models.enums import BindingStatus, OAuthStateStatus, ProviderStatus


class ProviderConfig(Base):
    __tablename__ = "oauth_providers"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    display_name: Mapped[str] = mapped_column(Text, nullable=False)
    client_id: Mapped[str] = mapped_column(Text, nullable=False)
    encrypted_client_secret: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    redirect_uri: Mapped[str] = mapped_column(Text, nullable=False)
    scopes: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    extra_config: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    status: Mapped[ProviderStatus] = mapped_column(
        Enum(ProviderStatus, name="oauth_provider_status", native_enum=False, length=16),
        nullable=False,
        default=ProviderStatus.active,
    )
    sort: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    remark: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    deleted_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class OAuthState(Base):
    __tablename__ = "oauth_states"
    __table_args__ = (
        UniqueConstraint("state", "provider", name="oauth_states_state_provider_key"),
        Index("oauth_states_user_rate_idx", "user_id", "provider", "created_at"),
        Index("oauth_states_ip_rate_idx", "client_ip", "provider", "created_at"),
        Index("oauth_states_status_idx", "status", "expires_at"),
    )

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    state: Mapped[str] = mapped_column(String(128), nullable=False)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    # Null for login intent; the signed-in user for bind intent.
    user_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=True
    )
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    client_ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[OAuthStateStatus] = mapped_column(
        Enum(OAuthStateStatus, name="oauth_state_status", native_enum=False, length=16),
        nullable=False,
        default=OAuthStateStatus.valid,
    )

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    used_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class OAuthAccount(Base):
    __tablename__ = "user_oauth_accounts"
    __table_args__ = (
        UniqueConstraint("provider", "provider_user_id", name="user_oauth_accounts_identity_key"),
        UniqueConstraint("user_id", "provider", name="user_oauth_accounts_user_provider_key"),
        Index("user_oauth_accounts_refresh_idx", "status", "token_expires_at"),
    )

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    provider_user_id: Mapped[str] = mapped_column(String(191), nullable=False)
    provider_username: Mapped[str | None] = mapped_column(Text, nullable=True)
    provider_display_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    provider_email: Mapped[str | None] = mapped_column(Text, nullable=True)
    provider_avatar: Mapped[str | None] = mapped_column(Text, nullable=True)
    provider_data: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)

    encrypted_access_token: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    encrypted_refresh_token: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    token_type: Mapped[str] = mapped_column(String(32), nullable=False, default="Bearer")
    token_scope: Mapped[str | None] = mapped_column(Text, nullable=True)
    token_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_refresh_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[BindingStatus] = mapped_column(
        Enum(BindingStatus, name="oauth_binding_status", native_enum=False, length=16),
        nullable=False,
        default=BindingStatus.normal,
    )
    last_login_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_login_ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    remark: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
