from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlsplit
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from socialauth.core.clock import Clock
from socialauth.core.crypto import decrypt_text, encrypt_text, provider_secret_aad
from socialauth.models.enums import ProviderStatus
from socialauth.models.oauth import ProviderConfig
from socialauth.services.audit import log_event
from socialauth.services.oauth.bindings import count_active_bindings
from socialauth.services.oauth.errors import ConfigurationError
from socialauth.services.oauth.providers.base import ProviderCredentials
from socialauth.services.oauth.providers.registry import ProviderRegistry


@dataclass(frozen=True)
class ProviderConfigInput:
    name: str
    display_name: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    redirect_uri: str | None = None
    scopes: list[str] | None = None
    extra_config: dict[str, Any] = field(default_factory=dict)
    enabled: bool | None = None
    sort: int | None = None
    remark: str | None = None


@dataclass(frozen=True)
class ImportResult:
    created: int
    updated: int
    errors: dict[str, str]


def _secret(config: ProviderConfig) -> str:
    return decrypt_text(config.encrypted_client_secret, aad=provider_secret_aad(config.name))


def has_client_secret(config: ProviderConfig) -> bool:
    return bool(config.encrypted_client_secret)


def get_provider_config(
    *, session: Session, name: str, include_deleted: bool = False
) -> ProviderConfig | None:
    stmt = select(ProviderConfig).where(ProviderConfig.name == name)
    if not include_deleted:
        stmt = stmt.where(ProviderConfig.status == ProviderStatus.active)
    return session.execute(stmt).scalars().first()


def list_provider_configs(
    *, session: Session, enabled_only: bool = False
) -> list[ProviderConfig]:
    stmt = select(ProviderConfig).where(ProviderConfig.status == ProviderStatus.active)
    if enabled_only:
        stmt = stmt.where(ProviderConfig.enabled.is_(True))
    return list(
        session.execute(stmt.order_by(ProviderConfig.sort.asc(), ProviderConfig.name.asc()))
        .scalars()
        .all()
    )


def load_enabled_provider(*, session: Session, name: str) -> ProviderConfig:
    config = get_provider_config(session=session, name=name)
    if config is None or not config.enabled:
        raise ConfigurationError(
            f"OAuth provider {name} is not configured or is disabled",
            provider=name,
        )
    return config


def credentials_for(config: ProviderConfig) -> ProviderCredentials:
    return ProviderCredentials(
        client_id=config.client_id,
        client_secret=_secret(config),
        redirect_uri=config.redirect_uri,
        scopes=list(config.scopes or []),
        extra=dict(config.extra_config or {}),
    )


def _validate_redirect_uri(provider: str, redirect_uri: str) -> None:
    parts = urlsplit(redirect_uri)
    if parts.scheme not in {"http", "https"} or not parts.netloc:
        raise ConfigurationError(
            f"Invalid redirect URI for {provider}: {redirect_uri!r}",
            provider=provider,
            public_message="Redirect URI must be an absolute http(s) URL",
        )


def _clean_scopes(scopes: list[str] | None) -> list[str]:
    return [s.strip() for s in scopes or [] if s and s.strip()]


def create_or_update_provider(
    *,
    session: Session,
    clock: Clock,
    registry: ProviderRegistry,
    data: ProviderConfigInput,
    actor_user_id: UUID | None,
) -> ProviderConfig:
    name = data.name.strip().lower()
    info = registry.describe(name)
    now = clock.now()

    config = get_provider_config(session=session, name=name, include_deleted=True)
    tombstone = None
    if config is not None and config.status == ProviderStatus.deleted:
        # Deleted is terminal; a re-create starts from scratch and needs every field again.
        tombstone, config = config, None
    created = config is None

    client_id = (data.client_id or "").strip() or (config.client_id if config else "")
    redirect_uri = (data.redirect_uri or "").strip() or (config.redirect_uri if config else "")
    secret = (data.client_secret or "").strip()
    missing = [
        label
        for label, value in (
            ("client_id", client_id),
            ("redirect_uri", redirect_uri),
            ("client_secret", secret or (config and has_client_secret(config))),
        )
        if not value
    ]
    if missing:
        raise ConfigurationError(
            f"Provider {name} is missing required fields: {', '.join(missing)}",
            provider=name,
            public_message=f"Missing required fields: {', '.join(missing)}",
            context={"missing": missing},
        )
    _validate_redirect_uri(name, redirect_uri)

    if tombstone is not None:
        session.delete(tombstone)
        session.flush()

    if config is None:
        config = ProviderConfig(
            name=name,
            display_name=info.display_name,
            created_at=now,
            status=ProviderStatus.active,
            enabled=False,
            sort=0,
        )
        session.add(config)

    config.display_name = (data.display_name or "").strip() or config.display_name or info.display_name
    config.client_id = client_id
    config.redirect_uri = redirect_uri
    if secret:
        config.encrypted_client_secret = encrypt_text(secret, aad=provider_secret_aad(name))
    if data.scopes is not None:
        config.scopes = _clean_scopes(data.scopes) or list(info.default_scopes)
    elif created:
        config.scopes = list(info.default_scopes)
    if data.extra_config or created:
        config.extra_config = dict(data.extra_config or {})
    if data.enabled is not None:
        config.enabled = data.enabled
    if data.sort is not None:
        config.sort = data.sort
    if data.remark is not None:
        config.remark = data.remark
    config.updated_at = now
    session.flush()

    log_event(
        session=session,
        actor_user_id=actor_user_id,
        event_type="oauth.provider.created" if created else "oauth.provider.updated",
        event_data={"provider": name, "secret_changed": bool(secret)},
        created_at=now,
    )
    return config


def _require_config(session: Session, name: str) -> ProviderConfig:
    config = get_provider_config(session=session, name=name)
    if config is None:
        raise ConfigurationError(f"OAuth provider {name} is not configured", provider=name)
    return config


def toggle_provider(
    *,
    session: Session,
    clock: Clock,
    name: str,
    enabled: bool | None,
    actor_user_id: UUID | None,
) -> ProviderConfig:
    config = _require_config(session, name)
    target = (not config.enabled) if enabled is None else enabled
    if target and not (config.client_id and has_client_secret(config)):
        raise ConfigurationError(
            f"OAuth provider {name} has no client credentials",
            provider=name,
            public_message="Configure client id and secret before enabling the provider",
        )
    config.enabled = target
    config.updated_at = clock.now()
    session.flush()
    log_event(
        session=session,
        actor_user_id=actor_user_id,
        event_type="oauth.provider.toggled",
        event_data={"provider": name, "enabled": config.enabled},
    )
    return config


def delete_provider(
    *,
    session: Session,
    clock: Clock,
    name: str,
    actor_user_id: UUID | None,
) -> ProviderConfig:
    config = _require_config(session, name)
    active = count_active_bindings(session=session, provider=name)
    if active:
        raise ConfigurationError(
            f"OAuth provider {name} still has {active} active bindings",
            provider=name,
            public_message="Provider still has active user bindings",
            context={"active_bindings": active},
        )

    now = clock.now()
    config.status = ProviderStatus(config.status).ensure_transition(ProviderStatus.deleted)
    config.enabled = False
    config.deleted_at = now
    config.updated_at = now
    session.flush()
    log_event(
        session=session,
        actor_user_id=actor_user_id,
        event_type="oauth.provider.deleted",
        event_data={"provider": name},
    )
    return config


def initialize_default_providers(
    *,
    session: Session,
    clock: Clock,
    registry: ProviderRegistry,
    redirect_base_url: str,
    actor_user_id: UUID | None,
) -> list[str]:
    now = clock.now()
    created: list[str] = []
    for sort, name in enumerate(registry.names()):
        if get_provider_config(session=session, name=name, include_deleted=True) is not None:
            continue
        info = registry.describe(name)
        session.add(
            ProviderConfig(
                name=name,
                display_name=info.display_name,
                client_id="",
                encrypted_client_secret=b"",
                redirect_uri=f"{redirect_base_url.rstrip('/')}/oauth/{name}/callback",
                scopes=list(info.default_scopes),
                extra_config={},
                enabled=False,
                status=ProviderStatus.active,
                sort=sort,
                created_at=now,
                updated_at=now,
            )
        )
        created.append(name)
    session.flush()

    if created:
        log_event(
            session=session,
            actor_user_id=actor_user_id,
            event_type="oauth.provider.initialized",
            event_data={"providers": created},
        )
    return created


def export_provider_configs(
    *, session: Session, include_secrets: bool = False
) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for config in list_provider_configs(session=session):
        item: dict[str, Any] = {
            "name": config.name,
            "display_name": config.display_name,
            "client_id": config.client_id,
            "redirect_uri": config.redirect_uri,
            "scopes": list(config.scopes or []),
            "extra_config": dict(config.extra_config or {}),
            "enabled": config.enabled,
            "sort": config.sort,
            "remark": config.remark,
        }
        if include_secrets and has_client_secret(config):
            item["client_secret"] = _secret(config)
        out.append(item)
    return out


def import_provider_configs(
    *,
    session: Session,
    clock: Clock,
    registry: ProviderRegistry,
    items: list[dict[str, Any]],
    actor_user_id: UUID | None,
) -> ImportResult:
    created = 0
    updated = 0
    errors: dict[str, str] = {}
    for item in items:
        name = str(item.get("name") or "").strip().lower()
        existed = get_provider_config(session=session, name=name) is not None
        try:
            create_or_update_provider(
                session=session,
                clock=clock,
                registry=registry,
                data=ProviderConfigInput(
                    name=name,
                    display_name=item.get("display_name"),
                    client_id=item.get("client_id"),
                    client_secret=item.get("client_secret"),
                    redirect_uri=item.get("redirect_uri"),
                    scopes=item.get("scopes"),
                    extra_config=dict(item.get("extra_config") or {}),
                    enabled=item.get("enabled"),
                    sort=item.get("sort"),
                    remark=item.get("remark"),
                ),
                actor_user_id=actor_user_id,
            )
        except ConfigurationError as e:
            errors[name or "<missing>"] = e.public_message
            continue
        if existed:
            updated += 1
        else:
            created += 1
    return ImportResult(created=created, updated=updated, errors=errors)
