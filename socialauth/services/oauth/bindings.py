from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from socialauth.core.clock import Clock
from socialauth.core.crypto import account_token_aad, decrypt_text, encrypt_text
from socialauth.models.enums import BindingBatchAction, BindingStatus
from socialauth.models.oauth import OAuthAccount
from socialauth.services.audit import log_event
from socialauth.services.oauth.errors import AccountNotBoundError, BindingConflictError, FlowError
from socialauth.services.oauth.providers.base import NormalizedProfile, TokenBundle


@dataclass(frozen=True)
class BindingTokens:
    access_token: str
    refresh_token: str | None


@dataclass(frozen=True)
class BindingPage:
    items: list[OAuthAccount]
    total: int


@dataclass(frozen=True)
class BatchResult:
    affected: int
    skipped: int


def _aad(binding: OAuthAccount, kind: str) -> bytes:
    return account_token_aad(
        provider=binding.provider, provider_user_id=binding.provider_user_id, kind=kind
    )


def binding_tokens(binding: OAuthAccount) -> BindingTokens:
    refresh = None
    if binding.encrypted_refresh_token is not None:
        refresh = decrypt_text(binding.encrypted_refresh_token, aad=_aad(binding, "refresh"))
    return BindingTokens(
        access_token=decrypt_text(binding.encrypted_access_token, aad=_aad(binding, "access")),
        refresh_token=refresh,
    )


def store_tokens(
    binding: OAuthAccount,
    *,
    tokens: TokenBundle,
    now: datetime,
    keep_refresh_token: bool = False,
) -> None:
    binding.encrypted_access_token = encrypt_text(tokens.access_token, aad=_aad(binding, "access"))
    if tokens.refresh_token:
        binding.encrypted_refresh_token = encrypt_text(
            tokens.refresh_token, aad=_aad(binding, "refresh")
        )
    elif not keep_refresh_token:
        binding.encrypted_refresh_token = None
    binding.token_type = tokens.token_type or "Bearer"
    binding.token_scope = tokens.scope
    binding.token_expires_at = tokens.expires_at(now)
    binding.last_refresh_error = None
    binding.updated_at = now


def _apply_profile(binding: OAuthAccount, profile: NormalizedProfile) -> None:
    binding.provider_username = profile.username
    binding.provider_display_name = profile.display_name
    binding.provider_email = profile.email
    binding.provider_avatar = profile.avatar_url
    binding.provider_data = dict(profile.raw)


def find_binding_by_identity(
    *, session: Session, provider: str, provider_user_id: str, for_update: bool = False
) -> OAuthAccount | None:
    stmt = select(OAuthAccount).where(
        OAuthAccount.provider == provider,
        OAuthAccount.provider_user_id == provider_user_id,
    )
    if for_update:
        stmt = stmt.with_for_update()
    return session.execute(stmt).scalars().first()


def find_user_binding(
    *, session: Session, user_id: UUID, provider: str, for_update: bool = False
) -> OAuthAccount | None:
    stmt = select(OAuthAccount).where(
        OAuthAccount.user_id == user_id,
        OAuthAccount.provider == provider,
    )
    if for_update:
        stmt = stmt.with_for_update()
    return session.execute(stmt).scalars().first()


def list_user_bindings(*, session: Session, user_id: UUID) -> list[OAuthAccount]:
    return list(
        session.execute(
            select(OAuthAccount)
            .where(OAuthAccount.user_id == user_id)
            .order_by(OAuthAccount.created_at.asc(), OAuthAccount.provider.asc())
        )
        .scalars()
        .all()
    )


def create_or_update_binding(
    *,
    session: Session,
    clock: Clock,
    user_id: UUID | None,
    provider: str,
    profile: NormalizedProfile,
    tokens: TokenBundle,
    client_ip: str | None,
) -> OAuthAccount:
    now = clock.now()
    identity = find_binding_by_identity(
        session=session, provider=provider, provider_user_id=profile.id, for_update=True
    )

    if user_id is None:
        if identity is None:
            raise AccountNotBoundError(
                f"No local account is bound to {provider} identity {profile.id}",
                provider=provider,
                context={
                    "provider_user_id": profile.id,
                    "username": profile.username,
                    "email": profile.email,
                },
            )
        if identity.status != BindingStatus.normal:
            raise FlowError(
                f"Binding {identity.id} is disabled",
                provider=provider,
                public_message="This linked account has been disabled",
                context={"binding_id": str(identity.id)},
            )
        _apply_profile(identity, profile)
        store_tokens(identity, tokens=tokens, now=now)
        _touch_login(identity, now=now, client_ip=client_ip)
        session.flush()
        return identity

    if identity is not None and identity.user_id != user_id:
        raise BindingConflictError(
            f"{provider} identity {profile.id} is already bound to user {identity.user_id}",
            provider=provider,
            context={
                "provider_user_id": profile.id,
                "owner_user_id": str(identity.user_id),
                "requested_user_id": str(user_id),
            },
        )

    binding = identity or find_user_binding(
        session=session, user_id=user_id, provider=provider, for_update=True
    )
    if binding is not None and binding.status != BindingStatus.normal:
        # Only an admin can lift a deactivation; re-binding must not bypass it.
        raise FlowError(
            f"Binding {binding.id} is disabled",
            provider=provider,
            public_message="This linked account has been disabled",
            context={"binding_id": str(binding.id), "requested_user_id": str(user_id)},
        )
    created = binding is None
    if binding is None:
        binding = OAuthAccount(
            user_id=user_id,
            provider=provider,
            provider_user_id=profile.id,
            status=BindingStatus.normal,
            created_at=now,
        )
        session.add(binding)
    else:
        # Same user, same provider: re-bind in place, possibly to a new remote identity.
        binding.provider_user_id = profile.id

    _apply_profile(binding, profile)
    store_tokens(binding, tokens=tokens, now=now)
    _touch_login(binding, now=now, client_ip=client_ip)

    try:
        session.flush()
    except IntegrityError as e:
        # A concurrent bind won the unique (provider, provider_user_id) slot.
        raise BindingConflictError(
            f"{provider} identity {profile.id} was bound concurrently",
            provider=provider,
            context={"provider_user_id": profile.id, "requested_user_id": str(user_id)},
        ) from e

    log_event(
        session=session,
        actor_user_id=user_id,
        event_type="oauth.binding.created" if created else "oauth.binding.updated",
        event_data={
            "binding_id": str(binding.id),
            "provider": provider,
            "provider_user_id": profile.id,
        },
        created_at=now,
    )
    return binding


def _touch_login(binding: OAuthAccount, *, now: datetime, client_ip: str | None) -> None:
    binding.last_login_at = now
    binding.last_login_ip = client_ip
    binding.updated_at = now


def remove_binding(*, session: Session, user_id: UUID, provider: str) -> bool:
    binding = find_user_binding(session=session, user_id=user_id, provider=provider, for_update=True)
    if binding is None:
        return False

    event_data = {
        "binding_id": str(binding.id),
        "provider": provider,
        "provider_user_id": binding.provider_user_id,
    }
    session.delete(binding)
    session.flush()
    log_event(
        session=session,
        actor_user_id=user_id,
        event_type="oauth.binding.removed",
        event_data=event_data,
    )
    return True


def force_remove_binding(
    *,
    session: Session,
    binding_id: UUID,
    actor_user_id: UUID | None,
    reason: str | None = None,
) -> bool:
    binding = session.get(OAuthAccount, binding_id)
    if binding is None:
        return False

    event_data = {
        "binding_id": str(binding.id),
        "user_id": str(binding.user_id),
        "provider": binding.provider,
        "provider_user_id": binding.provider_user_id,
        "reason": reason,
    }
    session.delete(binding)
    session.flush()
    log_event(
        session=session,
        actor_user_id=actor_user_id,
        event_type="oauth.binding.force_removed",
        event_data=event_data,
    )
    return True


def set_binding_status(
    *,
    session: Session,
    clock: Clock,
    binding: OAuthAccount,
    target: BindingStatus,
    actor_user_id: UUID | None,
) -> bool:
    if binding.status == target:
        return False
    binding.status = BindingStatus(binding.status).ensure_transition(target)
    binding.updated_at = clock.now()
    session.flush()
    log_event(
        session=session,
        actor_user_id=actor_user_id,
        event_type=f"oauth.binding.{target.value}",
        event_data={"binding_id": str(binding.id), "provider": binding.provider},
    )
    return True


def list_bindings(
    *,
    session: Session,
    provider: str | None = None,
    user_id: UUID | None = None,
    status: BindingStatus | None = None,
    search: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> BindingPage:
    filters = []
    if provider:
        filters.append(OAuthAccount.provider == provider)
    if user_id is not None:
        filters.append(OAuthAccount.user_id == user_id)
    if status is not None:
        filters.append(OAuthAccount.status == status)
    if search:
        needle = f"%{search.strip()}%"
        filters.append(
            OAuthAccount.provider_username.ilike(needle)
            | OAuthAccount.provider_email.ilike(needle)
            | OAuthAccount.provider_user_id.ilike(needle)
        )

    total = session.execute(
        select(func.count()).select_from(OAuthAccount).where(*filters)
    ).scalar_one()
    items = (
        session.execute(
            select(OAuthAccount)
            .where(*filters)
            .order_by(OAuthAccount.created_at.desc(), OAuthAccount.id.asc())
            .limit(max(1, min(200, limit)))
            .offset(max(0, offset))
        )
        .scalars()
        .all()
    )
    return BindingPage(items=list(items), total=int(total))


def batch_operate_bindings(
    *,
    session: Session,
    clock: Clock,
    binding_ids: list[UUID],
    action: BindingBatchAction,
    actor_user_id: UUID | None,
) -> BatchResult:
    affected = 0
    skipped = 0
    for binding_id in dict.fromkeys(binding_ids):
        if action == BindingBatchAction.unbind:
            done = force_remove_binding(
                session=session,
                binding_id=binding_id,
                actor_user_id=actor_user_id,
                reason="batch unbind",
            )
        else:
            binding = session.get(OAuthAccount, binding_id)
            target = (
                BindingStatus.normal
                if action == BindingBatchAction.activate
                else BindingStatus.disabled
            )
            done = binding is not None and set_binding_status(
                session=session,
                clock=clock,
                binding=binding,
                target=target,
                actor_user_id=actor_user_id,
            )
        if done:
            affected += 1
        else:
            skipped += 1
    return BatchResult(affected=affected, skipped=skipped)


def bindings_needing_refresh(
    *,
    session: Session,
    clock: Clock,
    lookahead: timedelta,
    limit: int,
) -> list[OAuthAccount]:
    now = clock.now()
    return list(
        session.execute(
            select(OAuthAccount)
            .where(
                OAuthAccount.status == BindingStatus.normal,
                OAuthAccount.encrypted_refresh_token.is_not(None),
                OAuthAccount.token_expires_at.is_not(None),
                OAuthAccount.token_expires_at > now,
                OAuthAccount.token_expires_at <= now + lookahead,
            )
            .order_by(OAuthAccount.token_expires_at.asc())
            .limit(max(1, limit))
        )
        .scalars()
        .all()
    )


def purge_disabled_bindings(*, session: Session, clock: Clock, older_than: timedelta) -> int:
    result = session.execute(
        delete(OAuthAccount)
        .where(
            OAuthAccount.status == BindingStatus.disabled,
            OAuthAccount.updated_at < clock.now() - older_than,
        )
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


def binding_counts(*, session: Session) -> dict[str, dict[str, int]]:
    rows = session.execute(
        select(OAuthAccount.provider, OAuthAccount.status, func.count())
        .group_by(OAuthAccount.provider, OAuthAccount.status)
    ).all()
    out: dict[str, dict[str, int]] = {}
    for provider, status, count in rows:
        out.setdefault(provider, {s.value: 0 for s in BindingStatus})[BindingStatus(status).value] = int(count)
    return out


def count_active_bindings(*, session: Session, provider: str) -> int:
    return int(
        session.execute(
            select(func.count())
            .select_from(OAuthAccount)
            .where(OAuthAccount.provider == provider, OAuthAccount.status == BindingStatus.normal)
        ).scalar_one()
    )
