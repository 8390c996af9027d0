from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from socialauth.core.clock import Clock
from socialauth.core.security import new_random_token
from socialauth.models.enums import OAuthStateStatus
from socialauth.models.oauth import OAuthState
from socialauth.services.oauth.errors import RateLimitError

STATE_TOKEN_BYTES = 32
DEFAULT_STATE_TTL = timedelta(minutes=15)
DEFAULT_RETENTION = timedelta(days=30)


@dataclass(frozen=True)
class IssueLimits:
    window: timedelta = timedelta(minutes=15)
    per_user: int = 10
    per_ip: int = 20


@dataclass(frozen=True)
class ConsumedState:
    id: UUID
    state: str
    provider: str
    user_id: UUID | None
    payload: dict[str, Any]
    client_ip: str | None
    user_agent: str | None
    created_at: datetime
    expires_at: datetime
    used_at: datetime


@dataclass(frozen=True)
class SweepResult:
    expired: int
    deleted: int


@dataclass(frozen=True)
class StateStats:
    total: int
    valid: int
    used: int
    expired: int
    cleanup_needed: int


def check_issue_rate_limit(
    *,
    session: Session,
    clock: Clock,
    provider: str,
    user_id: UUID | None,
    client_ip: str | None,
    limits: IssueLimits,
) -> None:
    since = clock.now() - limits.window
    retry_after = int(limits.window.total_seconds())

    checks: list[tuple[str, Any, Any, int]] = []
    if user_id is not None and limits.per_user > 0:
        checks.append(("user", OAuthState.user_id, user_id, limits.per_user))
    if client_ip and limits.per_ip > 0:
        checks.append(("ip", OAuthState.client_ip, client_ip, limits.per_ip))

    for scope, column, value, max_count in checks:
        count = session.execute(
            select(func.count())
            .select_from(OAuthState)
            .where(
                column == value,
                OAuthState.provider == provider,
                OAuthState.created_at > since,
            )
        ).scalar_one()
        if count >= max_count:
            raise RateLimitError(
                f"OAuth state issuance limit reached for {scope} ({count}/{max_count})",
                provider=provider,
                retry_after_seconds=retry_after,
                context={"limit_scope": scope, "limit": max_count},
            )


def issue_state(
    *,
    session: Session,
    clock: Clock,
    provider: str,
    user_id: UUID | None,
    payload: dict[str, Any] | None,
    client_ip: str | None,
    user_agent: str | None,
    ttl: timedelta = DEFAULT_STATE_TTL,
    limits: IssueLimits | None = None,
) -> OAuthState:
    check_issue_rate_limit(
        session=session,
        clock=clock,
        provider=provider,
        user_id=user_id,
        client_ip=client_ip,
        limits=limits or IssueLimits(),
    )

    now = clock.now()
    row = OAuthState(
        state=new_random_token(nbytes=STATE_TOKEN_BYTES),
        provider=provider,
        user_id=user_id,
        payload=dict(payload or {}),
        client_ip=client_ip,
        user_agent=user_agent[:512] if user_agent else None,
        status=OAuthStateStatus.valid,
        created_at=now,
        expires_at=now + ttl,
    )
    session.add(row)
    session.flush()
    return row


def validate_and_consume_state(
    *,
    session: Session,
    clock: Clock,
    state: str,
    provider: str,
) -> ConsumedState | None:
    if not state:
        return None

    row = (
        session.execute(
            select(OAuthState).where(OAuthState.state == state, OAuthState.provider == provider)
        )
        .scalars()
        .first()
    )
    if row is None or row.status != OAuthStateStatus.valid:
        return None

    now = clock.now()
    if row.expires_at <= now:
        _mark_expired(session=session, row=row)
        return None

    # Compare-and-swap: only one caller can move this row out of "valid".
    result = session.execute(
        update(OAuthState)
        .where(
            OAuthState.id == row.id,
            OAuthState.status == OAuthStateStatus.valid,
            OAuthState.expires_at > now,
        )
        .values(status=OAuthStateStatus.valid.ensure_transition(OAuthStateStatus.used), used_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return None

    consumed = ConsumedState(
        id=row.id,
        state=row.state,
        provider=row.provider,
        user_id=row.user_id,
        payload=dict(row.payload or {}),
        client_ip=row.client_ip,
        user_agent=row.user_agent,
        created_at=row.created_at,
        expires_at=row.expires_at,
        used_at=now,
    )
    session.expire(row)
    return consumed


def _mark_expired(*, session: Session, row: OAuthState) -> None:
    session.execute(
        update(OAuthState)
        .where(OAuthState.id == row.id, OAuthState.status == OAuthStateStatus.valid)
        .values(status=OAuthStateStatus.valid.ensure_transition(OAuthStateStatus.expired))
        .execution_options(synchronize_session=False)
    )
    session.expire(row)


def sweep_states(
    *,
    session: Session,
    clock: Clock,
    retention: timedelta = DEFAULT_RETENTION,
) -> SweepResult:
    now = clock.now()
    expired = session.execute(
        update(OAuthState)
        .where(OAuthState.status == OAuthStateStatus.valid, OAuthState.expires_at <= now)
        .values(status=OAuthStateStatus.expired)
        .execution_options(synchronize_session=False)
    ).rowcount

    deleted = session.execute(
        delete(OAuthState)
        .where(
            OAuthState.status.in_([OAuthStateStatus.used, OAuthStateStatus.expired]),
            OAuthState.created_at < now - retention,
        )
        .execution_options(synchronize_session=False)
    ).rowcount

    return SweepResult(expired=int(expired or 0), deleted=int(deleted or 0))


def state_stats(*, session: Session, clock: Clock) -> StateStats:
    rows = session.execute(
        select(OAuthState.status, func.count()).group_by(OAuthState.status)
    ).all()
    by_status = {OAuthStateStatus(status): int(count) for status, count in rows}

    cleanup_needed = session.execute(
        select(func.count())
        .select_from(OAuthState)
        .where(OAuthState.status == OAuthStateStatus.valid, OAuthState.expires_at <= clock.now())
    ).scalar_one()

    return StateStats(
        total=sum(by_status.values()),
        valid=by_status.get(OAuthStateStatus.valid, 0),
        used=by_status.get(OAuthStateStatus.used, 0),
        expired=by_status.get(OAuthStateStatus.expired, 0),
        cleanup_needed=int(cleanup_needed),
    )
