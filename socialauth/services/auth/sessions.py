from __future__ import annotations

from datetime import UTC, datetime, timedelta

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from socialauth.core.config import get_settings
from socialauth.core.security import hash_session_token, new_random_token
from socialauth.models.auth import AuthSession
from socialauth.models.identity import User
from socialauth.services.audit import log_event


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def create_session_for_user(
    *,
    session: Session,
    user: User,
    method: str,
    now: datetime | None = None,
) -> tuple[str, AuthSession]:
    settings = get_settings()
    now = now or datetime.now(UTC)

    token = new_random_token()
    auth_session = AuthSession(
        user_id=user.id,
        token_hash=hash_session_token(token),
        method=method,
        created_at=now,
        expires_at=now + timedelta(seconds=settings.SESSION_TTL_SECONDS),
    )
    session.add(auth_session)
    session.flush()
    return token, auth_session


def create_dev_session(
    *,
    session: Session,
    email: str,
    display_name: str | None = None,
    is_admin: bool = False,
) -> tuple[str, AuthSession, User]:
    settings = get_settings()
    if not settings.ALLOW_DEV_LOGIN:
        # Hide route behavior in prod rather than exposing an auth bypass.
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")

    email_norm = _normalize_email(email)
    if "@" not in email_norm or " " in email_norm:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Invalid email"
        )

    user = session.execute(select(User).where(User.email == email_norm)).scalars().first()
    if user is None:
        user = User(email=email_norm, display_name=display_name, is_admin=is_admin)
        session.add(user)
        session.flush()
    elif is_admin and not user.is_admin:
        user.is_admin = True

    token, auth_session = create_session_for_user(session=session, user=user, method="dev")

    log_event(
        session=session,
        actor_user_id=user.id,
        event_type="auth.dev_login",
        event_data={},
    )

    return token, auth_session, user


def revoke_session(
    *,
    session: Session,
    auth_session: AuthSession,
    reason: str,
) -> None:
    auth_session.revoked_at = datetime.now(UTC)
    auth_session.revoked_reason = reason
    session.add(auth_session)
