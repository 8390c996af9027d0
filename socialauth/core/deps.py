from __future__ import annotations

from datetime import UTC, datetime

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from socialauth.core.config import get_settings
from socialauth.core.security import hash_session_token
from socialauth.db.session import get_session
from socialauth.models.auth import AuthSession
from socialauth.models.identity import User
from socialauth.services.oauth.providers.registry import ProviderRegistry, get_provider_registry

SAFE_METHODS = {"GET", "HEAD", "OPTIONS"}


def require_csrf_header(request: Request) -> None:
    if request.method in SAFE_METHODS:
        return

    settings = get_settings()
    cookie_token = request.cookies.get(settings.CSRF_COOKIE_NAME)
    header_token = request.headers.get(settings.CSRF_HEADER_NAME)

    if not cookie_token or not header_token or cookie_token != header_token:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="CSRF token missing or invalid",
        )


def _load_session(request: Request, session: Session) -> tuple[AuthSession, User] | None:
    settings = get_settings()
    raw = request.cookies.get(settings.SESSION_COOKIE_NAME)
    if not raw:
        return None

    auth_session = (
        session.execute(
            select(AuthSession).where(
                AuthSession.token_hash == hash_session_token(raw),
                AuthSession.revoked_at.is_(None),
                AuthSession.expires_at > datetime.now(UTC),
            )
        )
        .scalars()
        .first()
    )
    if auth_session is None:
        return None

    user = session.get(User, auth_session.user_id)
    if user is None:
        return None
    return auth_session, user


def require_session(
    request: Request,
    session: Session = Depends(get_session),
) -> tuple[AuthSession, User]:
    if not request.cookies.get(get_settings().SESSION_COOKIE_NAME):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    auth = _load_session(request, session)
    if auth is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid session")

    _, user = auth
    if user.is_disabled:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="User disabled or missing"
        )
    return auth


def optional_session_user(
    request: Request,
    session: Session = Depends(get_session),
) -> User | None:
    auth = _load_session(request, session)
    if auth is None or auth[1].is_disabled:
        return None
    return auth[1]


def require_admin(auth: tuple[AuthSession, User] = Depends(require_session)) -> User:
    _, user = auth
    if not user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return user


def get_registry() -> ProviderRegistry:
    return get_provider_registry()
