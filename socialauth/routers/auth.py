from __future__ import annotations

from fastapi import APIRouter, Depends, Response
from sqlalchemy.orm import Session

from socialauth.core.deps import require_csrf_header, require_session
from socialauth.core.security import (
    clear_csrf_cookie,
    clear_session_cookie,
    new_random_token,
    set_csrf_cookie,
    set_session_cookie,
)
from socialauth.db.session import get_session
from socialauth.models.auth import AuthSession
from socialauth.models.identity import User
from socialauth.schemas.auth import CsrfTokenResponse, DevLoginRequest, LoginResponse, MeResponse
from socialauth.services.audit import log_event
from socialauth.services.auth.sessions import create_dev_session, revoke_session

router = APIRouter(prefix="/auth", tags=["auth"], dependencies=[Depends(require_csrf_header)])


@router.get("/csrf", response_model=CsrfTokenResponse)
def issue_csrf(response: Response) -> CsrfTokenResponse:
    token = new_random_token()
    set_csrf_cookie(response, token)
    response.headers["Cache-Control"] = "no-store"
    return CsrfTokenResponse(csrf_token=token)


@router.post("/dev/login", response_model=LoginResponse)
def dev_login(
    payload: DevLoginRequest, response: Response, session: Session = Depends(get_session)
) -> LoginResponse:
    token, auth_session, user = create_dev_session(
        session=session,
        email=payload.email,
        display_name=payload.display_name,
        is_admin=payload.is_admin,
    )

    # Rotate CSRF on login to ensure we always have a token paired with a session.
    csrf = new_random_token()
    set_session_cookie(response, token)
    set_csrf_cookie(response, csrf)

    session.commit()
    response.headers["Cache-Control"] = "no-store"

    return LoginResponse(user=user, session=auth_session, csrf_token=csrf)


@router.get("/me", response_model=MeResponse)
def me(auth: tuple[AuthSession, User] = Depends(require_session)) -> MeResponse:
    auth_session, user = auth
    return MeResponse(user=user, session=auth_session)


@router.post("/logout")
def logout(
    response: Response,
    auth: tuple[AuthSession, User] = Depends(require_session),
    session: Session = Depends(get_session),
) -> dict[str, str]:
    auth_session, user = auth
    revoke_session(session=session, auth_session=auth_session, reason="logout")
    log_event(
        session=session,
        actor_user_id=user.id,
        event_type="auth.logout",
        event_data={"method": auth_session.method},
    )
    session.commit()

    clear_session_cookie(response)
    clear_csrf_cookie(response)
    response.headers["Cache-Control"] = "no-store"
    return {"status": "ok"}
