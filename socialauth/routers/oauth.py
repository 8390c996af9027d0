from __future__ import annotations

from urllib.parse import urlencode

import httpx
from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from socialauth.core.clock import Clock, get_clock
from socialauth.core.config import get_settings
from socialauth.core.deps import get_registry, optional_session_user, require_csrf_header, require_session
from socialauth.core.errors import oauth_http_exception
from socialauth.core.http import get_http_client
from socialauth.core.middleware import client_ip
from socialauth.core.security import new_random_token, set_csrf_cookie, set_session_cookie
from socialauth.db.session import get_session
from socialauth.models.auth import AuthSession
from socialauth.models.enums import StateIntent
from socialauth.models.identity import User
from socialauth.schemas.oauth import (
    AuthorizeResponse,
    BindingOut,
    CallbackResponse,
    ProviderOut,
    RefreshResponse,
)
from socialauth.services.oauth.bindings import find_user_binding, list_user_bindings
from socialauth.services.oauth.errors import OAuthError
from socialauth.services.oauth.maintenance import refresh_user_tokens
from socialauth.services.oauth.orchestrator import (
    AuthorizationRequest,
    FlowPolicy,
    available_providers,
    begin_authorization,
    handle_provider_callback,
    unbind,
)
from socialauth.services.oauth.providers.registry import ProviderRegistry

router = APIRouter(prefix="/oauth", tags=["oauth"], dependencies=[Depends(require_csrf_header)])


def _wants_html(request: Request) -> bool:
    return "text/html" in (request.headers.get("accept") or "")


def _authorize_response(request: Request, auth: AuthorizationRequest) -> AuthorizeResponse | RedirectResponse:
    if _wants_html(request):
        return RedirectResponse(
            url=auth.authorization_url,
            status_code=status.HTTP_303_SEE_OTHER,
            headers={"Cache-Control": "no-store"},
        )
    return AuthorizeResponse(
        provider=auth.provider,
        authorization_url=auth.authorization_url,
        state=auth.state,
        expires_at=auth.expires_at,
    )


@router.get("/providers", response_model=list[ProviderOut])
def providers_list(
    user: User | None = Depends(optional_session_user),
    session: Session = Depends(get_session),
    registry: ProviderRegistry = Depends(get_registry),
) -> list[ProviderOut]:
    items = available_providers(
        session=session, registry=registry, user_id=user.id if user else None
    )
    return [
        ProviderOut(
            name=p.name,
            display_name=p.display_name,
            supports_refresh=p.supports_refresh,
            is_bound=p.is_bound,
        )
        for p in items
    ]


@router.get("/bindings", response_model=list[BindingOut])
def bindings_list(
    auth: tuple[AuthSession, User] = Depends(require_session),
    session: Session = Depends(get_session),
) -> list[BindingOut]:
    _, user = auth
    return list_user_bindings(session=session, user_id=user.id)


@router.delete("/bindings/{provider}")
def bindings_delete(
    provider: str,
    auth: tuple[AuthSession, User] = Depends(require_session),
    session: Session = Depends(get_session),
    registry: ProviderRegistry = Depends(get_registry),
) -> dict[str, str]:
    _, user = auth
    try:
        removed = unbind(session=session, registry=registry, user_id=user.id, provider=provider)
    except OAuthError as e:
        raise oauth_http_exception(e) from e
    if not removed:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Binding not found")
    session.commit()
    return {"status": "unbound", "provider": provider}


@router.post("/bindings/{provider}/refresh", response_model=RefreshResponse)
def bindings_refresh(
    provider: str,
    auth: tuple[AuthSession, User] = Depends(require_session),
    session: Session = Depends(get_session),
    clock: Clock = Depends(get_clock),
    registry: ProviderRegistry = Depends(get_registry),
    http_client: httpx.Client = Depends(get_http_client),
) -> RefreshResponse:
    _, user = auth
    try:
        result = refresh_user_tokens(
            session=session,
            clock=clock,
            registry=registry,
            http_client=http_client,
            user_id=user.id,
            provider=provider,
        )
    except OAuthError as e:
        raise oauth_http_exception(e) from e
    session.commit()

    binding = find_user_binding(session=session, user_id=user.id, provider=provider)
    return RefreshResponse(
        provider=provider,
        outcome=result.outcome.value,
        reason=result.reason,
        token_expires_at=binding.token_expires_at if binding else None,
    )


@router.get("/{provider}/authorize", response_model=AuthorizeResponse)
def oauth_authorize(
    provider: str,
    request: Request,
    redirect_to: str | None = None,
    session: Session = Depends(get_session),
    clock: Clock = Depends(get_clock),
    registry: ProviderRegistry = Depends(get_registry),
    http_client: httpx.Client = Depends(get_http_client),
):  # type: ignore[no-untyped-def]
    try:
        auth = begin_authorization(
            session=session,
            clock=clock,
            registry=registry,
            http_client=http_client,
            provider=provider,
            intent=StateIntent.login,
            user_id=None,
            redirect_to=redirect_to,
            client_ip=client_ip(request),
            user_agent=request.headers.get("user-agent"),
            policy=FlowPolicy.from_settings(get_settings()),
        )
    except OAuthError as e:
        raise oauth_http_exception(e) from e
    session.commit()
    return _authorize_response(request, auth)


@router.post("/{provider}/bind", response_model=AuthorizeResponse)
def oauth_bind(
    provider: str,
    request: Request,
    redirect_to: str | None = None,
    auth: tuple[AuthSession, User] = Depends(require_session),
    session: Session = Depends(get_session),
    clock: Clock = Depends(get_clock),
    registry: ProviderRegistry = Depends(get_registry),
    http_client: httpx.Client = Depends(get_http_client),
) -> AuthorizeResponse:
    _, user = auth
    try:
        auth_request = begin_authorization(
            session=session,
            clock=clock,
            registry=registry,
            http_client=http_client,
            provider=provider,
            intent=StateIntent.bind,
            user_id=user.id,
            redirect_to=redirect_to,
            client_ip=client_ip(request),
            user_agent=request.headers.get("user-agent"),
            policy=FlowPolicy.from_settings(get_settings()),
        )
    except OAuthError as e:
        raise oauth_http_exception(e) from e
    session.commit()
    return AuthorizeResponse(
        provider=auth_request.provider,
        authorization_url=auth_request.authorization_url,
        state=auth_request.state,
        expires_at=auth_request.expires_at,
    )


@router.get("/{provider}/callback", response_model=CallbackResponse)
def oauth_callback(
    provider: str,
    request: Request,
    response: Response,
    state: str | None = None,
    code: str | None = None,
    error: str | None = None,
    session: Session = Depends(get_session),
    clock: Clock = Depends(get_clock),
    registry: ProviderRegistry = Depends(get_registry),
    http_client: httpx.Client = Depends(get_http_client),
):  # type: ignore[no-untyped-def]
    if error:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"OAuth error: {error[:100]}")
    if not code:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing OAuth code")
    if not state:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing OAuth state")

    try:
        result = handle_provider_callback(
            session=session,
            clock=clock,
            registry=registry,
            http_client=http_client,
            provider=provider,
            code=code,
            state=state,
            client_ip=client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
    except OAuthError as e:
        raise oauth_http_exception(e) from e
    session.commit()

    settings = get_settings()
    login = result.login
    csrf = new_random_token() if login is not None else None
    outcome = "logged_in" if login is not None else "bound"

    if _wants_html(request):
        target = result.redirect_to or "/oauth/complete"
        query = urlencode({"provider": provider, "status": outcome})
        sep = "&" if "?" in target else "?"
        redirect = RedirectResponse(
            url=f"{settings.FRONTEND_URL}{target}{sep}{query}",
            status_code=status.HTTP_303_SEE_OTHER,
            headers={"Cache-Control": "no-store"},
        )
        if login is not None and csrf is not None:
            set_session_cookie(redirect, login.session_token)
            set_csrf_cookie(redirect, csrf)
        return redirect

    response.headers["Cache-Control"] = "no-store"
    if login is not None and csrf is not None:
        set_session_cookie(response, login.session_token)
        set_csrf_cookie(response, csrf)
        return CallbackResponse(
            status="logged_in",
            provider=provider,
            binding=BindingOut.model_validate(result.binding),
            redirect_to=result.redirect_to,
            user=login.user,
            session=login.auth_session,
            csrf_token=csrf,
        )
    return CallbackResponse(
        status="bound",
        provider=provider,
        binding=BindingOut.model_validate(result.binding),
        redirect_to=result.redirect_to,
    )
