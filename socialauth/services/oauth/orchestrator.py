"""OAuth flows: begin authorization, callback (bind or login), unbind.

Flows are stateless between requests. The only cross-request coordination is
the persisted state row, which is consumed and committed before any provider
network call so a slow provider never holds a row lock.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

import httpx
from sqlalchemy.orm import Session

from socialauth.core.clock import Clock
from socialauth.core.config import Settings
from socialauth.core.logs import log_json, oauth_logger
from socialauth.core.metrics import observe_oauth_flow
from socialauth.models.auth import AuthSession
from socialauth.models.enums import StateIntent
from socialauth.models.identity import User
from socialauth.models.oauth import OAuthAccount
from socialauth.services.audit import log_event
from socialauth.services.auth.sessions import create_session_for_user
from socialauth.services.oauth.bindings import (
    create_or_update_binding,
    list_user_bindings,
    remove_binding,
)
from socialauth.services.oauth.errors import AdapterError, FlowError, OAuthError, StateError
from socialauth.services.oauth.provider_configs import (
    credentials_for,
    list_provider_configs,
    load_enabled_provider,
)
from socialauth.services.oauth.providers.base import NormalizedProfile, ProviderAdapter, TokenBundle
from socialauth.services.oauth.providers.registry import ProviderRegistry
from socialauth.services.oauth.state_store import (
    ConsumedState,
    IssueLimits,
    check_issue_rate_limit,
    issue_state,
    validate_and_consume_state,
)


@dataclass(frozen=True)
class FlowPolicy:
    state_ttl: timedelta = timedelta(minutes=15)
    limits: IssueLimits = IssueLimits()

    @classmethod
    def from_settings(cls, settings: Settings) -> FlowPolicy:
        return cls(
            state_ttl=timedelta(seconds=settings.OAUTH_STATE_TTL_SECONDS),
            limits=IssueLimits(
                window=timedelta(seconds=settings.OAUTH_RATE_LIMIT_WINDOW_SECONDS),
                per_user=settings.OAUTH_RATE_LIMIT_PER_USER,
                per_ip=settings.OAUTH_RATE_LIMIT_PER_IP,
            ),
        )


@dataclass(frozen=True)
class AuthorizationRequest:
    provider: str
    authorization_url: str
    state: str
    expires_at: datetime


@dataclass(frozen=True)
class LoginResult:
    user: User
    binding: OAuthAccount
    session_token: str
    auth_session: AuthSession


@dataclass(frozen=True)
class CallbackResult:
    intent: StateIntent
    binding: OAuthAccount
    redirect_to: str | None
    login: LoginResult | None = None


@dataclass(frozen=True)
class AvailableProvider:
    name: str
    display_name: str
    supports_refresh: bool
    is_bound: bool | None


@contextmanager
def _observe_flow(*, provider: str, flow: str) -> Iterator[None]:
    try:
        yield
    except OAuthError as e:
        observe_oauth_flow(provider=provider, flow=flow, outcome=type(e).__name__)
        log_json(
            oauth_logger,
            f"oauth.{flow}.failed",
            level=logging.WARNING,
            flow=flow,
            **e.diagnostics(),
        )
        raise
    observe_oauth_flow(provider=provider, flow=flow, outcome="success")


def safe_redirect_target(value: str | None) -> str | None:
    if not value:
        return None
    target = value.strip()
    # Only same-site paths; "//host" and "/\\host" are protocol-relative in browsers.
    if not target.startswith("/") or target.startswith(("//", "/\\")):
        return None
    return target[:512]


def resolve_adapter(
    *,
    session: Session,
    registry: ProviderRegistry,
    http_client: httpx.Client,
    provider: str,
) -> ProviderAdapter:
    registry.adapter_class(provider)
    config = load_enabled_provider(session=session, name=provider)
    return registry.create(provider, credentials=credentials_for(config), client=http_client)


def begin_authorization(
    *,
    session: Session,
    clock: Clock,
    registry: ProviderRegistry,
    http_client: httpx.Client,
    provider: str,
    intent: StateIntent,
    user_id: UUID | None,
    redirect_to: str | None,
    client_ip: str | None,
    user_agent: str | None,
    policy: FlowPolicy | None = None,
) -> AuthorizationRequest:
    policy = policy or FlowPolicy()
    if intent == StateIntent.bind and user_id is None:
        raise StateError(
            "Bind intent requires a signed-in user",
            provider=provider,
            public_message="Sign in before linking an account",
        )

    state_user_id = user_id if intent == StateIntent.bind else None
    with _observe_flow(provider=provider, flow="authorize"):
        # Throttled clients are refused before any provider lookup.
        check_issue_rate_limit(
            session=session,
            clock=clock,
            provider=provider,
            user_id=state_user_id,
            client_ip=client_ip,
            limits=policy.limits,
        )
        adapter = resolve_adapter(
            session=session, registry=registry, http_client=http_client, provider=provider
        )
        row = issue_state(
            session=session,
            clock=clock,
            provider=provider,
            user_id=state_user_id,
            payload={"intent": intent.value, "redirect_to": safe_redirect_target(redirect_to)},
            client_ip=client_ip,
            user_agent=user_agent,
            ttl=policy.state_ttl,
            limits=policy.limits,
        )
        url = adapter.build_authorization_url(state=row.state)

    log_json(
        oauth_logger,
        "oauth.authorize.issued",
        provider=provider,
        intent=intent.value,
        user_id=user_id,
        state_id=row.id,
    )
    return AuthorizationRequest(
        provider=provider,
        authorization_url=url,
        state=row.state,
        expires_at=row.expires_at,
    )


def _consume(
    *,
    session: Session,
    clock: Clock,
    provider: str,
    state: str,
    expected: StateIntent | None,
) -> tuple[ConsumedState, StateIntent]:
    consumed = validate_and_consume_state(
        session=session, clock=clock, state=state, provider=provider
    )
    # Persist USED (or EXPIRED) before talking to the provider.
    session.commit()
    if consumed is None:
        raise StateError("OAuth state is unknown, expired, or already used", provider=provider)

    try:
        intent = StateIntent(consumed.payload.get("intent") or StateIntent.login)
    except ValueError as e:
        raise StateError("OAuth state carries an unknown intent", provider=provider) from e
    if expected is not None and intent != expected:
        raise StateError(
            f"OAuth state was issued for {intent.value}, not {expected.value}",
            provider=provider,
            context={"state_id": str(consumed.id)},
        )
    if intent == StateIntent.bind and consumed.user_id is None:
        raise StateError("Bind state has no pending user", provider=provider)
    return consumed, intent


def _exchange(adapter: ProviderAdapter, code: str) -> tuple[TokenBundle, NormalizedProfile]:
    try:
        tokens = adapter.exchange_code(code)
    except AdapterError as e:
        raise FlowError.from_adapter_error(e, stage="exchange_code") from e
    try:
        profile = adapter.fetch_user_info(tokens)
    except AdapterError as e:
        raise FlowError.from_adapter_error(e, stage="fetch_user_info") from e
    return tokens, profile


def _complete_bind(
    *,
    session: Session,
    clock: Clock,
    registry: ProviderRegistry,
    http_client: httpx.Client,
    provider: str,
    code: str,
    consumed: ConsumedState,
    client_ip: str | None,
) -> OAuthAccount:
    adapter = resolve_adapter(
        session=session, registry=registry, http_client=http_client, provider=provider
    )
    tokens, profile = _exchange(adapter, code)
    binding = create_or_update_binding(
        session=session,
        clock=clock,
        user_id=consumed.user_id,
        provider=provider,
        profile=profile,
        tokens=tokens,
        client_ip=client_ip,
    )
    log_json(
        oauth_logger,
        "oauth.bind.completed",
        provider=provider,
        user_id=binding.user_id,
        binding_id=binding.id,
    )
    return binding


def _complete_login(
    *,
    session: Session,
    clock: Clock,
    registry: ProviderRegistry,
    http_client: httpx.Client,
    provider: str,
    code: str,
    client_ip: str | None,
    user_agent: str | None,
) -> LoginResult:
    adapter = resolve_adapter(
        session=session, registry=registry, http_client=http_client, provider=provider
    )
    tokens, profile = _exchange(adapter, code)
    binding = create_or_update_binding(
        session=session,
        clock=clock,
        user_id=None,
        provider=provider,
        profile=profile,
        tokens=tokens,
        client_ip=client_ip,
    )

    user = session.get(User, binding.user_id)
    if user is None or user.is_disabled:
        raise FlowError(
            f"Local user {binding.user_id} is missing or disabled",
            provider=provider,
            public_message="This account has been disabled",
            context={"binding_id": str(binding.id)},
        )

    token, auth_session = create_session_for_user(
        session=session, user=user, method=f"oauth:{provider}", now=clock.now()
    )
    log_event(
        session=session,
        actor_user_id=user.id,
        event_type="auth.oauth_login",
        event_data={
            "provider": provider,
            "binding_id": str(binding.id),
            "client_ip": client_ip,
            "user_agent": (user_agent or "")[:200] or None,
        },
    )
    return LoginResult(user=user, binding=binding, session_token=token, auth_session=auth_session)


def handle_callback(
    *,
    session: Session,
    clock: Clock,
    registry: ProviderRegistry,
    http_client: httpx.Client,
    provider: str,
    code: str,
    state: str,
    client_ip: str | None,
) -> OAuthAccount:
    with _observe_flow(provider=provider, flow="bind"):
        consumed, _ = _consume(
            session=session, clock=clock, provider=provider, state=state, expected=StateIntent.bind
        )
        return _complete_bind(
            session=session,
            clock=clock,
            registry=registry,
            http_client=http_client,
            provider=provider,
            code=code,
            consumed=consumed,
            client_ip=client_ip,
        )


def handle_login(
    *,
    session: Session,
    clock: Clock,
    registry: ProviderRegistry,
    http_client: httpx.Client,
    provider: str,
    code: str,
    state: str,
    client_ip: str | None,
    user_agent: str | None,
) -> LoginResult:
    with _observe_flow(provider=provider, flow="login"):
        _consume(
            session=session, clock=clock, provider=provider, state=state, expected=StateIntent.login
        )
        return _complete_login(
            session=session,
            clock=clock,
            registry=registry,
            http_client=http_client,
            provider=provider,
            code=code,
            client_ip=client_ip,
            user_agent=user_agent,
        )


def handle_provider_callback(
    *,
    session: Session,
    clock: Clock,
    registry: ProviderRegistry,
    http_client: httpx.Client,
    provider: str,
    code: str,
    state: str,
    client_ip: str | None,
    user_agent: str | None,
) -> CallbackResult:
    registry.adapter_class(provider)
    with _observe_flow(provider=provider, flow="callback"):
        consumed, intent = _consume(
            session=session, clock=clock, provider=provider, state=state, expected=None
        )
        redirect_to = safe_redirect_target(consumed.payload.get("redirect_to"))

        if intent == StateIntent.bind:
            binding = _complete_bind(
                session=session,
                clock=clock,
                registry=registry,
                http_client=http_client,
                provider=provider,
                code=code,
                consumed=consumed,
                client_ip=client_ip,
            )
            return CallbackResult(intent=intent, binding=binding, redirect_to=redirect_to)

        login = _complete_login(
            session=session,
            clock=clock,
            registry=registry,
            http_client=http_client,
            provider=provider,
            code=code,
            client_ip=client_ip,
            user_agent=user_agent,
        )
        return CallbackResult(
            intent=intent, binding=login.binding, redirect_to=redirect_to, login=login
        )


def unbind(*, session: Session, registry: ProviderRegistry, user_id: UUID, provider: str) -> bool:
    registry.adapter_class(provider)
    removed = remove_binding(session=session, user_id=user_id, provider=provider)
    if removed:
        log_json(oauth_logger, "oauth.unbind.completed", provider=provider, user_id=user_id)
    return removed


def available_providers(
    *, session: Session, registry: ProviderRegistry, user_id: UUID | None
) -> list[AvailableProvider]:
    bound: set[str] | None = None
    if user_id is not None:
        bound = {b.provider for b in list_user_bindings(session=session, user_id=user_id)}

    out: list[AvailableProvider] = []
    for config in list_provider_configs(session=session, enabled_only=True):
        if not registry.is_registered(config.name):
            continue
        info = registry.describe(config.name)
        out.append(
            AvailableProvider(
                name=config.name,
                display_name=config.display_name or info.display_name,
                supports_refresh=info.supports_refresh,
                is_bound=None if bound is None else config.name in bound,
            )
        )
    return out
