from __future__ import annotations

from datetime import timedelta
from urllib.parse import parse_qs

import httpx
import pytest
from sqlalchemy.orm import Session

from socialauth.models.enums import BindingStatus, RefreshOutcome
from socialauth.services.oauth import maintenance
from socialauth.services.oauth.bindings import (
    binding_tokens,
    create_or_update_binding,
    set_binding_status,
)
from socialauth.services.oauth.errors import FlowError
from socialauth.services.oauth.maintenance import (
    MaintenancePolicy,
    oauth_stats,
    refresh_binding_tokens,
    refresh_expiring_tokens,
    refresh_user_tokens,
    run_maintenance,
)
from socialauth.services.oauth.providers.base import NormalizedProfile, TokenBundle
from socialauth.services.oauth.state_store import issue_state


def _no_network(request: httpx.Request) -> httpx.Response:
    raise AssertionError(f"unexpected request to {request.url}")


def _client(handler) -> httpx.Client:
    return httpx.Client(transport=httpx.MockTransport(handler), timeout=10.0)


def _seed_binding(
    db_session: Session,
    clock,
    user_id,
    *,
    provider: str = "acme",
    uid: str = "u1",
    refresh: str | None = "r1",
    expires_in: int | None = 600,
):
    binding = create_or_update_binding(
        session=db_session,
        clock=clock,
        user_id=user_id,
        provider=provider,
        profile=NormalizedProfile(
            id=uid, username=uid, display_name=None, email=None, avatar_url=None, raw={}
        ),
        tokens=TokenBundle(access_token="tok1", refresh_token=refresh, expires_in=expires_in),
        client_ip=None,
    )
    db_session.commit()
    return binding


def test_refresh_rotates_tokens_and_keeps_refresh_token(
    db_session: Session, clock, registry, configure_provider, make_user
) -> None:
    configure_provider("acme")
    user = make_user("owner@example.com")
    binding = _seed_binding(db_session, clock, user.id)
    forms: list[dict[str, str]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        forms.append({k: v[0] for k, v in parse_qs(request.content.decode("utf-8")).items()})
        return httpx.Response(200, json={"access_token": "tok2", "expires_in": 7200})

    clock.advance(minutes=5)
    result = refresh_binding_tokens(
        session=db_session, clock=clock, registry=registry, http_client=_client(handler), binding=binding
    )

    assert result.outcome == RefreshOutcome.refreshed
    assert forms == [{"grant_type": "refresh_token", "refresh_token": "r1", "client_id": "acme-client"}]
    tokens = binding_tokens(binding)
    assert tokens.access_token == "tok2"
    assert tokens.refresh_token == "r1"
    assert binding.token_expires_at == clock.now() + timedelta(seconds=7200)


def test_unsupported_provider_never_touches_network(
    db_session: Session, clock, registry, configure_provider, make_user
) -> None:
    configure_provider("github")
    user = make_user("owner@example.com")
    binding = _seed_binding(db_session, clock, user.id, provider="github")

    result = refresh_binding_tokens(
        session=db_session, clock=clock, registry=registry, http_client=_client(_no_network), binding=binding
    )
    assert result.outcome == RefreshOutcome.unsupported
    assert "github" in (result.reason or "")


def test_refresh_failure_is_recorded_on_binding(
    db_session: Session, clock, registry, configure_provider, make_user
) -> None:
    configure_provider("acme")
    user = make_user("owner@example.com")
    binding = _seed_binding(db_session, clock, user.id)

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": "invalid_grant", "error_description": "refresh revoked"})

    result = refresh_binding_tokens(
        session=db_session, clock=clock, registry=registry, http_client=_client(handler), binding=binding
    )
    assert result.outcome == RefreshOutcome.failed
    assert "refresh revoked" in (binding.last_refresh_error or "")
    assert binding_tokens(binding).access_token == "tok1"


def test_refresh_skips_when_not_applicable(
    db_session: Session, clock, registry, configure_provider, make_user
) -> None:
    configure_provider("acme", enabled=False)
    user = make_user("owner@example.com")
    other = make_user("other@example.com")
    no_refresh = _seed_binding(db_session, clock, user.id, refresh=None)
    provider_off = _seed_binding(db_session, clock, other.id, uid="u2")
    http_client = _client(_no_network)

    for binding in (no_refresh, provider_off):
        result = refresh_binding_tokens(
            session=db_session, clock=clock, registry=registry, http_client=http_client, binding=binding
        )
        assert result.outcome == RefreshOutcome.skipped

    set_binding_status(
        session=db_session, clock=clock, binding=provider_off, target=BindingStatus.disabled, actor_user_id=None
    )
    result = refresh_binding_tokens(
        session=db_session, clock=clock, registry=registry, http_client=http_client, binding=provider_off
    )
    assert result.reason == "binding is disabled"


def test_refresh_user_tokens_requires_binding(
    db_session: Session, clock, registry, make_user
) -> None:
    user = make_user("owner@example.com")
    with pytest.raises(FlowError, match="no gitee binding"):
        refresh_user_tokens(
            session=db_session,
            clock=clock,
            registry=registry,
            http_client=_client(_no_network),
            user_id=user.id,
            provider="gitee",
        )


def test_run_maintenance_sweeps_and_purges(
    db_session: Session, clock, registry, configure_provider, make_user
) -> None:
    configure_provider("acme")
    configure_provider("github")
    alice = make_user("alice@example.com")
    bob = make_user("bob@example.com")

    issue_state(
        session=db_session,
        clock=clock,
        provider="acme",
        user_id=None,
        payload={"intent": "login"},
        client_ip=None,
        user_agent=None,
    )
    _seed_binding(db_session, clock, alice.id, uid="due", expires_in=600)
    _seed_binding(db_session, clock, alice.id, provider="github", uid="gh", expires_in=600)
    stale = _seed_binding(db_session, clock, bob.id, uid="stale", expires_in=None)
    set_binding_status(
        session=db_session, clock=clock, binding=stale, target=BindingStatus.disabled, actor_user_id=None
    )
    db_session.commit()

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"access_token": "tok2", "refresh_token": "r2", "expires_in": 3600})

    clock.advance(days=91)
    # Tokens expired during the gap are not refresh candidates.
    policy = MaintenancePolicy(disabled_binding_retention=timedelta(days=90))
    report = run_maintenance(
        session=db_session,
        clock=clock,
        registry=registry,
        http_client=_client(handler),
        policy=policy,
    )
    db_session.commit()

    assert report.states_expired == 1
    assert report.states_deleted == 1
    assert report.bindings_purged == 1
    assert report.refresh_counts() == {"refreshed": 0, "unsupported": 0, "skipped": 0, "failed": 0}

    stats = oauth_stats(session=db_session, clock=clock)
    assert stats.total_bindings == 2
    assert stats.states.total == 0


def test_run_maintenance_refresh_outcomes(
    db_session: Session, clock, registry, configure_provider, make_user
) -> None:
    configure_provider("acme")
    configure_provider("github")
    user = make_user("alice@example.com")
    acme = _seed_binding(db_session, clock, user.id, uid="due", expires_in=600)
    _seed_binding(db_session, clock, user.id, provider="github", uid="gh", expires_in=300)
    _seed_binding(db_session, clock, user.id, provider="gitee", uid="later", expires_in=86400)

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.host == "acme.test"
        return httpx.Response(200, json={"access_token": "tok2", "refresh_token": "r2", "expires_in": 3600})

    report = run_maintenance(
        session=db_session, clock=clock, registry=registry, http_client=_client(handler)
    )

    assert report.refresh_counts() == {"refreshed": 1, "unsupported": 1, "skipped": 0, "failed": 0}
    assert [r.provider for r in report.refresh_results] == ["github", "acme"]
    assert binding_tokens(acme).refresh_token == "r2"


def test_malformed_refresh_response_fails_one_binding_only(
    db_session: Session, clock, registry, configure_provider, make_user
) -> None:
    configure_provider("acme")
    alice = make_user("alice@example.com")
    bob = make_user("bob@example.com")
    broken = _seed_binding(db_session, clock, alice.id, uid="broken", refresh="r-broken", expires_in=300)
    healthy = _seed_binding(db_session, clock, bob.id, uid="healthy", refresh="r-healthy", expires_in=600)

    def handler(request: httpx.Request) -> httpx.Response:
        form = parse_qs(request.content.decode("utf-8"))
        if form["refresh_token"] == ["r-broken"]:
            return httpx.Response(200, json={"access_token": "new", "refresh_token": 12345})
        return httpx.Response(200, json={"access_token": "tok2", "expires_in": 3600})

    results = refresh_expiring_tokens(
        session=db_session,
        clock=clock,
        registry=registry,
        http_client=_client(handler),
        lookahead=timedelta(hours=1),
        limit=10,
    )

    assert [(r.binding_id, r.result.outcome) for r in results] == [
        (broken.id, RefreshOutcome.failed),
        (healthy.id, RefreshOutcome.refreshed),
    ]
    assert "refresh_token" in (broken.last_refresh_error or "")
    assert binding_tokens(broken).access_token == "tok1"
    assert binding_tokens(healthy).access_token == "tok2"


def test_unexpected_refresh_crash_is_recorded_and_batch_continues(
    db_session: Session, clock, registry, configure_provider, make_user, monkeypatch: pytest.MonkeyPatch
) -> None:
    configure_provider("acme")
    alice = make_user("alice@example.com")
    bob = make_user("bob@example.com")
    first = _seed_binding(db_session, clock, alice.id, uid="first", expires_in=300)
    second = _seed_binding(db_session, clock, bob.id, uid="second", expires_in=600)

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"access_token": "tok2", "expires_in": 3600})

    calls: list[str] = []
    original = maintenance.refresh_binding_tokens

    def flaky_refresh(**kwargs):
        calls.append(kwargs["binding"].provider_user_id)
        if kwargs["binding"].id == first.id:
            raise RuntimeError("disk full")
        return original(**kwargs)

    monkeypatch.setattr(maintenance, "refresh_binding_tokens", flaky_refresh)
    results = refresh_expiring_tokens(
        session=db_session,
        clock=clock,
        registry=registry,
        http_client=_client(handler),
        lookahead=timedelta(hours=1),
        limit=10,
    )

    assert calls == ["first", "second"]
    assert [r.result.outcome for r in results] == [RefreshOutcome.failed, RefreshOutcome.refreshed]
    assert results[0].result.reason == "RuntimeError"
    assert binding_tokens(second).access_token == "tok2"
