from __future__ import annotations

from collections.abc import Generator
from urllib.parse import parse_qs, urlsplit

import httpx
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from socialauth.core.clock import get_clock
from socialauth.core.config import get_settings
from socialauth.core.deps import get_registry
from socialauth.core.http import get_http_client
from socialauth.main import create_app
from socialauth.models.oauth import OAuthAccount


def _get_csrf(client: TestClient) -> str:
    res = client.get("/auth/csrf")
    assert res.status_code == 200
    return res.json()["csrf_token"]


def _dev_login(client: TestClient, *, email: str, is_admin: bool = False) -> dict:
    csrf = _get_csrf(client)
    res = client.post(
        "/auth/dev/login",
        json={"email": email, "is_admin": is_admin},
        headers={"x-csrf-token": csrf},
    )
    assert res.status_code == 200
    return res.json()


def _acme_handler(*, remote_id: str = "u1", fail_token: bool = False):
    def handler(request: httpx.Request) -> httpx.Response:
        if str(request.url) == "https://acme.test/oauth/token":
            if fail_token:
                return httpx.Response(503, json={"error": "temporarily_unavailable"})
            return httpx.Response(
                200,
                json={
                    "access_token": "tok1",
                    "refresh_token": "r1",
                    "expires_in": 3600,
                    "token_type": "Bearer",
                },
            )
        if str(request.url) == "https://acme.test/api/me":
            return httpx.Response(200, json={"id": remote_id, "login": "acme-user"})
        return httpx.Response(404, json={"error": "not_found"})

    return handler


def _make_app(clock, registry, handler) -> FastAPI:
    app = create_app()
    http_client = httpx.Client(transport=httpx.MockTransport(handler), timeout=10.0)

    def override_http_client() -> Generator[httpx.Client, None, None]:
        try:
            yield http_client
        finally:
            pass

    app.dependency_overrides[get_http_client] = override_http_client
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_registry] = lambda: registry
    return app


def _state(url: str) -> str:
    return parse_qs(urlsplit(url).query)["state"][0]


def test_bind_then_login_over_http(clock, registry, configure_provider, db_session: Session) -> None:
    configure_provider("acme")
    app = _make_app(clock, registry, _acme_handler())
    client = TestClient(app)

    login = _dev_login(client, email="owner@example.com")
    csrf = login["csrf_token"]

    start = client.post("/oauth/acme/bind", headers={"x-csrf-token": csrf})
    assert start.status_code == 200, start.text
    body = start.json()
    assert body["authorization_url"].startswith("https://acme.test/oauth/authorize?")
    assert _state(body["authorization_url"]) == body["state"]

    cb = client.get("/oauth/acme/callback", params={"code": "c1", "state": body["state"]})
    assert cb.status_code == 200, cb.text
    assert cb.headers["cache-control"] == "no-store"
    payload = cb.json()
    assert payload["status"] == "bound"
    assert payload["binding"]["provider_user_id"] == "u1"
    assert payload["user"] is None

    bindings = client.get("/oauth/bindings")
    assert bindings.status_code == 200
    items = bindings.json()
    assert [b["provider"] for b in items] == ["acme"]
    assert "encrypted_access_token" not in items[0]
    assert "tok1" not in bindings.text

    anon = TestClient(app)
    auth = anon.get("/oauth/acme/authorize", params={"redirect_to": "/welcome"})
    assert auth.status_code == 200, auth.text
    logged_in = anon.get(
        "/oauth/acme/callback", params={"code": "c2", "state": auth.json()["state"]}
    )
    assert logged_in.status_code == 200, logged_in.text
    result = logged_in.json()
    assert result["status"] == "logged_in"
    assert result["redirect_to"] == "/welcome"
    assert result["user"]["email"] == "owner@example.com"
    assert result["session"]["method"] == "oauth:acme"
    assert result["csrf_token"]

    me = anon.get("/auth/me")
    assert me.status_code == 200
    assert me.json()["user"]["email"] == "owner@example.com"


def test_callback_rejects_errors_and_bad_state(clock, registry, configure_provider) -> None:
    configure_provider("acme")
    client = TestClient(_make_app(clock, registry, _acme_handler()))

    denied = client.get("/oauth/acme/callback", params={"error": "access_denied", "state": "x"})
    assert denied.status_code == 400
    assert denied.json()["detail"] == "OAuth error: access_denied"

    missing_code = client.get("/oauth/acme/callback", params={"state": "x"})
    assert missing_code.status_code == 400
    assert missing_code.json()["detail"] == "Missing OAuth code"

    missing_state = client.get("/oauth/acme/callback", params={"code": "c"})
    assert missing_state.status_code == 400

    forged = client.get("/oauth/acme/callback", params={"code": "c", "state": "forged"})
    assert forged.status_code == 400
    assert forged.json()["detail"] == "Invalid or expired OAuth state"

    unknown = client.get("/oauth/myspace/authorize")
    assert unknown.status_code == 404


def test_browser_flow_redirects_to_provider_and_frontend(clock, registry, configure_provider) -> None:
    configure_provider("acme")
    app = _make_app(clock, registry, _acme_handler())
    client = TestClient(app)
    _dev_login(client, email="owner@example.com")
    csrf = client.cookies.get(get_settings().CSRF_COOKIE_NAME)
    bind = client.post("/oauth/acme/bind", headers={"x-csrf-token": csrf})
    client.get("/oauth/acme/callback", params={"code": "c1", "state": bind.json()["state"]})

    browser = TestClient(app)
    html = {"accept": "text/html,application/xhtml+xml"}
    go = browser.get("/oauth/acme/authorize", headers=html, follow_redirects=False)
    assert go.status_code == 303
    location = go.headers["location"]
    assert location.startswith("https://acme.test/oauth/authorize?")

    back = browser.get(
        "/oauth/acme/callback",
        params={"code": "c2", "state": _state(location)},
        headers=html,
        follow_redirects=False,
    )
    assert back.status_code == 303
    assert back.headers["location"] == (
        f"{get_settings().FRONTEND_URL}/oauth/complete?provider=acme&status=logged_in"
    )
    assert get_settings().SESSION_COOKIE_NAME in back.headers.get("set-cookie", "")


def test_flow_errors_map_to_http_statuses(
    clock, registry, configure_provider, db_session: Session
) -> None:
    configure_provider("acme")
    app = _make_app(clock, registry, _acme_handler())

    alice = TestClient(app)
    alice_csrf = _dev_login(alice, email="alice@example.com")["csrf_token"]
    state = alice.post("/oauth/acme/bind", headers={"x-csrf-token": alice_csrf}).json()["state"]
    assert alice.get("/oauth/acme/callback", params={"code": "c", "state": state}).status_code == 200

    bob = TestClient(app)
    bob_csrf = _dev_login(bob, email="bob@example.com")["csrf_token"]
    state = bob.post("/oauth/acme/bind", headers={"x-csrf-token": bob_csrf}).json()["state"]
    conflict = bob.get("/oauth/acme/callback", params={"code": "c", "state": state})
    assert conflict.status_code == 409
    assert conflict.json()["detail"] == "This account is already linked to another user"

    stranger_app = _make_app(clock, registry, _acme_handler(remote_id="stranger"))
    stranger = TestClient(stranger_app)
    state = stranger.get("/oauth/acme/authorize").json()["state"]
    unbound = stranger.get("/oauth/acme/callback", params={"code": "c", "state": state})
    assert unbound.status_code == 400
    assert "register first or bind" in unbound.json()["detail"]

    down = TestClient(_make_app(clock, registry, _acme_handler(fail_token=True)))
    state = down.get("/oauth/acme/authorize").json()["state"]
    bad_gateway = down.get("/oauth/acme/callback", params={"code": "c", "state": state})
    assert bad_gateway.status_code == 502

    total = db_session.execute(select(func.count()).select_from(OAuthAccount)).scalar_one()
    assert total == 1


def test_authorize_is_rate_limited_per_ip(clock, registry, configure_provider) -> None:
    configure_provider("acme")
    client = TestClient(_make_app(clock, registry, _acme_handler()))
    limit = get_settings().OAUTH_RATE_LIMIT_PER_IP

    for _ in range(limit):
        assert client.get("/oauth/acme/authorize").status_code == 200
    blocked = client.get("/oauth/acme/authorize")
    assert blocked.status_code == 429
    assert blocked.headers["retry-after"] == str(get_settings().OAUTH_RATE_LIMIT_WINDOW_SECONDS)


def test_binding_management_requires_session_and_csrf(
    clock, registry, configure_provider
) -> None:
    configure_provider("acme")
    configure_provider("gitee")
    app = _make_app(clock, registry, _acme_handler())
    client = TestClient(app)

    anonymous = client.get("/oauth/providers")
    assert anonymous.status_code == 200
    assert [(p["name"], p["is_bound"]) for p in anonymous.json()] == [("acme", None), ("gitee", None)]
    assert client.get("/oauth/bindings").status_code == 401

    csrf = _dev_login(client, email="owner@example.com")["csrf_token"]
    assert client.post("/oauth/acme/bind").status_code == 403

    state = client.post("/oauth/acme/bind", headers={"x-csrf-token": csrf}).json()["state"]
    client.get("/oauth/acme/callback", params={"code": "c1", "state": state})

    listed = {p["name"]: p["is_bound"] for p in client.get("/oauth/providers").json()}
    assert listed == {"acme": True, "gitee": False}

    refreshed = client.post("/oauth/bindings/acme/refresh", headers={"x-csrf-token": csrf})
    assert refreshed.status_code == 200, refreshed.text
    assert refreshed.json()["outcome"] == "refreshed"

    missing = client.post("/oauth/bindings/gitee/refresh", headers={"x-csrf-token": csrf})
    assert missing.status_code == 400

    assert client.delete("/oauth/bindings/acme").status_code == 403
    removed = client.delete("/oauth/bindings/acme", headers={"x-csrf-token": csrf})
    assert removed.status_code == 200
    assert removed.json() == {"status": "unbound", "provider": "acme"}
    again = client.delete("/oauth/bindings/acme", headers={"x-csrf-token": csrf})
    assert again.status_code == 404
