from __future__ import annotations

from collections.abc import Generator

import httpx
from fastapi import FastAPI
from fastapi.testclient import TestClient

from socialauth.core.clock import get_clock
from socialauth.core.deps import get_registry
from socialauth.core.http import get_http_client
from socialauth.main import create_app


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


def _make_app(clock, registry) -> FastAPI:
    app = create_app()

    def handler(request: httpx.Request) -> httpx.Response:
        if str(request.url) == "https://acme.test/oauth/token":
            return httpx.Response(
                200, json={"access_token": "tok1", "refresh_token": "r1", "expires_in": 3600}
            )
        if str(request.url) == "https://acme.test/api/me":
            return httpx.Response(200, json={"id": "u1", "login": "acme-user", "email": "u1@acme.test"})
        return httpx.Response(404, json={"error": "not_found"})

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


def _admin(app: FastAPI) -> tuple[TestClient, dict[str, str]]:
    client = TestClient(app)
    csrf = _dev_login(client, email="admin@example.com", is_admin=True)["csrf_token"]
    return client, {"x-csrf-token": csrf}


def _put_acme(client: TestClient, headers: dict[str, str], **overrides) -> httpx.Response:
    body = {
        "client_id": "acme-client",
        "client_secret": "s3cr3t-value",
        "redirect_uri": "http://api.test/oauth/acme/callback",
        "enabled": True,
    }
    body.update(overrides)
    return client.put("/admin/oauth/providers/acme", json=body, headers=headers)


def _bind_acme(app: FastAPI, *, email: str) -> None:
    user = TestClient(app)
    csrf = _dev_login(user, email=email)["csrf_token"]
    state = user.post("/oauth/acme/bind", headers={"x-csrf-token": csrf}).json()["state"]
    res = user.get("/oauth/acme/callback", params={"code": "c", "state": state})
    assert res.status_code == 200, res.text


def test_admin_routes_require_admin(clock, registry) -> None:
    app = _make_app(clock, registry)
    anon = TestClient(app)
    assert anon.get("/admin/oauth/providers").status_code == 401

    member = TestClient(app)
    _dev_login(member, email="member@example.com")
    res = member.get("/admin/oauth/providers")
    assert res.status_code == 403
    assert res.json()["detail"] == "Admin access required"


def test_provider_config_never_echoes_secret(clock, registry) -> None:
    app = _make_app(clock, registry)
    client, headers = _admin(app)

    created = _put_acme(client, headers, scopes=["profile", " email "], extra_config={"tenant": "t1"})
    assert created.status_code == 200, created.text
    body = created.json()
    assert body["has_client_secret"] is True
    assert "client_secret" not in body
    assert "s3cr3t-value" not in created.text
    assert body["scopes"] == ["profile", "email"]
    assert body["extra_config"] == {"tenant": "t1"}

    # Omitting the secret keeps the stored one.
    updated = client.put(
        "/admin/oauth/providers/acme",
        json={"display_name": "Acme SSO", "sort": 3},
        headers=headers,
    )
    assert updated.status_code == 200, updated.text
    assert updated.json()["display_name"] == "Acme SSO"
    assert updated.json()["client_id"] == "acme-client"
    assert updated.json()["has_client_secret"] is True

    listed = client.get("/admin/oauth/providers")
    assert [p["name"] for p in listed.json()] == ["acme"]
    assert "s3cr3t-value" not in listed.text
    assert client.get("/admin/oauth/providers/acme").json()["sort"] == 3
    assert client.get("/admin/oauth/providers/gitee").status_code == 404


def test_provider_config_validation(clock, registry) -> None:
    app = _make_app(clock, registry)
    client, headers = _admin(app)

    unknown = client.put(
        "/admin/oauth/providers/myspace",
        json={"client_id": "x", "client_secret": "y", "redirect_uri": "http://api.test/cb"},
        headers=headers,
    )
    assert unknown.status_code == 400

    missing = client.put("/admin/oauth/providers/gitee", json={"client_id": "x"}, headers=headers)
    assert missing.status_code == 400
    assert "client_secret" in missing.json()["detail"]
    assert "redirect_uri" in missing.json()["detail"]

    bad_uri = _put_acme(client, headers, redirect_uri="javascript:alert(1)")
    assert bad_uri.status_code == 400
    assert bad_uri.json()["detail"] == "Redirect URI must be an absolute http(s) URL"

    no_csrf = client.put("/admin/oauth/providers/acme", json={"client_id": "x"})
    assert no_csrf.status_code == 403


def test_toggle_and_delete_provider(clock, registry) -> None:
    app = _make_app(clock, registry)
    client, headers = _admin(app)
    assert _put_acme(client, headers).status_code == 200

    off = client.post("/admin/oauth/providers/acme/toggle", json={}, headers=headers)
    assert off.status_code == 200
    assert off.json()["enabled"] is False
    assert client.get("/oauth/providers").json() == []

    on = client.post("/admin/oauth/providers/acme/toggle", json={"enabled": True}, headers=headers)
    assert on.json()["enabled"] is True

    _bind_acme(app, email="user@example.com")
    refused = client.delete("/admin/oauth/providers/acme", headers=headers)
    assert refused.status_code == 409
    assert refused.json()["detail"] == "Provider still has active user bindings"

    binding_id = client.get("/admin/oauth/bindings").json()["items"][0]["id"]
    res = client.request(
        "DELETE",
        f"/admin/oauth/bindings/{binding_id}",
        json={"reason": "provider retired"},
        headers=headers,
    )
    assert res.json() == {"status": "removed"}

    deleted = client.delete("/admin/oauth/providers/acme", headers=headers)
    assert deleted.status_code == 200
    assert client.get("/admin/oauth/providers/acme").status_code == 404
    assert client.delete("/admin/oauth/providers/acme", headers=headers).status_code == 404
    assert client.post("/admin/oauth/providers/acme/toggle", json={}, headers=headers).status_code == 404

    # A deleted provider can be configured again from scratch, secret included.
    no_secret = client.put(
        "/admin/oauth/providers/acme",
        json={"client_id": "acme-client-2", "redirect_uri": "http://api.test/oauth/acme/callback"},
        headers=headers,
    )
    assert no_secret.status_code == 400
    assert no_secret.json()["detail"] == "Missing required fields: client_secret"
    assert client.get("/admin/oauth/providers/acme").status_code == 404

    recreated = _put_acme(client, headers, enabled=False)
    assert recreated.status_code == 200
    assert recreated.json()["enabled"] is False


def test_initialize_export_and_import(clock, registry) -> None:
    app = _make_app(clock, registry)
    client, headers = _admin(app)

    init = client.post("/admin/oauth/providers/initialize", headers=headers)
    assert init.status_code == 200
    assert set(init.json()["created"]) == set(registry.names())
    again = client.post("/admin/oauth/providers/initialize", headers=headers)
    assert again.json()["created"] == []

    gitee = client.get("/admin/oauth/providers/gitee").json()
    assert gitee["enabled"] is False
    assert gitee["has_client_secret"] is False
    assert gitee["redirect_uri"].endswith("/oauth/gitee/callback")
    assert gitee["scopes"] == ["user_info"]

    # Placeholders cannot be switched on until credentials exist.
    refused = client.post("/admin/oauth/providers/gitee/toggle", json={"enabled": True}, headers=headers)
    assert refused.status_code == 400

    imported = client.post(
        "/admin/oauth/providers/import",
        json={
            "providers": [
                {
                    "name": "gitee",
                    "client_id": "gitee-id",
                    "client_secret": "gitee-secret",
                    "enabled": True,
                },
                {"name": "myspace", "client_id": "x", "client_secret": "y", "redirect_uri": "http://a/cb"},
                {"name": "qq", "client_id": "qq-id"},
            ]
        },
        headers=headers,
    )
    assert imported.status_code == 200, imported.text
    result = imported.json()
    assert result["created"] == 0
    assert result["updated"] == 1
    assert set(result["errors"]) == {"myspace", "qq"}

    plain = client.get("/admin/oauth/providers/export").json()["providers"]
    by_name = {p["name"]: p for p in plain}
    assert by_name["gitee"]["enabled"] is True
    assert all("client_secret" not in p for p in plain)

    with_secrets = client.get(
        "/admin/oauth/providers/export", params={"include_secrets": "true"}
    ).json()["providers"]
    assert {p["name"]: p.get("client_secret") for p in with_secrets}["gitee"] == "gitee-secret"

    audit = client.get("/admin/oauth/audit").json()
    assert "oauth.provider.exported_secrets" in [e["event_type"] for e in audit]


def test_binding_admin_listing_batch_and_stats(clock, registry) -> None:
    app = _make_app(clock, registry)
    client, headers = _admin(app)
    _put_acme(client, headers)
    _bind_acme(app, email="user@example.com")

    page = client.get("/admin/oauth/bindings", params={"provider": "acme", "search": "acme-user"})
    assert page.status_code == 200
    data = page.json()
    assert data["total"] == 1
    item = data["items"][0]
    assert item["provider_email"] == "u1@acme.test"
    assert "encrypted_access_token" not in item
    assert client.get("/admin/oauth/bindings", params={"status": "disabled"}).json()["total"] == 0

    batch = client.post(
        "/admin/oauth/bindings/batch",
        json={"binding_ids": [item["id"]], "action": "deactivate"},
        headers=headers,
    )
    assert batch.status_code == 200
    assert batch.json() == {"action": "deactivate", "affected": 1, "skipped": 0}
    assert client.get("/admin/oauth/bindings", params={"status": "disabled"}).json()["total"] == 1

    stats = client.get("/admin/oauth/stats").json()
    assert stats["total_bindings"] == 1
    assert stats["bindings"] == {"acme": {"normal": 0, "disabled": 1}}
    assert stats["states"]["used"] == 1

    maintenance = client.post("/admin/oauth/maintenance", headers=headers)
    assert maintenance.status_code == 200
    report = maintenance.json()
    assert report["bindings_purged"] == 0
    assert report["refresh"]["refreshed"] == 0

    missing = client.request(
        "DELETE",
        "/admin/oauth/bindings/00000000-0000-0000-0000-000000000000",
        headers=headers,
    )
    assert missing.json() == {"status": "not_found"}
