from __future__ import annotations

import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, ClassVar, Protocol
from urllib.parse import quote, urlencode

import httpx

from socialauth.core.metrics import observe_provider_call
from socialauth.models.enums import RefreshOutcome
from socialauth.services.oauth.errors import AdapterError


@dataclass(frozen=True)
class ProviderCredentials:
    client_id: str
    client_secret: str
    redirect_uri: str
    scopes: list[str] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TokenBundle:
    access_token: str
    refresh_token: str | None = None
    token_type: str = "Bearer"
    expires_in: int | None = None
    scope: str | None = None
    provider_extra: dict[str, Any] = field(default_factory=dict)

    @property
    def scopes(self) -> list[str]:
        if not self.scope:
            return []
        return [s for s in self.scope.replace(",", " ").split() if s]

    def expires_at(self, now: datetime) -> datetime | None:
        if self.expires_in is None:
            return None
        return now + timedelta(seconds=self.expires_in)


@dataclass(frozen=True)
class NormalizedProfile:
    id: str
    username: str | None
    display_name: str | None
    email: str | None
    avatar_url: str | None
    raw: dict[str, Any]


@dataclass(frozen=True)
class RefreshResult:
    outcome: RefreshOutcome
    tokens: TokenBundle | None = None
    reason: str | None = None

    @classmethod
    def refreshed(cls, tokens: TokenBundle) -> RefreshResult:
        return cls(outcome=RefreshOutcome.refreshed, tokens=tokens)

    @classmethod
    def unsupported(cls, provider: str) -> RefreshResult:
        return cls(
            outcome=RefreshOutcome.unsupported,
            reason=f"{provider} does not support token refresh",
        )


class ProviderAdapter(Protocol):
    name: ClassVar[str]
    display_name: ClassVar[str]
    default_scopes: ClassVar[tuple[str, ...]]
    refresh_supported: ClassVar[bool]

    credentials: ProviderCredentials
    client: httpx.Client

    def supports_refresh(self) -> bool: ...

    def build_authorization_url(self, *, state: str, scopes: list[str] | None = None) -> str: ...

    def exchange_code(self, code: str) -> TokenBundle: ...

    def fetch_user_info(self, tokens: TokenBundle) -> NormalizedProfile: ...

    def refresh_token(self, refresh_token: str) -> RefreshResult: ...


def resolve_scopes(
    scopes: Iterable[str] | None,
    *,
    credentials: ProviderCredentials,
    defaults: Iterable[str],
) -> list[str]:
    for candidate in (scopes, credentials.scopes, defaults):
        cleaned = [s.strip() for s in candidate or [] if s and s.strip()]
        if cleaned:
            return cleaned
    return []


def build_url(endpoint: str, params: Mapping[str, Any], *, fragment: str | None = None) -> str:
    query = urlencode(
        {k: v for k, v in params.items() if v is not None},
        quote_via=quote,
        safe="",
    )
    url = f"{endpoint}?{query}"
    if fragment:
        url = f"{url}#{fragment}"
    return url


def send(
    client: httpx.Client,
    *,
    provider: str,
    operation: str,
    method: str,
    url: str,
    check_status: bool = True,
    **kwargs: Any,
) -> httpx.Response:
    start = time.perf_counter()
    try:
        res = client.request(method, url, **kwargs)
    except httpx.TimeoutException as e:
        raise AdapterError(
            f"{operation} timed out",
            provider=provider,
            cause=e,
            context={"operation": operation},
        ) from e
    except httpx.HTTPError as e:
        raise AdapterError(
            f"{operation} transport error: {type(e).__name__}",
            provider=provider,
            cause=e,
            context={"operation": operation},
        ) from e
    finally:
        observe_provider_call(
            provider=provider, operation=operation, duration_seconds=time.perf_counter() - start
        )

    if check_status and not res.is_success:
        raise AdapterError(
            f"{operation} returned HTTP {res.status_code}: {describe_error_body(res)}",
            provider=provider,
            status_code=res.status_code,
            context={"operation": operation},
        )
    return res


def parse_json(res: httpx.Response, *, provider: str, operation: str, expect: type = dict) -> Any:
    try:
        payload = res.json()
    except ValueError as e:
        raise AdapterError(
            f"{operation} returned a non-JSON body",
            provider=provider,
            status_code=res.status_code,
            cause=e,
            context={"operation": operation},
        ) from e
    if not isinstance(payload, expect):
        raise AdapterError(
            f"{operation} returned an unexpected JSON shape",
            provider=provider,
            status_code=res.status_code,
            context={"operation": operation},
        )
    return payload


def request_json(
    client: httpx.Client,
    *,
    provider: str,
    operation: str,
    method: str,
    url: str,
    expect: type = dict,
    **kwargs: Any,
) -> Any:
    res = send(client, provider=provider, operation=operation, method=method, url=url, **kwargs)
    return parse_json(res, provider=provider, operation=operation, expect=expect)


def describe_error_body(res: httpx.Response) -> str:
    try:
        payload = res.json()
    except ValueError:
        return "no error detail"
    if not isinstance(payload, dict):
        return "no error detail"
    for key in ("error_description", "errmsg", "message", "msg", "error"):
        value = payload.get(key)
        if value:
            return str(value)[:200]
    return "no error detail"


def raise_for_oauth_error(payload: Mapping[str, Any], *, provider: str, operation: str) -> None:
    error = payload.get("error") or payload.get("error_code")
    if not error:
        return
    description = payload.get("error_description") or payload.get("error_hint") or "Unknown OAuth error"
    raise AdapterError(
        f"{operation} failed: {description}",
        provider=provider,
        context={"operation": operation, "provider_error": str(error)},
    )


def parse_token_bundle(
    payload: Mapping[str, Any],
    *,
    provider: str,
    access_key: str = "access_token",
    refresh_key: str = "refresh_token",
    expires_key: str = "expires_in",
    type_key: str = "token_type",
    scope_key: str = "scope",
    extra_keys: Iterable[str] = (),
) -> TokenBundle:
    access_token = payload.get(access_key)
    if not access_token or not isinstance(access_token, str):
        raise AdapterError(
            "Token response is missing the access token",
            provider=provider,
            context={"operation": "exchange_code"},
        )

    return TokenBundle(
        access_token=access_token,
        refresh_token=_optional_text(payload, refresh_key, provider=provider),
        token_type=_optional_text(payload, type_key, provider=provider) or "Bearer",
        expires_in=parse_int(payload.get(expires_key)),
        scope=_optional_text(payload, scope_key, provider=provider),
        provider_extra={k: payload[k] for k in extra_keys if payload.get(k) is not None},
    )


def _optional_text(payload: Mapping[str, Any], key: str, *, provider: str) -> str | None:
    value = payload.get(key)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise AdapterError(
            f"Token response field {key} is not a string",
            provider=provider,
            context={"field": key, "type": type(value).__name__},
        )
    return value


def first_present(payload: Mapping[str, Any], keys: Iterable[str]) -> str | None:
    for key in keys:
        value = payload.get(key)
        if value is None:
            continue
        text = str(value).strip()
        if text:
            return text
    return None


def require_identifier(payload: Mapping[str, Any], keys: Iterable[str], *, provider: str) -> str:
    keys = tuple(keys)
    identifier = first_present(payload, keys)
    if identifier is None:
        raise AdapterError(
            f"User info response has no identifier (expected one of: {', '.join(keys)})",
            provider=provider,
            context={"operation": "fetch_user_info"},
        )
    return identifier


def parse_int(v: object) -> int | None:
    if v is None or isinstance(v, bool):
        return None
    try:
        return int(v)
    except (TypeError, ValueError):
        return None


def is_truthy(v: object) -> bool:
    if isinstance(v, str):
        return v.strip().lower() in {"1", "true", "yes", "on"}
    return bool(v)
