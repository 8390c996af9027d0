from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, ClassVar

import httpx

from socialauth.models.enums import OAuthProvider
from socialauth.services.oauth.errors import AdapterError
from socialauth.services.oauth.providers.base import (
    NormalizedProfile,
    ProviderCredentials,
    RefreshResult,
    TokenBundle,
    build_url,
    first_present,
    parse_int,
    parse_token_bundle,
    raise_for_oauth_error,
    request_json,
    require_identifier,
    resolve_scopes,
)

FEISHU_AUTHORIZE_URL = "https://accounts.feishu.cn/open-apis/authen/v1/authorize"
FEISHU_TOKEN_URL = "https://open.feishu.cn/open-apis/authen/v2/oauth/token"
FEISHU_USER_INFO_URL = "https://open.feishu.cn/open-apis/authen/v1/user_info"

_ID_KEYS = ("union_id", "user_id", "open_id")
_JSON_HEADERS = {"Content-Type": "application/json; charset=utf-8"}


def unwrap_feishu_payload(payload: Mapping[str, Any], *, operation: str) -> dict[str, Any]:
    code = parse_int(payload.get("code"))
    if code is not None and code != 0:
        message = payload.get("msg") or payload.get("error_description") or "unknown error"
        raise AdapterError(
            f"{operation} failed: {message} (code {code})",
            provider=OAuthProvider.feishu.value,
            context={"operation": operation, "provider_error": code},
        )
    data = payload.get("data")
    return dict(data) if isinstance(data, dict) else dict(payload)


@dataclass(frozen=True)
class FeishuAdapter:
    credentials: ProviderCredentials
    client: httpx.Client

    name: ClassVar[str] = OAuthProvider.feishu.value
    display_name: ClassVar[str] = "飞书"
    default_scopes: ClassVar[tuple[str, ...]] = ("contact:user.id:read",)
    refresh_supported: ClassVar[bool] = True

    def supports_refresh(self) -> bool:
        return self.refresh_supported

    def build_authorization_url(self, *, state: str, scopes: list[str] | None = None) -> str:
        scope_list = resolve_scopes(scopes, credentials=self.credentials, defaults=self.default_scopes)
        return build_url(
            FEISHU_AUTHORIZE_URL,
            {
                "client_id": self.credentials.client_id,
                "redirect_uri": self.credentials.redirect_uri,
                "response_type": "code",
                "scope": " ".join(scope_list),
                "state": state,
            },
        )

    def exchange_code(self, code: str) -> TokenBundle:
        return self._token_request(
            operation="exchange_code",
            body={
                "grant_type": "authorization_code",
                "client_id": self.credentials.client_id,
                "client_secret": self.credentials.client_secret,
                "code": code,
                "redirect_uri": self.credentials.redirect_uri,
            },
        )

    def fetch_user_info(self, tokens: TokenBundle) -> NormalizedProfile:
        payload = request_json(
            self.client,
            provider=self.name,
            operation="fetch_user_info",
            method="GET",
            url=FEISHU_USER_INFO_URL,
            headers={"Authorization": f"Bearer {tokens.access_token}"},
        )
        data = unwrap_feishu_payload(payload, operation="fetch_user_info")

        name = first_present(data, ("name", "en_name"))
        return NormalizedProfile(
            id=require_identifier(data, _ID_KEYS, provider=self.name),
            username=name,
            display_name=name,
            email=first_present(data, ("email", "enterprise_email")),
            avatar_url=first_present(data, ("avatar_url", "avatar_big", "avatar_middle", "picture")),
            raw=data,
        )

    def refresh_token(self, refresh_token: str) -> RefreshResult:
        tokens = self._token_request(
            operation="refresh_token",
            body={
                "grant_type": "refresh_token",
                "client_id": self.credentials.client_id,
                "client_secret": self.credentials.client_secret,
                "refresh_token": refresh_token,
            },
        )
        return RefreshResult.refreshed(tokens)

    def _token_request(self, *, operation: str, body: dict[str, Any]) -> TokenBundle:
        payload = request_json(
            self.client,
            provider=self.name,
            operation=operation,
            method="POST",
            url=FEISHU_TOKEN_URL,
            json=body,
            headers=_JSON_HEADERS,
        )
        data = unwrap_feishu_payload(payload, operation=operation)
        raise_for_oauth_error(data, provider=self.name, operation=operation)
        return parse_token_bundle(data, provider=self.name, extra_keys=("refresh_token_expires_in",))
