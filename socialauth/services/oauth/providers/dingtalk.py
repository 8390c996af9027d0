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
    parse_json,
    parse_token_bundle,
    request_json,
    require_identifier,
    resolve_scopes,
    send,
)

DINGTALK_AUTHORIZE_URL = "https://login.dingtalk.com/oauth2/auth"
DINGTALK_TOKEN_URL = "https://api.dingtalk.com/v1.0/oauth2/userAccessToken"
DINGTALK_USER_URL = "https://api.dingtalk.com/v1.0/contact/users/me"

_ID_KEYS = ("unionId", "unionid", "userid", "openId")
_PERMISSION_DENIED = "AccessTokenPermissionDenied"


def raise_for_dingtalk_error(payload: Mapping[str, Any], *, operation: str) -> None:
    provider = OAuthProvider.dingtalk.value
    errcode = payload.get("errcode")
    if errcode not in (None, 0, "0"):
        raise AdapterError(
            f"{operation} failed: {payload.get('errmsg') or 'unknown error'} (errcode {errcode})",
            provider=provider,
            context={"operation": operation, "errcode": errcode},
        )
    # v1.0 APIs answer errors with {"code": "...", "message": "..."}.
    code = payload.get("code")
    if isinstance(code, str) and code and payload.get("message"):
        raise AdapterError(
            f"{operation} failed: {payload['message']} ({code})",
            provider=provider,
            context={"operation": operation, "provider_error": code},
        )


@dataclass(frozen=True)
class DingTalkAdapter:
    credentials: ProviderCredentials
    client: httpx.Client

    name: ClassVar[str] = OAuthProvider.dingtalk.value
    display_name: ClassVar[str] = "钉钉"
    default_scopes: ClassVar[tuple[str, ...]] = ("openid",)
    refresh_supported: ClassVar[bool] = True

    def supports_refresh(self) -> bool:
        return self.refresh_supported

    def build_authorization_url(self, *, state: str, scopes: list[str] | None = None) -> str:
        scope_list = resolve_scopes(scopes, credentials=self.credentials, defaults=self.default_scopes)
        corp_id = self.credentials.extra.get("corp_id") or self.credentials.extra.get("corpId")
        return build_url(
            DINGTALK_AUTHORIZE_URL,
            {
                "redirect_uri": self.credentials.redirect_uri,
                "response_type": "code",
                "client_id": self.credentials.client_id,
                "scope": " ".join(scope_list),
                "state": state,
                "prompt": "consent",
                "corpId": corp_id or None,
            },
        )

    def exchange_code(self, code: str) -> TokenBundle:
        return self._token_request(
            operation="exchange_code",
            body={
                "clientId": self.credentials.client_id,
                "clientSecret": self.credentials.client_secret,
                "code": code,
                "grantType": "authorization_code",
            },
        )

    def fetch_user_info(self, tokens: TokenBundle) -> NormalizedProfile:
        res = send(
            self.client,
            provider=self.name,
            operation="fetch_user_info",
            method="GET",
            url=DINGTALK_USER_URL,
            headers={"x-acs-dingtalk-access-token": tokens.access_token},
            check_status=False,
        )
        payload = parse_json(res, provider=self.name, operation="fetch_user_info")
        if payload.get("code") == _PERMISSION_DENIED:
            raise AdapterError(
                "DingTalk app lacks the Contact.User.Read permission",
                provider=self.name,
                status_code=res.status_code,
                context={"operation": "fetch_user_info", "provider_error": _PERMISSION_DENIED},
            )
        raise_for_dingtalk_error(payload, operation="fetch_user_info")
        if not res.is_success:
            raise AdapterError(
                f"fetch_user_info returned HTTP {res.status_code}",
                provider=self.name,
                status_code=res.status_code,
                context={"operation": "fetch_user_info"},
            )

        if not any(payload.get(k) for k in ("nick", "name", "unionId", "unionid")):
            raise AdapterError(
                "User info response is missing nick, name and unionId",
                provider=self.name,
                context={"operation": "fetch_user_info"},
            )

        nick = first_present(payload, ("nick", "name"))
        return NormalizedProfile(
            id=require_identifier(payload, _ID_KEYS, provider=self.name),
            username=nick,
            display_name=nick,
            email=payload.get("email") or None,
            avatar_url=first_present(payload, ("avatarUrl", "avatar")),
            raw=payload,
        )

    def refresh_token(self, refresh_token: str) -> RefreshResult:
        tokens = self._token_request(
            operation="refresh_token",
            body={
                "clientId": self.credentials.client_id,
                "clientSecret": self.credentials.client_secret,
                "refreshToken": refresh_token,
                "grantType": "refresh_token",
            },
        )
        return RefreshResult.refreshed(tokens)

    def _token_request(self, *, operation: str, body: dict[str, Any]) -> TokenBundle:
        payload = request_json(
            self.client,
            provider=self.name,
            operation=operation,
            method="POST",
            url=DINGTALK_TOKEN_URL,
            json=body,
        )
        raise_for_dingtalk_error(payload, operation=operation)
        return parse_token_bundle(
            payload,
            provider=self.name,
            access_key="accessToken",
            refresh_key="refreshToken",
            expires_key="expireIn",
            extra_keys=("corpId",),
        )
