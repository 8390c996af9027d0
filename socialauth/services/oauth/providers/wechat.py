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
    request_json,
    require_identifier,
    resolve_scopes,
)

WECHAT_QRCONNECT_URL = "https://open.weixin.qq.com/connect/qrconnect"
WECHAT_MP_AUTHORIZE_URL = "https://open.weixin.qq.com/connect/oauth2/authorize"
WECHAT_TOKEN_URL = "https://api.weixin.qq.com/sns/oauth2/access_token"
WECHAT_REFRESH_URL = "https://api.weixin.qq.com/sns/oauth2/refresh_token"
WECHAT_USER_INFO_URL = "https://api.weixin.qq.com/sns/userinfo"

# Website (Open Platform) login is QR based; "mp" is the in-app official account flow.
PLATFORM_WEBSITE = "website"
PLATFORM_MP = "mp"

SCOPE_LOGIN = "snsapi_login"
SCOPE_USERINFO = "snsapi_userinfo"
SCOPE_BASE = "snsapi_base"

_ID_KEYS = ("unionid", "openid")


def raise_for_wechat_error(payload: Mapping[str, Any], *, operation: str) -> None:
    errcode = parse_int(payload.get("errcode"))
    if not errcode:
        return
    raise AdapterError(
        f"{operation} failed: {payload.get('errmsg') or 'unknown error'} (errcode {errcode})",
        provider=OAuthProvider.wechat.value,
        context={"operation": operation, "errcode": errcode},
    )


@dataclass(frozen=True)
class WeChatAdapter:
    credentials: ProviderCredentials
    client: httpx.Client

    name: ClassVar[str] = OAuthProvider.wechat.value
    display_name: ClassVar[str] = "微信"
    default_scopes: ClassVar[tuple[str, ...]] = (SCOPE_LOGIN,)
    refresh_supported: ClassVar[bool] = True

    @property
    def platform(self) -> str:
        value = str(self.credentials.extra.get("platform") or PLATFORM_WEBSITE).strip().lower()
        return PLATFORM_MP if value == PLATFORM_MP else PLATFORM_WEBSITE

    def supports_refresh(self) -> bool:
        return self.refresh_supported

    def build_authorization_url(self, *, state: str, scopes: list[str] | None = None) -> str:
        endpoint = WECHAT_MP_AUTHORIZE_URL if self.platform == PLATFORM_MP else WECHAT_QRCONNECT_URL
        return build_url(
            endpoint,
            {
                "appid": self.credentials.client_id,
                "redirect_uri": self.credentials.redirect_uri,
                "response_type": "code",
                "scope": self._single_scope(scopes),
                "state": state,
            },
            fragment="wechat_redirect",
        )

    def exchange_code(self, code: str) -> TokenBundle:
        return self._token_request(
            operation="exchange_code",
            url=WECHAT_TOKEN_URL,
            params={
                "appid": self.credentials.client_id,
                "secret": self.credentials.client_secret,
                "code": code,
                "grant_type": "authorization_code",
            },
        )

    def fetch_user_info(self, tokens: TokenBundle) -> NormalizedProfile:
        openid = tokens.provider_extra.get("openid")
        if not openid:
            raise AdapterError(
                "Token response did not include an openid",
                provider=self.name,
                context={"operation": "fetch_user_info"},
            )

        # snsapi_base grants can't read the profile; the token identifies the user.
        if tokens.scopes and SCOPE_BASE in tokens.scopes and SCOPE_USERINFO not in tokens.scopes:
            return NormalizedProfile(
                id=require_identifier(tokens.provider_extra, _ID_KEYS, provider=self.name),
                username=None,
                display_name=None,
                email=None,
                avatar_url=None,
                raw=dict(tokens.provider_extra),
            )

        payload = request_json(
            self.client,
            provider=self.name,
            operation="fetch_user_info",
            method="GET",
            url=WECHAT_USER_INFO_URL,
            params={
                "access_token": tokens.access_token,
                "openid": openid,
                "lang": self.credentials.extra.get("lang") or "zh_CN",
            },
        )
        raise_for_wechat_error(payload, operation="fetch_user_info")

        # userinfo omits unionid for apps outside an Open Platform account.
        merged = {**tokens.provider_extra, **payload}
        nickname = payload.get("nickname") or None
        return NormalizedProfile(
            id=require_identifier(merged, _ID_KEYS, provider=self.name),
            username=nickname,
            display_name=nickname,
            email=None,
            avatar_url=first_present(payload, ("headimgurl",)),
            raw=payload,
        )

    def refresh_token(self, refresh_token: str) -> RefreshResult:
        tokens = self._token_request(
            operation="refresh_token",
            url=WECHAT_REFRESH_URL,
            params={
                "appid": self.credentials.client_id,
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            },
        )
        return RefreshResult.refreshed(tokens)

    def _single_scope(self, scopes: list[str] | None) -> str:
        scope_list = resolve_scopes(scopes, credentials=self.credentials, defaults=self.default_scopes)
        if self.platform == PLATFORM_MP:
            if SCOPE_USERINFO in scope_list:
                return SCOPE_USERINFO
            return SCOPE_BASE
        return scope_list[0] if scope_list else SCOPE_LOGIN

    def _token_request(self, *, operation: str, url: str, params: dict[str, Any]) -> TokenBundle:
        payload = request_json(
            self.client,
            provider=self.name,
            operation=operation,
            method="GET",
            url=url,
            params=params,
        )
        raise_for_wechat_error(payload, operation=operation)
        return parse_token_bundle(payload, provider=self.name, extra_keys=("openid", "unionid"))
