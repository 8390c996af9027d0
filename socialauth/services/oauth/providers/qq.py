from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, ClassVar
from urllib.parse import parse_qsl

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
    send,
)

QQ_AUTHORIZE_URL = "https://graph.qq.com/oauth2.0/authorize"
QQ_TOKEN_URL = "https://graph.qq.com/oauth2.0/token"
QQ_OPENID_URL = "https://graph.qq.com/oauth2.0/me"
QQ_USER_INFO_URL = "https://graph.qq.com/user/get_user_info"

_AVATAR_KEYS = ("figureurl_qq_2", "figureurl_qq_1", "figureurl_2", "figureurl_1", "figureurl")


def parse_qq_body(body: str) -> dict[str, Any]:
    """Decode the three body shapes QQ Connect uses.

    ``callback( {...} );`` (JSONP), bare JSON, or ``a=1&b=2`` form encoding.
    """

    text = body.strip()
    if text.startswith("callback"):
        start = text.find("(")
        end = text.rfind(")")
        if start == -1 or end <= start:
            raise ValueError("malformed JSONP body")
        text = text[start + 1 : end].strip()

    if text.startswith("{"):
        payload = json.loads(text)
        if not isinstance(payload, dict):
            raise ValueError("JSON body is not an object")
        return payload

    return dict(parse_qsl(text, keep_blank_values=True))


@dataclass(frozen=True)
class QQAdapter:
    credentials: ProviderCredentials
    client: httpx.Client

    name: ClassVar[str] = OAuthProvider.qq.value
    display_name: ClassVar[str] = "QQ"
    default_scopes: ClassVar[tuple[str, ...]] = ("get_user_info",)
    refresh_supported: ClassVar[bool] = False

    def supports_refresh(self) -> bool:
        return self.refresh_supported

    def build_authorization_url(self, *, state: str, scopes: list[str] | None = None) -> str:
        scope_list = resolve_scopes(scopes, credentials=self.credentials, defaults=self.default_scopes)
        return build_url(
            QQ_AUTHORIZE_URL,
            {
                "response_type": "code",
                "client_id": self.credentials.client_id,
                "redirect_uri": self.credentials.redirect_uri,
                "scope": " ".join(scope_list),
                "state": state,
            },
        )

    def exchange_code(self, code: str) -> TokenBundle:
        payload = self._get_text_payload(
            operation="exchange_code",
            url=QQ_TOKEN_URL,
            params={
                "grant_type": "authorization_code",
                "client_id": self.credentials.client_id,
                "client_secret": self.credentials.client_secret,
                "code": code,
                "redirect_uri": self.credentials.redirect_uri,
            },
        )
        raise_for_oauth_error(payload, provider=self.name, operation="exchange_code")
        return parse_token_bundle(payload, provider=self.name)

    def fetch_user_info(self, tokens: TokenBundle) -> NormalizedProfile:
        me = self._get_text_payload(
            operation="fetch_openid",
            url=QQ_OPENID_URL,
            params={"access_token": tokens.access_token},
        )
        raise_for_oauth_error(me, provider=self.name, operation="fetch_openid")
        openid = require_identifier(me, ("openid",), provider=self.name)

        info = request_json(
            self.client,
            provider=self.name,
            operation="fetch_user_info",
            method="GET",
            url=QQ_USER_INFO_URL,
            params={
                "access_token": tokens.access_token,
                "oauth_consumer_key": self.credentials.client_id,
                "openid": openid,
            },
        )
        ret = parse_int(info.get("ret"))
        if ret is None or ret != 0:
            raise AdapterError(
                f"fetch_user_info failed: {info.get('msg') or 'unknown error'}",
                provider=self.name,
                context={"operation": "fetch_user_info", "ret": info.get("ret")},
            )

        nickname = info.get("nickname") or None
        return NormalizedProfile(
            id=openid,
            username=nickname,
            display_name=nickname,
            email=None,
            avatar_url=first_present(info, _AVATAR_KEYS),
            raw={**info, "openid": openid},
        )

    def refresh_token(self, refresh_token: str) -> RefreshResult:
        return RefreshResult.unsupported(self.name)

    def _get_text_payload(self, *, operation: str, url: str, params: dict[str, Any]) -> dict[str, Any]:
        res = send(
            self.client,
            provider=self.name,
            operation=operation,
            method="GET",
            url=url,
            params=params,
        )
        try:
            return parse_qq_body(res.text)
        except ValueError as e:
            raise AdapterError(
                f"{operation} returned an unreadable body",
                provider=self.name,
                status_code=res.status_code,
                cause=e,
                context={"operation": operation},
            ) from e
