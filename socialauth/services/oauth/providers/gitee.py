from __future__ import annotations

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
    parse_token_bundle,
    raise_for_oauth_error,
    request_json,
    require_identifier,
    resolve_scopes,
)

GITEE_AUTHORIZE_URL = "https://gitee.com/oauth/authorize"
GITEE_TOKEN_URL = "https://gitee.com/oauth/token"
GITEE_USER_URL = "https://gitee.com/api/v5/user"


@dataclass(frozen=True)
class GiteeAdapter:
    credentials: ProviderCredentials
    client: httpx.Client

    name: ClassVar[str] = OAuthProvider.gitee.value
    display_name: ClassVar[str] = "码云"
    default_scopes: ClassVar[tuple[str, ...]] = ("user_info",)
    refresh_supported: ClassVar[bool] = True

    def supports_refresh(self) -> bool:
        return self.refresh_supported

    def build_authorization_url(self, *, state: str, scopes: list[str] | None = None) -> str:
        scope_list = resolve_scopes(scopes, credentials=self.credentials, defaults=self.default_scopes)
        return build_url(
            GITEE_AUTHORIZE_URL,
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
            data={
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
            url=GITEE_USER_URL,
            params={"access_token": tokens.access_token},
        )
        # Gitee reports API failures as {"message": "..."} on otherwise normal bodies.
        if payload.get("message") and "id" not in payload:
            raise AdapterError(
                f"fetch_user_info failed: {payload['message']}",
                provider=self.name,
                context={"operation": "fetch_user_info"},
            )

        user_id = require_identifier(payload, ("id",), provider=self.name)
        login = payload.get("login") or None
        return NormalizedProfile(
            id=user_id,
            username=login,
            display_name=payload.get("name") or login,
            email=payload.get("email") or None,
            avatar_url=payload.get("avatar_url") or None,
            raw=payload,
        )

    def refresh_token(self, refresh_token: str) -> RefreshResult:
        tokens = self._token_request(
            operation="refresh_token",
            data={"grant_type": "refresh_token", "refresh_token": refresh_token},
        )
        return RefreshResult.refreshed(tokens)

    def _token_request(self, *, operation: str, data: dict[str, Any]) -> TokenBundle:
        payload = request_json(
            self.client,
            provider=self.name,
            operation=operation,
            method="POST",
            url=GITEE_TOKEN_URL,
            data=data,
        )
        raise_for_oauth_error(payload, provider=self.name, operation=operation)
        return parse_token_bundle(payload, provider=self.name)
