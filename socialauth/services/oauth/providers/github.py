from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, ClassVar

import httpx

from socialauth.core.logs import log_json, oauth_logger
from socialauth.models.enums import OAuthProvider
from socialauth.services.oauth.errors import AdapterError
from socialauth.services.oauth.providers.base import (
    NormalizedProfile,
    ProviderCredentials,
    RefreshResult,
    TokenBundle,
    build_url,
    is_truthy,
    parse_token_bundle,
    raise_for_oauth_error,
    request_json,
    require_identifier,
    resolve_scopes,
)

GITHUB_AUTHORIZE_URL = "https://github.com/login/oauth/authorize"
GITHUB_TOKEN_URL = "https://github.com/login/oauth/access_token"
GITHUB_USER_URL = "https://api.github.com/user"
GITHUB_EMAILS_URL = "https://api.github.com/user/emails"

_EMAIL_SCOPES = frozenset({"user:email", "user"})


@dataclass(frozen=True)
class GitHubAdapter:
    credentials: ProviderCredentials
    client: httpx.Client

    name: ClassVar[str] = OAuthProvider.github.value
    display_name: ClassVar[str] = "GitHub"
    default_scopes: ClassVar[tuple[str, ...]] = ("user:email",)
    # Classic OAuth app tokens never expire.
    refresh_supported: ClassVar[bool] = False

    def supports_refresh(self) -> bool:
        return self.refresh_supported

    def build_authorization_url(self, *, state: str, scopes: list[str] | None = None) -> str:
        params: dict[str, Any] = {
            "client_id": self.credentials.client_id,
            "redirect_uri": self.credentials.redirect_uri,
            "scope": " ".join(self._scopes(scopes)),
            "state": state,
            "response_type": "code",
        }
        allow_signup = self.credentials.extra.get("allow_signup")
        if allow_signup is not None:
            params["allow_signup"] = "true" if is_truthy(allow_signup) else "false"
        return build_url(GITHUB_AUTHORIZE_URL, params)

    def exchange_code(self, code: str) -> TokenBundle:
        payload = request_json(
            self.client,
            provider=self.name,
            operation="exchange_code",
            method="POST",
            url=GITHUB_TOKEN_URL,
            data={
                "client_id": self.credentials.client_id,
                "client_secret": self.credentials.client_secret,
                "code": code,
                "redirect_uri": self.credentials.redirect_uri,
            },
            headers={"Accept": "application/json"},
        )
        raise_for_oauth_error(payload, provider=self.name, operation="exchange_code")
        return parse_token_bundle(payload, provider=self.name)

    def fetch_user_info(self, tokens: TokenBundle) -> NormalizedProfile:
        headers = self._api_headers(tokens.access_token)
        payload = request_json(
            self.client,
            provider=self.name,
            operation="fetch_user_info",
            method="GET",
            url=GITHUB_USER_URL,
            headers=headers,
        )
        user_id = require_identifier(payload, ("id",), provider=self.name)

        email = payload.get("email") or None
        if not email and self._email_scope_granted(tokens):
            email = self._lookup_email(headers=headers, user_id=user_id)

        login = payload.get("login") or None
        return NormalizedProfile(
            id=user_id,
            username=login,
            display_name=payload.get("name") or login,
            email=email,
            avatar_url=payload.get("avatar_url") or None,
            raw=payload,
        )

    def refresh_token(self, refresh_token: str) -> RefreshResult:
        return RefreshResult.unsupported(self.name)

    def _scopes(self, scopes: list[str] | None) -> list[str]:
        return resolve_scopes(scopes, credentials=self.credentials, defaults=self.default_scopes)

    def _email_scope_granted(self, tokens: TokenBundle) -> bool:
        granted = tokens.scopes or self._scopes(None)
        return any(s in _EMAIL_SCOPES for s in granted)

    def _lookup_email(self, *, headers: dict[str, str], user_id: str) -> str | None:
        # Private emails are only visible through the emails endpoint; best effort.
        try:
            emails = request_json(
                self.client,
                provider=self.name,
                operation="fetch_user_emails",
                method="GET",
                url=GITHUB_EMAILS_URL,
                headers=headers,
                expect=list,
            )
        except AdapterError as e:
            log_json(
                oauth_logger,
                "oauth.github.email_lookup_failed",
                level=logging.WARNING,
                provider_user_id=user_id,
                error=e.message,
            )
            return None

        entries = [e for e in emails if isinstance(e, dict) and e.get("email")]
        for entry in entries:
            if entry.get("primary"):
                return entry["email"]
        for entry in entries:
            if entry.get("verified"):
                return entry["email"]
        return None

    @staticmethod
    def _api_headers(access_token: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/vnd.github.v3+json",
        }
