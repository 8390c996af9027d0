from __future__ import annotations

from collections.abc import Generator

import httpx

from socialauth.core.config import Settings, get_settings


def build_http_client(*, settings: Settings) -> httpx.Client:
    return httpx.Client(
        timeout=settings.OAUTH_HTTP_TIMEOUT_SECONDS,
        headers={
            "User-Agent": settings.OAUTH_USER_AGENT,
            "Accept": "application/json",
        },
    )


def get_http_client() -> Generator[httpx.Client, None, None]:
    # Centralize HTTP client configuration (timeouts, headers) so we can override in tests.
    with build_http_client(settings=get_settings()) as client:
        yield client
