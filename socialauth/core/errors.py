from __future__ import annotations

import logging

from fastapi import HTTPException, status

from socialauth.core.logs import api_logger, log_json
from socialauth.services.oauth.errors import (
    BindingConflictError,
    ConfigurationError,
    FlowError,
    OAuthError,
    RateLimitError,
    StateError,
)


def oauth_http_exception(
    error: OAuthError,
    *,
    configuration_status: int = status.HTTP_404_NOT_FOUND,
) -> HTTPException:
    headers: dict[str, str] | None = None
    if isinstance(error, ConfigurationError):
        status_code = configuration_status
    elif isinstance(error, StateError):
        status_code = status.HTTP_400_BAD_REQUEST
    elif isinstance(error, RateLimitError):
        status_code = status.HTTP_429_TOO_MANY_REQUESTS
        headers = {"Retry-After": str(error.retry_after_seconds)}
    elif isinstance(error, BindingConflictError):
        status_code = status.HTTP_409_CONFLICT
    elif isinstance(error, FlowError) and error.caused_by_provider:
        status_code = status.HTTP_502_BAD_GATEWAY
    else:
        status_code = status.HTTP_400_BAD_REQUEST

    # Full context goes to logs only; clients get the public message.
    log_json(
        api_logger,
        "oauth.request.rejected",
        level=logging.WARNING,
        http_status=status_code,
        **error.diagnostics(),
    )
    return HTTPException(status_code=status_code, detail=error.public_message, headers=headers)
