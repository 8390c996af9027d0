from __future__ import annotations

from prometheus_client import Counter, Histogram

_HTTP_REQUESTS_TOTAL = Counter(
    "socialauth_http_requests_total",
    "Total HTTP requests handled by the API.",
    labelnames=("method", "path", "status_code"),
)
_HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "socialauth_http_request_duration_seconds",
    "HTTP request duration in seconds.",
    labelnames=("method", "path"),
)
_HTTP_RATE_LIMITED_TOTAL = Counter(
    "socialauth_http_rate_limited_total",
    "Total HTTP requests blocked by rate limiting.",
    labelnames=("method", "path"),
)
_OAUTH_FLOWS_TOTAL = Counter(
    "socialauth_oauth_flows_total",
    "OAuth flow completions by provider, flow and outcome.",
    labelnames=("provider", "flow", "outcome"),
)
_OAUTH_PROVIDER_CALL_SECONDS = Histogram(
    "socialauth_oauth_provider_call_duration_seconds",
    "Duration of calls to identity provider endpoints.",
    labelnames=("provider", "operation"),
)
_OAUTH_TOKEN_REFRESH_TOTAL = Counter(
    "socialauth_oauth_token_refresh_total",
    "Token refresh attempts by provider and outcome.",
    labelnames=("provider", "outcome"),
)


def observe_http_request(
    *,
    method: str,
    path: str,
    status_code: int,
    duration_ms: int,
    rate_limited: bool,
) -> None:
    safe_path = path or "unknown"
    safe_method = method or "UNKNOWN"

    _HTTP_REQUESTS_TOTAL.labels(
        method=safe_method,
        path=safe_path,
        status_code=str(status_code),
    ).inc()
    _HTTP_REQUEST_DURATION_SECONDS.labels(method=safe_method, path=safe_path).observe(
        max(0.0, duration_ms / 1000.0)
    )
    if rate_limited:
        _HTTP_RATE_LIMITED_TOTAL.labels(method=safe_method, path=safe_path).inc()


def observe_oauth_flow(*, provider: str, flow: str, outcome: str) -> None:
    _OAUTH_FLOWS_TOTAL.labels(provider=provider or "unknown", flow=flow, outcome=outcome).inc()


def observe_provider_call(*, provider: str, operation: str, duration_seconds: float) -> None:
    _OAUTH_PROVIDER_CALL_SECONDS.labels(provider=provider, operation=operation).observe(
        max(0.0, duration_seconds)
    )


def observe_token_refresh(*, provider: str, outcome: str) -> None:
    _OAUTH_TOKEN_REFRESH_TOTAL.labels(provider=provider, outcome=outcome).inc()
