from __future__ import annotations

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from socialauth.core.config import get_settings
from socialauth.core.middleware import (
    RateLimiter,
    apply_security_headers,
    build_request_id,
    client_ip,
    now_ts,
    rate_limit_response,
    record_request_completion,
    request_id_ctx,
)
from socialauth.routers.admin_oauth import router as admin_oauth_router
from socialauth.routers.auth import router as auth_router
from socialauth.routers.health import metrics
from socialauth.routers.health import router as health_router
from socialauth.routers.oauth import router as oauth_router


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title="Social Auth API", version=settings.VERSION)

    rate_limiter = (
        RateLimiter(max_requests=settings.RATE_LIMIT_REQUESTS_PER_MINUTE)
        if settings.RATE_LIMIT_REQUESTS_PER_MINUTE > 0
        else None
    )
    origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def request_context(request, call_next):  # type: ignore[no-untyped-def]
        request_id = build_request_id(request, header_name=settings.REQUEST_ID_HEADER)
        token = request_id_ctx.set(request_id)
        start_ts = now_ts()
        method = request.method
        path = request.url.path
        response = None
        blocked = False
        status_code = 500

        try:
            if rate_limiter is not None and path != settings.PROMETHEUS_METRICS_PATH:
                if not rate_limiter.allow(client_ip(request), now_ts=now_ts()):
                    blocked = True
                    response = rate_limit_response()

            if response is None:
                response = await call_next(request)

            status_code = response.status_code
            response.headers[settings.REQUEST_ID_HEADER] = request_id
            apply_security_headers(response, settings=settings)
            return response
        finally:
            route = request.scope.get("route")
            record_request_completion(
                request_id=request_id,
                method=method,
                # Route templates keep metric label cardinality bounded.
                path=getattr(route, "path", path),
                status_code=status_code,
                duration_ms=int((now_ts() - start_ts) * 1000),
                rate_limited=blocked,
                metrics_enabled=settings.ENABLE_PROMETHEUS_METRICS,
            )
            request_id_ctx.reset(token)

    if settings.ENABLE_PROMETHEUS_METRICS:
        app.add_api_route(
            settings.PROMETHEUS_METRICS_PATH, metrics, methods=["GET"], include_in_schema=False
        )

    app.include_router(health_router)
    app.include_router(auth_router)
    app.include_router(oauth_router)
    app.include_router(admin_oauth_router)
    return app


app = create_app()
