from __future__ import annotations

from uuid import UUID

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from socialauth.core.clock import Clock, get_clock
from socialauth.core.config import get_settings
from socialauth.core.deps import get_registry, require_admin, require_csrf_header
from socialauth.core.errors import oauth_http_exception
from socialauth.core.http import get_http_client
from socialauth.db.session import get_session
from socialauth.models.enums import BindingStatus
from socialauth.models.identity import User
from socialauth.models.oauth import ProviderConfig
from socialauth.schemas.oauth import (
    AdminBindingOut,
    AuditEventOut,
    BindingBatchRequest,
    BindingBatchResponse,
    BindingPageOut,
    ForceUnbindRequest,
    InitializeProvidersResponse,
    MaintenanceResponse,
    OAuthStatsResponse,
    ProviderConfigIn,
    ProviderConfigOut,
    ProviderImportRequest,
    ProviderImportResponse,
    ProviderToggleRequest,
    RefreshResultOut,
    StateStatsOut,
)
from socialauth.services.audit import list_events, log_event
from socialauth.services.oauth.bindings import (
    batch_operate_bindings,
    force_remove_binding,
    list_bindings,
)
from socialauth.services.oauth.errors import ConfigurationError
from socialauth.services.oauth.maintenance import MaintenancePolicy, oauth_stats, run_maintenance
from socialauth.services.oauth.provider_configs import (
    ProviderConfigInput,
    create_or_update_provider,
    delete_provider,
    export_provider_configs,
    get_provider_config,
    has_client_secret,
    import_provider_configs,
    initialize_default_providers,
    list_provider_configs,
    toggle_provider,
)
from socialauth.services.oauth.providers.registry import ProviderRegistry

router = APIRouter(
    prefix="/admin/oauth",
    tags=["admin-oauth"],
    dependencies=[Depends(require_csrf_header)],
)


def _provider_out(config: ProviderConfig) -> ProviderConfigOut:
    return ProviderConfigOut(
        id=config.id,
        name=config.name,
        display_name=config.display_name,
        client_id=config.client_id,
        has_client_secret=has_client_secret(config),
        redirect_uri=config.redirect_uri,
        scopes=list(config.scopes or []),
        extra_config=dict(config.extra_config or {}),
        enabled=config.enabled,
        sort=config.sort,
        remark=config.remark,
        created_at=config.created_at,
        updated_at=config.updated_at,
    )


@router.get("/providers", response_model=list[ProviderConfigOut])
def admin_providers_list(
    admin: User = Depends(require_admin),
    session: Session = Depends(get_session),
) -> list[ProviderConfigOut]:
    return [_provider_out(c) for c in list_provider_configs(session=session)]


@router.post("/providers/initialize", response_model=InitializeProvidersResponse)
def admin_providers_initialize(
    admin: User = Depends(require_admin),
    session: Session = Depends(get_session),
    clock: Clock = Depends(get_clock),
    registry: ProviderRegistry = Depends(get_registry),
) -> InitializeProvidersResponse:
    created = initialize_default_providers(
        session=session,
        clock=clock,
        registry=registry,
        redirect_base_url=get_settings().API_BASE_URL,
        actor_user_id=admin.id,
    )
    session.commit()
    return InitializeProvidersResponse(created=created)


@router.get("/providers/export")
def admin_providers_export(
    include_secrets: bool = False,
    admin: User = Depends(require_admin),
    session: Session = Depends(get_session),
) -> dict[str, list[dict]]:
    items = export_provider_configs(session=session, include_secrets=include_secrets)
    if include_secrets:
        log_event(
            session=session,
            actor_user_id=admin.id,
            event_type="oauth.provider.exported_secrets",
            event_data={"providers": [i["name"] for i in items]},
        )
        session.commit()
    return {"providers": items}


@router.post("/providers/import", response_model=ProviderImportResponse)
def admin_providers_import(
    payload: ProviderImportRequest,
    admin: User = Depends(require_admin),
    session: Session = Depends(get_session),
    clock: Clock = Depends(get_clock),
    registry: ProviderRegistry = Depends(get_registry),
) -> ProviderImportResponse:
    result = import_provider_configs(
        session=session,
        clock=clock,
        registry=registry,
        items=[item.model_dump() for item in payload.providers],
        actor_user_id=admin.id,
    )
    session.commit()
    return ProviderImportResponse(
        created=result.created, updated=result.updated, errors=result.errors
    )


@router.get("/providers/{name}", response_model=ProviderConfigOut)
def admin_provider_get(
    name: str,
    admin: User = Depends(require_admin),
    session: Session = Depends(get_session),
) -> ProviderConfigOut:
    config = get_provider_config(session=session, name=name)
    if config is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Provider not found")
    return _provider_out(config)


@router.put("/providers/{name}", response_model=ProviderConfigOut)
def admin_provider_upsert(
    name: str,
    payload: ProviderConfigIn,
    admin: User = Depends(require_admin),
    session: Session = Depends(get_session),
    clock: Clock = Depends(get_clock),
    registry: ProviderRegistry = Depends(get_registry),
) -> ProviderConfigOut:
    try:
        config = create_or_update_provider(
            session=session,
            clock=clock,
            registry=registry,
            data=ProviderConfigInput(name=name, **payload.model_dump()),
            actor_user_id=admin.id,
        )
    except ConfigurationError as e:
        raise oauth_http_exception(e, configuration_status=status.HTTP_400_BAD_REQUEST) from e
    session.commit()
    return _provider_out(config)


@router.post("/providers/{name}/toggle", response_model=ProviderConfigOut)
def admin_provider_toggle(
    name: str,
    payload: ProviderToggleRequest,
    admin: User = Depends(require_admin),
    session: Session = Depends(get_session),
    clock: Clock = Depends(get_clock),
) -> ProviderConfigOut:
    if get_provider_config(session=session, name=name) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Provider not found")
    try:
        config = toggle_provider(
            session=session, clock=clock, name=name, enabled=payload.enabled, actor_user_id=admin.id
        )
    except ConfigurationError as e:
        raise oauth_http_exception(e, configuration_status=status.HTTP_400_BAD_REQUEST) from e
    session.commit()
    return _provider_out(config)


@router.delete("/providers/{name}")
def admin_provider_delete(
    name: str,
    admin: User = Depends(require_admin),
    session: Session = Depends(get_session),
    clock: Clock = Depends(get_clock),
) -> dict[str, str]:
    if get_provider_config(session=session, name=name) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Provider not found")
    try:
        delete_provider(session=session, clock=clock, name=name, actor_user_id=admin.id)
    except ConfigurationError as e:
        raise oauth_http_exception(e, configuration_status=status.HTTP_409_CONFLICT) from e
    session.commit()
    return {"status": "deleted", "provider": name}


@router.get("/bindings", response_model=BindingPageOut)
def admin_bindings_list(
    provider: str | None = None,
    user_id: UUID | None = None,
    binding_status: BindingStatus | None = Query(default=None, alias="status"),
    search: str | None = Query(default=None, max_length=200),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    admin: User = Depends(require_admin),
    session: Session = Depends(get_session),
) -> BindingPageOut:
    page = list_bindings(
        session=session,
        provider=provider,
        user_id=user_id,
        status=binding_status,
        search=search,
        limit=limit,
        offset=offset,
    )
    return BindingPageOut(
        items=[AdminBindingOut.model_validate(b) for b in page.items],
        total=page.total,
        limit=limit,
        offset=offset,
    )


@router.post("/bindings/batch", response_model=BindingBatchResponse)
def admin_bindings_batch(
    payload: BindingBatchRequest,
    admin: User = Depends(require_admin),
    session: Session = Depends(get_session),
    clock: Clock = Depends(get_clock),
) -> BindingBatchResponse:
    result = batch_operate_bindings(
        session=session,
        clock=clock,
        binding_ids=payload.binding_ids,
        action=payload.action,
        actor_user_id=admin.id,
    )
    session.commit()
    return BindingBatchResponse(
        action=payload.action, affected=result.affected, skipped=result.skipped
    )


@router.delete("/bindings/{binding_id}")
def admin_binding_force_delete(
    binding_id: UUID,
    payload: ForceUnbindRequest | None = None,
    admin: User = Depends(require_admin),
    session: Session = Depends(get_session),
) -> dict[str, str]:
    removed = force_remove_binding(
        session=session,
        binding_id=binding_id,
        actor_user_id=admin.id,
        reason=payload.reason if payload else None,
    )
    session.commit()
    return {"status": "removed" if removed else "not_found"}


@router.get("/stats", response_model=OAuthStatsResponse)
def admin_oauth_stats(
    admin: User = Depends(require_admin),
    session: Session = Depends(get_session),
    clock: Clock = Depends(get_clock),
) -> OAuthStatsResponse:
    stats = oauth_stats(session=session, clock=clock)
    return OAuthStatsResponse(
        total_bindings=stats.total_bindings,
        bindings=stats.bindings,
        states=StateStatsOut(
            total=stats.states.total,
            valid=stats.states.valid,
            used=stats.states.used,
            expired=stats.states.expired,
            cleanup_needed=stats.states.cleanup_needed,
        ),
    )


@router.post("/maintenance", response_model=MaintenanceResponse)
def admin_oauth_maintenance(
    admin: User = Depends(require_admin),
    session: Session = Depends(get_session),
    clock: Clock = Depends(get_clock),
    registry: ProviderRegistry = Depends(get_registry),
    http_client: httpx.Client = Depends(get_http_client),
) -> MaintenanceResponse:
    report = run_maintenance(
        session=session,
        clock=clock,
        registry=registry,
        http_client=http_client,
        policy=MaintenancePolicy.from_settings(get_settings()),
    )
    session.commit()
    return MaintenanceResponse(
        states_expired=report.states_expired,
        states_deleted=report.states_deleted,
        bindings_purged=report.bindings_purged,
        refresh=report.refresh_counts(),
        refresh_results=[
            RefreshResultOut(
                binding_id=r.binding_id,
                provider=r.provider,
                outcome=r.result.outcome.value,
                reason=r.result.reason,
            )
            for r in report.refresh_results
        ],
    )


@router.get("/audit", response_model=list[AuditEventOut])
def admin_oauth_audit(
    prefix: str | None = Query(default="oauth.", max_length=100),
    limit: int = Query(default=100, ge=1, le=500),
    admin: User = Depends(require_admin),
    session: Session = Depends(get_session),
) -> list[AuditEventOut]:
    return list_events(session=session, event_type_prefix=prefix, limit=limit)
