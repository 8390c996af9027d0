from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from uuid import UUID

import httpx
from sqlalchemy.orm import Session

from socialauth.core.clock import Clock
from socialauth.core.config import Settings
from socialauth.core.crypto import DecryptionError
from socialauth.core.logs import log_json, oauth_logger
from socialauth.core.metrics import observe_token_refresh
from socialauth.models.enums import BindingStatus, RefreshOutcome
from socialauth.models.oauth import OAuthAccount
from socialauth.services.oauth.bindings import (
    binding_counts,
    binding_tokens,
    bindings_needing_refresh,
    find_user_binding,
    purge_disabled_bindings,
    store_tokens,
)
from socialauth.services.oauth.errors import AdapterError, FlowError, OAuthError
from socialauth.services.oauth.provider_configs import credentials_for, get_provider_config
from socialauth.services.oauth.providers.base import RefreshResult
from socialauth.services.oauth.providers.registry import ProviderRegistry
from socialauth.services.oauth.state_store import StateStats, state_stats, sweep_states


@dataclass(frozen=True)
class MaintenancePolicy:
    state_retention: timedelta = timedelta(days=30)
    refresh_lookahead: timedelta = timedelta(hours=1)
    refresh_limit: int = 50
    disabled_binding_retention: timedelta = timedelta(days=90)

    @classmethod
    def from_settings(cls, settings: Settings) -> MaintenancePolicy:
        return cls(
            state_retention=timedelta(days=settings.OAUTH_STATE_RETENTION_DAYS),
            refresh_lookahead=timedelta(seconds=settings.OAUTH_REFRESH_LOOKAHEAD_SECONDS),
            refresh_limit=settings.OAUTH_REFRESH_BATCH_LIMIT,
            disabled_binding_retention=timedelta(
                days=settings.OAUTH_DISABLED_BINDING_RETENTION_DAYS
            ),
        )


@dataclass(frozen=True)
class BindingRefreshResult:
    binding_id: UUID
    provider: str
    result: RefreshResult


@dataclass(frozen=True)
class MaintenanceReport:
    states_expired: int
    states_deleted: int
    refresh_results: list[BindingRefreshResult] = field(default_factory=list)
    bindings_purged: int = 0

    def refresh_counts(self) -> dict[str, int]:
        counts = {outcome.value: 0 for outcome in RefreshOutcome}
        for item in self.refresh_results:
            counts[item.result.outcome.value] += 1
        return counts


@dataclass(frozen=True)
class OAuthStats:
    bindings: dict[str, dict[str, int]]
    states: StateStats

    @property
    def total_bindings(self) -> int:
        return sum(sum(by_status.values()) for by_status in self.bindings.values())


def _skipped(reason: str) -> RefreshResult:
    return RefreshResult(outcome=RefreshOutcome.skipped, reason=reason)


def refresh_binding_tokens(
    *,
    session: Session,
    clock: Clock,
    registry: ProviderRegistry,
    http_client: httpx.Client,
    binding: OAuthAccount,
) -> RefreshResult:
    provider = binding.provider
    result = _refresh(
        session=session, clock=clock, registry=registry, http_client=http_client, binding=binding
    )
    observe_token_refresh(provider=provider, outcome=result.outcome.value)
    log_json(
        oauth_logger,
        "oauth.refresh.finished",
        level=logging.WARNING if result.outcome == RefreshOutcome.failed else logging.INFO,
        provider=provider,
        binding_id=binding.id,
        outcome=result.outcome.value,
        reason=result.reason,
    )
    return result


def _refresh(
    *,
    session: Session,
    clock: Clock,
    registry: ProviderRegistry,
    http_client: httpx.Client,
    binding: OAuthAccount,
) -> RefreshResult:
    provider = binding.provider
    if binding.status != BindingStatus.normal:
        return _skipped("binding is disabled")
    if not registry.is_registered(provider):
        return _skipped(f"{provider} is not a registered provider")

    adapter_cls = registry.adapter_class(provider)
    if not adapter_cls.refresh_supported:
        # Never touch the network for providers without refresh support.
        return RefreshResult.unsupported(provider)

    tokens = binding_tokens(binding)
    if not tokens.refresh_token:
        return _skipped("binding has no refresh token")

    config = get_provider_config(session=session, name=provider)
    if config is None or not config.enabled:
        return _skipped(f"{provider} is not configured or is disabled")

    adapter = registry.create(provider, credentials=credentials_for(config), client=http_client)
    try:
        result = adapter.refresh_token(tokens.refresh_token)
    except AdapterError as e:
        binding.last_refresh_error = e.message[:500]
        binding.updated_at = clock.now()
        session.flush()
        return RefreshResult(outcome=RefreshOutcome.failed, reason=e.public_message)

    if result.outcome == RefreshOutcome.refreshed and result.tokens is not None:
        store_tokens(binding, tokens=result.tokens, now=clock.now(), keep_refresh_token=True)
        session.flush()
    return result


def refresh_user_tokens(
    *,
    session: Session,
    clock: Clock,
    registry: ProviderRegistry,
    http_client: httpx.Client,
    user_id: UUID,
    provider: str,
) -> RefreshResult:
    registry.adapter_class(provider)
    binding = find_user_binding(session=session, user_id=user_id, provider=provider)
    if binding is None:
        raise FlowError(
            f"User {user_id} has no {provider} binding",
            provider=provider,
            public_message="No linked account found for this provider",
            context={"user_id": str(user_id)},
        )
    return refresh_binding_tokens(
        session=session, clock=clock, registry=registry, http_client=http_client, binding=binding
    )


def refresh_expiring_tokens(
    *,
    session: Session,
    clock: Clock,
    registry: ProviderRegistry,
    http_client: httpx.Client,
    lookahead: timedelta,
    limit: int,
) -> list[BindingRefreshResult]:
    results: list[BindingRefreshResult] = []
    for binding in bindings_needing_refresh(
        session=session, clock=clock, lookahead=lookahead, limit=limit
    ):
        try:
            result = refresh_binding_tokens(
                session=session,
                clock=clock,
                registry=registry,
                http_client=http_client,
                binding=binding,
            )
        except (OAuthError, DecryptionError) as e:
            # One broken record must not stop the batch.
            result = RefreshResult(outcome=RefreshOutcome.failed, reason=str(e))
        except Exception as e:
            log_json(
                oauth_logger,
                "oauth.refresh.crashed",
                level=logging.ERROR,
                provider=binding.provider,
                binding_id=binding.id,
                error=f"{type(e).__name__}: {e}",
            )
            observe_token_refresh(provider=binding.provider, outcome=RefreshOutcome.failed.value)
            result = RefreshResult(outcome=RefreshOutcome.failed, reason=type(e).__name__)
        results.append(
            BindingRefreshResult(binding_id=binding.id, provider=binding.provider, result=result)
        )
    return results


def run_maintenance(
    *,
    session: Session,
    clock: Clock,
    registry: ProviderRegistry,
    http_client: httpx.Client,
    policy: MaintenancePolicy | None = None,
) -> MaintenanceReport:
    policy = policy or MaintenancePolicy()

    sweep = sweep_states(session=session, clock=clock, retention=policy.state_retention)
    refresh_results = refresh_expiring_tokens(
        session=session,
        clock=clock,
        registry=registry,
        http_client=http_client,
        lookahead=policy.refresh_lookahead,
        limit=policy.refresh_limit,
    )
    purged = purge_disabled_bindings(
        session=session, clock=clock, older_than=policy.disabled_binding_retention
    )

    report = MaintenanceReport(
        states_expired=sweep.expired,
        states_deleted=sweep.deleted,
        refresh_results=refresh_results,
        bindings_purged=purged,
    )
    log_json(
        oauth_logger,
        "oauth.maintenance.completed",
        states_expired=report.states_expired,
        states_deleted=report.states_deleted,
        bindings_purged=report.bindings_purged,
        refresh=report.refresh_counts(),
    )
    return report


def oauth_stats(*, session: Session, clock: Clock) -> OAuthStats:
    return OAuthStats(
        bindings=binding_counts(session=session),
        states=state_stats(session=session, clock=clock),
    )
