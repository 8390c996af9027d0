from __future__ import annotations

import logging
import socket
import time
from collections.abc import Callable
from dataclasses import dataclass, field

import httpx

from socialauth.core.clock import Clock, SystemClock
from socialauth.core.config import get_settings
from socialauth.core.http import build_http_client
from socialauth.core.logs import log_json, worker_logger
from socialauth.db.session import get_sessionmaker
from socialauth.services.oauth.maintenance import (
    MaintenancePolicy,
    MaintenanceReport,
    run_maintenance,
)
from socialauth.services.oauth.providers.registry import ProviderRegistry, get_provider_registry


@dataclass(frozen=True)
class MaintenanceConfig:
    interval_seconds: float = 300.0
    policy: MaintenancePolicy = field(default_factory=MaintenancePolicy)
    worker_id: str = socket.gethostname()

    @classmethod
    def from_settings(cls) -> MaintenanceConfig:
        settings = get_settings()
        return cls(
            interval_seconds=settings.MAINTENANCE_INTERVAL_SECONDS,
            policy=MaintenancePolicy.from_settings(settings),
        )


def run_maintenance_once(
    *,
    config: MaintenanceConfig,
    http_client: httpx.Client,
    clock: Clock | None = None,
    registry: ProviderRegistry | None = None,
) -> MaintenanceReport:
    session = get_sessionmaker()()
    try:
        report = run_maintenance(
            session=session,
            clock=clock or SystemClock(),
            registry=registry or get_provider_registry(),
            http_client=http_client,
            policy=config.policy,
        )
        session.commit()
        return report
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def run_maintenance_forever(
    config: MaintenanceConfig,
    *,
    sleep: Callable[[float], None] = time.sleep,
    max_passes: int | None = None,
) -> None:
    passes = 0
    with build_http_client(settings=get_settings()) as http_client:
        while max_passes is None or passes < max_passes:
            passes += 1
            try:
                report = run_maintenance_once(config=config, http_client=http_client)
            except Exception as e:
                # One failed pass must not stop the loop; the next tick retries.
                log_json(
                    worker_logger,
                    "worker.maintenance.failed",
                    level=logging.ERROR,
                    worker_id=config.worker_id,
                    error=f"{type(e).__name__}: {e}",
                )
            else:
                log_json(
                    worker_logger,
                    "worker.maintenance.completed",
                    worker_id=config.worker_id,
                    states_expired=report.states_expired,
                    states_deleted=report.states_deleted,
                    bindings_purged=report.bindings_purged,
                    refresh=report.refresh_counts(),
                )
            if max_passes is None or passes < max_passes:
                sleep(config.interval_seconds)
