from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from socialauth.core.config import get_settings
from socialauth.db.session import get_session
from socialauth.models.enums import ProviderStatus
from socialauth.models.oauth import ProviderConfig

router = APIRouter(tags=["health"])


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok", "version": get_settings().VERSION}


@router.get("/readyz")
def readyz(session: Session = Depends(get_session)) -> dict[str, str | int]:
    try:
        enabled = session.execute(
            select(func.count())
            .select_from(ProviderConfig)
            .where(ProviderConfig.enabled.is_(True), ProviderConfig.status == ProviderStatus.active)
        ).scalar_one()
    except SQLAlchemyError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="database not ready",
        ) from e
    # Zero enabled providers is still "ready": admins configure them at runtime.
    return {"status": "ready", "enabled_providers": int(enabled)}


def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
