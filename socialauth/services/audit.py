from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from socialauth.models.audit import AuditEvent


def log_event(
    *,
    session: Session,
    actor_user_id: UUID | None,
    event_type: str,
    event_data: dict,
    created_at: datetime | None = None,
) -> AuditEvent:
    evt = AuditEvent(
        actor_user_id=actor_user_id,
        event_type=event_type,
        event_data=event_data,
    )
    if created_at is not None:
        evt.created_at = created_at
    session.add(evt)
    session.flush()
    return evt


def list_events(*, session: Session, event_type_prefix: str | None = None, limit: int = 100) -> list[AuditEvent]:
    stmt = select(AuditEvent).order_by(AuditEvent.created_at.desc()).limit(max(1, min(500, limit)))
    if event_type_prefix:
        stmt = stmt.where(AuditEvent.event_type.startswith(event_type_prefix))
    return list(session.execute(stmt).scalars().all())
