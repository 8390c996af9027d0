from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session

from socialauth.db.session import get_sessionmaker
from socialauth.models.enums import InvalidTransitionError, OAuthStateStatus
from socialauth.models.oauth import OAuthState
from socialauth.services.oauth.errors import RateLimitError
from socialauth.services.oauth.state_store import (
    IssueLimits,
    issue_state,
    state_stats,
    sweep_states,
    validate_and_consume_state,
)


def _issue(db_session: Session, clock, **kwargs):
    params = {
        "provider": "gitee",
        "user_id": None,
        "payload": {"intent": "login"},
        "client_ip": "203.0.113.5",
        "user_agent": "pytest",
    }
    params.update(kwargs)
    return issue_state(session=db_session, clock=clock, **params)


def test_issue_state_is_random_and_valid(db_session: Session, clock) -> None:
    a = _issue(db_session, clock)
    b = _issue(db_session, clock)

    assert a.state != b.state
    assert len(a.state) >= 43
    assert a.status == OAuthStateStatus.valid
    assert a.expires_at == clock.now() + timedelta(minutes=15)
    assert a.payload == {"intent": "login"}


def test_state_consumes_exactly_once(db_session: Session, clock) -> None:
    row = _issue(db_session, clock, payload={"intent": "login", "redirect_to": "/home"})
    db_session.commit()

    first = validate_and_consume_state(
        session=db_session, clock=clock, state=row.state, provider="gitee"
    )
    second = validate_and_consume_state(
        session=db_session, clock=clock, state=row.state, provider="gitee"
    )
    db_session.commit()

    assert first is not None
    assert first.payload["redirect_to"] == "/home"
    assert first.used_at == clock.now()
    assert second is None

    stored = db_session.execute(select(OAuthState).where(OAuthState.id == row.id)).scalars().one()
    assert stored.status == OAuthStateStatus.used


def test_racing_consumers_with_stale_reads_succeed_once(db_session: Session, clock) -> None:
    row = _issue(db_session, clock)
    db_session.commit()

    SessionLocal = get_sessionmaker()
    with SessionLocal() as first_session, SessionLocal() as second_session:
        # Both callbacks see the row as valid before either writes.
        for s in (first_session, second_session):
            seen = s.execute(select(OAuthState).where(OAuthState.id == row.id)).scalars().one()
            assert seen.status == OAuthStateStatus.valid

        first = validate_and_consume_state(
            session=first_session, clock=clock, state=row.state, provider="gitee"
        )
        first_session.commit()
        # The second session still holds its stale "valid" copy in the identity map.
        second = validate_and_consume_state(
            session=second_session, clock=clock, state=row.state, provider="gitee"
        )
        second_session.commit()

    assert first is not None
    assert second is None
    db_session.expire_all()
    stored = db_session.execute(select(OAuthState).where(OAuthState.id == row.id)).scalars().one()
    assert stored.status == OAuthStateStatus.used
    assert stored.used_at == clock.now()


def test_state_is_scoped_to_its_provider(db_session: Session, clock) -> None:
    row = _issue(db_session, clock)

    assert (
        validate_and_consume_state(session=db_session, clock=clock, state=row.state, provider="qq")
        is None
    )
    assert (
        validate_and_consume_state(session=db_session, clock=clock, state="", provider="gitee")
        is None
    )
    assert (
        validate_and_consume_state(session=db_session, clock=clock, state=row.state, provider="gitee")
        is not None
    )


def test_expired_state_is_rejected_and_marked(db_session: Session, clock) -> None:
    row = _issue(db_session, clock)
    db_session.commit()

    clock.advance(minutes=16)
    assert (
        validate_and_consume_state(session=db_session, clock=clock, state=row.state, provider="gitee")
        is None
    )
    db_session.commit()

    stored = db_session.execute(select(OAuthState).where(OAuthState.id == row.id)).scalars().one()
    assert stored.status == OAuthStateStatus.expired
    assert stored.used_at is None


def test_issue_rate_limit_per_user_and_ip(db_session: Session, clock, make_user) -> None:
    user = make_user("limit@example.com")
    limits = IssueLimits(window=timedelta(minutes=15), per_user=10, per_ip=20)

    for _ in range(10):
        _issue(db_session, clock, user_id=user.id, client_ip=None, limits=limits)
    with pytest.raises(RateLimitError) as exc:
        _issue(db_session, clock, user_id=user.id, client_ip=None, limits=limits)
    assert exc.value.retry_after_seconds == 900
    assert exc.value.context["limit_scope"] == "user"

    # Each provider is counted separately.
    _issue(db_session, clock, provider="qq", user_id=user.id, client_ip=None, limits=limits)

    # The window slides.
    clock.advance(minutes=16)
    _issue(db_session, clock, user_id=user.id, client_ip=None, limits=limits)

    for _ in range(3):
        _issue(db_session, clock, provider="feishu", client_ip="198.51.100.1", limits=IssueLimits(per_ip=3))
    with pytest.raises(RateLimitError):
        _issue(db_session, clock, provider="feishu", client_ip="198.51.100.1", limits=IssueLimits(per_ip=3))


def test_sweep_expires_and_deletes_old_rows(db_session: Session, clock) -> None:
    old_used = _issue(db_session, clock)
    validate_and_consume_state(session=db_session, clock=clock, state=old_used.state, provider="gitee")
    _issue(db_session, clock)

    clock.advance(days=31)
    fresh = _issue(db_session, clock)

    result = sweep_states(session=db_session, clock=clock, retention=timedelta(days=30))
    db_session.commit()

    assert result.expired == 1
    # The used row and the just-expired (but old) row are past retention.
    assert result.deleted == 2
    remaining = db_session.execute(select(OAuthState)).scalars().all()
    assert [r.id for r in remaining] == [fresh.id]


def test_state_stats_counts_by_status(db_session: Session, clock) -> None:
    used = _issue(db_session, clock)
    validate_and_consume_state(session=db_session, clock=clock, state=used.state, provider="gitee")
    _issue(db_session, clock)
    clock.advance(minutes=20)
    _issue(db_session, clock)

    stats = state_stats(session=db_session, clock=clock)
    assert stats.total == 3
    assert stats.valid == 2
    assert stats.used == 1
    assert stats.expired == 0
    assert stats.cleanup_needed == 1


def test_state_status_transitions_are_terminal() -> None:
    assert OAuthStateStatus.valid.ensure_transition(OAuthStateStatus.used) == OAuthStateStatus.used
    with pytest.raises(InvalidTransitionError):
        OAuthStateStatus.used.ensure_transition(OAuthStateStatus.valid)
    with pytest.raises(InvalidTransitionError):
        OAuthStateStatus.expired.ensure_transition(OAuthStateStatus.used)
