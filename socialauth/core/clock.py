from __future__ import annotations

from datetime import UTC, datetime
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(UTC)


_SYSTEM_CLOCK = SystemClock()


def get_clock() -> Clock:
    # Routers depend on this so tests can pin time via dependency_overrides.
    return _SYSTEM_CLOCK
