from __future__ import annotations

from datetime import UTC, datetime, timedelta

_frozen_now: datetime | None = None


def now_utc() -> datetime:
    if _frozen_now is not None:
        return _frozen_now
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def freeze(value: datetime) -> None:
    global _frozen_now
    _frozen_now = as_utc(value)


def advance(delta: timedelta) -> datetime:
    """Move a frozen clock forward; freezes at the current time first if needed."""
    global _frozen_now
    _frozen_now = now_utc() + delta
    return _frozen_now


def unfreeze() -> None:
    global _frozen_now
    _frozen_now = None
