"""Event ordering guard for out-of-order webhook deliveries."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def should_apply(
    event_timestamp: Optional[datetime],
    last_event_applied_at: Optional[datetime],
) -> bool:
    """Return ``True`` when an event is newer than the last one applied.

    Events without a timestamp are manual or reconciliation corrections and
    always apply. An event timestamped at or before ``last_event_applied_at``
    is a no-op even if its content differs.
    """

    if event_timestamp is None or last_event_applied_at is None:
        return True
    return _as_utc(event_timestamp) > _as_utc(last_event_applied_at)


def newest(current: Optional[datetime], candidate: Optional[datetime]) -> Optional[datetime]:
    """Keep ``last_event_applied_at`` monotonic when writing ``candidate``."""

    if candidate is None:
        return current
    if current is None:
        return _as_utc(candidate)
    return max(_as_utc(current), _as_utc(candidate))


__all__ = ["newest", "should_apply"]
