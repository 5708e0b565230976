"""Append-only audit trail of accepted billing transitions."""
from __future__ import annotations

from threading import Lock
from typing import List, Optional, Protocol, Sequence

from .models import AuditEntry, EventOrigin


class AuditTrail(Protocol):
    """Persists one immutable entry per accepted transition."""

    def record(self, entry: AuditEntry) -> AuditEntry:
        ...

    def list_for_account(self, account_id: str, *, limit: int = 50) -> Sequence[AuditEntry]:
        ...

    def latest(self, *, origin: Optional[EventOrigin] = None) -> Optional[AuditEntry]:
        ...


class InMemoryAuditTrail:
    """Audit trail kept in a list, for tests and local development."""

    def __init__(self) -> None:
        self._entries: List[AuditEntry] = []
        self._lock = Lock()

    @property
    def entries(self) -> List[AuditEntry]:
        with self._lock:
            return list(self._entries)

    def record(self, entry: AuditEntry) -> AuditEntry:
        with self._lock:
            stored = entry.model_copy(update={"entry_id": len(self._entries) + 1})
            self._entries.append(stored)
        return stored

    def list_for_account(self, account_id: str, *, limit: int = 50) -> Sequence[AuditEntry]:
        with self._lock:
            matching = [entry for entry in reversed(self._entries) if entry.account_id == account_id]
        return matching[:limit]

    def latest(self, *, origin: Optional[EventOrigin] = None) -> Optional[AuditEntry]:
        with self._lock:
            for entry in reversed(self._entries):
                if origin is None or entry.origin == origin:
                    return entry
        return None


__all__ = ["AuditTrail", "InMemoryAuditTrail"]
