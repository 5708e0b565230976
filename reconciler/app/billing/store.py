"""Versioned account store contract and an in-memory implementation."""
from __future__ import annotations

from datetime import datetime, timezone
from threading import Lock
from typing import Callable, Dict, Optional, Protocol, Sequence

from .errors import AccountNotFoundError
from .models import AccountMutation, AccountSnapshot, SwapOutcome, SwapResult


class VersionedAccountStore(Protocol):
    """Single source of truth for account billing state.

    ``compare_and_swap`` must be one atomic conditional update; a version
    mismatch is reported in the result, never raised.
    """

    def read(self, account_id: str) -> AccountSnapshot:
        ...

    def compare_and_swap(
        self,
        account_id: str,
        expected_version: int,
        mutation: AccountMutation,
    ) -> SwapResult:
        ...

    def ensure_account(self, account_id: str, *, email: Optional[str] = None) -> AccountSnapshot:
        ...

    def find_by_external_customer_id(self, customer_id: str) -> Optional[AccountSnapshot]:
        ...

    def list_subscribed_accounts(
        self,
        *,
        after_account_id: Optional[str],
        limit: int,
    ) -> Sequence[AccountSnapshot]:
        ...

    def list_entitled_without_subscription(self, *, limit: int) -> Sequence[AccountSnapshot]:
        ...


class InMemoryAccountStore:
    """Thread-safe store suitable for tests and local development."""

    def __init__(self, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._accounts: Dict[str, AccountSnapshot] = {}
        self._lock = Lock()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def add(self, snapshot: AccountSnapshot) -> AccountSnapshot:
        with self._lock:
            self._accounts[snapshot.account_id] = snapshot
        return snapshot

    def read(self, account_id: str) -> AccountSnapshot:
        with self._lock:
            snapshot = self._accounts.get(account_id)
        if snapshot is None:
            raise AccountNotFoundError(account_id)
        return snapshot

    def compare_and_swap(
        self,
        account_id: str,
        expected_version: int,
        mutation: AccountMutation,
    ) -> SwapResult:
        with self._lock:
            current = self._accounts.get(account_id)
            if current is None:
                raise AccountNotFoundError(account_id)
            if current.version != expected_version:
                return SwapResult(outcome=SwapOutcome.VERSION_MISMATCH, snapshot=current)
            updated = mutation.apply_to(current, now=self._clock())
            self._accounts[account_id] = updated
            return SwapResult(outcome=SwapOutcome.APPLIED, snapshot=updated)

    def ensure_account(self, account_id: str, *, email: Optional[str] = None) -> AccountSnapshot:
        with self._lock:
            existing = self._accounts.get(account_id)
            if existing is not None:
                return existing
            created = AccountSnapshot(account_id=account_id, email=email)
            self._accounts[account_id] = created
            return created

    def find_by_external_customer_id(self, customer_id: str) -> Optional[AccountSnapshot]:
        with self._lock:
            for snapshot in self._accounts.values():
                if snapshot.external_customer_id == customer_id:
                    return snapshot
        return None

    def list_subscribed_accounts(
        self,
        *,
        after_account_id: Optional[str],
        limit: int,
    ) -> Sequence[AccountSnapshot]:
        with self._lock:
            rows = sorted(
                (
                    snapshot
                    for snapshot in self._accounts.values()
                    if snapshot.external_subscription_id
                    and (after_account_id is None or snapshot.account_id > after_account_id)
                ),
                key=lambda snapshot: snapshot.account_id,
            )
        return rows[:limit]

    def list_entitled_without_subscription(self, *, limit: int) -> Sequence[AccountSnapshot]:
        with self._lock:
            rows = sorted(
                (
                    snapshot
                    for snapshot in self._accounts.values()
                    if snapshot.is_entitled and not snapshot.external_subscription_id
                ),
                key=lambda snapshot: snapshot.account_id,
            )
        return rows[:limit]


__all__ = ["InMemoryAccountStore", "VersionedAccountStore"]
