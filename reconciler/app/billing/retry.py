"""Optimistic-concurrency retry loop around the versioned account store."""
from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from .models import AccountMutation, AccountSnapshot, ReconciliationOutcome
from .ordering import should_apply
from .store import VersionedAccountStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 4
DEFAULT_BACKOFF_BASE_SECONDS = 0.05
DEFAULT_MAX_BACKOFF_SECONDS = 0.2

MutationBuilder = Callable[[AccountSnapshot], AccountMutation]
Precondition = Callable[[AccountSnapshot], bool]

STALE_EVENT_REASON = "Event is older than last processed event"
PRECONDITION_FAILED_REASON = "Account changed since the event was computed"


@dataclass(frozen=True)
class RetryResult:
    """Outcome of :meth:`RetryCoordinator.apply_with_retry`."""

    outcome: ReconciliationOutcome
    attempts: int
    previous: Optional[AccountSnapshot] = None
    current: Optional[AccountSnapshot] = None
    reason: Optional[str] = None


class RetryCoordinator:
    """Re-attempts a conditional update under contention.

    Every attempt starts from a fresh read and re-evaluates event ordering
    against that read, so a newer event committed by a concurrent writer turns
    this one into a stale skip instead of an overwrite.
    """

    def __init__(
        self,
        store: VersionedAccountStore,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_base_seconds: float = DEFAULT_BACKOFF_BASE_SECONDS,
        max_backoff_seconds: float = DEFAULT_MAX_BACKOFF_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
        jitter: Callable[[], float] = random.random,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._store = store
        self._max_attempts = max_attempts
        self._backoff_base_seconds = max(0.0, backoff_base_seconds)
        self._max_backoff_seconds = max(0.0, max_backoff_seconds)
        self._sleep = sleep
        self._jitter = jitter

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def backoff(self, attempt: int) -> float:
        """Delay in seconds before the attempt that follows ``attempt``."""

        delay = self._backoff_base_seconds * (2 ** (attempt - 1))
        delay += self._jitter() * delay * 0.5
        return min(delay, self._max_backoff_seconds)

    def apply_with_retry(
        self,
        account_id: str,
        build_mutation: MutationBuilder,
        *,
        event_timestamp: Optional[datetime] = None,
        max_attempts: Optional[int] = None,
        precondition: Optional[Precondition] = None,
    ) -> RetryResult:
        """Apply the mutation built from a fresh read until the swap lands.

        ``precondition`` is re-checked against every fresh read; when it fails
        the event is skipped as stale instead of overwriting newer state.
        """

        if max_attempts is None:
            attempts_allowed = self._max_attempts
        elif max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        else:
            attempts_allowed = max_attempts
        for attempt in range(1, attempts_allowed + 1):
            snapshot = self._store.read(account_id)

            if not should_apply(event_timestamp, snapshot.last_event_applied_at):
                logger.info(
                    "Skipping stale billing event account=%s event_at=%s last_applied=%s attempt=%s",
                    account_id,
                    event_timestamp,
                    snapshot.last_event_applied_at,
                    attempt,
                )
                return RetryResult(
                    outcome=ReconciliationOutcome.SKIPPED_STALE,
                    attempts=attempt,
                    current=snapshot,
                    reason=STALE_EVENT_REASON,
                )

            if precondition is not None and not precondition(snapshot):
                logger.info(
                    "Skipping billing event for changed account account=%s version=%s attempt=%s",
                    account_id,
                    snapshot.version,
                    attempt,
                )
                return RetryResult(
                    outcome=ReconciliationOutcome.SKIPPED_STALE,
                    attempts=attempt,
                    current=snapshot,
                    reason=PRECONDITION_FAILED_REASON,
                )

            mutation = build_mutation(snapshot)
            swap = self._store.compare_and_swap(account_id, snapshot.version, mutation)
            if swap.applied:
                return RetryResult(
                    outcome=ReconciliationOutcome.APPLIED,
                    attempts=attempt,
                    previous=snapshot,
                    current=swap.snapshot,
                )

            logger.debug(
                "Version conflict account=%s expected=%s stored=%s attempt=%s",
                account_id,
                snapshot.version,
                swap.snapshot.version,
                attempt,
            )
            if attempt < attempts_allowed:
                self._sleep(self.backoff(attempt))

        logger.warning(
            "Optimistic lock failed after %s attempts - high contention account=%s",
            attempts_allowed,
            account_id,
        )
        return RetryResult(outcome=ReconciliationOutcome.EXHAUSTED, attempts=attempts_allowed)


__all__ = [
    "DEFAULT_BACKOFF_BASE_SECONDS",
    "DEFAULT_MAX_ATTEMPTS",
    "DEFAULT_MAX_BACKOFF_SECONDS",
    "MutationBuilder",
    "PRECONDITION_FAILED_REASON",
    "Precondition",
    "RetryCoordinator",
    "RetryResult",
    "STALE_EVENT_REASON",
]
