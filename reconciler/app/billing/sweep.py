"""Periodic comparison of local billing rows against the provider."""
from __future__ import annotations

import logging
from typing import Optional

from .errors import BillingInfrastructureError
from .identity import BillingProvider
from .models import (
    AccountSnapshot,
    BillingEventType,
    EventOrigin,
    ProviderSubscription,
    SweepStats,
)
from .service import EntitlementReconciler
from .store import VersionedAccountStore

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100
DEFAULT_MAX_BATCHES = 50
DEFAULT_UNSUBSCRIBED_LIMIT = 50
REPORTED_ERROR_LIMIT = 5


def _unchanged_since_listing(listed: AccountSnapshot, current: AccountSnapshot) -> bool:
    # A fix is only valid for the row it was computed from.
    return (
        current.external_subscription_id == listed.external_subscription_id
        and current.is_entitled == listed.is_entitled
    )


class ReconciliationSweep:
    """Repairs drift that webhook delivery alone did not correct.

    Every fix goes through the reconciler as an untimestamped
    ``reconciliation`` event, so it is retried and audited like any other write.
    A fix is dropped when the row no longer matches what was checked, so a
    webhook that lands mid-sweep always wins.
    """

    def __init__(
        self,
        store: VersionedAccountStore,
        provider: BillingProvider,
        reconciler: EntitlementReconciler,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_batches: int = DEFAULT_MAX_BATCHES,
        unsubscribed_limit: int = DEFAULT_UNSUBSCRIBED_LIMIT,
    ) -> None:
        self._store = store
        self._provider = provider
        self._reconciler = reconciler
        self._batch_size = max(1, batch_size)
        self._max_batches = max(1, max_batches)
        self._unsubscribed_limit = max(0, unsubscribed_limit)

    def run(self) -> SweepStats:
        stats = SweepStats()
        self._check_subscribed_accounts(stats)
        self._check_entitled_without_subscription(stats)

        logger.info(
            "Billing reconciliation finished checked=%s mismatches=%s fixed=%s skipped=%s orphaned=%s errors=%s",
            stats.accounts_checked,
            stats.mismatches,
            stats.fixed,
            stats.skipped,
            stats.orphaned_subscriptions,
            stats.errors,
        )
        if stats.errors:
            logger.error(
                "Billing reconciliation errors: %s",
                "; ".join(stats.error_messages[:REPORTED_ERROR_LIMIT]),
            )
        return stats

    def _check_subscribed_accounts(self, stats: SweepStats) -> None:
        cursor: Optional[str] = None
        for _ in range(self._max_batches):
            batch = self._store.list_subscribed_accounts(after_account_id=cursor, limit=self._batch_size)
            if not batch:
                return
            for account in batch:
                stats.accounts_checked += 1
                try:
                    self._check_subscription(account, stats)
                except BillingInfrastructureError as exc:
                    self._record_error(stats, account, exc)
            cursor = batch[-1].account_id
            if len(batch) < self._batch_size:
                return

        stats.hit_batch_limit = True
        logger.warning(
            "Billing reconciliation stopped at batch limit batches=%s batch_size=%s",
            self._max_batches,
            self._batch_size,
        )

    def _check_subscription(self, account: AccountSnapshot, stats: SweepStats) -> None:
        subscription_id = account.external_subscription_id
        if not subscription_id:
            return

        subscription = self._provider.retrieve_subscription(subscription_id)
        if subscription is None:
            stats.orphaned_subscriptions += 1
            stats.mismatches += 1
            logger.warning(
                "Orphaned subscription account=%s subscription=%s",
                account.account_id,
                subscription_id,
            )
            self._fix(account, stats, entitled=False, subscription_id=None, reason="orphaned_subscription")
            return

        if subscription.is_active == account.is_entitled:
            return

        stats.mismatches += 1
        logger.warning(
            "Entitlement mismatch account=%s subscription=%s status=%s entitled=%s",
            account.account_id,
            subscription_id,
            subscription.status,
            account.is_entitled,
        )
        self._fix(
            account,
            stats,
            entitled=subscription.is_active,
            subscription_id=subscription_id if subscription.is_active else None,
            reason=f"status_{subscription.status}",
        )

    def _check_entitled_without_subscription(self, stats: SweepStats) -> None:
        if not self._unsubscribed_limit:
            return
        for account in self._store.list_entitled_without_subscription(limit=self._unsubscribed_limit):
            stats.accounts_checked += 1
            stats.mismatches += 1
            try:
                active = self._find_active_subscription(account)
                if active is not None:
                    self._fix(
                        account,
                        stats,
                        entitled=True,
                        subscription_id=active.subscription_id,
                        reason="adopted_subscription",
                    )
                else:
                    logger.warning("Entitled account has no subscription account=%s", account.account_id)
                    self._fix(account, stats, entitled=False, subscription_id=None, reason="no_subscription")
            except BillingInfrastructureError as exc:
                self._record_error(stats, account, exc)

    def _find_active_subscription(self, account: AccountSnapshot) -> Optional[ProviderSubscription]:
        if not account.external_customer_id:
            return None
        for subscription in self._provider.list_subscriptions(account.external_customer_id):
            if subscription.is_active:
                return subscription
        return None

    def _fix(
        self,
        account: AccountSnapshot,
        stats: SweepStats,
        *,
        entitled: bool,
        subscription_id: Optional[str],
        reason: str,
    ) -> None:
        result = self._reconciler.apply_billing_event_fields(
            account.account_id,
            event_type=BillingEventType.RECONCILIATION_FIX,
            origin=EventOrigin.RECONCILIATION,
            desired_entitlement=entitled,
            external_subscription_id=subscription_id,
            metadata={"reason": reason},
            precondition=lambda current: _unchanged_since_listing(account, current),
        )
        if result.applied:
            stats.fixed += 1
            return
        if result.skipped:
            stats.skipped += 1
            logger.info(
                "Skipped reconciliation fix for changed account account=%s reason=%s",
                account.account_id,
                reason,
            )
            return
        stats.errors += 1
        stats.error_messages.append(f"{account.account_id}: {result.reason or result.outcome.value}")

    @staticmethod
    def _record_error(stats: SweepStats, account: AccountSnapshot, exc: Exception) -> None:
        stats.errors += 1
        stats.error_messages.append(f"{account.account_id}: {exc}")
        logger.error("Billing reconciliation failed account=%s: %s", account.account_id, exc)


__all__ = ["DEFAULT_BATCH_SIZE", "DEFAULT_MAX_BATCHES", "ReconciliationSweep"]
