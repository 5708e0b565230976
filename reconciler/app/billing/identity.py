"""Maps provider customers to internal accounts."""
from __future__ import annotations

import logging
from typing import Dict, Optional, Protocol, Sequence

from .audit import AuditTrail
from .errors import BillingInfrastructureError
from .models import (
    AccountMutation,
    AccountSnapshot,
    AuditEntry,
    BillingEventType,
    EventOrigin,
    ProviderCustomer,
    ProviderSubscription,
)
from .store import VersionedAccountStore

logger = logging.getLogger(__name__)

ACCOUNT_METADATA_KEY = "account_id"


class BillingProvider(Protocol):
    """Narrow view of the external billing provider's customer API.

    Implementations raise :class:`ProviderUnavailableError` on I/O failure and
    bound every call with an explicit timeout.
    """

    def retrieve_customer(self, customer_id: str) -> Optional[ProviderCustomer]:
        """Return the customer, or ``None`` when it does not exist."""

    def search_customers(self, *, email: str) -> Sequence[ProviderCustomer]:
        """Return live customers registered with ``email``."""

    def create_customer(self, *, account_id: str, email: Optional[str]) -> ProviderCustomer:
        """Create a customer tagged with ``account_id`` in its metadata."""

    def tag_customer(self, customer_id: str, *, account_id: str) -> ProviderCustomer:
        """Attach ``account_id`` to an existing customer's metadata."""

    def retrieve_subscription(self, subscription_id: str) -> Optional[ProviderSubscription]:
        """Return the subscription, or ``None`` when it does not exist."""

    def list_subscriptions(self, customer_id: str) -> Sequence[ProviderSubscription]:
        """Return the customer's subscriptions that are not canceled."""


class IdentityResolver:
    """Establishes the one external customer that belongs to an account.

    Customer creation is over-tolerant of duplicates: losing a persistence race
    leaves a stray unused customer at the provider rather than blocking.
    """

    def __init__(
        self,
        store: VersionedAccountStore,
        provider: BillingProvider,
        audit_trail: AuditTrail,
        *,
        max_attempts: int = 4,
    ) -> None:
        self._store = store
        self._provider = provider
        self._audit_trail = audit_trail
        self._max_attempts = max(1, max_attempts)

    def resolve(self, account_id: str) -> str:
        snapshot = self._store.read(account_id)
        stale_customer_id: Optional[str] = None

        if snapshot.external_customer_id:
            confirmed = self._confirm_stored_customer(snapshot, snapshot.external_customer_id)
            if confirmed is not None:
                return confirmed
            stale_customer_id = snapshot.external_customer_id

        customer, event_type, metadata = self._find_or_create_customer(snapshot)
        return self._persist(snapshot, customer.customer_id, stale_customer_id, event_type, metadata)

    def _confirm_stored_customer(self, snapshot: AccountSnapshot, customer_id: str) -> Optional[str]:
        customer = self._provider.retrieve_customer(customer_id)

        if customer is None or customer.deleted:
            logger.warning(
                "Stored billing customer is missing or deleted; repairing account=%s customer=%s",
                snapshot.account_id,
                customer_id,
            )
            return None

        if customer.account_id and customer.account_id != snapshot.account_id:
            logger.warning(
                "Stored billing customer belongs to a different account; repairing account=%s customer=%s owner=%s",
                snapshot.account_id,
                customer_id,
                customer.account_id,
            )
            return None

        if customer.account_id is None:
            self._provider.tag_customer(customer_id, account_id=snapshot.account_id)
        return customer_id

    def _find_or_create_customer(
        self,
        snapshot: AccountSnapshot,
    ) -> tuple[ProviderCustomer, BillingEventType, Dict[str, str]]:
        account_id = snapshot.account_id
        collisions: list[str] = []

        if snapshot.email:
            unclaimed: Optional[ProviderCustomer] = None
            for candidate in self._provider.search_customers(email=snapshot.email):
                if candidate.deleted or candidate.customer_id == snapshot.external_customer_id:
                    continue
                if candidate.account_id == account_id:
                    return candidate, BillingEventType.CUSTOMER_LINKED, {"reason": "metadata_match"}
                if candidate.account_id:
                    collisions.append(candidate.customer_id)
                    logger.warning(
                        "Billing customer collision account=%s customer=%s owner=%s",
                        account_id,
                        candidate.customer_id,
                        candidate.account_id,
                    )
                elif unclaimed is None:
                    unclaimed = candidate

            if unclaimed is not None:
                tagged = self._provider.tag_customer(unclaimed.customer_id, account_id=account_id)
                return tagged, BillingEventType.CUSTOMER_LINKED, {"reason": "email_match"}

        created = self._provider.create_customer(account_id=account_id, email=snapshot.email)
        metadata: Dict[str, str] = {}
        if collisions:
            metadata["collision_with"] = ",".join(collisions)
        logger.info("Created billing customer account=%s customer=%s", account_id, created.customer_id)
        return created, BillingEventType.CUSTOMER_CREATED, metadata

    def _persist(
        self,
        snapshot: AccountSnapshot,
        customer_id: str,
        stale_customer_id: Optional[str],
        event_type: BillingEventType,
        metadata: Dict[str, str],
    ) -> str:
        mutation = AccountMutation(external_customer_id=customer_id)
        current = snapshot

        for attempt in range(1, self._max_attempts + 1):
            swap = self._store.compare_and_swap(current.account_id, current.version, mutation)
            if swap.applied:
                self._journal(current, swap.snapshot, event_type, metadata)
                return customer_id

            current = swap.snapshot
            stored = current.external_customer_id
            if stored and stored != stale_customer_id:
                logger.info(
                    "Concurrent customer resolution won account=%s stored=%s discarded=%s",
                    current.account_id,
                    stored,
                    customer_id,
                )
                return stored
            logger.debug(
                "Version conflict persisting customer account=%s attempt=%s",
                current.account_id,
                attempt,
            )

        logger.warning(
            "Concurrent update detected during customer creation account=%s customer=%s",
            snapshot.account_id,
            customer_id,
        )
        return customer_id

    def _journal(
        self,
        previous: AccountSnapshot,
        current: AccountSnapshot,
        event_type: BillingEventType,
        metadata: Dict[str, str],
    ) -> None:
        entry = AuditEntry(
            account_id=current.account_id,
            event_type=event_type,
            origin=EventOrigin.MANUAL,
            previous_state=previous.entitlement_state(),
            new_state=current.entitlement_state(),
            metadata={**metadata, "version": str(current.version)},
        )
        try:
            self._audit_trail.record(entry)
        except BillingInfrastructureError:
            logger.warning(
                "Failed to write customer audit log account=%s",
                current.account_id,
                exc_info=True,
            )


__all__ = ["ACCOUNT_METADATA_KEY", "BillingProvider", "IdentityResolver"]
