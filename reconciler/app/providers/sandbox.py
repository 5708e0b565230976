"""In-process billing provider for local development and tests."""
from __future__ import annotations

from threading import Lock
from typing import Dict, List, Optional, Sequence
from uuid import uuid4

from ..billing.identity import ACCOUNT_METADATA_KEY
from ..billing.models import ProviderCustomer, ProviderSubscription


class LocalSandboxBillingProvider:
    """Minimal provider implementation backed by dictionaries."""

    name = "sandbox"

    def __init__(self) -> None:
        self._customers: Dict[str, ProviderCustomer] = {}
        self._subscriptions: Dict[str, ProviderSubscription] = {}
        self._lock = Lock()
        self.created_customers: List[str] = []

    def add_customer(
        self,
        *,
        email: Optional[str] = None,
        account_id: Optional[str] = None,
        customer_id: Optional[str] = None,
    ) -> ProviderCustomer:
        metadata = {ACCOUNT_METADATA_KEY: account_id} if account_id else {}
        customer = ProviderCustomer(
            customer_id=customer_id or f"cus_{uuid4().hex[:14]}",
            email=email,
            account_id=account_id,
            metadata=metadata,
        )
        with self._lock:
            self._customers[customer.customer_id] = customer
        return customer

    def delete_customer(self, customer_id: str) -> None:
        with self._lock:
            customer = self._customers[customer_id]
            self._customers[customer_id] = customer.model_copy(update={"deleted": True})

    def add_subscription(
        self,
        customer_id: str,
        *,
        status: str = "active",
        subscription_id: Optional[str] = None,
    ) -> ProviderSubscription:
        subscription = ProviderSubscription(
            subscription_id=subscription_id or f"sub_{uuid4().hex[:14]}",
            customer_id=customer_id,
            status=status,
        )
        with self._lock:
            self._subscriptions[subscription.subscription_id] = subscription
        return subscription

    def remove_subscription(self, subscription_id: str) -> None:
        with self._lock:
            self._subscriptions.pop(subscription_id, None)

    def retrieve_customer(self, customer_id: str) -> Optional[ProviderCustomer]:
        with self._lock:
            return self._customers.get(customer_id)

    def search_customers(self, *, email: str) -> Sequence[ProviderCustomer]:
        with self._lock:
            return [
                customer
                for customer in self._customers.values()
                if customer.email == email and not customer.deleted
            ]

    def create_customer(self, *, account_id: str, email: Optional[str]) -> ProviderCustomer:
        customer = self.add_customer(email=email, account_id=account_id)
        with self._lock:
            self.created_customers.append(customer.customer_id)
        return customer

    def tag_customer(self, customer_id: str, *, account_id: str) -> ProviderCustomer:
        with self._lock:
            customer = self._customers[customer_id]
            tagged = customer.model_copy(
                update={
                    "account_id": account_id,
                    "metadata": {**customer.metadata, ACCOUNT_METADATA_KEY: account_id},
                }
            )
            self._customers[customer_id] = tagged
        return tagged

    def retrieve_subscription(self, subscription_id: str) -> Optional[ProviderSubscription]:
        with self._lock:
            return self._subscriptions.get(subscription_id)

    def list_subscriptions(self, customer_id: str) -> Sequence[ProviderSubscription]:
        with self._lock:
            return [
                subscription
                for subscription in self._subscriptions.values()
                if subscription.customer_id == customer_id and subscription.status != "canceled"
            ]


__all__ = ["LocalSandboxBillingProvider"]
