"""Stripe implementation of the billing provider contract."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence

import stripe

from ..billing.errors import ProviderUnavailableError
from ..billing.identity import ACCOUNT_METADATA_KEY
from ..billing.models import ProviderCustomer, ProviderSubscription

logger = logging.getLogger(__name__)

_MISSING_RESOURCE_CODE = "resource_missing"


def _as_dict(value: Any) -> Dict[str, Any]:
    """Plain dict view of a ``StripeObject`` or mapping."""

    if not value:
        return {}
    if isinstance(value, stripe.StripeObject):
        return value.to_dict()
    if isinstance(value, Mapping):
        return dict(value)
    return {}


def _metadata(value: Any) -> Dict[str, str]:
    return {str(key): str(item) for key, item in _as_dict(value).items()}


def _to_customer(obj: Any) -> ProviderCustomer:
    payload = _as_dict(obj)
    metadata = _metadata(payload.get("metadata"))
    return ProviderCustomer(
        customer_id=str(payload["id"]),
        email=payload.get("email"),
        account_id=metadata.get(ACCOUNT_METADATA_KEY) or None,
        deleted=bool(payload.get("deleted", False)),
        metadata=metadata,
    )


def _to_subscription(obj: Any) -> ProviderSubscription:
    payload = _as_dict(obj)
    customer = payload.get("customer")
    if isinstance(customer, (stripe.StripeObject, Mapping)):
        customer = _as_dict(customer).get("id")
    return ProviderSubscription(
        subscription_id=str(payload["id"]),
        customer_id=customer,
        status=str(payload.get("status", "")),
    )


class StripeBillingProvider:
    """Customer and subscription lookups against the Stripe API.

    Uses a per-instance :class:`stripe.StripeClient` so the module-level API key
    is never mutated, and bounds every request with ``timeout_seconds``.
    """

    name = "stripe"

    def __init__(
        self,
        *,
        api_key: str,
        timeout_seconds: float = 10.0,
        client: Optional[stripe.StripeClient] = None,
    ) -> None:
        if client is None:
            if not api_key:
                raise RuntimeError("Stripe API key must be configured and non-empty")
            client = stripe.StripeClient(
                api_key,
                http_client=stripe.RequestsClient(timeout=timeout_seconds),
                max_network_retries=0,
            )
        self._client = client

    def retrieve_customer(self, customer_id: str) -> Optional[ProviderCustomer]:
        try:
            customer = self._client.customers.retrieve(customer_id)
        except stripe.InvalidRequestError as exc:
            if exc.code == _MISSING_RESOURCE_CODE:
                return None
            raise self._unavailable("retrieve customer", exc) from exc
        except stripe.StripeError as exc:
            raise self._unavailable("retrieve customer", exc) from exc
        return _to_customer(customer)

    def search_customers(self, *, email: str) -> Sequence[ProviderCustomer]:
        try:
            page = self._client.customers.list(params={"email": email, "limit": 10})
        except stripe.StripeError as exc:
            raise self._unavailable("list customers", exc) from exc
        return [_to_customer(customer) for customer in page.data]

    def create_customer(self, *, account_id: str, email: Optional[str]) -> ProviderCustomer:
        params: Dict[str, Any] = {"metadata": {ACCOUNT_METADATA_KEY: account_id}}
        if email:
            params["email"] = email
        try:
            customer = self._client.customers.create(params=params)
        except stripe.StripeError as exc:
            raise self._unavailable("create customer", exc) from exc
        return _to_customer(customer)

    def tag_customer(self, customer_id: str, *, account_id: str) -> ProviderCustomer:
        try:
            customer = self._client.customers.update(
                customer_id,
                params={"metadata": {ACCOUNT_METADATA_KEY: account_id}},
            )
        except stripe.StripeError as exc:
            raise self._unavailable("tag customer", exc) from exc
        return _to_customer(customer)

    def retrieve_subscription(self, subscription_id: str) -> Optional[ProviderSubscription]:
        try:
            subscription = self._client.subscriptions.retrieve(subscription_id)
        except stripe.InvalidRequestError as exc:
            if exc.code == _MISSING_RESOURCE_CODE:
                return None
            raise self._unavailable("retrieve subscription", exc) from exc
        except stripe.StripeError as exc:
            raise self._unavailable("retrieve subscription", exc) from exc
        return _to_subscription(subscription)

    def list_subscriptions(self, customer_id: str) -> Sequence[ProviderSubscription]:
        try:
            page = self._client.subscriptions.list(params={"customer": customer_id, "limit": 10})
        except stripe.StripeError as exc:
            raise self._unavailable("list subscriptions", exc) from exc
        subscriptions: List[ProviderSubscription] = [_to_subscription(item) for item in page.data]
        return subscriptions

    @staticmethod
    def _unavailable(operation: str, exc: stripe.StripeError) -> ProviderUnavailableError:
        logger.critical("Stripe %s failed: %s", operation, exc)
        return ProviderUnavailableError(f"Stripe {operation} failed: {exc}")


__all__ = ["StripeBillingProvider"]
