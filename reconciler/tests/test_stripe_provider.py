"""Tests for the Stripe provider against StripeClient-shaped responses."""
from __future__ import annotations

from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest
import stripe

from reconciler.app.billing import ProviderUnavailableError
from reconciler.app.providers import StripeBillingProvider, create_billing_provider
from reconciler.app.providers.stripe_provider import _to_customer


def _customer(record: Dict[str, Any]) -> stripe.Customer:
    return stripe.Customer.construct_from(record, "sk_test_123")


def _subscription(record: Dict[str, Any]) -> stripe.Subscription:
    return stripe.Subscription.construct_from(record, "sk_test_123")


class FakeCustomers:
    def __init__(self) -> None:
        self.records: Dict[str, Dict[str, Any]] = {}
        self.calls: List[tuple] = []
        self.error: Optional[Exception] = None

    def retrieve(self, customer_id: str) -> stripe.Customer:
        self.calls.append(("retrieve", customer_id))
        if self.error is not None:
            raise self.error
        if customer_id not in self.records:
            raise stripe.InvalidRequestError("No such customer", "id", code="resource_missing")
        return _customer(self.records[customer_id])

    def list(self, params: Dict[str, Any]) -> SimpleNamespace:
        self.calls.append(("list", params))
        return SimpleNamespace(
            data=[_customer(record) for record in self.records.values() if record.get("email") == params["email"]]
        )

    def create(self, params: Dict[str, Any]) -> stripe.Customer:
        self.calls.append(("create", params))
        record = {"id": f"cus_{len(self.records) + 1}", **params}
        self.records[record["id"]] = record
        return _customer(record)

    def update(self, customer_id: str, params: Dict[str, Any]) -> stripe.Customer:
        self.calls.append(("update", customer_id, params))
        record = self.records[customer_id]
        record["metadata"] = {**record.get("metadata", {}), **params["metadata"]}
        return _customer(record)


class FakeSubscriptions:
    def __init__(self) -> None:
        self.records: Dict[str, Dict[str, Any]] = {}

    def retrieve(self, subscription_id: str) -> stripe.Subscription:
        if subscription_id not in self.records:
            raise stripe.InvalidRequestError("No such subscription", "id", code="resource_missing")
        return _subscription(self.records[subscription_id])

    def list(self, params: Dict[str, Any]) -> SimpleNamespace:
        return SimpleNamespace(
            data=[_subscription(record) for record in self.records.values() if record["customer"] == params["customer"]]
        )


@pytest.fixture
def client() -> SimpleNamespace:
    return SimpleNamespace(customers=FakeCustomers(), subscriptions=FakeSubscriptions())


@pytest.fixture
def provider(client) -> StripeBillingProvider:
    return StripeBillingProvider(api_key="", client=client)


def test_missing_customer_maps_to_none(provider):
    assert provider.retrieve_customer("cus_missing") is None


def test_deleted_customer_is_flagged(provider, client):
    client.customers.records["cus_1"] = {"id": "cus_1", "deleted": True}

    customer = provider.retrieve_customer("cus_1")

    assert customer.deleted is True
    assert customer.account_id is None


def test_create_customer_tags_account(provider, client):
    customer = provider.create_customer(account_id="acct_1", email="reader@example.com")

    assert customer.account_id == "acct_1"
    assert customer.email == "reader@example.com"
    assert client.customers.calls[-1] == (
        "create",
        {"metadata": {"account_id": "acct_1"}, "email": "reader@example.com"},
    )


def test_search_and_tag_customer(provider, client):
    client.customers.records["cus_9"] = {"id": "cus_9", "email": "reader@example.com", "metadata": {}}

    found = provider.search_customers(email="reader@example.com")
    tagged = provider.tag_customer("cus_9", account_id="acct_1")

    assert [customer.customer_id for customer in found] == ["cus_9"]
    assert found[0].account_id is None
    assert tagged.account_id == "acct_1"


def test_subscription_lookups(provider, client):
    client.subscriptions.records["sub_1"] = {"id": "sub_1", "customer": "cus_1", "status": "trialing"}

    subscription = provider.retrieve_subscription("sub_1")

    assert subscription.is_active is True
    assert provider.retrieve_subscription("sub_missing") is None
    assert [item.subscription_id for item in provider.list_subscriptions("cus_1")] == ["sub_1"]


def test_api_failures_become_provider_unavailable(provider, client):
    client.customers.error = stripe.APIConnectionError("timed out")

    with pytest.raises(ProviderUnavailableError):
        provider.retrieve_customer("cus_1")


def test_stripe_provider_requires_api_key():
    with pytest.raises(RuntimeError):
        StripeBillingProvider(api_key="")


def test_factory_defaults_to_sandbox():
    assert create_billing_provider("").name == "sandbox"
    assert create_billing_provider("stripe", stripe_api_key="sk_test_123").name == "stripe"


def test_stripe_objects_with_nested_metadata_are_converted():
    customer = stripe.Customer.construct_from(
        {"id": "cus_1", "email": "reader@example.com", "metadata": {"account_id": "acct_1", "tier": 2}},
        "sk_test_123",
    )

    converted = _to_customer(customer)

    assert converted.customer_id == "cus_1"
    assert converted.account_id == "acct_1"
    assert converted.metadata == {"account_id": "acct_1", "tier": "2"}


def test_expanded_subscription_customer_is_reduced_to_id(provider, client):
    client.subscriptions.records["sub_2"] = {
        "id": "sub_2",
        "customer": {"id": "cus_2", "object": "customer"},
        "status": "past_due",
    }

    subscription = provider.retrieve_subscription("sub_2")

    assert subscription.customer_id == "cus_2"
    assert subscription.is_active is False
