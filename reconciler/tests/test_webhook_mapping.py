"""Tests for mapping verified provider webhooks to billing events."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

import pytest

from reconciler.app.billing import (
    AccountNotFoundError,
    AccountSnapshot,
    BillingEventType,
    EventOrigin,
    InMemoryAccountStore,
    ProviderSubscription,
    ProviderUnavailableError,
    map_provider_event,
)
from reconciler.app.providers import LocalSandboxBillingProvider

CREATED = 1709283600


@pytest.fixture
def store() -> InMemoryAccountStore:
    store = InMemoryAccountStore()
    store.add(AccountSnapshot(account_id="acct_1", external_customer_id="cus_1"))
    return store


def _event(event_type: str, data_object: Dict[str, Any], *, created: Optional[int] = CREATED) -> Dict[str, Any]:
    event: Dict[str, Any] = {"id": "evt_123", "type": event_type, "data": {"object": data_object}}
    if created is not None:
        event["created"] = created
    return event


def _subscription(status: str, *, metadata: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    return {
        "id": "sub_1",
        "object": "subscription",
        "customer": "cus_1",
        "status": status,
        "metadata": metadata if metadata is not None else {"account_id": "acct_1"},
    }


def test_active_subscription_created_entitles(store):
    event = map_provider_event(_event("customer.subscription.created", _subscription("active")), store=store)

    assert event.account_id == "acct_1"
    assert event.event_type == BillingEventType.SUBSCRIPTION_CREATED
    assert event.origin == EventOrigin.WEBHOOK
    assert event.desired_entitlement is True
    assert event.external_customer_id == "cus_1"
    assert event.external_subscription_id == "sub_1"
    assert event.event_id == "evt_123"
    assert event.event_timestamp == datetime.fromtimestamp(CREATED, tz=timezone.utc)
    assert event.metadata == {"subscription_status": "active"}


def test_trialing_counts_as_entitled(store):
    event = map_provider_event(_event("customer.subscription.updated", _subscription("trialing")), store=store)

    assert event.event_type == BillingEventType.SUBSCRIPTION_UPDATED
    assert event.desired_entitlement is True


def test_inactive_update_revokes_and_clears_subscription(store):
    event = map_provider_event(_event("customer.subscription.updated", _subscription("past_due")), store=store)

    assert event.desired_entitlement is False
    assert event.external_subscription_id is None
    assert event.clears_subscription is True


def test_subscription_deleted_cancels(store):
    event = map_provider_event(_event("customer.subscription.deleted", _subscription("canceled")), store=store)

    assert event.event_type == BillingEventType.SUBSCRIPTION_CANCELED
    assert event.desired_entitlement is False
    assert event.clears_subscription is True


def test_account_falls_back_to_customer_owner(store):
    data = _subscription("active", metadata={})

    event = map_provider_event(_event("customer.subscription.created", data), store=store)

    assert event.account_id == "acct_1"


def test_expanded_customer_object_is_supported(store):
    data = _subscription("active", metadata={})
    data["customer"] = {"id": "cus_1", "object": "customer"}

    event = map_provider_event(_event("customer.subscription.created", data), store=store)

    assert event.external_customer_id == "cus_1"
    assert event.account_id == "acct_1"


def test_unidentifiable_account_raises(store):
    data = _subscription("active", metadata={})
    data["customer"] = "cus_unknown"

    with pytest.raises(AccountNotFoundError):
        map_provider_event(_event("customer.subscription.created", data), store=store)


def test_payment_succeeded_keeps_entitlement(store):
    invoice = {"id": "in_1", "customer": "cus_1", "subscription": "sub_1"}

    event = map_provider_event(_event("invoice.payment_succeeded", invoice), store=store)

    assert event.event_type == BillingEventType.PAYMENT_SUCCEEDED
    assert event.desired_entitlement is None
    assert event.revoke_entitlement is False
    assert event.clears_subscription is False
    assert event.metadata == {"invoice_id": "in_1", "subscription_id": "sub_1"}



class UnreachableProvider(LocalSandboxBillingProvider):
    def retrieve_subscription(self, subscription_id: str) -> Optional[ProviderSubscription]:
        raise ProviderUnavailableError("stripe timed out")


def test_payment_succeeded_restores_access_from_recovered_subscription(store):
    provider = LocalSandboxBillingProvider()
    provider.add_subscription("cus_1", subscription_id="sub_1", status="active")
    invoice = {"id": "in_1", "customer": "cus_1", "subscription": "sub_1", "attempt_count": 2}

    event = map_provider_event(_event("invoice.payment_succeeded", invoice), store=store, provider=provider)

    assert event.event_type == BillingEventType.PAYMENT_SUCCEEDED
    assert event.desired_entitlement is True
    assert event.external_subscription_id == "sub_1"
    assert event.event_timestamp == datetime.fromtimestamp(CREATED, tz=timezone.utc)
    assert event.metadata == {"invoice_id": "in_1", "subscription_id": "sub_1", "subscription_status": "active"}


def test_payment_succeeded_on_still_unpaid_subscription_revokes(store):
    provider = LocalSandboxBillingProvider()
    provider.add_subscription("cus_1", subscription_id="sub_1", status="unpaid")
    invoice = {"id": "in_1", "customer": "cus_1", "subscription": {"id": "sub_1", "object": "subscription"}}

    event = map_provider_event(_event("invoice.payment_succeeded", invoice), store=store, provider=provider)

    assert event.desired_entitlement is False
    assert event.clears_subscription is True


def test_payment_succeeded_falls_back_to_journal_only(store):
    invoice = {"id": "in_1", "customer": "cus_1", "subscription": "sub_missing"}

    missing = map_provider_event(
        _event("invoice.payment_succeeded", invoice),
        store=store,
        provider=LocalSandboxBillingProvider(),
    )
    unreachable = map_provider_event(
        _event("invoice.payment_succeeded", invoice),
        store=store,
        provider=UnreachableProvider(),
    )

    for event in (missing, unreachable):
        assert event.desired_entitlement is None
        assert event.clears_subscription is False
        assert "subscription_status" not in event.metadata

def test_payment_failed_keeps_entitlement_under_grace_policy(store):
    invoice = {"id": "in_2", "customer": "cus_1"}

    event = map_provider_event(_event("invoice.payment_failed", invoice), store=store)

    assert event.event_type == BillingEventType.PAYMENT_FAILED
    assert event.revoke_entitlement is False
    assert event.clears_subscription is False


def test_payment_failed_revokes_when_configured(store):
    invoice = {"id": "in_2", "customer": "cus_1"}

    event = map_provider_event(
        _event("invoice.payment_failed", invoice),
        store=store,
        revoke_on_payment_failure=True,
    )

    assert event.revoke_entitlement is True
    assert event.clears_subscription is True


def test_event_without_created_has_no_timestamp(store):
    event = map_provider_event(
        _event("customer.subscription.updated", _subscription("active"), created=None),
        store=store,
    )

    assert event.event_timestamp is None


def test_unhandled_event_types_are_ignored(store):
    assert map_provider_event(_event("charge.refunded", {"id": "ch_1"}), store=store) is None
