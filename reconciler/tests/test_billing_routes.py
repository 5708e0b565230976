from __future__ import annotations

import hashlib
import hmac
import json
import time
from datetime import datetime, timezone
from typing import Any, Dict

import pytest
from fastapi import HTTPException

from reconciler.app.billing import (
    AccountSnapshot,
    BillingEventType,
    EntitlementReconciler,
    IdentityResolver,
    InMemoryAccountStore,
    InMemoryAuditTrail,
    ReconciliationOutcome,
    ReconciliationResult,
    ReconciliationSweep,
    RetryCoordinator,
    StoreUnavailableError,
)
from reconciler.app.providers import LocalSandboxBillingProvider
from reconciler.app.routes import billing as billing_routes
from reconciler.app.schemas.billing import ManualCorrectionRequest, ResolveCustomerRequest
from reconciler.app.services import billing as billing_services
from reconciler.config import load_reconciler_config

WEBHOOK_SECRET = "whsec_test_secret"
ADMIN_TOKEN = "admin-token"


def _sign(payload: bytes, secret: str = WEBHOOK_SECRET) -> str:
    timestamp = int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def _payload(event_type: str = "customer.subscription.created", status: str = "active") -> bytes:
    event: Dict[str, Any] = {
        "id": "evt_route",
        "type": event_type,
        "created": 1709283600,
        "data": {
            "object": {
                "id": "sub_1",
                "customer": "cus_1",
                "status": status,
                "metadata": {"account_id": "acct_1"},
            }
        },
    }
    return json.dumps(event).encode("utf-8")


class StubReconciler:
    def __init__(self, outcome: ReconciliationOutcome) -> None:
        self.outcome = outcome
        self.events = []

    def apply_billing_event(self, event):
        self.events.append(event)
        return ReconciliationResult(
            outcome=self.outcome,
            account_id=event.account_id,
            attempts=4,
            reason="Concurrent update conflict - max retries exceeded",
        )


@pytest.fixture
def wiring(monkeypatch):
    config = load_reconciler_config(
        {"STRIPE_WEBHOOK_SECRET": WEBHOOK_SECRET, "BILLING_ADMIN_TOKEN": ADMIN_TOKEN}
    )
    store = InMemoryAccountStore()
    store.add(AccountSnapshot(account_id="acct_1", email="reader@example.com", external_customer_id="cus_1"))
    audit = InMemoryAuditTrail()
    provider = LocalSandboxBillingProvider()
    reconciler = EntitlementReconciler(
        store=store,
        retry_coordinator=RetryCoordinator(store, sleep=lambda _: None),
        audit_trail=audit,
    )

    monkeypatch.setattr(billing_services, "get_reconciler_config", lambda: config)
    monkeypatch.setattr(billing_services, "get_account_store", lambda: store)
    monkeypatch.setattr(billing_services, "get_audit_trail", lambda: audit)
    monkeypatch.setattr(billing_services, "get_reconciler", lambda: reconciler)
    monkeypatch.setattr(billing_services, "get_billing_provider", lambda: provider)
    monkeypatch.setattr(
        billing_services,
        "get_identity_resolver",
        lambda: IdentityResolver(store, provider, audit),
    )
    monkeypatch.setattr(
        billing_services,
        "get_reconciliation_sweep",
        lambda: ReconciliationSweep(store, provider, reconciler),
    )
    return store, audit, provider


def test_valid_webhook_is_applied(wiring):
    store, audit, _ = wiring
    payload = _payload()

    response = billing_routes.process_webhook(payload, _sign(payload))

    assert response.outcome == ReconciliationOutcome.APPLIED
    assert response.event_id == "evt_route"
    assert store.read("acct_1").is_entitled is True
    assert audit.entries[0].source_event_id == "evt_route"


def test_redelivered_webhook_is_acknowledged_as_skipped(wiring):
    payload = _payload()
    billing_routes.process_webhook(payload, _sign(payload))

    response = billing_routes.process_webhook(payload, _sign(payload))

    assert response.outcome == ReconciliationOutcome.SKIPPED_STALE


def test_bad_signature_is_rejected(wiring):
    store, _, _ = wiring
    payload = _payload()

    with pytest.raises(HTTPException) as exc_info:
        billing_routes.process_webhook(payload, _sign(payload, secret="whsec_wrong"))

    assert exc_info.value.status_code == 400
    assert store.read("acct_1").version == 1


def test_missing_signature_is_rejected(wiring):
    with pytest.raises(HTTPException) as exc_info:
        billing_routes.process_webhook(_payload(), None)

    assert exc_info.value.status_code == 400


def test_exhausted_reconciliation_returns_503(wiring, monkeypatch):
    stub = StubReconciler(ReconciliationOutcome.EXHAUSTED)
    monkeypatch.setattr(billing_services, "get_reconciler", lambda: stub)
    payload = _payload()

    with pytest.raises(HTTPException) as exc_info:
        billing_routes.process_webhook(payload, _sign(payload))

    assert exc_info.value.status_code == 503
    assert len(stub.events) == 1


def test_store_outage_returns_503(wiring, monkeypatch):
    class DownReconciler:
        def apply_billing_event(self, event):
            raise StoreUnavailableError("connection refused")

    monkeypatch.setattr(billing_services, "get_reconciler", lambda: DownReconciler())
    payload = _payload()

    with pytest.raises(HTTPException) as exc_info:
        billing_routes.process_webhook(payload, _sign(payload))

    assert exc_info.value.status_code == 503


def test_unknown_account_returns_404(wiring):
    event = json.loads(_payload())
    event["data"]["object"]["metadata"] = {"account_id": "acct_missing"}
    payload = json.dumps(event).encode("utf-8")

    with pytest.raises(HTTPException) as exc_info:
        billing_routes.process_webhook(payload, _sign(payload))

    assert exc_info.value.status_code == 404


def test_unhandled_event_is_acknowledged(wiring):
    payload = json.dumps({"id": "evt_x", "type": "charge.refunded", "data": {"object": {"id": "ch_1"}}}).encode()

    response = billing_routes.process_webhook(payload, _sign(payload))

    assert response.ignored is True
    assert response.outcome is None


def test_admin_guard_rejects_missing_or_wrong_token(wiring):
    with pytest.raises(HTTPException) as missing:
        billing_routes._require_admin(None)
    with pytest.raises(HTTPException) as wrong:
        billing_routes._require_admin("Bearer nope")

    assert missing.value.status_code == 401
    assert wrong.value.status_code == 401
    assert billing_routes._require_admin(f"Bearer {ADMIN_TOKEN}") is None


def test_read_account_returns_row_and_history(wiring):
    payload = _payload()
    billing_routes.process_webhook(payload, _sign(payload))

    response = billing_routes.read_account("acct_1", _admin=None)

    assert response.account.is_entitled is True
    assert response.account.version == 2
    assert [entry.event_type for entry in response.history] == [BillingEventType.SUBSCRIPTION_CREATED]


def test_read_unknown_account_returns_404(wiring):
    with pytest.raises(HTTPException) as exc_info:
        billing_routes.read_account("acct_missing", _admin=None)

    assert exc_info.value.status_code == 404


def test_manual_correction_clears_subscription(wiring):
    store, audit, _ = wiring
    payload = _payload()
    billing_routes.process_webhook(payload, _sign(payload))

    request = ManualCorrectionRequest(
        isEntitled=False,
        clearSubscription=True,
        eventType=BillingEventType.SUBSCRIPTION_CANCELED,
        reason="refund issued",
    )
    response = billing_routes.apply_correction("acct_1", request, _admin=None)

    assert response.outcome == ReconciliationOutcome.APPLIED
    account = store.read("acct_1")
    assert account.is_entitled is False
    assert account.external_subscription_id is None
    assert account.last_event_applied_at == datetime.fromtimestamp(1709283600, tz=timezone.utc)
    assert audit.entries[-1].metadata["reason"] == "refund issued"


def test_resolve_customer_creates_account_and_customer(wiring):
    store, _, provider = wiring

    response = billing_routes.resolve_customer("acct_new", ResolveCustomerRequest(email="new@example.com"), _admin=None)

    assert store.read("acct_new").external_customer_id == response.external_customer_id
    assert provider.created_customers == [response.external_customer_id]


def test_reconcile_route_reports_stats(wiring):
    store, _, _ = wiring
    store.add(store.read("acct_1").model_copy(update={"external_subscription_id": "sub_gone", "is_entitled": True}))

    response = billing_routes.run_reconciliation(_admin=None)

    assert response.orphaned_subscriptions == 1
    assert response.fixed == 1
    assert response.success is True


def test_payment_succeeded_webhook_restores_past_due_account(wiring):
    store, audit, provider = wiring
    assert store.read("acct_1").is_entitled is False
    provider.add_subscription("cus_1", subscription_id="sub_1", status="active")
    payload = json.dumps(
        {
            "id": "evt_paid",
            "type": "invoice.payment_succeeded",
            "created": 1709283600,
            "data": {"object": {"id": "in_1", "customer": "cus_1", "subscription": "sub_1"}},
        }
    ).encode("utf-8")

    response = billing_routes.process_webhook(payload, _sign(payload))

    assert response.outcome == ReconciliationOutcome.APPLIED
    account = store.read("acct_1")
    assert account.is_entitled is True
    assert account.plan == "pro"
    assert account.external_subscription_id == "sub_1"
    assert audit.entries[-1].event_type == BillingEventType.PAYMENT_SUCCEEDED
