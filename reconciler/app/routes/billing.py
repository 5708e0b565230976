"""API routes exposing billing reconciliation."""
from __future__ import annotations

import hmac
import json
import logging
from typing import Any, Dict, Optional

import stripe
from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool

from ..billing import (
    AccountNotFoundError,
    BillingInfrastructureError,
    EventOrigin,
    map_provider_event,
)
from ..schemas.billing import (
    AccountDetailResponse,
    AccountResponse,
    AuditEntryResponse,
    ManualCorrectionRequest,
    ReconciliationResponse,
    ResolveCustomerRequest,
    ResolveCustomerResponse,
    SweepResponse,
    WebhookAckResponse,
)
from ..services import billing as billing_services

logger = logging.getLogger("billing")

router = APIRouter(prefix="/api/billing", tags=["billing"])


def _require_admin(authorization: Optional[str] = Header(None)) -> None:
    expected = billing_services.get_reconciler_config().admin_token
    scheme, _, token = (authorization or "").partition(" ")
    if not expected or scheme.lower() != "bearer" or not hmac.compare_digest(token.strip().encode(), expected.encode()):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin token")


def _service_unavailable(exc: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc) or "Billing unavailable")


def process_webhook(payload: bytes, signature: Optional[str]) -> WebhookAckResponse:
    """Verify, map and apply one provider webhook delivery."""

    config = billing_services.get_reconciler_config()
    if not config.stripe_webhook_secret:
        logger.error("Webhook received but STRIPE_WEBHOOK_SECRET is not configured")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Webhook secret not configured")

    try:
        stripe.Webhook.construct_event(payload, signature or "", config.stripe_webhook_secret)
        event: Dict[str, Any] = json.loads(payload)
    except stripe.SignatureVerificationError as exc:
        logger.warning("Rejected webhook with invalid signature")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature") from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload") from exc

    event_id = event.get("id")
    try:
        billing_event = map_provider_event(
            event,
            store=billing_services.get_account_store(),
            provider=billing_services.get_billing_provider(),
            revoke_on_payment_failure=config.revoke_on_payment_failure,
        )
        if billing_event is None:
            return WebhookAckResponse(event_id=event_id, ignored=True)
        result = billing_services.get_reconciler().apply_billing_event(billing_event)
    except AccountNotFoundError as exc:
        logger.error("Webhook %s references an unknown account: %s", event_id, exc)
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except BillingInfrastructureError as exc:
        raise _service_unavailable(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    if result.retriable:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result.reason)
    return WebhookAckResponse(event_id=event_id, outcome=result.outcome)


@router.post("/webhook", response_model=WebhookAckResponse)
async def receive_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
) -> WebhookAckResponse:
    payload = await request.body()
    return await run_in_threadpool(process_webhook, payload, stripe_signature)


@router.get("/accounts/{account_id}", response_model=AccountDetailResponse)
def read_account(
    account_id: str,
    *,
    _admin: None = Depends(_require_admin),
) -> AccountDetailResponse:
    try:
        snapshot = billing_services.get_account_store().read(account_id)
        history = billing_services.get_audit_trail().list_for_account(account_id, limit=20)
    except AccountNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except BillingInfrastructureError as exc:
        raise _service_unavailable(exc) from exc
    return AccountDetailResponse(
        account=AccountResponse.from_snapshot(snapshot),
        history=[AuditEntryResponse.from_entry(entry) for entry in history],
    )


@router.post("/accounts/{account_id}/customer", response_model=ResolveCustomerResponse)
def resolve_customer(
    account_id: str,
    payload: ResolveCustomerRequest,
    *,
    _admin: None = Depends(_require_admin),
) -> ResolveCustomerResponse:
    try:
        billing_services.get_account_store().ensure_account(account_id, email=payload.email)
        customer_id = billing_services.get_identity_resolver().resolve(account_id)
    except BillingInfrastructureError as exc:
        raise _service_unavailable(exc) from exc
    return ResolveCustomerResponse(account_id=account_id, external_customer_id=customer_id)


@router.post("/accounts/{account_id}/corrections", response_model=ReconciliationResponse)
def apply_correction(
    account_id: str,
    payload: ManualCorrectionRequest,
    *,
    _admin: None = Depends(_require_admin),
) -> ReconciliationResponse:
    fields: Dict[str, Any] = {
        "event_type": payload.event_type,
        "origin": EventOrigin.MANUAL,
        "desired_entitlement": payload.is_entitled,
        "plan": payload.plan,
        "external_customer_id": payload.external_customer_id,
        "event_timestamp": payload.event_timestamp,
        "metadata": {"reason": payload.reason} if payload.reason else {},
    }
    if payload.clear_subscription:
        fields["external_subscription_id"] = None
    elif payload.external_subscription_id:
        fields["external_subscription_id"] = payload.external_subscription_id

    try:
        result = billing_services.get_reconciler().apply_billing_event_fields(account_id, **fields)
    except AccountNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except BillingInfrastructureError as exc:
        raise _service_unavailable(exc) from exc

    if result.retriable:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result.reason)
    return ReconciliationResponse.from_result(result)


@router.post("/reconcile", response_model=SweepResponse)
def run_reconciliation(*, _admin: None = Depends(_require_admin)) -> SweepResponse:
    try:
        stats = billing_services.get_reconciliation_sweep().run()
    except BillingInfrastructureError as exc:
        raise _service_unavailable(exc) from exc
    return SweepResponse.from_stats(stats)


__all__ = ["process_webhook", "router"]
