"""Translation of verified provider webhook events into billing events."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from .errors import AccountNotFoundError, BillingInfrastructureError
from .identity import ACCOUNT_METADATA_KEY, BillingProvider
from .models import ACTIVE_SUBSCRIPTION_STATUSES, BillingEvent, BillingEventType, EventOrigin
from .store import VersionedAccountStore

logger = logging.getLogger(__name__)

SUBSCRIPTION_EVENT_TYPES: Dict[str, BillingEventType] = {
    "customer.subscription.created": BillingEventType.SUBSCRIPTION_CREATED,
    "customer.subscription.updated": BillingEventType.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": BillingEventType.SUBSCRIPTION_CANCELED,
}

INVOICE_EVENT_TYPES: Dict[str, BillingEventType] = {
    "invoice.payment_succeeded": BillingEventType.PAYMENT_SUCCEEDED,
    "invoice.payment_failed": BillingEventType.PAYMENT_FAILED,
}


def _object_id(value: Any) -> Optional[str]:
    if not value:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, Mapping) and isinstance(value.get("id"), str):
        return value["id"]
    return None


def _event_timestamp(event: Mapping[str, Any]) -> Optional[datetime]:
    created = event.get("created")
    if created is None:
        return None
    return datetime.fromtimestamp(int(created), tz=timezone.utc)


def _resolve_account_id(
    data_object: Mapping[str, Any],
    customer_id: Optional[str],
    store: VersionedAccountStore,
    provider_event_type: str,
) -> str:
    metadata = data_object.get("metadata") or {}
    account_id = metadata.get(ACCOUNT_METADATA_KEY) if isinstance(metadata, Mapping) else None
    if account_id:
        return str(account_id)

    if customer_id:
        logger.info("No account id in %s metadata; looking up customer %s", provider_event_type, customer_id)
        snapshot = store.find_by_external_customer_id(customer_id)
        if snapshot is not None:
            return snapshot.account_id

    raise AccountNotFoundError(None, f"Cannot identify account for {provider_event_type}")


def _subscription_status_fields(
    provider: BillingProvider,
    subscription_id: str,
    metadata: Dict[str, str],
) -> Dict[str, Any]:
    try:
        subscription = provider.retrieve_subscription(subscription_id)
    except BillingInfrastructureError as exc:
        # subscription.updated carries the same status change
        logger.warning("Could not refresh subscription %s after payment: %s", subscription_id, exc)
        return {}
    if subscription is None:
        return {}
    metadata["subscription_status"] = subscription.status
    return {
        "desired_entitlement": subscription.is_active,
        "external_subscription_id": subscription_id if subscription.is_active else None,
    }


def map_provider_event(
    event: Mapping[str, Any],
    *,
    store: VersionedAccountStore,
    provider: Optional[BillingProvider] = None,
    revoke_on_payment_failure: bool = False,
) -> Optional[BillingEvent]:
    """Return the billing event for ``event`` or ``None`` when it is not handled.

    With a ``provider``, a successful invoice payment re-applies the current
    status of its subscription, which restores access after a past_due recovery.
    """

    provider_event_type = str(event.get("type", ""))
    data_object = (event.get("data") or {}).get("object") or {}
    if not isinstance(data_object, Mapping):
        raise ValueError("data.object missing from webhook event")

    event_id = event.get("id")
    timestamp = _event_timestamp(event)
    customer_id = _object_id(data_object.get("customer"))

    if provider_event_type in SUBSCRIPTION_EVENT_TYPES:
        event_type = SUBSCRIPTION_EVENT_TYPES[provider_event_type]
        status = str(data_object.get("status", ""))
        if event_type == BillingEventType.SUBSCRIPTION_CANCELED:
            entitled = False
        else:
            entitled = status in ACTIVE_SUBSCRIPTION_STATUSES
        subscription_id = data_object.get("id") if entitled else None
        return BillingEvent(
            account_id=_resolve_account_id(data_object, customer_id, store, provider_event_type),
            event_type=event_type,
            origin=EventOrigin.WEBHOOK,
            desired_entitlement=entitled,
            external_customer_id=customer_id,
            external_subscription_id=subscription_id,
            event_timestamp=timestamp,
            event_id=event_id,
            metadata={"subscription_status": status},
        )

    if provider_event_type in INVOICE_EVENT_TYPES:
        event_type = INVOICE_EVENT_TYPES[provider_event_type]
        revoke = event_type == BillingEventType.PAYMENT_FAILED and revoke_on_payment_failure
        metadata = {}
        if data_object.get("id"):
            metadata["invoice_id"] = str(data_object["id"])
        subscription_ref = _object_id(data_object.get("subscription"))
        if subscription_ref:
            metadata["subscription_id"] = subscription_ref
        fields: Dict[str, Any] = {
            "account_id": _resolve_account_id(data_object, customer_id, store, provider_event_type),
            "event_type": event_type,
            "origin": EventOrigin.WEBHOOK,
            "external_customer_id": customer_id,
            "event_timestamp": timestamp,
            "event_id": event_id,
            "revoke_entitlement": revoke,
            "metadata": metadata,
        }
        if revoke:
            fields["external_subscription_id"] = None
        elif event_type == BillingEventType.PAYMENT_SUCCEEDED and subscription_ref and provider is not None:
            fields.update(_subscription_status_fields(provider, subscription_ref, metadata))
        return BillingEvent(**fields)

    logger.debug("Ignoring unhandled webhook event type %s", provider_event_type)
    return None


__all__ = ["INVOICE_EVENT_TYPES", "SUBSCRIPTION_EVENT_TYPES", "map_provider_event"]
