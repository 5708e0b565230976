"""Single entry point for applying billing state changes to an account."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional, Protocol

from .audit import AuditTrail
from .errors import BillingInfrastructureError
from .models import (
    FREE_PLAN,
    PRO_PLAN,
    AccountMutation,
    AccountSnapshot,
    AuditEntry,
    BillingEvent,
    BillingEventType,
    EventOrigin,
    ReconciliationOutcome,
    ReconciliationResult,
)
from .ordering import newest
from .retry import Precondition, RetryCoordinator, RetryResult
from .store import VersionedAccountStore

logger = logging.getLogger(__name__)

_UNSET = object()


class EntitlementInvalidator(Protocol):
    """Invalidates cached entitlement reads affected by a billing change."""

    def invalidate_account(self, account_id: str) -> None:
        ...


@dataclass
class EntitlementReconciler:
    """Applies billing events through ordering, retry and audit."""

    store: VersionedAccountStore
    retry_coordinator: RetryCoordinator
    audit_trail: AuditTrail
    entitlement_invalidator: Optional[EntitlementInvalidator] = None

    def read_account(self, account_id: str) -> AccountSnapshot:
        return self.store.read(account_id)

    def apply_billing_event(
        self,
        event: BillingEvent,
        *,
        precondition: Optional[Precondition] = None,
    ) -> ReconciliationResult:
        """Apply ``event`` and journal it when it changes the stored row.

        ``precondition`` guards corrections computed from an earlier read: if
        it rejects the fresh row the event is skipped as stale.
        """

        result = self.retry_coordinator.apply_with_retry(
            event.account_id,
            lambda snapshot: self._build_mutation(event, snapshot),
            event_timestamp=event.event_timestamp,
            precondition=precondition,
        )

        if result.outcome == ReconciliationOutcome.SKIPPED_STALE:
            return ReconciliationResult(
                outcome=result.outcome,
                account_id=event.account_id,
                account=result.current,
                attempts=result.attempts,
                reason=result.reason,
            )

        if result.outcome == ReconciliationOutcome.EXHAUSTED:
            return ReconciliationResult(
                outcome=result.outcome,
                account_id=event.account_id,
                attempts=result.attempts,
                reason="Concurrent update conflict - max retries exceeded",
            )

        self._record_audit(event, result)
        if self.entitlement_invalidator is not None:
            self.entitlement_invalidator.invalidate_account(event.account_id)

        logger.info(
            "Applied billing event account=%s type=%s origin=%s entitled=%s version=%s attempts=%s",
            event.account_id,
            event.event_type.value,
            event.origin.value,
            result.current.is_entitled if result.current else None,
            result.current.version if result.current else None,
            result.attempts,
        )
        return ReconciliationResult(
            outcome=result.outcome,
            account_id=event.account_id,
            account=result.current,
            attempts=result.attempts,
        )

    def apply_billing_event_fields(
        self,
        account_id: str,
        *,
        event_type: BillingEventType,
        origin: EventOrigin,
        desired_entitlement: Optional[bool] = None,
        external_customer_id: Optional[str] = None,
        external_subscription_id: object = _UNSET,
        event_timestamp: Optional[datetime] = None,
        event_id: Optional[str] = None,
        plan: Optional[str] = None,
        revoke_entitlement: bool = False,
        metadata: Optional[Dict[str, str]] = None,
        precondition: Optional[Precondition] = None,
    ) -> ReconciliationResult:
        """Keyword form of :meth:`apply_billing_event`.

        Pass ``external_subscription_id=None`` to clear the stored id; leave it
        out to keep the stored value.
        """

        fields: Dict[str, object] = {
            "account_id": account_id,
            "event_type": event_type,
            "origin": origin,
            "desired_entitlement": desired_entitlement,
            "external_customer_id": external_customer_id,
            "event_timestamp": event_timestamp,
            "event_id": event_id,
            "plan": plan,
            "revoke_entitlement": revoke_entitlement,
            "metadata": metadata or {},
        }
        if external_subscription_id is not _UNSET:
            fields["external_subscription_id"] = external_subscription_id
        return self.apply_billing_event(BillingEvent(**fields), precondition=precondition)

    def _build_mutation(self, event: BillingEvent, snapshot: AccountSnapshot) -> AccountMutation:
        if event.revoke_entitlement:
            entitled = False
        elif event.desired_entitlement is None:
            entitled = snapshot.is_entitled
        else:
            entitled = event.desired_entitlement

        if event.plan:
            plan = event.plan
        elif entitled == snapshot.is_entitled and event.desired_entitlement is None:
            plan = snapshot.plan
        else:
            plan = PRO_PLAN if entitled else FREE_PLAN

        fields: Dict[str, object] = {"is_entitled": entitled, "plan": plan}

        customer_id = event.external_customer_id
        if customer_id and customer_id != snapshot.external_customer_id:
            if snapshot.external_customer_id is None or event.origin == EventOrigin.MANUAL:
                fields["external_customer_id"] = customer_id
            else:
                logger.warning(
                    "Ignoring customer reassignment account=%s stored=%s event=%s origin=%s",
                    snapshot.account_id,
                    snapshot.external_customer_id,
                    customer_id,
                    event.origin.value,
                )

        if event.external_subscription_id is not None or event.clears_subscription:
            fields["external_subscription_id"] = event.external_subscription_id

        if event.event_timestamp is not None:
            fields["last_event_applied_at"] = newest(snapshot.last_event_applied_at, event.event_timestamp)

        return AccountMutation(**fields)

    def _record_audit(self, event: BillingEvent, result: RetryResult) -> None:
        previous = result.previous
        current = result.current
        if previous is None or current is None:
            return
        entry = AuditEntry(
            account_id=event.account_id,
            event_type=event.event_type,
            origin=event.origin,
            previous_state=previous.entitlement_state(),
            new_state=current.entitlement_state(),
            source_event_id=event.event_id,
            metadata={
                **event.metadata,
                "version": str(current.version),
                "attempts": str(result.attempts),
            },
        )
        try:
            self.audit_trail.record(entry)
        except BillingInfrastructureError:
            logger.warning(
                "Failed to write billing audit log account=%s type=%s event=%s",
                event.account_id,
                event.event_type.value,
                event.event_id,
                exc_info=True,
            )


__all__ = ["EntitlementInvalidator", "EntitlementReconciler"]
