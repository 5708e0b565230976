"""Billing state reconciliation: versioned accounts, ordered events and audit."""

from .audit import AuditTrail, InMemoryAuditTrail
from .errors import (
    AccountNotFoundError,
    BillingInfrastructureError,
    ProviderUnavailableError,
    StoreUnavailableError,
)
from .identity import ACCOUNT_METADATA_KEY, BillingProvider, IdentityResolver
from .models import (
    ACTIVE_SUBSCRIPTION_STATUSES,
    FREE_PLAN,
    PRO_PLAN,
    AccountMutation,
    AccountSnapshot,
    AuditEntry,
    BillingEvent,
    BillingEventType,
    EventOrigin,
    ProviderCustomer,
    ProviderSubscription,
    ReconciliationOutcome,
    ReconciliationResult,
    SwapOutcome,
    SwapResult,
    SweepStats,
)
from .ordering import newest, should_apply
from .retry import (
    PRECONDITION_FAILED_REASON,
    STALE_EVENT_REASON,
    Precondition,
    RetryCoordinator,
    RetryResult,
)
from .service import EntitlementInvalidator, EntitlementReconciler
from .store import InMemoryAccountStore, VersionedAccountStore
from .sweep import ReconciliationSweep
from .webhooks import map_provider_event

__all__ = [
    "ACCOUNT_METADATA_KEY",
    "ACTIVE_SUBSCRIPTION_STATUSES",
    "AccountMutation",
    "AccountNotFoundError",
    "AccountSnapshot",
    "AuditEntry",
    "AuditTrail",
    "BillingEvent",
    "BillingEventType",
    "BillingInfrastructureError",
    "BillingProvider",
    "EntitlementInvalidator",
    "EntitlementReconciler",
    "EventOrigin",
    "FREE_PLAN",
    "IdentityResolver",
    "InMemoryAccountStore",
    "InMemoryAuditTrail",
    "PRECONDITION_FAILED_REASON",
    "PRO_PLAN",
    "Precondition",
    "ProviderCustomer",
    "ProviderSubscription",
    "ProviderUnavailableError",
    "ReconciliationOutcome",
    "ReconciliationResult",
    "ReconciliationSweep",
    "RetryCoordinator",
    "RetryResult",
    "STALE_EVENT_REASON",
    "StoreUnavailableError",
    "SwapOutcome",
    "SwapResult",
    "SweepStats",
    "VersionedAccountStore",
    "map_provider_event",
    "newest",
    "should_apply",
]
