"""Application wiring for billing reconciliation."""
from __future__ import annotations

import logging
from functools import lru_cache

from ..billing import (
    BillingProvider,
    EntitlementInvalidator,
    EntitlementReconciler,
    IdentityResolver,
    ReconciliationSweep,
    RetryCoordinator,
)
from ..billing.repository import PostgresAccountStore, PostgresAuditTrail
from ..providers import create_billing_provider

try:  # pragma: no cover - resolve config helper when imported from FastAPI app
    from reconciler.config import ReconcilerConfig, load_reconciler_config
except ModuleNotFoundError as exc:  # pragma: no cover
    if exc.name != "reconciler":
        raise
    from ...config import ReconcilerConfig, load_reconciler_config  # type: ignore[no-redef]


logger = logging.getLogger("billing")


class LoggingEntitlementInvalidator(EntitlementInvalidator):
    """Placeholder invalidator that emits log statements until cache hooks exist."""

    def invalidate_account(self, account_id: str) -> None:
        logger.debug("Invalidate account entitlements %s", account_id)


@lru_cache(maxsize=1)
def get_reconciler_config() -> ReconcilerConfig:
    return load_reconciler_config()


@lru_cache(maxsize=1)
def get_account_store() -> PostgresAccountStore:
    return PostgresAccountStore()


@lru_cache(maxsize=1)
def get_audit_trail() -> PostgresAuditTrail:
    return PostgresAuditTrail()


@lru_cache(maxsize=1)
def get_billing_provider() -> BillingProvider:
    config = get_reconciler_config()
    provider = create_billing_provider(
        config.provider_name,
        stripe_api_key=config.stripe_api_key,
        timeout_seconds=config.provider_timeout_seconds,
    )
    logger.info("Billing provider configured: %s", getattr(provider, "name", type(provider).__name__))
    return provider


@lru_cache(maxsize=1)
def get_reconciler() -> EntitlementReconciler:
    config = get_reconciler_config()
    store = get_account_store()
    retry_coordinator = RetryCoordinator(
        store,
        max_attempts=config.max_attempts,
        backoff_base_seconds=config.backoff_base_seconds,
        max_backoff_seconds=config.max_backoff_seconds,
    )
    return EntitlementReconciler(
        store=store,
        retry_coordinator=retry_coordinator,
        audit_trail=get_audit_trail(),
        entitlement_invalidator=LoggingEntitlementInvalidator(),
    )


@lru_cache(maxsize=1)
def get_identity_resolver() -> IdentityResolver:
    config = get_reconciler_config()
    return IdentityResolver(
        get_account_store(),
        get_billing_provider(),
        get_audit_trail(),
        max_attempts=config.max_attempts,
    )


@lru_cache(maxsize=1)
def get_reconciliation_sweep() -> ReconciliationSweep:
    config = get_reconciler_config()
    return ReconciliationSweep(
        get_account_store(),
        get_billing_provider(),
        get_reconciler(),
        batch_size=config.sweep_batch_size,
        max_batches=config.sweep_max_batches,
    )


__all__ = [
    "LoggingEntitlementInvalidator",
    "get_account_store",
    "get_audit_trail",
    "get_billing_provider",
    "get_identity_resolver",
    "get_reconciler",
    "get_reconciler_config",
    "get_reconciliation_sweep",
]
