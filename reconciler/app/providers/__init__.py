"""Billing provider implementations used by the application."""
from __future__ import annotations

from ..billing.identity import BillingProvider
from .sandbox import LocalSandboxBillingProvider
from .stripe_provider import StripeBillingProvider


def create_billing_provider(
    provider_name: str,
    *,
    stripe_api_key: str = "",
    timeout_seconds: float = 10.0,
) -> BillingProvider:
    provider = (provider_name or "sandbox").strip().lower()
    if provider == "stripe":
        return StripeBillingProvider(api_key=stripe_api_key, timeout_seconds=timeout_seconds)
    return LocalSandboxBillingProvider()


__all__ = [
    "LocalSandboxBillingProvider",
    "StripeBillingProvider",
    "create_billing_provider",
]
