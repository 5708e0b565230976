"""Exceptions raised by the billing reconciliation engine.

Expected business outcomes (applied, stale, exhausted) are returned as typed
results. Only the conditions below are raised.
"""
from __future__ import annotations

from typing import Optional


class AccountNotFoundError(LookupError):
    """Raised when an operation targets an account that does not exist."""

    def __init__(self, account_id: Optional[str], message: Optional[str] = None) -> None:
        self.account_id = account_id
        super().__init__(message or f"Billing account not found: {account_id}")


class BillingInfrastructureError(RuntimeError):
    """Base class for I/O failures that callers should treat as retriable."""


class StoreUnavailableError(BillingInfrastructureError):
    """The relational store could not complete a read or write."""


class ProviderUnavailableError(BillingInfrastructureError):
    """The billing provider API failed or timed out."""


__all__ = [
    "AccountNotFoundError",
    "BillingInfrastructureError",
    "ProviderUnavailableError",
    "StoreUnavailableError",
]
