"""Domain models for billing state reconciliation."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

FREE_PLAN = "free"
PRO_PLAN = "pro"


class BillingEventType(str, Enum):
    """Transition categories recorded in the audit trail."""

    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    SUBSCRIPTION_UPGRADED = "subscription_upgraded"
    SUBSCRIPTION_DOWNGRADED = "subscription_downgraded"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    RECONCILIATION_FIX = "reconciliation_fix"
    CUSTOMER_CREATED = "customer_created"
    CUSTOMER_LINKED = "customer_linked"


class EventOrigin(str, Enum):
    """Where a state change request came from."""

    WEBHOOK = "webhook"
    RECONCILIATION = "reconciliation"
    MANUAL = "manual"


class SwapOutcome(str, Enum):
    """Result of a single conditional write against the account store."""

    APPLIED = "applied"
    VERSION_MISMATCH = "version_mismatch"


class ReconciliationOutcome(str, Enum):
    """Business outcome of applying a billing event."""

    APPLIED = "applied"
    SKIPPED_STALE = "skipped_stale"
    EXHAUSTED = "exhausted"


def _ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class AccountSnapshot(BaseModel):
    """Current billing state of one account as stored locally."""

    account_id: str
    email: Optional[str] = None
    external_customer_id: Optional[str] = None
    external_subscription_id: Optional[str] = None
    is_entitled: bool = False
    plan: str = FREE_PLAN
    version: int = Field(default=1, ge=1)
    last_event_applied_at: Optional[datetime] = None
    billing_updated_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("last_event_applied_at", "billing_updated_at")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _ensure_utc(value)

    def entitlement_state(self) -> Dict[str, object]:
        """Fields captured in audit entries before and after a transition."""

        return {
            "is_entitled": self.is_entitled,
            "plan": self.plan,
            "external_customer_id": self.external_customer_id,
            "external_subscription_id": self.external_subscription_id,
        }


class AccountMutation(BaseModel):
    """Field assignments applied by a conditional write.

    Only fields that were explicitly set are written, so ``None`` can be used
    to clear a column while an omitted field leaves it untouched.
    """

    is_entitled: Optional[bool] = None
    plan: Optional[str] = None
    external_customer_id: Optional[str] = None
    external_subscription_id: Optional[str] = None
    last_event_applied_at: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)

    @field_validator("last_event_applied_at")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _ensure_utc(value)

    def assignments(self) -> Dict[str, object]:
        return self.model_dump(exclude_unset=True)

    def apply_to(self, snapshot: AccountSnapshot, *, now: datetime) -> AccountSnapshot:
        """Return the snapshot that results from writing this mutation."""

        return snapshot.model_copy(
            update={
                **self.assignments(),
                "version": snapshot.version + 1,
                "billing_updated_at": now,
            }
        )


class SwapResult(BaseModel):
    """Outcome of ``compare_and_swap`` with the row as stored afterwards."""

    outcome: SwapOutcome
    snapshot: AccountSnapshot

    model_config = ConfigDict(frozen=True)

    @property
    def applied(self) -> bool:
        return self.outcome == SwapOutcome.APPLIED


class BillingEvent(BaseModel):
    """Provider-neutral request to change an account's entitlement."""

    account_id: str
    event_type: BillingEventType
    origin: EventOrigin = EventOrigin.WEBHOOK
    desired_entitlement: Optional[bool] = None
    plan: Optional[str] = None
    external_customer_id: Optional[str] = None
    external_subscription_id: Optional[str] = None
    event_timestamp: Optional[datetime] = None
    event_id: Optional[str] = None
    revoke_entitlement: bool = False
    metadata: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("event_timestamp")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _ensure_utc(value)

    @property
    def clears_subscription(self) -> bool:
        """``True`` when the subscription id was passed explicitly as ``None``."""

        return "external_subscription_id" in self.model_fields_set and self.external_subscription_id is None


class AuditEntry(BaseModel):
    """Immutable record of one accepted state transition."""

    account_id: str
    event_type: BillingEventType
    origin: EventOrigin
    previous_state: Dict[str, object] = Field(default_factory=dict)
    new_state: Dict[str, object] = Field(default_factory=dict)
    source_event_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    entry_id: Optional[int] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class ReconciliationResult(BaseModel):
    """Typed result returned to webhook handlers and interactive callers."""

    outcome: ReconciliationOutcome
    account_id: str
    account: Optional[AccountSnapshot] = None
    attempts: int = 0
    reason: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def applied(self) -> bool:
        return self.outcome == ReconciliationOutcome.APPLIED

    @property
    def skipped(self) -> bool:
        return self.outcome == ReconciliationOutcome.SKIPPED_STALE

    @property
    def retriable(self) -> bool:
        """Whether the caller should make the provider redeliver."""

        return self.outcome == ReconciliationOutcome.EXHAUSTED


class ProviderCustomer(BaseModel):
    """Customer record as reported by the billing provider."""

    customer_id: str
    email: Optional[str] = None
    account_id: Optional[str] = None
    deleted: bool = False
    metadata: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


class ProviderSubscription(BaseModel):
    """Subscription record as reported by the billing provider."""

    subscription_id: str
    customer_id: Optional[str] = None
    status: str

    model_config = ConfigDict(frozen=True)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_SUBSCRIPTION_STATUSES


ACTIVE_SUBSCRIPTION_STATUSES = frozenset({"active", "trialing"})


class SweepStats(BaseModel):
    """Counters reported by a reconciliation sweep."""

    accounts_checked: int = 0
    mismatches: int = 0
    fixed: int = 0
    skipped: int = 0
    errors: int = 0
    orphaned_subscriptions: int = 0
    error_messages: list[str] = Field(default_factory=list)
    hit_batch_limit: bool = False

    @property
    def success(self) -> bool:
        return self.errors == 0
