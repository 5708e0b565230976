"""API schemas for billing endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..billing import (
    AccountSnapshot,
    AuditEntry,
    BillingEventType,
    ReconciliationOutcome,
    ReconciliationResult,
    SweepStats,
)


class AccountResponse(BaseModel):
    account_id: str = Field(alias="accountId")
    email: Optional[str] = None
    is_entitled: bool = Field(alias="isEntitled")
    plan: str
    external_customer_id: Optional[str] = Field(alias="externalCustomerId", default=None)
    external_subscription_id: Optional[str] = Field(alias="externalSubscriptionId", default=None)
    version: int
    last_event_applied_at: Optional[datetime] = Field(alias="lastEventAppliedAt", default=None)
    billing_updated_at: Optional[datetime] = Field(alias="billingUpdatedAt", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_snapshot(cls, snapshot: AccountSnapshot) -> "AccountResponse":
        return cls(
            account_id=snapshot.account_id,
            email=snapshot.email,
            is_entitled=snapshot.is_entitled,
            plan=snapshot.plan,
            external_customer_id=snapshot.external_customer_id,
            external_subscription_id=snapshot.external_subscription_id,
            version=snapshot.version,
            last_event_applied_at=snapshot.last_event_applied_at,
            billing_updated_at=snapshot.billing_updated_at,
        )


class AuditEntryResponse(BaseModel):
    event_type: BillingEventType = Field(alias="eventType")
    origin: str
    previous_state: Dict[str, object] = Field(alias="previousState", default_factory=dict)
    new_state: Dict[str, object] = Field(alias="newState", default_factory=dict)
    source_event_id: Optional[str] = Field(alias="sourceEventId", default=None)
    metadata: Dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(alias="createdAt")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_entry(cls, entry: AuditEntry) -> "AuditEntryResponse":
        return cls(
            event_type=entry.event_type,
            origin=entry.origin.value,
            previous_state=entry.previous_state,
            new_state=entry.new_state,
            source_event_id=entry.source_event_id,
            metadata=entry.metadata,
            created_at=entry.created_at,
        )


class AccountDetailResponse(BaseModel):
    account: AccountResponse
    history: List[AuditEntryResponse] = Field(default_factory=list)


class ReconciliationResponse(BaseModel):
    outcome: ReconciliationOutcome
    account_id: str = Field(alias="accountId")
    attempts: int = 0
    reason: Optional[str] = None
    account: Optional[AccountResponse] = None

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: ReconciliationResult) -> "ReconciliationResponse":
        return cls(
            outcome=result.outcome,
            account_id=result.account_id,
            attempts=result.attempts,
            reason=result.reason,
            account=AccountResponse.from_snapshot(result.account) if result.account else None,
        )


class WebhookAckResponse(BaseModel):
    received: bool = True
    event_id: Optional[str] = Field(alias="eventId", default=None)
    outcome: Optional[ReconciliationOutcome] = None
    ignored: bool = False

    model_config = ConfigDict(populate_by_name=True)


class ResolveCustomerRequest(BaseModel):
    email: Optional[str] = None


class ResolveCustomerResponse(BaseModel):
    account_id: str = Field(alias="accountId")
    external_customer_id: str = Field(alias="externalCustomerId")

    model_config = ConfigDict(populate_by_name=True)


class ManualCorrectionRequest(BaseModel):
    is_entitled: Optional[bool] = Field(alias="isEntitled", default=None)
    plan: Optional[str] = None
    external_customer_id: Optional[str] = Field(alias="externalCustomerId", default=None)
    external_subscription_id: Optional[str] = Field(alias="externalSubscriptionId", default=None)
    clear_subscription: bool = Field(alias="clearSubscription", default=False)
    event_timestamp: Optional[datetime] = Field(alias="eventTimestamp", default=None)
    event_type: BillingEventType = Field(alias="eventType", default=BillingEventType.SUBSCRIPTION_UPDATED)
    reason: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class SweepResponse(BaseModel):
    accounts_checked: int = Field(alias="accountsChecked")
    mismatches: int
    fixed: int
    skipped: int = 0
    errors: int
    orphaned_subscriptions: int = Field(alias="orphanedSubscriptions")
    error_messages: List[str] = Field(alias="errorMessages", default_factory=list)
    hit_batch_limit: bool = Field(alias="hitBatchLimit", default=False)
    success: bool

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_stats(cls, stats: SweepStats) -> "SweepResponse":
        return cls(
            accounts_checked=stats.accounts_checked,
            mismatches=stats.mismatches,
            fixed=stats.fixed,
            skipped=stats.skipped,
            errors=stats.errors,
            orphaned_subscriptions=stats.orphaned_subscriptions,
            error_messages=stats.error_messages[:5],
            hit_batch_limit=stats.hit_batch_limit,
            success=stats.success,
        )
