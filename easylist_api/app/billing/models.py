"""Domain models for payment linking and subscription state."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SubscriptionStatus(str, Enum):
    """Billing states stored on a user's subscription record."""

    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    CANCELED = "canceled"
    PAYMENT_REQUIRED = "payment_required"

    @classmethod
    def from_processor(cls, value: Optional[str]) -> "SubscriptionStatus":
        """Map a Stripe subscription status onto the stored status set."""

        normalized = (value or "").strip().lower()
        try:
            return cls(normalized)
        except ValueError:
            pass
        if normalized in {"incomplete_expired", "paused"}:
            return cls.CANCELED
        return cls.PAYMENT_REQUIRED

    @property
    def grants_access(self) -> bool:
        return self in {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING}


TERMINAL_STATUSES: FrozenSet[SubscriptionStatus] = frozenset(
    {SubscriptionStatus.UNPAID, SubscriptionStatus.CANCELED}
)


class PendingPaymentStatus(str, Enum):
    """Lifecycle of a session-scoped pending payment."""

    PENDING = "pending"
    COMPLETED = "completed"


class PaymentEventType(str, Enum):
    """Payment processor notifications the reconciler reacts to."""

    CHECKOUT_COMPLETED = "checkout_completed"
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    SUBSCRIPTION_PAUSED = "subscription_paused"
    INVOICE_PAYMENT_SUCCEEDED = "invoice_payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice_payment_failed"
    TRIAL_WILL_END = "trial_will_end"


class ReconciliationOutcome(str, Enum):
    """How an inbound payment event was classified."""

    LINKED = "linked"
    UPDATED = "updated"
    IGNORED = "ignored"
    UNLINKABLE = "unlinkable"


class ResolutionStrategy(str, Enum):
    """Correlation strategies, listed in precedence order."""

    SESSION_REFERENCE = "session_reference"
    LINK_TOKEN = "link_token"
    EXISTING_CUSTOMER = "existing_customer"
    EXISTING_EMAIL = "existing_email"


class LinkToken(BaseModel):
    """Single-use secret binding a checkout attempt to a platform user."""

    token: str
    user_id: str
    created_at: datetime = Field(default_factory=_utcnow)
    expires_at: datetime
    used: bool = False

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def is_valid(self, now: datetime) -> bool:
        """Return ``True`` when the token may still be used for linking."""
        return not self.used and not self.is_expired(now)


class PendingPayment(BaseModel):
    """Checkout session reference awaiting a matching payment event."""

    session_id: str
    user_id: str
    user_email: Optional[str] = None
    status: PendingPaymentStatus = PendingPaymentStatus.PENDING
    created_at: datetime = Field(default_factory=_utcnow)
    expires_at: datetime
    processed_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def is_open(self, now: datetime) -> bool:
        return self.status == PendingPaymentStatus.PENDING and self.expires_at > now


class SubscriptionRecord(BaseModel):
    """Durable per-user billing state, keyed on ``user_id``."""

    user_id: str
    user_email: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    stripe_email: Optional[str] = None
    subscription_status: SubscriptionStatus = SubscriptionStatus.PAYMENT_REQUIRED
    payment_method_attached: bool = False
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def has_access(self) -> bool:
        return self.subscription_status.grants_access


class PaymentEvent(BaseModel):
    """Normalized payment processor notification."""

    event_id: str
    event_type: PaymentEventType
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    email: Optional[str] = None
    session_reference: Optional[str] = None
    link_token: Optional[str] = None
    processor_status: Optional[str] = None
    billing_reason: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        stripped = value.strip()
        return stripped or None

    @property
    def is_activation(self) -> bool:
        """Return ``True`` for events that may create a subscription link."""
        if self.event_type in {PaymentEventType.CHECKOUT_COMPLETED, PaymentEventType.SUBSCRIPTION_CREATED}:
            return True
        return (
            self.event_type == PaymentEventType.INVOICE_PAYMENT_SUCCEEDED
            and self.billing_reason == "subscription_create"
        )


class PlatformUser(BaseModel):
    """Account entry in the authentication directory."""

    user_id: str
    email: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class ReconciliationResult(BaseModel):
    """Outcome of reconciling one payment event."""

    event_id: str
    event_type: PaymentEventType
    outcome: ReconciliationOutcome
    user_id: Optional[str] = None
    strategy: Optional[ResolutionStrategy] = None
    subscription: Optional[SubscriptionRecord] = None
    detail: Dict[str, Optional[str]] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class UnlinkedPaymentEvent(BaseModel):
    """Payment event that no correlation strategy could attach to a user."""

    event_id: str
    event_type: PaymentEventType
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    email: Optional[str] = None
    session_reference: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    received_at: datetime = Field(default_factory=_utcnow)
    resolved_user_id: Optional[str] = None
    resolved_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class PaymentTokenGrant(BaseModel):
    token: str
    success_url: str
    expires_at: datetime

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class CheckoutLink(BaseModel):
    """Return value of a checkout session creation request."""

    checkout_url: str
    session_id: str
    checkout_session_id: str
    token: str
    user_id: str
    platform_email: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class PaymentLink(BaseModel):
    payment_url: str
    session_id: str
    user_id: str
    user_email: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class PortalSession(BaseModel):
    portal_url: str
    customer_id: str
    stripe_email: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class PaymentConfirmation(BaseModel):
    """Summary returned by the synchronous payment confirmation path."""

    user_id: str
    user_email: Optional[str] = None
    subscription_status: SubscriptionStatus
    stripe_customer_id: str
    stripe_email: str
    has_active_subscription: bool
    message: str

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class TrialSweepResult(BaseModel):
    expired_count: int = 0
    expired_user_ids: List[str] = Field(default_factory=list)
    subscriptions_to_review: int = 0
    review_user_ids: List[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class BillingAuditEventType(str, Enum):
    """Audit event categories emitted by the billing subsystem."""

    TOKEN_ISSUED = "token_issued"
    CHECKOUT_STARTED = "checkout_started"
    SUBSCRIPTION_LINKED = "subscription_linked"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_CONFIRMED = "payment_confirmed"
    EMAIL_MATCH = "email_match"
    EVENT_UNLINKABLE = "event_unlinkable"
    MANUAL_ACTIVATION = "manual_activation"
    TRIAL_EXPIRED = "trial_expired"


class BillingAuditEvent(BaseModel):
    """Structured audit event for operators and log pipelines."""

    event_type: BillingAuditEventType
    user_id: Optional[str] = None
    actor: Optional[str] = None
    metadata: Dict[str, Optional[str]] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)
