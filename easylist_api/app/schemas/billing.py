"""API schemas for billing endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..billing import (
    CheckoutLink,
    PaymentConfirmation,
    PaymentLink,
    PaymentTokenGrant,
    PortalSession,
    ReconciliationResult,
    SubscriptionRecord,
    SubscriptionStatus,
    TrialSweepResult,
    UnlinkedPaymentEvent,
)


class UserRequest(BaseModel):
    user_id: str = Field(min_length=1)

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


class PaymentTokenResponse(BaseModel):
    success: bool = True
    token: str
    success_url: str
    expires_at: Optional[datetime] = None

    @classmethod
    def from_grant(cls, grant: PaymentTokenGrant) -> "PaymentTokenResponse":
        return cls(token=grant.token, success_url=grant.success_url, expires_at=grant.expires_at)


class CheckoutSessionResponse(BaseModel):
    success: bool = True
    checkout_url: str
    session_id: str
    checkout_session_id: str
    token: str
    user_id: str
    platform_email: Optional[str] = None

    @classmethod
    def from_checkout(cls, link: CheckoutLink) -> "CheckoutSessionResponse":
        return cls(**link.model_dump())


class PaymentLinkResponse(BaseModel):
    success: bool = True
    payment_url: str
    session_id: str
    user_id: str
    user_email: Optional[str] = None

    @classmethod
    def from_link(cls, link: PaymentLink) -> "PaymentLinkResponse":
        return cls(**link.model_dump())


class PortalSessionResponse(BaseModel):
    success: bool = True
    portal_url: str
    customer_id: str
    stripe_email: Optional[str] = None

    @classmethod
    def from_session(cls, session: PortalSession) -> "PortalSessionResponse":
        return cls(**session.model_dump())


class PaymentSuccessRequest(BaseModel):
    token: str = Field(min_length=1)
    stripe_email: str = Field(min_length=1)

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


class PaymentSuccessResponse(BaseModel):
    success: bool = True
    user_id: str
    user_email: Optional[str] = None
    subscription_status: SubscriptionStatus
    stripe_customer_id: str
    stripe_email: str
    has_active_subscription: bool
    message: str

    @classmethod
    def from_confirmation(cls, confirmation: PaymentConfirmation) -> "PaymentSuccessResponse":
        return cls(**confirmation.model_dump())


class WebhookResponse(BaseModel):
    received: bool = True
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    outcome: str
    user_id: Optional[str] = None
    strategy: Optional[str] = None
    detail: Dict[str, Optional[str]] = Field(default_factory=dict)

    @classmethod
    def from_result(cls, result: ReconciliationResult) -> "WebhookResponse":
        return cls(
            event_id=result.event_id,
            event_type=result.event_type.value,
            outcome=result.outcome.value,
            user_id=result.user_id,
            strategy=result.strategy.value if result.strategy else None,
            detail=dict(result.detail),
        )


class SubscriptionResponse(BaseModel):
    success: bool = True
    user_id: str
    message: Optional[str] = None
    subscription: SubscriptionRecord


class ManualActivationRequest(BaseModel):
    user_email: str = Field(min_length=1)
    stripe_customer_id: str = Field(min_length=1)
    stripe_subscription_id: Optional[str] = None
    stripe_email: Optional[str] = None
    subscription_status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    unlinked_event_id: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


class UnlinkedPaymentsResponse(BaseModel):
    count: int
    events: List[UnlinkedPaymentEvent]


class TrialSweepResponse(BaseModel):
    success: bool = True
    message: str = "Successfully processed trial expirations"
    expired_count: int
    expired_user_ids: List[str] = Field(default_factory=list)
    subscriptions_to_review: int
    review_user_ids: List[str] = Field(default_factory=list)
    timestamp: datetime

    @classmethod
    def from_result(cls, result: TrialSweepResult) -> "TrialSweepResponse":
        return cls(**result.model_dump())
