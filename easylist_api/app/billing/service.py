"""Service contracts and the checkout/confirmation flows."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Mapping, Optional, Protocol, Sequence
from urllib.parse import urlencode

from .exceptions import NotFound, TokenInvalid, UpstreamError, UserNotFound, ValidationError
from .models import (
    BillingAuditEvent,
    BillingAuditEventType,
    CheckoutLink,
    LinkToken,
    PaymentConfirmation,
    PaymentLink,
    PaymentTokenGrant,
    PendingPayment,
    PlatformUser,
    PortalSession,
    SubscriptionRecord,
    SubscriptionStatus,
    UnlinkedPaymentEvent,
)

logger = logging.getLogger("billing")

CORRELATION_USER_KEY = "easylist_user_id"
CORRELATION_EMAIL_KEY = "platform_email"
CORRELATION_TOKEN_KEY = "payment_token"
CORRELATION_SESSION_KEY = "pending_session_id"


class TokenStore(Protocol):
    """Single-use payment linking tokens."""

    def issue(self, user_id: str, *, ttl: timedelta, now: datetime) -> LinkToken:
        ...

    def get(self, token: str) -> Optional[LinkToken]:
        ...

    def consume(self, token: str, *, now: datetime) -> Optional[LinkToken]:
        """Flip ``used`` from false to true; ``None`` when already consumed or expired."""

    def purge_expired(self, *, now: datetime) -> int:
        ...


class PendingPaymentStore(Protocol):
    """Session-scoped pending payment records."""

    def create(self, *, user_id: str, user_email: Optional[str], ttl: timedelta, now: datetime) -> PendingPayment:
        ...

    def get(self, session_id: str) -> Optional[PendingPayment]:
        ...

    def complete(self, session_id: str, *, now: datetime) -> Optional[PendingPayment]:
        """Flip ``pending`` to ``completed``; ``None`` when no open record matches."""


class SubscriptionStore(Protocol):
    """Per-user subscription records keyed on ``user_id``."""

    def upsert(self, record: SubscriptionRecord) -> SubscriptionRecord:
        ...

    def update_status(self, user_id: str, status: SubscriptionStatus) -> Optional[SubscriptionRecord]:
        ...

    def get_by_user(self, user_id: str) -> Optional[SubscriptionRecord]:
        ...

    def get_by_customer(self, customer_id: str) -> Optional[SubscriptionRecord]:
        ...

    def get_by_subscription(self, subscription_id: str) -> Optional[SubscriptionRecord]:
        ...

    def get_by_stripe_email(self, email: str) -> Optional[SubscriptionRecord]:
        ...

    def get_by_user_email(self, email: str) -> Optional[SubscriptionRecord]:
        ...

    def expire_lapsed(
        self,
        *,
        now: datetime,
        statuses: Sequence[SubscriptionStatus],
    ) -> List[SubscriptionRecord]:
        ...

    def list_active_past_period_end(self, *, now: datetime) -> List[SubscriptionRecord]:
        ...


class UnlinkedEventStore(Protocol):
    """Payment events waiting for manual reconciliation."""

    def record(self, event: UnlinkedPaymentEvent) -> UnlinkedPaymentEvent:
        ...

    def list_open(self, *, limit: int = 50) -> List[UnlinkedPaymentEvent]:
        ...

    def resolve(self, event_id: str, *, user_id: str, now: datetime) -> Optional[UnlinkedPaymentEvent]:
        ...


class IdentityDirectory(Protocol):
    """Authenticated account directory of the hosted backend."""

    def get_user(self, user_id: str) -> Optional[PlatformUser]:
        ...

    def find_by_email(self, email: str) -> Optional[PlatformUser]:
        ...


class PaymentProvider(Protocol):
    """External payment processor integration."""

    def create_customer(self, *, email: Optional[str], metadata: Dict[str, str]) -> Dict[str, object]:
        ...

    def create_checkout_session(
        self,
        *,
        customer_id: str,
        client_reference_id: str,
        metadata: Dict[str, str],
        success_url: str,
        cancel_url: str,
        trial_period_days: int,
    ) -> Dict[str, object]:
        ...

    def create_billing_portal_session(self, *, customer_id: str, return_url: str) -> Dict[str, object]:
        ...

    def find_customer_by_email(self, email: str) -> Optional[Dict[str, object]]:
        ...

    def list_subscriptions(self, customer_id: str, *, limit: int = 10) -> List[Dict[str, object]]:
        """Return the customer's subscriptions, most recent first."""

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Mapping[str, object]:
        """Verify the webhook signature and return the decoded event."""


class BillingNotifier(Protocol):
    """Dispatches billing related notifications to end users."""

    def notify_trial_will_end(self, record: SubscriptionRecord) -> None:
        ...

    def notify_trial_expired(self, records: Sequence[SubscriptionRecord]) -> None:
        ...


class BillingEventLogger(Protocol):
    """Captures structured billing audit events."""

    def log(self, event: BillingAuditEvent) -> None:
        ...


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def short_token(token: Optional[str]) -> str:
    """Loggable prefix of a token value."""
    if not token:
        return "-"
    return f"{token[:8]}..."


def require_text(value: Optional[str], field_name: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValidationError(f"{field_name} is required", detail={"field": field_name})
    return cleaned


def resolve_platform_user(identity: IdentityDirectory, user_id: str) -> PlatformUser:
    user = identity.get_user(user_id)
    if user is None:
        raise UserNotFound("User not found in auth system", detail={"user_id": user_id})
    return user


@dataclass(slots=True)
class CheckoutService:
    """Starts checkout attempts and embeds correlation data for the reconciler."""

    tokens: TokenStore
    pending_payments: PendingPaymentStore
    subscriptions: SubscriptionStore
    identity: IdentityDirectory
    provider: PaymentProvider
    event_logger: BillingEventLogger
    app_url: str
    token_ttl: timedelta = timedelta(hours=2)
    pending_ttl: timedelta = timedelta(hours=2)
    trial_period_days: int = 7
    payment_link_url: Optional[str] = None
    clock: Callable[[], datetime] = field(default=utcnow)

    def generate_payment_token(self, user_id: str) -> PaymentTokenGrant:
        user_id = require_text(user_id, "user_id")
        now = self.clock()
        self._purge_expired_tokens(now)
        resolve_platform_user(self.identity, user_id)

        link_token = self.tokens.issue(user_id, ttl=self.token_ttl, now=now)
        success_url = f"{self.app_url}/payment-success?{urlencode({'token': link_token.token})}"
        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.TOKEN_ISSUED,
                user_id=user_id,
                metadata={"token": short_token(link_token.token)},
            )
        )
        return PaymentTokenGrant(token=link_token.token, success_url=success_url, expires_at=link_token.expires_at)

    def create_checkout_session(self, user_id: str) -> CheckoutLink:
        user_id = require_text(user_id, "user_id")
        now = self.clock()
        self._purge_expired_tokens(now)
        user = resolve_platform_user(self.identity, user_id)

        # Token and pending record are redundant correlation paths; a failure
        # after this point leaves them to expire by TTL.
        link_token = self.tokens.issue(user_id, ttl=self.token_ttl, now=now)
        pending = self.pending_payments.create(
            user_id=user_id,
            user_email=user.email,
            ttl=self.pending_ttl,
            now=now,
        )
        metadata = {
            CORRELATION_USER_KEY: user_id,
            CORRELATION_EMAIL_KEY: user.email or "",
            CORRELATION_TOKEN_KEY: link_token.token,
            CORRELATION_SESSION_KEY: pending.session_id,
        }

        customer = self.provider.create_customer(email=user.email, metadata=metadata)
        session = self.provider.create_checkout_session(
            customer_id=str(customer["id"]),
            client_reference_id=pending.session_id,
            metadata=metadata,
            success_url=f"{self.app_url}/?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{self.app_url}/",
            trial_period_days=self.trial_period_days,
        )
        checkout_url = session.get("url")
        if not checkout_url:
            raise UpstreamError("Payment processor returned no checkout URL")

        logger.info(
            "Checkout session %s created for user=%s pending=%s token=%s",
            session.get("id"),
            user_id,
            pending.session_id,
            short_token(link_token.token),
        )
        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.CHECKOUT_STARTED,
                user_id=user_id,
                metadata={
                    "checkout_session_id": str(session.get("id")),
                    "session_reference": pending.session_id,
                    "stripe_customer_id": str(customer["id"]),
                },
            )
        )
        return CheckoutLink(
            checkout_url=str(checkout_url),
            session_id=pending.session_id,
            checkout_session_id=str(session.get("id")),
            token=link_token.token,
            user_id=user_id,
            platform_email=user.email,
        )

    def create_payment_link(self, user_id: str) -> PaymentLink:
        user_id = require_text(user_id, "user_id")
        if not self.payment_link_url:
            raise ValidationError("Payment link URL is not configured")
        user = resolve_platform_user(self.identity, user_id)

        pending = self.pending_payments.create(
            user_id=user_id,
            user_email=user.email,
            ttl=self.pending_ttl,
            now=self.clock(),
        )
        separator = "&" if "?" in self.payment_link_url else "?"
        payment_url = f"{self.payment_link_url}{separator}{urlencode({'client_reference_id': pending.session_id})}"
        logger.info("Pending payment %s stored for user=%s", pending.session_id, user_id)
        return PaymentLink(
            payment_url=payment_url,
            session_id=pending.session_id,
            user_id=user_id,
            user_email=user.email,
        )

    def create_portal_session(self, user_id: str) -> PortalSession:
        user_id = require_text(user_id, "user_id")
        record = self.subscriptions.get_by_user(user_id)
        if record is None:
            raise NotFound("No subscription found for this user", detail={"user_id": user_id})
        if not record.stripe_customer_id:
            raise ValidationError("No Stripe customer ID found. Please complete your payment setup first.")

        session = self.provider.create_billing_portal_session(
            customer_id=record.stripe_customer_id,
            return_url=self.app_url,
        )
        return PortalSession(
            portal_url=str(session.get("url", "")),
            customer_id=record.stripe_customer_id,
            stripe_email=record.stripe_email,
        )

    def _purge_expired_tokens(self, now: datetime) -> None:
        try:
            purged = self.tokens.purge_expired(now=now)
        except UpstreamError:
            logger.warning("Expired payment token cleanup failed", exc_info=True)
            return
        if purged:
            logger.debug("Purged %s expired payment tokens", purged)


_CONFIRMATION_STATUS_MAP: Dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "unpaid": SubscriptionStatus.CANCELED,
}


@dataclass(slots=True)
class PaymentConfirmationService:
    """Synchronous confirmation path used after the payment page redirects back."""

    tokens: TokenStore
    subscriptions: SubscriptionStore
    identity: IdentityDirectory
    provider: PaymentProvider
    event_logger: BillingEventLogger
    clock: Callable[[], datetime] = field(default=utcnow)

    def confirm(self, token: str, stripe_email: str) -> PaymentConfirmation:
        token = require_text(token, "token")
        stripe_email = require_text(stripe_email, "stripe_email")
        now = self.clock()

        link_token = self.tokens.get(token)
        if link_token is None:
            raise NotFound("Invalid or expired payment token", status_code=400)
        if link_token.used:
            raise TokenInvalid("Payment token already used")
        if link_token.is_expired(now):
            raise TokenInvalid("Payment token expired")

        user = resolve_platform_user(self.identity, link_token.user_id)
        customer = self.provider.find_customer_by_email(stripe_email)
        if customer is None:
            raise NotFound("No Stripe customer found with this email", detail={"stripe_email": stripe_email})
        customer_id = str(customer["id"])

        subscriptions = self.provider.list_subscriptions(customer_id, limit=10)
        status = SubscriptionStatus.PAYMENT_REQUIRED
        subscription_id: Optional[str] = None
        period_start: Optional[datetime] = None
        period_end: Optional[datetime] = None
        if subscriptions:
            latest = subscriptions[0]
            subscription_id = str(latest.get("id"))
            status = _CONFIRMATION_STATUS_MAP.get(str(latest.get("status")), SubscriptionStatus.PAYMENT_REQUIRED)
            period_start = latest.get("current_period_start")  # type: ignore[assignment]
            period_end = latest.get("current_period_end")  # type: ignore[assignment]

        if self.tokens.consume(token, now=now) is None:
            raise TokenInvalid("Payment token already used")

        record = self.subscriptions.upsert(
            SubscriptionRecord(
                user_id=link_token.user_id,
                user_email=user.email,
                stripe_customer_id=customer_id,
                stripe_subscription_id=subscription_id,
                stripe_email=stripe_email,
                subscription_status=status,
                payment_method_attached=True,
                current_period_start=period_start,
                current_period_end=period_end,
                updated_at=now,
            )
        )
        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.PAYMENT_CONFIRMED,
                user_id=record.user_id,
                metadata={
                    "stripe_customer_id": customer_id,
                    "stripe_email": stripe_email,
                    "status": record.subscription_status.value,
                },
            )
        )
        return PaymentConfirmation(
            user_id=record.user_id,
            user_email=record.user_email,
            subscription_status=record.subscription_status,
            stripe_customer_id=customer_id,
            stripe_email=stripe_email,
            has_active_subscription=record.subscription_status == SubscriptionStatus.ACTIVE,
            message=(
                f"Subscription linked successfully! Platform email: {record.user_email}, "
                f"Stripe email: {stripe_email}"
            ),
        )


__all__ = [
    "BillingEventLogger",
    "BillingNotifier",
    "CheckoutService",
    "IdentityDirectory",
    "PaymentConfirmationService",
    "PaymentProvider",
    "PendingPaymentStore",
    "SubscriptionStore",
    "TokenStore",
    "UnlinkedEventStore",
    "require_text",
    "resolve_platform_user",
    "short_token",
    "utcnow",
]
