"""Resolve payment processor events to platform users and apply billing state.

Each event is first dispatched on its type. Events that may create a link
between a payment and a user run the full correlation chain; lifecycle
events for an already linked subscription only look at stored records.
Strategies are tried in order and the first match wins:

1. session reference echoed back by the processor (pending payment),
2. single-use link token from the event metadata,
3. stored record with the same processor subscription or customer id,
4. stored record with the same email, when the email policy allows it.

All writes are upserts or status updates keyed on ``user_id`` so a
redelivered event converges on the same record.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Protocol

from .models import (
    BillingAuditEvent,
    BillingAuditEventType,
    PaymentEvent,
    PaymentEventType,
    PendingPaymentStatus,
    ReconciliationOutcome,
    ReconciliationResult,
    ResolutionStrategy,
    SubscriptionRecord,
    SubscriptionStatus,
    UnlinkedPaymentEvent,
)
from .policy import EmailMatchPolicy, normalize_email
from .service import (
    BillingEventLogger,
    BillingNotifier,
    IdentityDirectory,
    PendingPaymentStore,
    SubscriptionStore,
    TokenStore,
    UnlinkedEventStore,
    short_token,
    utcnow,
)

logger = logging.getLogger("billing")

DEFAULT_PERIOD = timedelta(days=30)


@dataclass(frozen=True)
class Resolution:
    """User an event was matched to, and how."""

    user_id: str
    strategy: ResolutionStrategy
    user_email: Optional[str] = None
    existing: Optional[SubscriptionRecord] = None


class CorrelationStrategy(Protocol):
    name: ResolutionStrategy

    def resolve(self, event: PaymentEvent, *, now: datetime) -> Optional[Resolution]:
        ...


def _compatible(record: SubscriptionRecord, event: PaymentEvent) -> bool:
    """A lifecycle event must not touch a record linked to another subscription."""
    if not event.subscription_id or not record.stripe_subscription_id:
        return True
    return record.stripe_subscription_id == event.subscription_id


@dataclass(frozen=True)
class SessionReferenceMatch:
    pending_payments: PendingPaymentStore
    name: ResolutionStrategy = ResolutionStrategy.SESSION_REFERENCE

    def resolve(self, event: PaymentEvent, *, now: datetime) -> Optional[Resolution]:
        if not event.session_reference:
            return None
        completed = self.pending_payments.complete(event.session_reference, now=now)
        if completed is None:
            logger.info(
                "No open pending payment for session reference %s (event %s)",
                event.session_reference,
                event.event_id,
            )
            return None
        return Resolution(
            user_id=completed.user_id,
            strategy=self.name,
            user_email=completed.user_email,
        )


@dataclass(frozen=True)
class LinkTokenMatch:
    tokens: TokenStore
    pending_payments: Optional[PendingPaymentStore] = None
    name: ResolutionStrategy = ResolutionStrategy.LINK_TOKEN

    def _session_already_linked(self, event: PaymentEvent) -> bool:
        if not event.session_reference or self.pending_payments is None:
            return False
        pending = self.pending_payments.get(event.session_reference)
        return pending is not None and pending.status == PendingPaymentStatus.COMPLETED

    def resolve(self, event: PaymentEvent, *, now: datetime) -> Optional[Resolution]:
        if not event.link_token:
            return None
        if self._session_already_linked(event):
            # The token stays available for the success redirect.
            logger.info(
                "Session reference %s already completed, token %s left unused (event %s)",
                event.session_reference,
                short_token(event.link_token),
                event.event_id,
            )
            return None
        token = self.tokens.get(event.link_token)
        if token is None:
            logger.warning("Unknown payment token %s on event %s", short_token(event.link_token), event.event_id)
            return None
        if not token.is_valid(now):
            # Used or expired tokens are never trusted for linking.
            logger.warning(
                "Rejected %s payment token %s on event %s",
                "used" if token.used else "expired",
                short_token(event.link_token),
                event.event_id,
            )
            return None
        consumed = self.tokens.consume(event.link_token, now=now)
        if consumed is None:
            logger.info("Payment token %s already consumed concurrently", short_token(event.link_token))
            return None
        return Resolution(user_id=consumed.user_id, strategy=self.name)


@dataclass(frozen=True)
class ExistingCustomerMatch:
    subscriptions: SubscriptionStore
    lifecycle: bool = False
    name: ResolutionStrategy = ResolutionStrategy.EXISTING_CUSTOMER

    def resolve(self, event: PaymentEvent, *, now: datetime) -> Optional[Resolution]:
        record: Optional[SubscriptionRecord] = None
        if event.subscription_id:
            record = self.subscriptions.get_by_subscription(event.subscription_id)
        if record is None and event.customer_id:
            record = self.subscriptions.get_by_customer(event.customer_id)
            if record is not None and self.lifecycle and not _compatible(record, event):
                logger.info(
                    "Customer %s is linked to subscription %s, not %s",
                    event.customer_id,
                    record.stripe_subscription_id,
                    event.subscription_id,
                )
                record = None
        if record is None:
            return None
        return Resolution(
            user_id=record.user_id,
            strategy=self.name,
            user_email=record.user_email,
            existing=record,
        )


@dataclass(frozen=True)
class ExistingEmailMatch:
    subscriptions: SubscriptionStore
    policy: EmailMatchPolicy
    event_logger: BillingEventLogger
    lifecycle: bool = False
    name: ResolutionStrategy = ResolutionStrategy.EXISTING_EMAIL

    def resolve(self, event: PaymentEvent, *, now: datetime) -> Optional[Resolution]:
        email = normalize_email(event.email)
        if email is None or not self.policy.enabled:
            return None

        record: Optional[SubscriptionRecord] = None
        matched_column = None
        if self.policy.matches_stripe_email:
            record = self.subscriptions.get_by_stripe_email(email)
            matched_column = "stripe_email"
        if record is None and self.policy.matches_platform_email:
            record = self.subscriptions.get_by_user_email(email)
            matched_column = "user_email"
        if record is None:
            return None
        if self.lifecycle and not _compatible(record, event):
            return None

        logger.warning(
            "Payment event %s matched user=%s by %s under policy %s",
            event.event_id,
            record.user_id,
            matched_column,
            self.policy.mode.value,
        )
        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.EMAIL_MATCH,
                user_id=record.user_id,
                metadata={
                    "event_id": event.event_id,
                    "email": email,
                    "column": matched_column,
                    "policy": self.policy.mode.value,
                    "stripe_customer_id": event.customer_id,
                    "previous_stripe_customer_id": record.stripe_customer_id,
                },
            )
        )
        return Resolution(
            user_id=record.user_id,
            strategy=self.name,
            user_email=record.user_email,
            existing=record,
        )


_HANDLERS: Dict[PaymentEventType, str] = {
    PaymentEventType.CHECKOUT_COMPLETED: "_handle_activation",
    PaymentEventType.SUBSCRIPTION_CREATED: "_handle_activation",
    PaymentEventType.INVOICE_PAYMENT_SUCCEEDED: "_handle_invoice_paid",
    PaymentEventType.SUBSCRIPTION_UPDATED: "_handle_status_sync",
    PaymentEventType.INVOICE_PAYMENT_FAILED: "_handle_payment_failed",
    PaymentEventType.SUBSCRIPTION_DELETED: "_handle_cancellation",
    PaymentEventType.SUBSCRIPTION_PAUSED: "_handle_cancellation",
    PaymentEventType.TRIAL_WILL_END: "_handle_trial_will_end",
}


@dataclass(slots=True)
class PaymentEventReconciler:
    """Maps payment events onto exactly one user's subscription record."""

    subscriptions: SubscriptionStore
    pending_payments: PendingPaymentStore
    tokens: TokenStore
    unlinked_events: UnlinkedEventStore
    identity: IdentityDirectory
    notifier: BillingNotifier
    event_logger: BillingEventLogger
    email_policy: EmailMatchPolicy = field(default_factory=EmailMatchPolicy)
    clock: Callable[[], datetime] = field(default=utcnow)

    def reconcile(self, event: PaymentEvent) -> ReconciliationResult:
        handler = getattr(self, _HANDLERS[event.event_type])
        result: ReconciliationResult = handler(event)
        logger.info(
            "Reconciled event %s type=%s outcome=%s user=%s strategy=%s",
            event.event_id,
            event.event_type.value,
            result.outcome.value,
            result.user_id,
            result.strategy.value if result.strategy else None,
        )
        return result

    def linking_strategies(self) -> List[CorrelationStrategy]:
        return [
            SessionReferenceMatch(self.pending_payments),
            LinkTokenMatch(self.tokens, self.pending_payments),
            ExistingCustomerMatch(self.subscriptions),
            ExistingEmailMatch(self.subscriptions, self.email_policy, self.event_logger),
        ]

    def lifecycle_strategies(self) -> List[CorrelationStrategy]:
        return [
            ExistingCustomerMatch(self.subscriptions, lifecycle=True),
            ExistingEmailMatch(self.subscriptions, self.email_policy, self.event_logger, lifecycle=True),
        ]

    def resolve(self, event: PaymentEvent) -> Optional[Resolution]:
        strategies = self.linking_strategies() if event.is_activation else self.lifecycle_strategies()
        now = self.clock()
        for strategy in strategies:
            resolution = strategy.resolve(event, now=now)
            if resolution is not None:
                return resolution
        return None

    def _handle_activation(self, event: PaymentEvent) -> ReconciliationResult:
        resolution = self.resolve(event)
        if resolution is None:
            return self._unlinkable(event)

        existing = resolution.existing or self.subscriptions.get_by_user(resolution.user_id)
        if event.event_type == PaymentEventType.SUBSCRIPTION_CREATED:
            status = SubscriptionStatus.from_processor(event.processor_status or SubscriptionStatus.ACTIVE.value)
        else:
            status = SubscriptionStatus.ACTIVE

        period_start = event.period_start or event.occurred_at
        period_end = event.period_end or period_start + DEFAULT_PERIOD
        record = SubscriptionRecord(
            user_id=resolution.user_id,
            user_email=self._platform_email(resolution, existing),
            stripe_customer_id=event.customer_id or (existing.stripe_customer_id if existing else None),
            stripe_subscription_id=event.subscription_id or (existing.stripe_subscription_id if existing else None),
            stripe_email=event.email or (existing.stripe_email if existing else None),
            subscription_status=status,
            payment_method_attached=True,
            current_period_start=period_start,
            current_period_end=period_end,
            updated_at=self.clock(),
        )
        persisted = self.subscriptions.upsert(record)
        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.SUBSCRIPTION_LINKED,
                user_id=persisted.user_id,
                metadata={
                    "event_id": event.event_id,
                    "strategy": resolution.strategy.value,
                    "stripe_customer_id": persisted.stripe_customer_id,
                    "stripe_subscription_id": persisted.stripe_subscription_id,
                    "status": persisted.subscription_status.value,
                },
            )
        )
        return ReconciliationResult(
            event_id=event.event_id,
            event_type=event.event_type,
            outcome=ReconciliationOutcome.LINKED,
            user_id=persisted.user_id,
            strategy=resolution.strategy,
            subscription=persisted,
        )

    def _handle_invoice_paid(self, event: PaymentEvent) -> ReconciliationResult:
        if event.is_activation:
            return self._handle_activation(event)
        return self._ignored(event, reason=f"billing_reason={event.billing_reason}")

    def _handle_status_sync(self, event: PaymentEvent) -> ReconciliationResult:
        status = SubscriptionStatus.from_processor(event.processor_status)
        return self._apply_status(event, status, BillingAuditEventType.SUBSCRIPTION_UPDATED)

    def _handle_payment_failed(self, event: PaymentEvent) -> ReconciliationResult:
        return self._apply_status(event, SubscriptionStatus.UNPAID, BillingAuditEventType.PAYMENT_FAILED)

    def _handle_cancellation(self, event: PaymentEvent) -> ReconciliationResult:
        return self._apply_status(event, SubscriptionStatus.CANCELED, BillingAuditEventType.SUBSCRIPTION_CANCELED)

    def _handle_trial_will_end(self, event: PaymentEvent) -> ReconciliationResult:
        resolution = self.resolve(event)
        if resolution is None or resolution.existing is None:
            return self._ignored(event, reason="no linked subscription")
        self.notifier.notify_trial_will_end(resolution.existing)
        return ReconciliationResult(
            event_id=event.event_id,
            event_type=event.event_type,
            outcome=ReconciliationOutcome.IGNORED,
            user_id=resolution.user_id,
            strategy=resolution.strategy,
            subscription=resolution.existing,
            detail={"reason": "notification only"},
        )

    def _apply_status(
        self,
        event: PaymentEvent,
        status: SubscriptionStatus,
        audit_type: BillingAuditEventType,
    ) -> ReconciliationResult:
        resolution = self.resolve(event)
        if resolution is None:
            return self._unlinkable(event)

        updated = self.subscriptions.update_status(resolution.user_id, status)
        if updated is None:
            return self._unlinkable(event)
        self.event_logger.log(
            BillingAuditEvent(
                event_type=audit_type,
                user_id=updated.user_id,
                metadata={
                    "event_id": event.event_id,
                    "status": status.value,
                    "stripe_subscription_id": event.subscription_id,
                },
            )
        )
        return ReconciliationResult(
            event_id=event.event_id,
            event_type=event.event_type,
            outcome=ReconciliationOutcome.UPDATED,
            user_id=updated.user_id,
            strategy=resolution.strategy,
            subscription=updated,
        )

    def _platform_email(self, resolution: Resolution, existing: Optional[SubscriptionRecord]) -> Optional[str]:
        if resolution.user_email:
            return resolution.user_email
        if existing is not None and existing.user_email:
            return existing.user_email
        user = self.identity.get_user(resolution.user_id)
        return user.email if user else None

    def _unlinkable(self, event: PaymentEvent) -> ReconciliationResult:
        self.unlinked_events.record(
            UnlinkedPaymentEvent(
                event_id=event.event_id,
                event_type=event.event_type,
                customer_id=event.customer_id,
                subscription_id=event.subscription_id,
                email=event.email,
                session_reference=event.session_reference,
                metadata={key: value for key, value in event.metadata.items() if key != "payment_token"},
                received_at=self.clock(),
            )
        )
        logger.warning(
            "Payment event %s (%s) could not be linked: customer=%s email=%s session=%s",
            event.event_id,
            event.event_type.value,
            event.customer_id,
            event.email,
            event.session_reference,
        )
        detail = {
            "stripe_customer_id": event.customer_id,
            "stripe_subscription_id": event.subscription_id,
            "stripe_email": event.email,
            "session_reference": event.session_reference,
        }
        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.EVENT_UNLINKABLE,
                metadata={"event_id": event.event_id, **detail},
            )
        )
        return ReconciliationResult(
            event_id=event.event_id,
            event_type=event.event_type,
            outcome=ReconciliationOutcome.UNLINKABLE,
            detail=detail,
        )

    def _ignored(self, event: PaymentEvent, *, reason: str) -> ReconciliationResult:
        return ReconciliationResult(
            event_id=event.event_id,
            event_type=event.event_type,
            outcome=ReconciliationOutcome.IGNORED,
            detail={"reason": reason},
        )


__all__ = [
    "CorrelationStrategy",
    "ExistingCustomerMatch",
    "ExistingEmailMatch",
    "LinkTokenMatch",
    "PaymentEventReconciler",
    "Resolution",
    "SessionReferenceMatch",
]
