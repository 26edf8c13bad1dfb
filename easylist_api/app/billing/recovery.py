"""Operator recovery paths and the trial expiration sweep."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from .exceptions import NotFound
from .models import (
    TERMINAL_STATUSES,
    BillingAuditEvent,
    BillingAuditEventType,
    SubscriptionRecord,
    SubscriptionStatus,
    TrialSweepResult,
    UnlinkedPaymentEvent,
)
from .service import (
    BillingEventLogger,
    BillingNotifier,
    IdentityDirectory,
    SubscriptionStore,
    UnlinkedEventStore,
    require_text,
    resolve_platform_user,
    utcnow,
)

logger = logging.getLogger("billing")

MANUAL_ACTIVATION_PERIOD = timedelta(days=7)
# Lapsed active records are only reported for review.
EXPIRABLE_STATUSES = tuple(
    status for status in SubscriptionStatus if status not in TERMINAL_STATUSES and status != SubscriptionStatus.ACTIVE
)


def _snapshot(record: Optional[SubscriptionRecord]) -> Optional[str]:
    if record is None:
        return None
    return record.model_dump_json(exclude={"updated_at"})


@dataclass(slots=True)
class RecoveryService:
    """Manual activation, unlinked event review and trial expiration."""

    subscriptions: SubscriptionStore
    unlinked_events: UnlinkedEventStore
    identity: IdentityDirectory
    notifier: BillingNotifier
    event_logger: BillingEventLogger
    clock: Callable[[], datetime] = field(default=utcnow)

    def activate_subscription(self, user_id: str, *, operator: str) -> SubscriptionRecord:
        user_id = require_text(user_id, "user_id")
        now = self.clock()
        before = self.subscriptions.get_by_user(user_id)
        user_email = before.user_email if before else None
        if user_email is None:
            user_email = resolve_platform_user(self.identity, user_id).email

        record = SubscriptionRecord(
            user_id=user_id,
            user_email=user_email,
            stripe_customer_id=before.stripe_customer_id if before else None,
            stripe_subscription_id=before.stripe_subscription_id if before else None,
            stripe_email=before.stripe_email if before else None,
            subscription_status=SubscriptionStatus.ACTIVE,
            payment_method_attached=True,
            current_period_start=now,
            current_period_end=now + MANUAL_ACTIVATION_PERIOD,
            updated_at=now,
        )
        after = self.subscriptions.upsert(record)
        self._audit_manual_change(operator, before, after, action="activate-subscription")
        return after

    def manual_activate(
        self,
        *,
        user_email: str,
        stripe_customer_id: str,
        operator: str,
        stripe_subscription_id: Optional[str] = None,
        stripe_email: Optional[str] = None,
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        unlinked_event_id: Optional[str] = None,
    ) -> SubscriptionRecord:
        user_email = require_text(user_email, "user_email")
        stripe_customer_id = require_text(stripe_customer_id, "stripe_customer_id")

        user = self.identity.find_by_email(user_email)
        if user is None:
            raise NotFound("User not found", detail={"user_email": user_email})

        now = self.clock()
        before = self.subscriptions.get_by_user(user.user_id)
        after = self.subscriptions.upsert(
            SubscriptionRecord(
                user_id=user.user_id,
                user_email=user.email or user_email,
                stripe_customer_id=stripe_customer_id,
                stripe_subscription_id=stripe_subscription_id or None,
                stripe_email=stripe_email or user_email,
                subscription_status=status,
                payment_method_attached=True,
                current_period_start=now,
                current_period_end=now + MANUAL_ACTIVATION_PERIOD,
                updated_at=now,
            )
        )
        self._audit_manual_change(operator, before, after, action="manual-activate-subscription")

        if unlinked_event_id:
            resolved = self.unlinked_events.resolve(unlinked_event_id, user_id=user.user_id, now=now)
            if resolved is None:
                logger.warning("Unlinked event %s not found or already resolved", unlinked_event_id)
            else:
                logger.info("Unlinked event %s resolved to user=%s by %s", unlinked_event_id, user.user_id, operator)
        return after

    def list_unlinked_events(self, *, limit: int = 50) -> List[UnlinkedPaymentEvent]:
        return self.unlinked_events.list_open(limit=limit)

    def expire_trials(self, *, now: Optional[datetime] = None) -> TrialSweepResult:
        current_time = now or self.clock()
        expired = self.subscriptions.expire_lapsed(now=current_time, statuses=EXPIRABLE_STATUSES)
        for record in expired:
            self.event_logger.log(
                BillingAuditEvent(
                    event_type=BillingAuditEventType.TRIAL_EXPIRED,
                    user_id=record.user_id,
                    actor="trial-sweep",
                    metadata={
                        "current_period_end": record.current_period_end.isoformat()
                        if record.current_period_end
                        else None,
                    },
                )
            )
        if expired:
            self.notifier.notify_trial_expired(expired)

        stale_active = self.subscriptions.list_active_past_period_end(now=current_time)
        for record in stale_active:
            logger.warning(
                "Subscription %s for user=%s ended %s but is still marked active",
                record.stripe_subscription_id,
                record.user_id,
                record.current_period_end,
            )
        logger.info(
            "Trial sweep expired %s subscriptions, %s flagged for review",
            len(expired),
            len(stale_active),
        )
        return TrialSweepResult(
            expired_count=len(expired),
            expired_user_ids=[record.user_id for record in expired],
            subscriptions_to_review=len(stale_active),
            review_user_ids=[record.user_id for record in stale_active],
            timestamp=current_time,
        )

    def _audit_manual_change(
        self,
        operator: str,
        before: Optional[SubscriptionRecord],
        after: SubscriptionRecord,
        *,
        action: str,
    ) -> None:
        logger.warning(
            "Manual subscription change action=%s operator=%s user=%s before=%s after=%s",
            action,
            operator,
            after.user_id,
            _snapshot(before),
            _snapshot(after),
        )
        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.MANUAL_ACTIVATION,
                user_id=after.user_id,
                actor=operator,
                metadata={
                    "action": action,
                    "before": _snapshot(before),
                    "after": _snapshot(after),
                },
            )
        )


__all__ = ["EXPIRABLE_STATUSES", "RecoveryService"]
