"""Application wiring for the billing services."""
from __future__ import annotations

import logging
import time
from functools import lru_cache
from typing import Callable, Sequence

from ..billing import (
    BillingAuditEvent,
    BillingEventLogger,
    BillingNotifier,
    CheckoutService,
    PaymentConfirmationService,
    PaymentEventReconciler,
    RecoveryService,
    SubscriptionRecord,
)
from ..billing.repository import (
    PostgresIdentityDirectory,
    PostgresPendingPaymentStore,
    PostgresSubscriptionStore,
    PostgresTokenStore,
    PostgresUnlinkedEventStore,
)
from ..billing.stripe_provider import StripePaymentProvider
from ...config import BillingConfig, load_billing_config
from ...mail import (
    EmailConfig,
    EmailProvider,
    create_email_provider,
    load_email_config,
    render_trial_expired,
    render_trial_will_end,
)


logger = logging.getLogger("billing")


class LoggingBillingEventLogger(BillingEventLogger):
    """Simple event logger forwarding billing audit events to logging."""

    def log(self, event: BillingAuditEvent) -> None:
        logger.info(
            "Billing event %s user=%s actor=%s metadata=%s",
            event.event_type.value,
            event.user_id,
            event.actor,
            event.metadata,
            extra={"billing_event": event.event_type.value, "user_id": event.user_id},
        )


class EmailBillingNotifier(BillingNotifier):
    """Sends trial notices through the configured email provider."""

    def __init__(
        self,
        *,
        provider: EmailProvider,
        app_url: str,
        trial_period_days: int = 7,
        monthly_price_cents: int = 3500,
        send_interval: float = 0.6,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.provider = provider
        self.app_url = app_url.rstrip("/")
        self.trial_period_days = trial_period_days
        self.monthly_price_cents = monthly_price_cents
        self.send_interval = send_interval
        self._sleep = sleep
        self.sent = 0
        self.failures = 0

    def _context(self, record: SubscriptionRecord, recipient: str) -> dict:
        period_end = record.current_period_end
        return {
            "recipient": recipient,
            "trial_period_days": self.trial_period_days,
            "trial_end_date": period_end.strftime("%B %d, %Y") if period_end else "soon",
            "period_end_date": period_end.strftime("%B %d, %Y") if period_end else "today",
            "price": f"${self.monthly_price_cents / 100:.2f}",
            "manage_url": f"{self.app_url}/",
        }

    def _deliver(self, record: SubscriptionRecord, renderer) -> bool:
        recipient = record.user_email or record.stripe_email
        if not recipient:
            logger.warning("No email address on file for user=%s, notice skipped", record.user_id)
            return False
        subject, text_body, html_body = renderer(self._context(record, recipient))
        try:
            self.provider.send_email(recipient, subject, html_body, text_body)
        except Exception:
            self.failures += 1
            logger.exception(
                "Failed to send billing email",
                extra={"email_recipient": recipient, "email_subject": subject, "user_id": record.user_id},
            )
            return False
        self.sent += 1
        return True

    def notify_trial_will_end(self, record: SubscriptionRecord) -> None:
        self._deliver(record, render_trial_will_end)

    def notify_trial_expired(self, records: Sequence[SubscriptionRecord]) -> None:
        for index, record in enumerate(records):
            if index and self.send_interval:
                self._sleep(self.send_interval)
            self._deliver(record, render_trial_expired)


@lru_cache(maxsize=1)
def get_billing_config() -> BillingConfig:
    return load_billing_config()


@lru_cache(maxsize=1)
def get_email_config() -> EmailConfig:
    return load_email_config()


@lru_cache(maxsize=1)
def get_payment_provider() -> StripePaymentProvider:
    config = get_billing_config()
    if not config.stripe_secret_key:
        logger.warning("STRIPE_SECRET_KEY is not set; payment processor calls will fail")
    return StripePaymentProvider(
        api_key=config.stripe_secret_key,
        webhook_secret=config.stripe_webhook_secret,
        price_id=config.stripe_price_id,
        product_name=config.product_name,
        unit_amount=config.monthly_price_cents,
    )


@lru_cache(maxsize=1)
def get_event_logger() -> LoggingBillingEventLogger:
    return LoggingBillingEventLogger()


@lru_cache(maxsize=1)
def get_notifier() -> EmailBillingNotifier:
    billing_config = get_billing_config()
    email_config = get_email_config()
    return EmailBillingNotifier(
        provider=create_email_provider(email_config),
        app_url=billing_config.app_url,
        trial_period_days=billing_config.trial_period_days,
        monthly_price_cents=billing_config.monthly_price_cents,
        send_interval=email_config.send_interval,
    )


@lru_cache(maxsize=1)
def get_checkout_service() -> CheckoutService:
    config = get_billing_config()
    return CheckoutService(
        tokens=PostgresTokenStore(),
        pending_payments=PostgresPendingPaymentStore(),
        subscriptions=PostgresSubscriptionStore(),
        identity=PostgresIdentityDirectory(),
        provider=get_payment_provider(),
        event_logger=get_event_logger(),
        app_url=config.app_url,
        token_ttl=config.token_ttl,
        pending_ttl=config.pending_payment_ttl,
        trial_period_days=config.trial_period_days,
        payment_link_url=config.stripe_payment_link_url,
    )


@lru_cache(maxsize=1)
def get_reconciler() -> PaymentEventReconciler:
    config = get_billing_config()
    return PaymentEventReconciler(
        subscriptions=PostgresSubscriptionStore(),
        pending_payments=PostgresPendingPaymentStore(),
        tokens=PostgresTokenStore(),
        unlinked_events=PostgresUnlinkedEventStore(),
        identity=PostgresIdentityDirectory(),
        notifier=get_notifier(),
        event_logger=get_event_logger(),
        email_policy=config.email_match_policy,
    )


@lru_cache(maxsize=1)
def get_confirmation_service() -> PaymentConfirmationService:
    return PaymentConfirmationService(
        tokens=PostgresTokenStore(),
        subscriptions=PostgresSubscriptionStore(),
        identity=PostgresIdentityDirectory(),
        provider=get_payment_provider(),
        event_logger=get_event_logger(),
    )


@lru_cache(maxsize=1)
def get_recovery_service() -> RecoveryService:
    return RecoveryService(
        subscriptions=PostgresSubscriptionStore(),
        unlinked_events=PostgresUnlinkedEventStore(),
        identity=PostgresIdentityDirectory(),
        notifier=get_notifier(),
        event_logger=get_event_logger(),
    )


def reset_billing_services() -> None:
    """Drop cached services so the next request rebuilds them from settings."""

    for factory in (
        get_billing_config,
        get_email_config,
        get_payment_provider,
        get_event_logger,
        get_notifier,
        get_checkout_service,
        get_reconciler,
        get_confirmation_service,
        get_recovery_service,
    ):
        factory.cache_clear()


__all__ = [
    "EmailBillingNotifier",
    "LoggingBillingEventLogger",
    "get_billing_config",
    "get_checkout_service",
    "get_confirmation_service",
    "get_payment_provider",
    "get_reconciler",
    "get_recovery_service",
    "reset_billing_services",
]
