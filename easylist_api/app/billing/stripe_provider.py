"""Stripe integration: API calls, webhook verification and event normalization."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

import stripe

from .exceptions import SignatureVerificationFailed, UpstreamError
from .models import PaymentEvent, PaymentEventType
from .service import (
    CORRELATION_SESSION_KEY,
    CORRELATION_TOKEN_KEY,
)

logger = logging.getLogger(__name__)

STRIPE_EVENT_TYPES: Dict[str, PaymentEventType] = {
    "checkout.session.completed": PaymentEventType.CHECKOUT_COMPLETED,
    "customer.subscription.created": PaymentEventType.SUBSCRIPTION_CREATED,
    "customer.subscription.updated": PaymentEventType.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": PaymentEventType.SUBSCRIPTION_DELETED,
    "customer.subscription.paused": PaymentEventType.SUBSCRIPTION_PAUSED,
    "customer.subscription.trial_will_end": PaymentEventType.TRIAL_WILL_END,
    "invoice.payment_succeeded": PaymentEventType.INVOICE_PAYMENT_SUCCEEDED,
    "invoice.payment_failed": PaymentEventType.INVOICE_PAYMENT_FAILED,
}


def _get(obj: Any, key: str, default: Any = None) -> Any:
    if obj is None:
        return default
    if isinstance(obj, Mapping):
        return obj.get(key, default)
    return getattr(obj, key, default)


def _get_path(obj: Any, *keys: str) -> Any:
    current = obj
    for key in keys:
        current = _get(current, key)
        if current is None:
            return None
    return current


def _object_id(value: Any) -> Optional[str]:
    """Stripe fields may hold an id string or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value or None
    identifier = _get(value, "id")
    return str(identifier) if identifier else None


def _from_timestamp(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _metadata(value: Any) -> Dict[str, str]:
    if value is None:
        return {}
    if isinstance(value, Mapping):
        items = value.items()
    else:
        items = dict(value).items()
    return {str(key): str(item) for key, item in items if item is not None}


def _subscription_period(subscription: Any) -> tuple[Optional[datetime], Optional[datetime]]:
    start = _get(subscription, "current_period_start")
    end = _get(subscription, "current_period_end")
    if start is None or end is None:
        # Newer API versions report the period on the subscription items.
        items = _get_path(subscription, "items", "data") or []
        if items:
            start = start or _get(items[0], "current_period_start")
            end = end or _get(items[0], "current_period_end")
    return _from_timestamp(start), _from_timestamp(end)


def _checkout_event(base: Dict[str, Any], session: Any) -> PaymentEvent:
    metadata = _metadata(_get(session, "metadata"))
    return PaymentEvent(
        **base,
        customer_id=_object_id(_get(session, "customer")),
        subscription_id=_object_id(_get(session, "subscription")),
        email=_get_path(session, "customer_details", "email") or _get(session, "customer_email"),
        session_reference=_get(session, "client_reference_id") or metadata.get(CORRELATION_SESSION_KEY),
        link_token=metadata.get(CORRELATION_TOKEN_KEY),
        metadata=metadata,
    )


def _subscription_event(base: Dict[str, Any], subscription: Any) -> PaymentEvent:
    metadata = _metadata(_get(subscription, "metadata"))
    period_start, period_end = _subscription_period(subscription)
    return PaymentEvent(
        **base,
        customer_id=_object_id(_get(subscription, "customer")),
        subscription_id=_object_id(_get(subscription, "id")),
        session_reference=metadata.get(CORRELATION_SESSION_KEY),
        link_token=metadata.get(CORRELATION_TOKEN_KEY),
        processor_status=_get(subscription, "status"),
        period_start=period_start,
        period_end=period_end,
        metadata=metadata,
    )


def _invoice_event(base: Dict[str, Any], invoice: Any) -> PaymentEvent:
    subscription_id = _object_id(_get(invoice, "subscription"))
    details = _get(invoice, "subscription_details")
    if subscription_id is None:
        details = _get_path(invoice, "parent", "subscription_details")
        subscription_id = _object_id(_get(details, "subscription"))
    metadata = _metadata(_get(details, "metadata"))
    return PaymentEvent(
        **base,
        customer_id=_object_id(_get(invoice, "customer")),
        subscription_id=subscription_id,
        email=_get(invoice, "customer_email"),
        session_reference=metadata.get(CORRELATION_SESSION_KEY),
        link_token=metadata.get(CORRELATION_TOKEN_KEY),
        billing_reason=_get(invoice, "billing_reason"),
        period_start=_from_timestamp(_get(invoice, "period_start")),
        period_end=_from_timestamp(_get(invoice, "period_end")),
        metadata=metadata,
    )


def payment_event_from_stripe(event: Any) -> Optional[PaymentEvent]:
    """Normalize a Stripe event; ``None`` for event types nobody handles."""

    stripe_type = str(_get(event, "type") or "")
    event_type = STRIPE_EVENT_TYPES.get(stripe_type)
    if event_type is None:
        return None

    obj = _get_path(event, "data", "object")
    if obj is None:
        raise SignatureVerificationFailed("Webhook event has no data object")

    base: Dict[str, Any] = {
        "event_id": str(_get(event, "id")),
        "event_type": event_type,
        "occurred_at": _from_timestamp(_get(event, "created")) or datetime.now(timezone.utc),
    }
    if event_type == PaymentEventType.CHECKOUT_COMPLETED:
        return _checkout_event(base, obj)
    if stripe_type.startswith("invoice."):
        return _invoice_event(base, obj)
    return _subscription_event(base, obj)


class StripePaymentProvider:
    """Payment provider backed by the Stripe API.

    The API key is passed on every request so that no module-level Stripe
    state is shared between instances.
    """

    def __init__(
        self,
        *,
        api_key: str,
        webhook_secret: str,
        price_id: Optional[str] = None,
        product_name: str = "EasyList Pro - Monthly Subscription",
        unit_amount: int = 3500,
        currency: str = "usd",
    ) -> None:
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.price_id = price_id
        self.product_name = product_name
        self.unit_amount = unit_amount
        self.currency = currency

    def _line_item(self, trial_period_days: int) -> Dict[str, Any]:
        if self.price_id:
            return {"price": self.price_id, "quantity": 1}
        dollars = self.unit_amount / 100
        return {
            "price_data": {
                "currency": self.currency,
                "product_data": {
                    "name": self.product_name,
                    "description": f"{trial_period_days}-day free trial, then ${dollars:g}/month",
                },
                "unit_amount": self.unit_amount,
                "recurring": {"interval": "month"},
            },
            "quantity": 1,
        }

    def create_customer(self, *, email: Optional[str], metadata: Dict[str, str]) -> Dict[str, object]:
        try:
            customer = stripe.Customer.create(api_key=self.api_key, email=email, metadata=metadata)
        except stripe.StripeError as exc:
            logger.error("Stripe customer creation failed: %s", exc.user_message or exc)
            raise UpstreamError("Failed to create payment customer") from exc
        return {"id": customer.id, "email": customer.email}

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
        subscription_data: Dict[str, Any] = {"metadata": metadata}
        if trial_period_days > 0:
            subscription_data["trial_period_days"] = trial_period_days
        try:
            session = stripe.checkout.Session.create(
                api_key=self.api_key,
                customer=customer_id,
                client_reference_id=client_reference_id,
                payment_method_types=["card"],
                line_items=[self._line_item(trial_period_days)],
                mode="subscription",
                success_url=success_url,
                cancel_url=cancel_url,
                metadata=metadata,
                subscription_data=subscription_data,
            )
        except stripe.StripeError as exc:
            logger.error("Stripe checkout session creation failed: %s", exc.user_message or exc)
            raise UpstreamError("Failed to create checkout session") from exc
        return {"id": session.id, "url": session.url, "expires_at": _from_timestamp(session.expires_at)}

    def create_billing_portal_session(self, *, customer_id: str, return_url: str) -> Dict[str, object]:
        try:
            session = stripe.billing_portal.Session.create(
                api_key=self.api_key,
                customer=customer_id,
                return_url=return_url,
            )
        except stripe.StripeError as exc:
            logger.error("Stripe portal session creation failed: %s", exc.user_message or exc)
            raise UpstreamError("Failed to create customer portal session") from exc
        return {"id": session.id, "url": session.url}

    def find_customer_by_email(self, email: str) -> Optional[Dict[str, object]]:
        try:
            customers = stripe.Customer.list(api_key=self.api_key, email=email, limit=1)
        except stripe.StripeError as exc:
            raise UpstreamError("Failed to search payment customers") from exc
        if not customers.data:
            return None
        customer = customers.data[0]
        return {"id": customer.id, "email": customer.email, "created": _from_timestamp(customer.created)}

    def list_subscriptions(self, customer_id: str, *, limit: int = 10) -> List[Dict[str, object]]:
        try:
            subscriptions = stripe.Subscription.list(
                api_key=self.api_key,
                customer=customer_id,
                status="all",
                limit=limit,
            )
        except stripe.StripeError as exc:
            raise UpstreamError("Failed to list subscriptions") from exc
        results: List[Dict[str, object]] = []
        for subscription in subscriptions.data:
            period_start, period_end = _subscription_period(subscription)
            results.append(
                {
                    "id": subscription.id,
                    "status": subscription.status,
                    "current_period_start": period_start,
                    "current_period_end": period_end,
                }
            )
        return results

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Mapping[str, object]:
        if not self.webhook_secret:
            raise SignatureVerificationFailed("Webhook signing secret is not configured")
        if not signature:
            raise SignatureVerificationFailed("Missing Stripe-Signature header")
        try:
            return stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except ValueError as exc:
            raise SignatureVerificationFailed("Invalid webhook payload") from exc
        except stripe.SignatureVerificationError as exc:
            raise SignatureVerificationFailed("Webhook signature verification failed") from exc


__all__ = ["STRIPE_EVENT_TYPES", "StripePaymentProvider", "payment_event_from_stripe"]
