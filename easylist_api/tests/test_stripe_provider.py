from __future__ import annotations

from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
import stripe

from easylist_api.app.billing import PaymentEventType, SignatureVerificationFailed, UpstreamError
from easylist_api.app.billing.stripe_provider import StripePaymentProvider, payment_event_from_stripe

CREATED = 1740830400  # 2025-03-01T12:00:00Z


def _stripe_event(event_type: str, obj: dict) -> dict:
    return {"id": "evt_123", "type": event_type, "created": CREATED, "data": {"object": obj}}


def test_checkout_completed_conversion():
    event = payment_event_from_stripe(
        _stripe_event(
            "checkout.session.completed",
            {
                "id": "cs_1",
                "customer": "cus_1",
                "subscription": "sub_1",
                "client_reference_id": "pp_abc",
                "customer_details": {"email": "payer@example.com"},
                "metadata": {"payment_token": "tok_1", "easylist_user_id": "user-1"},
            },
        )
    )

    assert event.event_type == PaymentEventType.CHECKOUT_COMPLETED
    assert event.event_id == "evt_123"
    assert event.customer_id == "cus_1"
    assert event.subscription_id == "sub_1"
    assert event.session_reference == "pp_abc"
    assert event.link_token == "tok_1"
    assert event.email == "payer@example.com"
    assert event.occurred_at == datetime(2025, 3, 1, 12, tzinfo=timezone.utc)


def test_session_reference_falls_back_to_metadata():
    event = payment_event_from_stripe(
        _stripe_event(
            "checkout.session.completed",
            {"customer": {"id": "cus_1"}, "customer_email": "x@example.com", "metadata": {"pending_session_id": "pp_meta"}},
        )
    )

    assert event.session_reference == "pp_meta"
    assert event.customer_id == "cus_1"
    assert event.email == "x@example.com"


def test_subscription_event_reads_period_from_items():
    event = payment_event_from_stripe(
        _stripe_event(
            "customer.subscription.updated",
            {
                "id": "sub_1",
                "customer": "cus_1",
                "status": "past_due",
                "items": {"data": [{"current_period_start": CREATED, "current_period_end": CREATED + 86400}]},
                "metadata": {"payment_token": "tok_1"},
            },
        )
    )

    assert event.event_type == PaymentEventType.SUBSCRIPTION_UPDATED
    assert event.processor_status == "past_due"
    assert event.subscription_id == "sub_1"
    assert event.period_end == datetime(2025, 3, 2, 12, tzinfo=timezone.utc)
    assert event.link_token == "tok_1"


def test_invoice_event_reads_parent_subscription_details():
    event = payment_event_from_stripe(
        _stripe_event(
            "invoice.payment_succeeded",
            {
                "customer": "cus_1",
                "customer_email": "payer@example.com",
                "billing_reason": "subscription_create",
                "parent": {
                    "subscription_details": {
                        "subscription": "sub_1",
                        "metadata": {"pending_session_id": "pp_abc"},
                    }
                },
            },
        )
    )

    assert event.subscription_id == "sub_1"
    assert event.session_reference == "pp_abc"
    assert event.is_activation is True


def test_unhandled_event_types_are_skipped():
    assert payment_event_from_stripe(_stripe_event("charge.refunded", {"id": "ch_1"})) is None


def test_construct_event_requires_signature():
    provider = StripePaymentProvider(api_key="sk_test", webhook_secret="whsec_test")

    with pytest.raises(SignatureVerificationFailed):
        provider.construct_event(b"{}", None)


def test_construct_event_requires_secret():
    provider = StripePaymentProvider(api_key="sk_test", webhook_secret="")

    with pytest.raises(SignatureVerificationFailed):
        provider.construct_event(b"{}", "t=1,v1=abc")


def test_construct_event_rejects_bad_signature(monkeypatch):
    def fake_construct_event(payload, signature, secret):
        raise stripe.SignatureVerificationError("bad signature", signature)

    monkeypatch.setattr(stripe.Webhook, "construct_event", fake_construct_event)
    provider = StripePaymentProvider(api_key="sk_test", webhook_secret="whsec_test")

    with pytest.raises(SignatureVerificationFailed) as exc:
        provider.construct_event(b"{}", "t=1,v1=abc")
    assert exc.value.status_code == 400


def test_checkout_session_uses_inline_price(monkeypatch):
    captured = {}

    def fake_create(**kwargs):
        captured.update(kwargs)
        return SimpleNamespace(id="cs_1", url="https://checkout.stripe.test/cs_1", expires_at=CREATED)

    monkeypatch.setattr(stripe.checkout.Session, "create", fake_create)
    provider = StripePaymentProvider(api_key="sk_test", webhook_secret="whsec_test")

    session = provider.create_checkout_session(
        customer_id="cus_1",
        client_reference_id="pp_abc",
        metadata={"easylist_user_id": "user-1"},
        success_url="https://app.test/?session_id={CHECKOUT_SESSION_ID}",
        cancel_url="https://app.test/",
        trial_period_days=7,
    )

    assert session["url"] == "https://checkout.stripe.test/cs_1"
    assert captured["api_key"] == "sk_test"
    assert captured["mode"] == "subscription"
    assert captured["client_reference_id"] == "pp_abc"
    assert captured["subscription_data"] == {"metadata": {"easylist_user_id": "user-1"}, "trial_period_days": 7}
    price = captured["line_items"][0]["price_data"]
    assert price["unit_amount"] == 3500
    assert price["recurring"] == {"interval": "month"}
    assert price["product_data"]["name"] == "EasyList Pro - Monthly Subscription"


def test_stripe_errors_become_upstream_errors(monkeypatch):
    def failing_create(**kwargs):
        raise stripe.APIConnectionError("network down")

    monkeypatch.setattr(stripe.Customer, "create", failing_create)
    provider = StripePaymentProvider(api_key="sk_test", webhook_secret="whsec_test")

    with pytest.raises(UpstreamError):
        provider.create_customer(email="a@example.com", metadata={})
