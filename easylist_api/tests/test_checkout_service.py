from __future__ import annotations

from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import pytest

from easylist_api.app.billing import (
    NotFound,
    SubscriptionRecord,
    SubscriptionStatus,
    UpstreamError,
    UserNotFound,
    ValidationError,
)


def test_generate_payment_token_builds_success_url(billing, checkout_service):
    grant = checkout_service.generate_payment_token("user-1")

    assert grant.success_url.startswith("https://app.easylist.test/payment-success?")
    assert parse_qs(urlparse(grant.success_url).query)["token"] == [grant.token]
    stored = billing.tokens.get(grant.token)
    assert stored.user_id == "user-1"
    assert stored.expires_at == billing.clock() + timedelta(hours=2)
    assert billing.event_logger.types() == ["token_issued"]


def test_generate_payment_token_requires_known_user(checkout_service):
    with pytest.raises(UserNotFound) as exc:
        checkout_service.generate_payment_token("ghost")
    assert exc.value.status_code == 400


def test_blank_user_id_is_a_validation_error(checkout_service):
    with pytest.raises(ValidationError):
        checkout_service.create_checkout_session("   ")


def test_checkout_session_embeds_every_correlation_path(billing, checkout_service):
    link = checkout_service.create_checkout_session("user-1")

    session = billing.provider.checkout_sessions[0]
    assert link.checkout_url == "https://checkout.stripe.test/session"
    assert link.checkout_session_id == session["id"]
    assert session["client_reference_id"] == link.session_id
    assert session["metadata"] == {
        "easylist_user_id": "user-1",
        "platform_email": "alice@easylist.app",
        "payment_token": link.token,
        "pending_session_id": link.session_id,
    }
    assert session["success_url"] == "https://app.easylist.test/?session_id={CHECKOUT_SESSION_ID}"
    assert session["cancel_url"] == "https://app.easylist.test/"
    assert session["trial_period_days"] == 7

    customer = billing.provider.customers[session["customer_id"]]
    assert customer["email"] == "alice@easylist.app"
    assert customer["metadata"]["easylist_user_id"] == "user-1"

    pending = billing.pending.get(link.session_id)
    assert pending.user_id == "user-1"
    assert pending.user_email == "alice@easylist.app"
    assert billing.tokens.get(link.token).used is False
    assert link.platform_email == "alice@easylist.app"


def test_checkout_session_purges_expired_tokens(billing, checkout_service):
    stale = billing.tokens.issue("user-2", ttl=timedelta(minutes=5), now=billing.clock() - timedelta(hours=1))

    checkout_service.create_checkout_session("user-1")

    assert billing.tokens.get(stale.token) is None


def test_checkout_for_unknown_user_creates_nothing(billing, checkout_service):
    with pytest.raises(UserNotFound):
        checkout_service.create_checkout_session("ghost")

    assert billing.tokens.tokens == {}
    assert billing.pending.records == {}
    assert billing.provider.checkout_sessions == []


def test_checkout_without_url_is_upstream_error(billing, checkout_service):
    billing.provider.checkout_url = None

    with pytest.raises(UpstreamError) as exc:
        checkout_service.create_checkout_session("user-1")

    assert exc.value.status_code == 500
    # Correlation data is left to expire on its own.
    assert len(billing.tokens.tokens) == 1
    assert len(billing.pending.records) == 1


def test_payment_link_carries_session_reference(billing, checkout_service):
    link = checkout_service.create_payment_link("user-2")

    query = parse_qs(urlparse(link.payment_url).query)
    assert link.payment_url.startswith("https://buy.stripe.test/plink_123?")
    assert query["client_reference_id"] == [link.session_id]
    assert billing.pending.get(link.session_id).user_email == "bob@easylist.app"


def test_payment_link_requires_configuration(checkout_service):
    checkout_service.payment_link_url = None

    with pytest.raises(ValidationError):
        checkout_service.create_payment_link("user-1")


def test_portal_session_uses_stored_customer(billing, checkout_service):
    billing.subscriptions.upsert(
        SubscriptionRecord(
            user_id="user-1",
            stripe_customer_id="cus_1",
            stripe_email="alice.pays@example.com",
            subscription_status=SubscriptionStatus.ACTIVE,
        )
    )

    session = checkout_service.create_portal_session("user-1")

    assert session.customer_id == "cus_1"
    assert session.portal_url == "https://billing.stripe.test/cus_1"
    assert billing.provider.portal_sessions[0]["return_url"] == "https://app.easylist.test"


def test_portal_session_errors(billing, checkout_service):
    with pytest.raises(NotFound) as missing:
        checkout_service.create_portal_session("user-1")
    assert missing.value.status_code == 404

    billing.subscriptions.upsert(SubscriptionRecord(user_id="user-1"))
    with pytest.raises(ValidationError):
        checkout_service.create_portal_session("user-1")
