"""API routes exposing checkout, webhook and recovery operations."""
from __future__ import annotations

import logging
import secrets
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from starlette.concurrency import run_in_threadpool

from ..billing import (
    CheckoutService,
    OperatorAuthRequired,
    PaymentConfirmationService,
    PaymentEventReconciler,
    RecoveryService,
)
from ..billing.stripe_provider import StripePaymentProvider, payment_event_from_stripe
from ..schemas.billing import (
    CheckoutSessionResponse,
    ManualActivationRequest,
    PaymentLinkResponse,
    PaymentSuccessRequest,
    PaymentSuccessResponse,
    PaymentTokenResponse,
    PortalSessionResponse,
    SubscriptionResponse,
    TrialSweepResponse,
    UnlinkedPaymentsResponse,
    UserRequest,
    WebhookResponse,
)
from ..services.billing import (
    get_billing_config,
    get_checkout_service,
    get_confirmation_service,
    get_payment_provider,
    get_reconciler,
    get_recovery_service,
)
from ...config import BillingConfig

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["billing"])


def require_operator(
    x_admin_token: Optional[str] = Header(None, alias="X-Admin-Token"),
    x_operator: Optional[str] = Header(None, alias="X-Operator"),
    config: BillingConfig = Depends(get_billing_config),
) -> str:
    """Return the acting operator's name once the admin token checks out."""

    if config.admin_api_token and not secrets.compare_digest(
        (x_admin_token or "").encode(), config.admin_api_token.encode()
    ):
        raise OperatorAuthRequired("A valid X-Admin-Token header is required")
    return (x_operator or "").strip() or "unknown"


@router.post("/generate-payment-token", response_model=PaymentTokenResponse)
def generate_payment_token(
    payload: UserRequest,
    service: CheckoutService = Depends(get_checkout_service),
) -> PaymentTokenResponse:
    grant = service.generate_payment_token(payload.user_id)
    return PaymentTokenResponse.from_grant(grant)


@router.post("/create-checkout-session", response_model=CheckoutSessionResponse)
def create_checkout_session(
    payload: UserRequest,
    service: CheckoutService = Depends(get_checkout_service),
) -> CheckoutSessionResponse:
    link = service.create_checkout_session(payload.user_id)
    return CheckoutSessionResponse.from_checkout(link)


@router.post("/create-stripe-payment-link", response_model=PaymentLinkResponse)
def create_stripe_payment_link(
    payload: UserRequest,
    service: CheckoutService = Depends(get_checkout_service),
) -> PaymentLinkResponse:
    link = service.create_payment_link(payload.user_id)
    return PaymentLinkResponse.from_link(link)


@router.post("/create-customer-portal-session", response_model=PortalSessionResponse)
def create_customer_portal_session(
    payload: UserRequest,
    service: CheckoutService = Depends(get_checkout_service),
) -> PortalSessionResponse:
    session = service.create_portal_session(payload.user_id)
    return PortalSessionResponse.from_session(session)


@router.post("/stripe-webhook", response_model=WebhookResponse)
async def receive_stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    provider: StripePaymentProvider = Depends(get_payment_provider),
    reconciler: PaymentEventReconciler = Depends(get_reconciler),
) -> WebhookResponse:
    # The signature covers the exact bytes, so the body must not be parsed first.
    body = await request.body()
    stripe_event = provider.construct_event(body, stripe_signature)

    event = payment_event_from_stripe(stripe_event)
    if event is None:
        logger.info("Unhandled Stripe event type %s", stripe_event["type"])
        return WebhookResponse(
            event_id=stripe_event["id"],
            event_type=stripe_event["type"],
            outcome="ignored",
        )

    result = await run_in_threadpool(reconciler.reconcile, event)
    return WebhookResponse.from_result(result)


@router.post("/process-payment-success", response_model=PaymentSuccessResponse)
def process_payment_success(
    payload: PaymentSuccessRequest,
    service: PaymentConfirmationService = Depends(get_confirmation_service),
) -> PaymentSuccessResponse:
    confirmation = service.confirm(payload.token, payload.stripe_email)
    return PaymentSuccessResponse.from_confirmation(confirmation)


@router.post("/activate-subscription", response_model=SubscriptionResponse)
def activate_subscription(
    payload: UserRequest,
    operator: str = Depends(require_operator),
    service: RecoveryService = Depends(get_recovery_service),
) -> SubscriptionResponse:
    record = service.activate_subscription(payload.user_id, operator=operator)
    return SubscriptionResponse(user_id=record.user_id, message="Subscription activated", subscription=record)


@router.post("/manual-activate-subscription", response_model=SubscriptionResponse)
def manual_activate_subscription(
    payload: ManualActivationRequest,
    operator: str = Depends(require_operator),
    service: RecoveryService = Depends(get_recovery_service),
) -> SubscriptionResponse:
    record = service.manual_activate(
        user_email=payload.user_email,
        stripe_customer_id=payload.stripe_customer_id,
        stripe_subscription_id=payload.stripe_subscription_id,
        stripe_email=payload.stripe_email,
        status=payload.subscription_status,
        unlinked_event_id=payload.unlinked_event_id,
        operator=operator,
    )
    return SubscriptionResponse(
        user_id=record.user_id,
        message="Subscription manually activated",
        subscription=record,
    )


@router.get("/unlinked-payments", response_model=UnlinkedPaymentsResponse)
def list_unlinked_payments(
    limit: int = Query(50, ge=1, le=500),
    operator: str = Depends(require_operator),
    service: RecoveryService = Depends(get_recovery_service),
) -> UnlinkedPaymentsResponse:
    events = service.list_unlinked_events(limit=limit)
    logger.info("Operator %s listed %s unlinked payment events", operator, len(events))
    return UnlinkedPaymentsResponse(count=len(events), events=events)


@router.post("/expire-trials", response_model=TrialSweepResponse)
def expire_trials(
    operator: str = Depends(require_operator),
    service: RecoveryService = Depends(get_recovery_service),
) -> TrialSweepResponse:
    logger.info("Trial sweep requested by %s", operator)
    result = service.expire_trials()
    return TrialSweepResponse.from_result(result)
