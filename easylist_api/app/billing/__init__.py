"""Billing domain package linking payments to EasyList accounts."""

from .exceptions import (
    BillingError,
    NotFound,
    OperatorAuthRequired,
    SignatureVerificationFailed,
    TokenInvalid,
    UpstreamError,
    UserNotFound,
    ValidationError,
)
from .models import (
    BillingAuditEvent,
    BillingAuditEventType,
    CheckoutLink,
    LinkToken,
    PaymentConfirmation,
    PaymentEvent,
    PaymentEventType,
    PaymentLink,
    PaymentTokenGrant,
    PendingPayment,
    PendingPaymentStatus,
    PlatformUser,
    PortalSession,
    ReconciliationOutcome,
    ReconciliationResult,
    ResolutionStrategy,
    SubscriptionRecord,
    SubscriptionStatus,
    TrialSweepResult,
    UnlinkedPaymentEvent,
)
from .policy import EmailMatchMode, EmailMatchPolicy
from .reconciler import PaymentEventReconciler
from .recovery import RecoveryService
from .service import (
    BillingEventLogger,
    BillingNotifier,
    CheckoutService,
    IdentityDirectory,
    PaymentConfirmationService,
    PaymentProvider,
    PendingPaymentStore,
    SubscriptionStore,
    TokenStore,
    UnlinkedEventStore,
)

__all__ = [
    "BillingAuditEvent",
    "BillingAuditEventType",
    "BillingError",
    "BillingEventLogger",
    "BillingNotifier",
    "CheckoutLink",
    "CheckoutService",
    "EmailMatchMode",
    "EmailMatchPolicy",
    "IdentityDirectory",
    "LinkToken",
    "NotFound",
    "OperatorAuthRequired",
    "PaymentConfirmation",
    "PaymentConfirmationService",
    "PaymentEvent",
    "PaymentEventReconciler",
    "PaymentEventType",
    "PaymentLink",
    "PaymentProvider",
    "PaymentTokenGrant",
    "PendingPayment",
    "PendingPaymentStatus",
    "PendingPaymentStore",
    "PlatformUser",
    "PortalSession",
    "ReconciliationOutcome",
    "ReconciliationResult",
    "RecoveryService",
    "ResolutionStrategy",
    "SignatureVerificationFailed",
    "SubscriptionRecord",
    "SubscriptionStatus",
    "SubscriptionStore",
    "TokenInvalid",
    "TokenStore",
    "TrialSweepResult",
    "UnlinkedEventStore",
    "UnlinkedPaymentEvent",
    "UpstreamError",
    "UserNotFound",
    "ValidationError",
]
