"""In-memory stand-ins for the billing stores and payment processor."""
from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Dict, List, Mapping, Optional, Sequence

import pytest

from easylist_api.app.billing import (
    BillingAuditEvent,
    CheckoutService,
    EmailMatchPolicy,
    LinkToken,
    PaymentConfirmationService,
    PaymentEventReconciler,
    PendingPayment,
    PendingPaymentStatus,
    PlatformUser,
    RecoveryService,
    SubscriptionRecord,
    SubscriptionStatus,
    UnlinkedPaymentEvent,
)
from easylist_api.app.billing.exceptions import SignatureVerificationFailed
from easylist_api.app.billing.service import (
    BillingEventLogger,
    BillingNotifier,
    IdentityDirectory,
    PaymentProvider,
    PendingPaymentStore,
    SubscriptionStore,
    TokenStore,
    UnlinkedEventStore,
)

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now = self.now + delta


class InMemoryTokenStore(TokenStore):
    def __init__(self) -> None:
        self.tokens: Dict[str, LinkToken] = {}

    def issue(self, user_id: str, *, ttl: timedelta, now: datetime) -> LinkToken:
        token = LinkToken(token=secrets.token_urlsafe(32), user_id=user_id, created_at=now, expires_at=now + ttl)
        self.tokens[token.token] = token
        return token

    def get(self, token: str) -> Optional[LinkToken]:
        return self.tokens.get(token)

    def consume(self, token: str, *, now: datetime) -> Optional[LinkToken]:
        current = self.tokens.get(token)
        if current is None or not current.is_valid(now):
            return None
        updated = current.model_copy(update={"used": True})
        self.tokens[token] = updated
        return updated

    def purge_expired(self, *, now: datetime) -> int:
        expired = [key for key, value in self.tokens.items() if value.is_expired(now)]
        for key in expired:
            del self.tokens[key]
        return len(expired)


class InMemoryPendingPaymentStore(PendingPaymentStore):
    def __init__(self) -> None:
        self.records: Dict[str, PendingPayment] = {}

    def create(self, *, user_id: str, user_email: Optional[str], ttl: timedelta, now: datetime) -> PendingPayment:
        record = PendingPayment(
            session_id=f"pp_{secrets.token_urlsafe(18)}",
            user_id=user_id,
            user_email=user_email,
            created_at=now,
            expires_at=now + ttl,
        )
        self.records[record.session_id] = record
        return record

    def get(self, session_id: str) -> Optional[PendingPayment]:
        return self.records.get(session_id)

    def complete(self, session_id: str, *, now: datetime) -> Optional[PendingPayment]:
        current = self.records.get(session_id)
        if current is None or not current.is_open(now):
            return None
        updated = current.model_copy(update={"status": PendingPaymentStatus.COMPLETED, "processed_at": now})
        self.records[session_id] = updated
        return updated


class InMemorySubscriptionStore(SubscriptionStore):
    def __init__(self) -> None:
        self.records: Dict[str, SubscriptionRecord] = {}
        self.upserts = 0

    def upsert(self, record: SubscriptionRecord) -> SubscriptionRecord:
        self.records[record.user_id] = record
        self.upserts += 1
        return record

    def update_status(self, user_id: str, status: SubscriptionStatus) -> Optional[SubscriptionRecord]:
        current = self.records.get(user_id)
        if current is None:
            return None
        updated = current.model_copy(update={"subscription_status": status})
        self.records[user_id] = updated
        return updated

    def _find(self, **criteria: str) -> Optional[SubscriptionRecord]:
        for record in self.records.values():
            if all(
                (getattr(record, key) or "").lower() == value.lower() for key, value in criteria.items()
            ):
                return record
        return None

    def get_by_user(self, user_id: str) -> Optional[SubscriptionRecord]:
        return self.records.get(user_id)

    def get_by_customer(self, customer_id: str) -> Optional[SubscriptionRecord]:
        return self._find(stripe_customer_id=customer_id)

    def get_by_subscription(self, subscription_id: str) -> Optional[SubscriptionRecord]:
        return self._find(stripe_subscription_id=subscription_id)

    def get_by_stripe_email(self, email: str) -> Optional[SubscriptionRecord]:
        return self._find(stripe_email=email)

    def get_by_user_email(self, email: str) -> Optional[SubscriptionRecord]:
        return self._find(user_email=email)

    def expire_lapsed(self, *, now: datetime, statuses: Sequence[SubscriptionStatus]) -> List[SubscriptionRecord]:
        expired: List[SubscriptionRecord] = []
        for user_id, record in list(self.records.items()):
            if (
                record.current_period_end is not None
                and record.current_period_end < now
                and record.subscription_status in statuses
            ):
                updated = record.model_copy(
                    update={"subscription_status": SubscriptionStatus.UNPAID, "updated_at": now}
                )
                self.records[user_id] = updated
                expired.append(updated)
        return expired

    def list_active_past_period_end(self, *, now: datetime) -> List[SubscriptionRecord]:
        return [
            record
            for record in self.records.values()
            if record.subscription_status == SubscriptionStatus.ACTIVE
            and record.current_period_end is not None
            and record.current_period_end < now
        ]


class InMemoryUnlinkedEventStore(UnlinkedEventStore):
    def __init__(self) -> None:
        self.events: Dict[str, UnlinkedPaymentEvent] = {}

    def record(self, event: UnlinkedPaymentEvent) -> UnlinkedPaymentEvent:
        self.events[event.event_id] = event
        return event

    def list_open(self, *, limit: int = 50) -> List[UnlinkedPaymentEvent]:
        open_events = [event for event in self.events.values() if event.resolved_at is None]
        return sorted(open_events, key=lambda event: event.received_at, reverse=True)[:limit]

    def resolve(self, event_id: str, *, user_id: str, now: datetime) -> Optional[UnlinkedPaymentEvent]:
        current = self.events.get(event_id)
        if current is None or current.resolved_at is not None:
            return None
        updated = current.model_copy(update={"resolved_user_id": user_id, "resolved_at": now})
        self.events[event_id] = updated
        return updated


class InMemoryIdentityDirectory(IdentityDirectory):
    def __init__(self, users: Optional[Mapping[str, str]] = None) -> None:
        self.users: Dict[str, PlatformUser] = {
            user_id: PlatformUser(user_id=user_id, email=email) for user_id, email in (users or {}).items()
        }

    def add(self, user_id: str, email: Optional[str]) -> PlatformUser:
        user = PlatformUser(user_id=user_id, email=email)
        self.users[user_id] = user
        return user

    def get_user(self, user_id: str) -> Optional[PlatformUser]:
        return self.users.get(user_id)

    def find_by_email(self, email: str) -> Optional[PlatformUser]:
        for user in self.users.values():
            if user.email and user.email.lower() == email.strip().lower():
                return user
        return None


class FakePaymentProvider(PaymentProvider):
    def __init__(self) -> None:
        self.customers: Dict[str, Dict[str, object]] = {}
        self.checkout_sessions: List[Dict[str, object]] = []
        self.portal_sessions: List[Dict[str, object]] = []
        self.subscriptions: Dict[str, List[Dict[str, object]]] = {}
        self.events: Dict[str, Mapping[str, object]] = {}
        self.checkout_url: Optional[str] = "https://checkout.stripe.test/session"

    def create_customer(self, *, email: Optional[str], metadata: Dict[str, str]) -> Dict[str, object]:
        customer_id = f"cus_{len(self.customers) + 1}"
        customer = {"id": customer_id, "email": email, "metadata": dict(metadata)}
        self.customers[customer_id] = customer
        return customer

    def create_checkout_session(self, **kwargs) -> Dict[str, object]:
        session = {"id": f"cs_test_{len(self.checkout_sessions) + 1}", "url": self.checkout_url, **kwargs}
        self.checkout_sessions.append(session)
        return session

    def create_billing_portal_session(self, *, customer_id: str, return_url: str) -> Dict[str, object]:
        session = {"id": f"bps_{len(self.portal_sessions) + 1}", "url": f"https://billing.stripe.test/{customer_id}"}
        self.portal_sessions.append({"customer_id": customer_id, "return_url": return_url, **session})
        return session

    def find_customer_by_email(self, email: str) -> Optional[Dict[str, object]]:
        for customer in self.customers.values():
            if customer.get("email") == email:
                return customer
        return None

    def add_subscription(self, customer_id: str, *, subscription_id: str, status: str, period_end: datetime) -> None:
        self.subscriptions.setdefault(customer_id, []).insert(
            0,
            {
                "id": subscription_id,
                "status": status,
                "current_period_start": period_end - timedelta(days=7),
                "current_period_end": period_end,
            },
        )

    def list_subscriptions(self, customer_id: str, *, limit: int = 10) -> List[Dict[str, object]]:
        return self.subscriptions.get(customer_id, [])[:limit]

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Mapping[str, object]:
        if not signature or signature not in self.events:
            raise SignatureVerificationFailed("Webhook signature verification failed")
        return self.events[signature]


class RecordingNotifier(BillingNotifier):
    def __init__(self) -> None:
        self.trial_will_end: List[SubscriptionRecord] = []
        self.trial_expired: List[SubscriptionRecord] = []

    def notify_trial_will_end(self, record: SubscriptionRecord) -> None:
        self.trial_will_end.append(record)

    def notify_trial_expired(self, records: Sequence[SubscriptionRecord]) -> None:
        self.trial_expired.extend(records)


class RecordingEventLogger(BillingEventLogger):
    def __init__(self) -> None:
        self.events: List[BillingAuditEvent] = []

    def log(self, event: BillingAuditEvent) -> None:
        self.events.append(event)

    def types(self) -> List[str]:
        return [event.event_type.value for event in self.events]


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def billing(clock: FrozenClock) -> SimpleNamespace:
    """Shared stores and collaborators; services built from it see the same state."""

    return SimpleNamespace(
        clock=clock,
        tokens=InMemoryTokenStore(),
        pending=InMemoryPendingPaymentStore(),
        subscriptions=InMemorySubscriptionStore(),
        unlinked=InMemoryUnlinkedEventStore(),
        identity=InMemoryIdentityDirectory({"user-1": "alice@easylist.app", "user-2": "bob@easylist.app"}),
        provider=FakePaymentProvider(),
        notifier=RecordingNotifier(),
        event_logger=RecordingEventLogger(),
    )


@pytest.fixture
def make_reconciler(billing: SimpleNamespace):
    def _build(policy: Optional[EmailMatchPolicy] = None) -> PaymentEventReconciler:
        return PaymentEventReconciler(
            subscriptions=billing.subscriptions,
            pending_payments=billing.pending,
            tokens=billing.tokens,
            unlinked_events=billing.unlinked,
            identity=billing.identity,
            notifier=billing.notifier,
            event_logger=billing.event_logger,
            email_policy=policy or EmailMatchPolicy(),
            clock=billing.clock,
        )

    return _build


@pytest.fixture
def reconciler(make_reconciler) -> PaymentEventReconciler:
    return make_reconciler()


@pytest.fixture
def checkout_service(billing: SimpleNamespace) -> CheckoutService:
    return CheckoutService(
        tokens=billing.tokens,
        pending_payments=billing.pending,
        subscriptions=billing.subscriptions,
        identity=billing.identity,
        provider=billing.provider,
        event_logger=billing.event_logger,
        app_url="https://app.easylist.test",
        payment_link_url="https://buy.stripe.test/plink_123",
        clock=billing.clock,
    )


@pytest.fixture
def confirmation_service(billing: SimpleNamespace) -> PaymentConfirmationService:
    return PaymentConfirmationService(
        tokens=billing.tokens,
        subscriptions=billing.subscriptions,
        identity=billing.identity,
        provider=billing.provider,
        event_logger=billing.event_logger,
        clock=billing.clock,
    )


@pytest.fixture
def recovery_service(billing: SimpleNamespace) -> RecoveryService:
    return RecoveryService(
        subscriptions=billing.subscriptions,
        unlinked_events=billing.unlinked,
        identity=billing.identity,
        notifier=billing.notifier,
        event_logger=billing.event_logger,
        clock=billing.clock,
    )
