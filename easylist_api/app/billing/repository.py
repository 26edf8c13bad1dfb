"""Persistence layer for payment linking and subscription records."""
from __future__ import annotations

import logging
import secrets
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Sequence

import psycopg2
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from ... import app_context
from .exceptions import UpstreamError
from .models import (
    LinkToken,
    PaymentEventType,
    PendingPayment,
    PendingPaymentStatus,
    PlatformUser,
    SubscriptionRecord,
    SubscriptionStatus,
    UnlinkedPaymentEvent,
)

logger = logging.getLogger(__name__)

TOKEN_BYTES = 32
SESSION_REFERENCE_BYTES = 18


@contextmanager
def managed_connection(conn: Optional[PgConnection] = None):
    """Context manager that manages transaction boundaries for optional connections."""

    if conn is not None:
        yield conn, False
        return

    connection = app_context.get_conn()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


def _row_to_link_token(row: dict) -> LinkToken:
    return LinkToken(
        token=row["token"],
        user_id=str(row["user_id"]),
        created_at=row["created_at"],
        expires_at=row["expires_at"],
        used=bool(row["used"]),
    )


def _row_to_pending_payment(row: dict) -> PendingPayment:
    return PendingPayment(
        session_id=row["session_id"],
        user_id=str(row["user_id"]),
        user_email=row.get("user_email"),
        status=PendingPaymentStatus(row["status"]),
        created_at=row["created_at"],
        expires_at=row["expires_at"],
        processed_at=row.get("processed_at"),
    )


def _row_to_subscription(row: dict) -> SubscriptionRecord:
    return SubscriptionRecord(
        user_id=str(row["user_id"]),
        user_email=row.get("user_email"),
        stripe_customer_id=row.get("stripe_customer_id"),
        stripe_subscription_id=row.get("stripe_subscription_id"),
        stripe_email=row.get("stripe_email"),
        subscription_status=SubscriptionStatus(row["subscription_status"]),
        payment_method_attached=bool(row.get("payment_method_attached")),
        current_period_start=row.get("current_period_start"),
        current_period_end=row.get("current_period_end"),
        updated_at=row["updated_at"],
    )


def _row_to_unlinked_event(row: dict) -> UnlinkedPaymentEvent:
    return UnlinkedPaymentEvent(
        event_id=row["event_id"],
        event_type=PaymentEventType(row["event_type"]),
        customer_id=row.get("stripe_customer_id"),
        subscription_id=row.get("stripe_subscription_id"),
        email=row.get("stripe_email"),
        session_reference=row.get("session_reference"),
        metadata=row.get("metadata") or {},
        received_at=row["received_at"],
        resolved_user_id=str(row["resolved_user_id"]) if row.get("resolved_user_id") else None,
        resolved_at=row.get("resolved_at"),
    )


class _PostgresStore:
    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def _cursor(self) -> Iterable[PgCursor]:
        try:
            with managed_connection(self._conn) as (connection, managed):
                cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
                try:
                    yield cursor
                    if managed:
                        connection.commit()
                except Exception:
                    if managed:
                        connection.rollback()
                    raise
                finally:
                    cursor.close()
        except psycopg2.Error as exc:
            logger.error("Database operation failed: %s", exc)
            raise UpstreamError("Database operation failed") from exc


class PostgresTokenStore(_PostgresStore):
    """Payment tokens in the ``payment_tokens`` table."""

    def issue(self, user_id: str, *, ttl: timedelta, now: datetime) -> LinkToken:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO payment_tokens (token, user_id, created_at, expires_at, used)
                VALUES (%s, %s, %s, %s, FALSE)
                RETURNING *
                """,
                (secrets.token_urlsafe(TOKEN_BYTES), user_id, now, now + ttl),
            )
            row = cursor.fetchone()
            if not row:
                raise UpstreamError("Failed to generate payment token")
            return _row_to_link_token(row)

    def get(self, token: str) -> Optional[LinkToken]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM payment_tokens WHERE token = %s LIMIT 1", (token,))
            row = cursor.fetchone()
            return _row_to_link_token(row) if row else None

    def consume(self, token: str, *, now: datetime) -> Optional[LinkToken]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE payment_tokens
                SET used = TRUE, used_at = %s
                WHERE token = %s AND used = FALSE AND expires_at > %s
                RETURNING *
                """,
                (now, token, now),
            )
            row = cursor.fetchone()
            return _row_to_link_token(row) if row else None

    def purge_expired(self, *, now: datetime) -> int:
        with self._cursor() as cursor:
            cursor.execute("DELETE FROM payment_tokens WHERE expires_at <= %s", (now,))
            return cursor.rowcount


class PostgresPendingPaymentStore(_PostgresStore):
    """Session references in the ``pending_payments`` table."""

    def create(
        self,
        *,
        user_id: str,
        user_email: Optional[str],
        ttl: timedelta,
        now: datetime,
    ) -> PendingPayment:
        session_id = f"pp_{secrets.token_urlsafe(SESSION_REFERENCE_BYTES)}"
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO pending_payments (session_id, user_id, user_email, status, created_at, expires_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (session_id, user_id, user_email, PendingPaymentStatus.PENDING.value, now, now + ttl),
            )
            row = cursor.fetchone()
            if not row:
                raise UpstreamError("Failed to create payment record")
            return _row_to_pending_payment(row)

    def get(self, session_id: str) -> Optional[PendingPayment]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM pending_payments WHERE session_id = %s LIMIT 1", (session_id,))
            row = cursor.fetchone()
            return _row_to_pending_payment(row) if row else None

    def complete(self, session_id: str, *, now: datetime) -> Optional[PendingPayment]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE pending_payments
                SET status = %s, processed_at = %s
                WHERE session_id = %s AND status = %s AND expires_at > %s
                RETURNING *
                """,
                (
                    PendingPaymentStatus.COMPLETED.value,
                    now,
                    session_id,
                    PendingPaymentStatus.PENDING.value,
                    now,
                ),
            )
            row = cursor.fetchone()
            return _row_to_pending_payment(row) if row else None


class PostgresSubscriptionStore(_PostgresStore):
    """Per-user rows in the ``user_subscriptions`` table."""

    def upsert(self, record: SubscriptionRecord) -> SubscriptionRecord:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO user_subscriptions (
                    user_id,
                    user_email,
                    stripe_customer_id,
                    stripe_subscription_id,
                    stripe_email,
                    subscription_status,
                    payment_method_attached,
                    current_period_start,
                    current_period_end,
                    updated_at
                )
                VALUES (%(user_id)s, %(user_email)s, %(stripe_customer_id)s, %(stripe_subscription_id)s,
                        %(stripe_email)s, %(subscription_status)s, %(payment_method_attached)s,
                        %(current_period_start)s, %(current_period_end)s, %(updated_at)s)
                ON CONFLICT (user_id) DO UPDATE SET
                    user_email = EXCLUDED.user_email,
                    stripe_customer_id = EXCLUDED.stripe_customer_id,
                    stripe_subscription_id = EXCLUDED.stripe_subscription_id,
                    stripe_email = EXCLUDED.stripe_email,
                    subscription_status = EXCLUDED.subscription_status,
                    payment_method_attached = EXCLUDED.payment_method_attached,
                    current_period_start = EXCLUDED.current_period_start,
                    current_period_end = EXCLUDED.current_period_end,
                    updated_at = EXCLUDED.updated_at
                RETURNING *
                """,
                {
                    "user_id": record.user_id,
                    "user_email": record.user_email,
                    "stripe_customer_id": record.stripe_customer_id,
                    "stripe_subscription_id": record.stripe_subscription_id,
                    "stripe_email": record.stripe_email,
                    "subscription_status": record.subscription_status.value,
                    "payment_method_attached": record.payment_method_attached,
                    "current_period_start": record.current_period_start,
                    "current_period_end": record.current_period_end,
                    "updated_at": record.updated_at,
                },
            )
            row = cursor.fetchone()
            if not row:
                raise UpstreamError("Failed to persist subscription")
            return _row_to_subscription(row)

    def update_status(self, user_id: str, status: SubscriptionStatus) -> Optional[SubscriptionRecord]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE user_subscriptions
                SET subscription_status = %s, updated_at = NOW()
                WHERE user_id = %s
                RETURNING *
                """,
                (status.value, user_id),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def _get_one(self, column: str, value: str, *, case_insensitive: bool = False) -> Optional[SubscriptionRecord]:
        predicate = f"LOWER({column}) = LOWER(%s)" if case_insensitive else f"{column} = %s"
        with self._cursor() as cursor:
            cursor.execute(
                f"""
                SELECT *
                FROM user_subscriptions
                WHERE {predicate}
                ORDER BY updated_at DESC
                LIMIT 1
                """,
                (value,),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def get_by_user(self, user_id: str) -> Optional[SubscriptionRecord]:
        return self._get_one("user_id", user_id)

    def get_by_customer(self, customer_id: str) -> Optional[SubscriptionRecord]:
        return self._get_one("stripe_customer_id", customer_id)

    def get_by_subscription(self, subscription_id: str) -> Optional[SubscriptionRecord]:
        return self._get_one("stripe_subscription_id", subscription_id)

    def get_by_stripe_email(self, email: str) -> Optional[SubscriptionRecord]:
        return self._get_one("stripe_email", email, case_insensitive=True)

    def get_by_user_email(self, email: str) -> Optional[SubscriptionRecord]:
        return self._get_one("user_email", email, case_insensitive=True)

    def expire_lapsed(
        self,
        *,
        now: datetime,
        statuses: Sequence[SubscriptionStatus],
    ) -> List[SubscriptionRecord]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE user_subscriptions
                SET subscription_status = %s, updated_at = %s
                WHERE current_period_end IS NOT NULL
                  AND current_period_end < %s
                  AND subscription_status = ANY(%s)
                RETURNING *
                """,
                (SubscriptionStatus.UNPAID.value, now, now, [status.value for status in statuses]),
            )
            rows = cursor.fetchall() or []
            return [_row_to_subscription(row) for row in rows]

    def list_active_past_period_end(self, *, now: datetime) -> List[SubscriptionRecord]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM user_subscriptions
                WHERE subscription_status = %s
                  AND current_period_end IS NOT NULL
                  AND current_period_end < %s
                ORDER BY current_period_end
                """,
                (SubscriptionStatus.ACTIVE.value, now),
            )
            rows = cursor.fetchall() or []
            return [_row_to_subscription(row) for row in rows]


class PostgresUnlinkedEventStore(_PostgresStore):
    """Payment events awaiting manual reconciliation."""

    def record(self, event: UnlinkedPaymentEvent) -> UnlinkedPaymentEvent:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO unlinked_payment_events (
                    event_id,
                    event_type,
                    stripe_customer_id,
                    stripe_subscription_id,
                    stripe_email,
                    session_reference,
                    metadata,
                    received_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (event_id) DO UPDATE SET
                    received_at = EXCLUDED.received_at
                RETURNING *
                """,
                (
                    event.event_id,
                    event.event_type.value,
                    event.customer_id,
                    event.subscription_id,
                    event.email,
                    event.session_reference,
                    psycopg2.extras.Json(event.metadata),
                    event.received_at,
                ),
            )
            row = cursor.fetchone()
            return _row_to_unlinked_event(row) if row else event

    def list_open(self, *, limit: int = 50) -> List[UnlinkedPaymentEvent]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM unlinked_payment_events
                WHERE resolved_at IS NULL
                ORDER BY received_at DESC
                LIMIT %s
                """,
                (limit,),
            )
            rows = cursor.fetchall() or []
            return [_row_to_unlinked_event(row) for row in rows]

    def resolve(self, event_id: str, *, user_id: str, now: datetime) -> Optional[UnlinkedPaymentEvent]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE unlinked_payment_events
                SET resolved_user_id = %s, resolved_at = %s
                WHERE event_id = %s AND resolved_at IS NULL
                RETURNING *
                """,
                (user_id, now, event_id),
            )
            row = cursor.fetchone()
            return _row_to_unlinked_event(row) if row else None


class PostgresIdentityDirectory(_PostgresStore):
    """Reads accounts from the hosted backend's ``auth.users`` table."""

    def get_user(self, user_id: str) -> Optional[PlatformUser]:
        try:
            account_id = uuid.UUID(str(user_id))
        except ValueError:
            # Account ids are UUIDs, so this one cannot exist.
            return None
        with self._cursor() as cursor:
            cursor.execute("SELECT id, email FROM auth.users WHERE id = %s LIMIT 1", (str(account_id),))
            row = cursor.fetchone()
            return PlatformUser(user_id=str(row["id"]), email=row.get("email")) if row else None

    def find_by_email(self, email: str) -> Optional[PlatformUser]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT id, email FROM auth.users WHERE LOWER(email) = LOWER(%s) LIMIT 1",
                (email.strip(),),
            )
            row = cursor.fetchone()
            return PlatformUser(user_id=str(row["id"]), email=row.get("email")) if row else None


__all__ = [
    "PostgresIdentityDirectory",
    "PostgresPendingPaymentStore",
    "PostgresSubscriptionStore",
    "PostgresTokenStore",
    "PostgresUnlinkedEventStore",
    "managed_connection",
]
