from datetime import datetime, timedelta, timezone

import psycopg2
import pytest

from easylist_api import app_context
from easylist_api.app.billing import SubscriptionStatus, UpstreamError
from easylist_api.app.billing.repository import (
    PostgresIdentityDirectory,
    PostgresSubscriptionStore,
    PostgresTokenStore,
)

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class _FakeCursor:
    def __init__(self, rows=None, error=None):
        self.rows = list(rows or [])
        self.error = error
        self.executed = []
        self.rowcount = len(self.rows)
        self.closed = False

    def execute(self, sql, params=None):
        if self.error is not None:
            raise self.error
        self.executed.append((" ".join(sql.split()), params))

    def fetchone(self):
        return self.rows.pop(0) if self.rows else None

    def fetchall(self):
        rows, self.rows = self.rows, []
        return rows

    def close(self):
        self.closed = True


class _FakeConnection:
    def __init__(self, cursor):
        self._cursor = cursor
        self.commits = 0
        self.rollbacks = 0
        self.closed = False

    def cursor(self, cursor_factory=None):
        return self._cursor

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1

    def close(self):
        self.closed = True


@pytest.fixture
def configure_connection():
    def _configure(cursor):
        connection = _FakeConnection(cursor)
        app_context.configure(get_conn=lambda: connection)
        return connection

    yield _configure
    app_context.reset()


def _token_row(**overrides):
    row = {
        "token": "tok_1",
        "user_id": "user-1",
        "created_at": NOW,
        "expires_at": NOW + timedelta(hours=2),
        "used": True,
    }
    row.update(overrides)
    return row


def test_consume_is_conditional_on_unused_and_unexpired(configure_connection):
    cursor = _FakeCursor(rows=[_token_row()])
    connection = configure_connection(cursor)

    token = PostgresTokenStore().consume("tok_1", now=NOW)

    assert token is not None and token.used is True
    sql, params = cursor.executed[0]
    assert "WHERE token = %s AND used = FALSE AND expires_at > %s" in sql
    assert params == (NOW, "tok_1", NOW)
    assert connection.commits >= 1
    assert connection.closed is True


def test_consume_returns_none_when_no_row_matches(configure_connection):
    configure_connection(_FakeCursor(rows=[]))

    assert PostgresTokenStore().consume("tok_1", now=NOW) is None


def test_database_errors_become_upstream_errors(configure_connection):
    connection = configure_connection(_FakeCursor(error=psycopg2.OperationalError("server closed the connection")))

    with pytest.raises(UpstreamError):
        PostgresTokenStore().get("tok_1")

    assert connection.rollbacks >= 1
    assert connection.closed is True


def test_explicit_connection_is_left_open():
    cursor = _FakeCursor(rows=[])
    connection = _FakeConnection(cursor)

    PostgresSubscriptionStore(conn=connection).get_by_stripe_email("Alice@Example.com")

    sql, params = cursor.executed[0]
    assert "LOWER(stripe_email) = LOWER(%s)" in sql
    assert params == ("Alice@Example.com",)
    assert connection.commits == 0
    assert connection.closed is False


def test_expire_lapsed_filters_by_status(configure_connection):
    cursor = _FakeCursor(
        rows=[
            {
                "user_id": "user-1",
                "subscription_status": "unpaid",
                "current_period_end": NOW - timedelta(days=1),
                "updated_at": NOW,
            }
        ]
    )
    configure_connection(cursor)

    expired = PostgresSubscriptionStore().expire_lapsed(
        now=NOW, statuses=[SubscriptionStatus.TRIALING, SubscriptionStatus.PAST_DUE]
    )

    assert [record.user_id for record in expired] == ["user-1"]
    assert expired[0].subscription_status == SubscriptionStatus.UNPAID
    _, params = cursor.executed[0]
    assert params[-1] == ["trialing", "past_due"]


def test_unconfigured_context_raises():
    app_context.reset()

    with pytest.raises(RuntimeError):
        PostgresIdentityDirectory().find_by_email("alice@easylist.app")


def test_get_user_skips_query_for_non_uuid_ids():
    cursor = _FakeCursor(rows=[])
    connection = _FakeConnection(cursor)

    assert PostgresIdentityDirectory(conn=connection).get_user("user-1") is None

    assert cursor.executed == []
    assert connection.rollbacks == 0


def test_get_user_queries_by_uuid():
    account_id = "3f2b8a1e-5c4d-4e6f-9a7b-1c2d3e4f5a6b"
    cursor = _FakeCursor(rows=[{"id": account_id, "email": "alice@easylist.app"}])

    user = PostgresIdentityDirectory(conn=_FakeConnection(cursor)).get_user(account_id.upper())

    assert user.user_id == account_id
    assert user.email == "alice@easylist.app"
    assert cursor.executed[0][1] == (account_id,)
