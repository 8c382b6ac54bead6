import uuid
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from psycopg import errors

from tokensmith.storage.errors import ConstraintViolation
from tokensmith.storage.postgres import PostgresCredentialStore


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


def _store_with_connection():
    """Store whose pool hands out one MagicMock connection."""
    store: PostgresCredentialStore = PostgresCredentialStore.__new__(PostgresCredentialStore)
    conn = MagicMock()
    pool = MagicMock()
    pool.connection.return_value.__enter__.return_value = conn
    store.pool = pool
    return store, conn


def _row(**overrides):
    now = datetime.now(timezone.utc)
    row = {
        "id": uuid.uuid4(),
        "email": "alice@example.com",
        "password_digest": "digest",
        "refresh_digest": None,
        "refresh_jti": None,
        "created_at": now,
        "updated_at": now,
    }
    row.update(overrides)
    return row


def test_find_by_id_rejects_non_uuid_without_querying():
    store: PostgresCredentialStore = PostgresCredentialStore.__new__(PostgresCredentialStore)
    store.pool = DummyPool()

    assert store.find_by_id("not-a-uuid") is None


def test_find_by_email_maps_row_to_account():
    store, conn = _store_with_connection()
    row = _row(refresh_digest="d1", refresh_jti="j1")
    conn.execute.return_value.fetchone.return_value = row

    account = store.find_by_email(" Alice@Example.com ")

    assert account.id == str(row["id"])
    assert account.refresh_id == "j1"
    assert account.has_refresh_state
    _, params = conn.execute.call_args.args
    assert params == ("alice@example.com",)


def test_rotate_refresh_if_matches_reports_rowcount():
    store, conn = _store_with_connection()
    conn.execute.return_value.rowcount = 1

    assert store.rotate_refresh_if_matches("acct", "d1", "j1", "d2", "j2") is True
    sql, params = conn.execute.call_args.args
    assert "refresh_digest = %s AND refresh_jti = %s" in sql
    assert params == ("d2", "j2", "acct", "d1", "j1")

    conn.execute.return_value.rowcount = 0
    assert store.rotate_refresh_if_matches("acct", "d1", "j1", "d3", "j3") is False


def test_create_unique_violation_becomes_constraint_violation():
    store, conn = _store_with_connection()
    conn.execute.side_effect = errors.UniqueViolation("duplicate key")

    with pytest.raises(ConstraintViolation) as excinfo:
        store.create("alice@example.com", "digest")
    assert excinfo.value.message == "email already exists"


def test_list_accounts_preserves_query_order():
    store, conn = _store_with_connection()
    older = _row(email="a@example.com")
    newer = _row(email="b@example.com")
    conn.execute.return_value.fetchall.return_value = [older, newer]

    accounts = store.list_accounts()

    assert [a.email for a in accounts] == ["a@example.com", "b@example.com"]
    assert "ORDER BY created_at" in conn.execute.call_args.args[0]


def test_pool_is_bounded_by_acquire_and_statement_timeouts(monkeypatch):
    pool_cls = MagicMock()
    monkeypatch.setattr("tokensmith.storage.postgres.ConnectionPool", pool_cls)
    monkeypatch.setattr(PostgresCredentialStore, "_ensure_account_table", lambda self: None)

    PostgresCredentialStore("postgresql://db/tokensmith", timeout=2.5, statement_timeout_ms=1500)

    kwargs = pool_cls.call_args.kwargs
    assert kwargs["timeout"] == 2.5
    assert kwargs["kwargs"]["options"] == "-c statement_timeout=1500"
    assert kwargs["kwargs"]["row_factory"] is not None
