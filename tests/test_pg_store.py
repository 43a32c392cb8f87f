"""Tests for the PostgreSQL store: SQL helpers and driver error handling."""

import asyncio
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import psycopg2
import pytest

from relevancy_types import StoreError
from storage.pg_store import (
    NODES_TABLE,
    PgTreeStore,
    _build_create_table_statement,
    _build_upsert_statement,
    _leaf_rows,
    _subtree_clause,
)


def make_mock_pool(execute_side_effect=None, rows=()):
    conn = MagicMock()
    cursor = MagicMock()
    cursor.execute.side_effect = execute_side_effect
    cursor.fetchall.return_value = list(rows)
    conn.cursor.return_value.__enter__.return_value = cursor
    mock_pool = MagicMock()
    mock_pool.getconn.return_value = conn
    return mock_pool, conn, cursor


def test_create_table_statement_uses_path_primary_key():
    sql = _build_create_table_statement("nodes_test")

    assert "CREATE TABLE IF NOT EXISTS nodes_test" in sql
    assert "path TEXT PRIMARY KEY" in sql


def test_upsert_statement_updates_on_conflict():
    sql = _build_upsert_statement()

    assert sql.startswith(f"INSERT INTO {NODES_TABLE} (path, value, updated_at) VALUES %s")
    assert "ON CONFLICT (path) DO UPDATE SET value = EXCLUDED.value" in sql


def test_subtree_clause_bounds_descendants():
    clause, params = _subtree_clause("sites/a")

    assert params == ("sites/a", "sites/a/", "sites/a0")
    assert clause.count("%s") == 3
    assert _subtree_clause("") == ("TRUE", ())


def test_leaf_rows_encode_values_as_json():
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)

    rows = _leaf_rows("q", {"score": 0.5, "judgements": {"p1": {"score": "3"}}}, now=now)

    assert sorted(rows) == [
        ("q/judgements/p1/score", '"3"', now),
        ("q/score", "0.5", now),
    ]
    assert _leaf_rows("q", None) == []


def test_read_assembles_rows():
    mock_pool, conn, cursor = make_mock_pool(rows=[("sites/a/score", "0.5"), ("sites/a/name", '"A"')])

    with patch("storage.pg_store.pool.ThreadedConnectionPool", return_value=mock_pool):
        store = PgTreeStore("postgresql://localhost/test")
        node = asyncio.run(store.read("sites/a"))

    assert node == {"name": "A", "score": 0.5}
    mock_pool.putconn.assert_called_with(conn)


def test_write_replaces_subtree_and_ancestors():
    mock_pool, conn, cursor = make_mock_pool()

    with patch("storage.pg_store.pool.ThreadedConnectionPool", return_value=mock_pool), \
            patch("storage.pg_store.execute_values") as mock_execute_values:
        store = PgTreeStore("postgresql://localhost/test")
        asyncio.run(store.write("sites/a", {"score": 1}))

    statements = [c.args[0] for c in cursor.execute.call_args_list]
    assert any(s.startswith(f"DELETE FROM {NODES_TABLE} WHERE (path = %s") for s in statements)
    cursor.execute.assert_any_call(f"DELETE FROM {NODES_TABLE} WHERE path = ANY(%s)", (["sites"],))

    args = mock_execute_values.call_args.args
    assert args[1] == _build_upsert_statement(NODES_TABLE)
    assert [(path, value) for path, value, _ in args[2]] == [("sites/a/score", "1")]
    conn.commit.assert_called()


def test_driver_error_becomes_store_error():
    """Test psycopg2 failures surface as StoreError and roll back."""
    def fail_on_delete(sql, params=None):
        if sql.startswith("DELETE"):
            raise psycopg2.OperationalError("connection lost")

    mock_pool, conn, cursor = make_mock_pool(execute_side_effect=fail_on_delete)

    with patch("storage.pg_store.pool.ThreadedConnectionPool", return_value=mock_pool):
        store = PgTreeStore("postgresql://localhost/test")
        with pytest.raises(StoreError):
            asyncio.run(store.write("sites/a/score", 1))

    conn.rollback.assert_called_once()
    mock_pool.putconn.assert_called_with(conn)


def test_pool_is_created_once_and_closed():
    mock_pool, conn, cursor = make_mock_pool()

    with patch("storage.pg_store.pool.ThreadedConnectionPool", return_value=mock_pool) as mock_cls:
        store = PgTreeStore("postgresql://localhost/test", max_connections=3)
        asyncio.run(store.get("a"))
        asyncio.run(store.get("b"))
        asyncio.run(store.close())

    mock_cls.assert_called_once_with(minconn=1, maxconn=3, dsn="postgresql://localhost/test")
    mock_pool.closeall.assert_called_once()
