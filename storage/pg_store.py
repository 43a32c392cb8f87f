"""PostgreSQL storage for the relevancy tree.

Same layout as the SQLite store: one row per leaf in ``relevancy_nodes``,
keyed by full path, JSON-encoded value. Each store instance owns its own
connection pool, created lazily on first use.
"""

import asyncio
import json
import logging
import threading
from datetime import datetime, timezone
from typing import Any, List, Optional, Tuple

import psycopg2
from psycopg2 import pool
from psycopg2.extras import execute_values

from relevancy_types import StoreError
from storage.store import TreeStore, ancestor_paths, assemble, flatten

logger = logging.getLogger(__name__)

NODES_TABLE = "relevancy_nodes"


def _build_create_table_statement(table: str = NODES_TABLE) -> str:
    return f"""
        CREATE TABLE IF NOT EXISTS {table} (
            path TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TIMESTAMPTZ NOT NULL
        )
    """


def _build_upsert_statement(table: str = NODES_TABLE) -> str:
    """Build the insert statement used with execute_values.

    Args:
        table: Nodes table name

    Returns:
        SQL with a single VALUES %s placeholder
    """
    return (
        f"INSERT INTO {table} (path, value, updated_at) VALUES %s "
        "ON CONFLICT (path) DO UPDATE SET value = EXCLUDED.value, updated_at = EXCLUDED.updated_at"
    )


def _subtree_clause(path: str) -> Tuple[str, tuple]:
    """WHERE clause matching a path and all its descendants (C collation order)."""
    if not path:
        return "TRUE", ()
    return (
        '(path = %s OR (path >= %s COLLATE "C" AND path < %s COLLATE "C"))',
        (path, path + "/", path + "0"),
    )


def _leaf_rows(path: str, value: Any, now: Optional[datetime] = None) -> List[tuple]:
    """Rows to insert for a normalized value written at path."""
    if value is None:
        return []
    now = now or datetime.now(timezone.utc)
    return [(leaf_path, json.dumps(leaf), now) for leaf_path, leaf in flatten(path, value)]


class PgTreeStore(TreeStore):
    """TreeStore persisted in PostgreSQL."""

    def __init__(self, database_url: str, table: str = NODES_TABLE, max_connections: int = 10):
        super().__init__()
        self.database_url = database_url
        self.table = table
        self.max_connections = max_connections
        self._pool: Optional[pool.ThreadedConnectionPool] = None
        self._pool_lock = threading.Lock()

    def _get_pool(self) -> pool.ThreadedConnectionPool:
        with self._pool_lock:
            if self._pool is None:
                self._pool = self._create_pool()
        return self._pool

    def _create_pool(self) -> pool.ThreadedConnectionPool:
        connection_pool = pool.ThreadedConnectionPool(
            minconn=1,
            maxconn=self.max_connections,
            dsn=self.database_url,
        )
        conn = connection_pool.getconn()
        try:
            with conn.cursor() as cursor:
                cursor.execute(_build_create_table_statement(self.table))
            conn.commit()
        finally:
            connection_pool.putconn(conn)
        logger.info("PostgreSQL connection pool initialized (table %s)", self.table)
        return connection_pool

    def _read_rows(self, path: str) -> List[Tuple[str, Any]]:
        pool_instance = self._get_pool()
        conn = pool_instance.getconn()
        try:
            clause, params = _subtree_clause(path)
            with conn.cursor() as cursor:
                cursor.execute(f"SELECT path, value FROM {self.table} WHERE {clause}", params)
                rows = [(row[0], json.loads(row[1])) for row in cursor.fetchall()]
            conn.commit()
            return sorted(rows)
        finally:
            pool_instance.putconn(conn)

    def _replace_subtree(self, path: str, value: Any) -> int:
        pool_instance = self._get_pool()
        conn = pool_instance.getconn()
        try:
            clause, params = _subtree_clause(path)
            rows = _leaf_rows(path, value)
            with conn.cursor() as cursor:
                cursor.execute(f"DELETE FROM {self.table} WHERE {clause}", params)
                ancestors = ancestor_paths(path) if path else []
                if ancestors:
                    cursor.execute(f"DELETE FROM {self.table} WHERE path = ANY(%s)", (ancestors,))
                if rows:
                    execute_values(cursor, _build_upsert_statement(self.table), rows)
            conn.commit()
            return len(rows)
        except psycopg2.Error:
            conn.rollback()
            raise
        finally:
            pool_instance.putconn(conn)

    async def _read(self, path: str) -> Any:
        try:
            rows = await asyncio.to_thread(self._read_rows, path)
        except psycopg2.Error as e:
            logger.error("Failed to read '%s' from PostgreSQL: %s", path, e)
            raise StoreError(f"Failed to read '{path}': {e}") from e
        return assemble(path, rows)

    async def _write(self, path: str, value: Any) -> None:
        try:
            count = await asyncio.to_thread(self._replace_subtree, path, value)
        except psycopg2.Error as e:
            logger.error("Failed to write '%s' to PostgreSQL: %s", path, e)
            raise StoreError(f"Failed to write '{path}': {e}") from e
        logger.debug("Wrote %d leaves under '%s'", count, path)

    async def close(self) -> None:
        await super().close()
        if self._pool is not None:
            self._pool.closeall()
            self._pool = None
