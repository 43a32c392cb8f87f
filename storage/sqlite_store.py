"""SQLite storage for the relevancy tree.

Every leaf of the tree is one row of the ``nodes`` table, keyed by its full
path, with a JSON-encoded value. Reading a node gathers the rows at or below
its path; writing a node replaces that whole subtree in one transaction.

Driver errors are raised as StoreError so that a failed write can stop a
rollup.
"""

import asyncio
import json
import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, List, Tuple

from config.scoring_config import DEFAULT_DB_PATH
from relevancy_types import StoreError
from storage.store import TreeStore, ancestor_paths, assemble, flatten

logger = logging.getLogger(__name__)

# Schema version for future migrations
SCHEMA_VERSION = 1


def _init_schema(conn: sqlite3.Connection) -> None:
    """Initialize the database schema.

    Args:
        conn: SQLite database connection
    """
    cursor = conn.cursor()

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS nodes (
            path TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """)

    # Schema version tracking
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY,
            applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """)

    cursor.execute("SELECT MAX(version) FROM schema_version")
    row = cursor.fetchone()
    current_version = row[0] if row[0] is not None else 0

    if current_version < SCHEMA_VERSION:
        cursor.execute("INSERT OR IGNORE INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
        logger.info("Initialized relevancy schema (version %d)", SCHEMA_VERSION)

    conn.commit()


def _get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Get a connection to the SQLite database.

    Creates the database and schema if they don't exist.

    Args:
        db_path: Path to the database file

    Returns:
        SQLite database connection

    Raises:
        sqlite3.Error: If connection fails
    """
    db_file = Path(db_path)
    db_file.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path, timeout=30)
    _init_schema(conn)
    return conn


def _subtree_clause(path: str) -> Tuple[str, tuple]:
    """WHERE clause matching a path and all its descendants.

    Descendants of "a/b" sort between "a/b/" and "a/b0" ('0' follows '/').
    """
    if not path:
        return "1 = 1", ()
    return "(path = ? OR (path >= ? AND path < ?))", (path, path + "/", path + "0")


def _read_rows(db_path: str, path: str) -> List[Tuple[str, Any]]:
    conn = _get_connection(db_path)
    try:
        clause, params = _subtree_clause(path)
        cursor = conn.cursor()
        cursor.execute(f"SELECT path, value FROM nodes WHERE {clause} ORDER BY path", params)
        return [(row[0], json.loads(row[1])) for row in cursor.fetchall()]
    finally:
        conn.close()


def _replace_subtree(db_path: str, path: str, value: Any) -> int:
    conn = _get_connection(db_path)
    try:
        cursor = conn.cursor()
        clause, params = _subtree_clause(path)
        cursor.execute(f"DELETE FROM nodes WHERE {clause}", params)

        # a scalar stored at an ancestor is replaced by the new subtree
        ancestors = ancestor_paths(path) if path else []
        if ancestors:
            cursor.executemany("DELETE FROM nodes WHERE path = ?", [(a,) for a in ancestors])

        rows = []
        if value is not None:
            now = datetime.now().isoformat()
            rows = [(leaf_path, json.dumps(leaf), now) for leaf_path, leaf in flatten(path, value)]
            cursor.executemany("INSERT INTO nodes (path, value, updated_at) VALUES (?, ?, ?)", rows)

        conn.commit()
        return len(rows)
    except sqlite3.Error:
        conn.rollback()
        raise
    finally:
        conn.close()


class SqliteTreeStore(TreeStore):
    """TreeStore persisted in a SQLite file."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        super().__init__()
        self.db_path = db_path

    async def _read(self, path: str) -> Any:
        try:
            rows = await asyncio.to_thread(_read_rows, self.db_path, path)
        except sqlite3.Error as e:
            logger.error("Failed to read '%s' from %s: %s", path, self.db_path, e)
            raise StoreError(f"Failed to read '{path}': {e}") from e
        return assemble(path, rows)

    async def _write(self, path: str, value: Any) -> None:
        try:
            count = await asyncio.to_thread(_replace_subtree, self.db_path, path, value)
        except sqlite3.Error as e:
            logger.error("Failed to write '%s' to %s: %s", path, self.db_path, e)
            raise StoreError(f"Failed to write '{path}': {e}") from e
        logger.debug("Wrote %d leaves under '%s'", count, path)
