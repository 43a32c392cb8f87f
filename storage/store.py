"""Hierarchical store interface and factory.

The scoring engine only sees four operations on the store: read a node,
write a node, read the children of a collection matching a predicate, and a
stream of change notifications. Nodes are JSON-like values addressed by
slash-separated paths; writing None (or an empty dict) deletes a node.

get_store() returns the implementation selected by RELEVANCY_DATABASE_URL:
- postgresql://... -> PgTreeStore
- memory://        -> MemoryTreeStore
- anything else    -> SqliteTreeStore at that path (default)
"""

import asyncio
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from relevancy_types import ChangeEvent, InvalidInput, NotFound
from storage.paths import split_path

logger = logging.getLogger(__name__)

_CLOSED = object()


def normalize_value(value: Any) -> Any:
    """Normalize a value before storing it.

    Lists become dicts keyed by index, None children and empty dicts are
    dropped. Returns None when nothing storable remains.
    """
    if isinstance(value, (list, tuple)):
        value = {str(i): v for i, v in enumerate(value)}
    if isinstance(value, dict):
        normalized = {}
        for key, child in value.items():
            key = str(key)
            if not key or "/" in key:
                raise InvalidInput(f"Invalid key '{key}'")
            child = normalize_value(child)
            if child is not None:
                normalized[key] = child
        return normalized or None
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    raise InvalidInput(f"Cannot store value of type {type(value).__name__}")


def flatten(path: str, value: Any) -> List[Tuple[str, Any]]:
    """Flatten a normalized value into (leaf path, leaf value) pairs."""
    if isinstance(value, dict):
        leaves = []
        for key, child in value.items():
            leaves.extend(flatten(f"{path}/{key}" if path else key, child))
        return leaves
    return [(path, value)]


def assemble(path: str, leaves: Iterable[Tuple[str, Any]]) -> Any:
    """Rebuild the node at path from its leaf rows.

    Args:
        path: Node path
        leaves: (leaf path, leaf value) pairs at or below path

    Returns:
        The node, or None if there are no leaves
    """
    node: Optional[Dict[str, Any]] = None
    prefix = f"{path}/" if path else ""
    for leaf_path, leaf_value in leaves:
        if leaf_path == path:
            return leaf_value
        if not leaf_path.startswith(prefix):
            continue
        if node is None:
            node = {}
        parts = leaf_path[len(prefix):].split("/")
        target = node
        for part in parts[:-1]:
            target = target.setdefault(part, {})
        target[parts[-1]] = leaf_value
    return node


def ancestor_paths(path: str) -> List[str]:
    """All proper ancestors of a path, excluding the root."""
    segments = split_path(path)
    return ["/".join(segments[:i]) for i in range(1, len(segments))]


class ChangeStream:
    """Async iterator over ChangeEvents published by a store."""

    def __init__(self, store: "TreeStore"):
        self._store = store
        self._queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def put(self, event: ChangeEvent) -> None:
        if not self.closed:
            self._queue.put_nowait(event)

    def close(self) -> None:
        """Stop the stream; iteration ends after already queued events."""
        if self.closed:
            return
        self.closed = True
        self._store._unsubscribe(self)
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self) -> ChangeEvent:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item


class TreeStore:
    """Base class for hierarchical stores.

    Subclasses implement _read(path) returning the node or None and
    _write(path, value) with a normalized value (None deletes). Both must
    raise StoreError on driver failures.
    """

    def __init__(self):
        self._streams: List[ChangeStream] = []

    async def _read(self, path: str) -> Any:
        raise NotImplementedError

    async def _write(self, path: str, value: Any) -> None:
        raise NotImplementedError

    async def read(self, path: str) -> Any:
        """Read the node at path.

        Raises:
            NotFound: If nothing is stored at path
            StoreError: If the read fails
        """
        path = "/".join(split_path(path))
        node = await self._read(path)
        if node is None:
            raise NotFound(path)
        return node

    async def get(self, path: str, default: Any = None) -> Any:
        """Read the node at path, or default when it does not exist."""
        try:
            return await self.read(path)
        except NotFound:
            return default

    async def write(self, path: str, value: Any) -> None:
        """Replace the node at path.

        Raises:
            InvalidInput: If path or value cannot be stored
            StoreError: If the write fails
        """
        path = "/".join(split_path(path))
        normalized = normalize_value(value)
        if not path and normalized is not None and not isinstance(normalized, dict):
            raise InvalidInput("The store root must be a dict")
        await self._write(path, normalized)
        self._publish(ChangeEvent(path=path, value=normalized))

    async def delete(self, path: str) -> None:
        await self.write(path, None)

    async def query(self, collection_path: str, predicate: Callable[[Any], bool]) -> Dict[str, Any]:
        """Read the children of a collection that match predicate.

        Args:
            collection_path: Path of the collection node
            predicate: Called with each child node

        Returns:
            Child key -> child node for matching children
        """
        collection = await self.get(collection_path, {})
        if not isinstance(collection, dict):
            return {}
        return {key: child for key, child in collection.items() if predicate(child)}

    def subscribe(self) -> ChangeStream:
        """Open a stream receiving every subsequent write on this store."""
        stream = ChangeStream(self)
        self._streams.append(stream)
        return stream

    def _unsubscribe(self, stream: ChangeStream) -> None:
        if stream in self._streams:
            self._streams.remove(stream)

    def _publish(self, event: ChangeEvent) -> None:
        for stream in list(self._streams):
            stream.put(event)

    async def close(self) -> None:
        for stream in list(self._streams):
            stream.close()


def get_store(database_url: Optional[str] = None) -> TreeStore:
    """Get the store implementation for a database URL.

    Args:
        database_url: Store location; defaults to RELEVANCY_DATABASE_URL

    Returns:
        A new TreeStore instance
    """
    if database_url is None:
        from config.scoring_config import get_database_url
        database_url = get_database_url()

    if database_url.startswith("postgresql://"):
        logger.info("Using PostgreSQL store")
        from storage.pg_store import PgTreeStore
        return PgTreeStore(database_url)

    if database_url.startswith("memory://"):
        logger.info("Using in-memory store")
        from storage.memory_store import MemoryTreeStore
        return MemoryTreeStore()

    logger.info("Using SQLite store at %s", database_url)
    from storage.sqlite_store import SqliteTreeStore
    return SqliteTreeStore(database_url)
