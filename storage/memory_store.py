"""In-memory hierarchical store.

Keeps the whole tree as nested dicts. Reads return deep copies so callers
never share state with the store. Deleting a node prunes parents left empty.
"""

import asyncio
import copy
import logging
from typing import Any, Optional

from storage.store import TreeStore, normalize_value

logger = logging.getLogger(__name__)


class MemoryTreeStore(TreeStore):
    """TreeStore backed by a nested dict."""

    def __init__(self, data: Optional[dict] = None):
        super().__init__()
        self._root = normalize_value(data) or {}

    async def _read(self, path: str) -> Any:
        # Every store call is a suspension point, as with a networked store
        await asyncio.sleep(0)
        node = self._root
        if path:
            for segment in path.split("/"):
                if not isinstance(node, dict) or segment not in node:
                    return None
                node = node[segment]
        return copy.deepcopy(node) if node != {} else None

    async def _write(self, path: str, value: Any) -> None:
        await asyncio.sleep(0)
        if not path:
            self._root = copy.deepcopy(value) if value is not None else {}
            return

        segments = path.split("/")
        if value is None:
            self._delete(segments)
            return

        node = self._root
        for segment in segments[:-1]:
            child = node.get(segment)
            if not isinstance(child, dict):
                child = {}
                node[segment] = child
            node = child
        node[segments[-1]] = copy.deepcopy(value)

    def _delete(self, segments: list) -> None:
        trail = [self._root]
        node = self._root
        for segment in segments[:-1]:
            node = node.get(segment)
            if not isinstance(node, dict):
                return
            trail.append(node)

        if segments[-1] not in node:
            return
        del node[segments[-1]]

        # prune empty parents
        for depth in range(len(segments) - 1, 0, -1):
            if trail[depth]:
                break
            del trail[depth - 1][segments[depth - 1]]

    def dump(self) -> dict:
        """Deep copy of the whole tree."""
        return copy.deepcopy(self._root)
