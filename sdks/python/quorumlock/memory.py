"""In-process lock store.

``MemoryStore`` keeps keys with millisecond expiry in a dict and implements
the node contract atomically under a mutex. Nodes built on it can be marked
unavailable to simulate outages, which makes it the backend of choice for
tests and single-process deployments.
"""

import asyncio
import threading
import time
from collections import Counter
from typing import Callable, Dict, Optional, Tuple

from .exceptions import NodeError
from .nodes import AsyncStoreConnection, AsyncStoreNode, StoreConnection, StoreNode


class MemoryStore:
    """A dict of ``key -> (value, deadline)`` with lazy expiry."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: Dict[str, Tuple[str, float]] = {}
        self._mutex = threading.Lock()

    def _live(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, deadline = entry
        if deadline <= self._clock():
            del self._data[key]
            return None
        return value

    def _deadline(self, ttl_ms: int) -> float:
        return self._clock() + ttl_ms / 1000.0

    def set_if_absent(self, key: str, value: str, ttl_ms: int) -> bool:
        with self._mutex:
            if self._live(key) is not None:
                return False
            self._data[key] = (value, self._deadline(ttl_ms))
            return True

    def delete_if_equals(self, key: str, token: str) -> bool:
        with self._mutex:
            if self._live(key) != token:
                return False
            del self._data[key]
            return True

    def expire_if_equals(self, key: str, token: str, ttl_ms: int) -> bool:
        with self._mutex:
            if self._live(key) != token:
                return False
            self._data[key] = (token, self._deadline(ttl_ms))
            return True

    def get(self, key: str) -> Optional[str]:
        with self._mutex:
            return self._live(key)

    def ttl_ms(self, key: str) -> Optional[float]:
        """Remaining ttl of ``key`` in milliseconds, or None if absent."""
        with self._mutex:
            if self._live(key) is None:
                return None
            return (self._data[key][1] - self._clock()) * 1000.0

    def __len__(self) -> int:
        with self._mutex:
            return sum(1 for key in list(self._data) if self._live(key) is not None)


class _MemoryNodeBase:
    def __init__(self, store: Optional[MemoryStore] = None, label: str = "memory", latency: float = 0.0):
        self.store = store if store is not None else MemoryStore()
        self.label = label
        self.latency = latency
        self.available = True
        self.operation_counts: Counter = Counter()

    def _check(self, operation: str) -> None:
        self.operation_counts[operation] += 1
        if not self.available:
            raise NodeError(f"{self.label} is unavailable", node=self.label)


class MemoryConnection(StoreConnection):
    """Blocking connection to a ``MemoryStoreNode``."""

    def __init__(self, node: "MemoryStoreNode"):
        self._node = node
        self.label = node.label

    def _enter(self, operation: str) -> MemoryStore:
        self._node._check(operation)
        if self._node.latency:
            time.sleep(self._node.latency)
        return self._node.store

    def set_if_absent_with_expiry(self, key: str, value: str, ttl_ms: int) -> bool:
        return self._enter("set").set_if_absent(key, value, ttl_ms)

    def compare_token_and_delete(self, key: str, token: str) -> bool:
        return self._enter("delete").delete_if_equals(key, token)

    def compare_token_and_expire(self, key: str, token: str, ttl_ms: int) -> bool:
        return self._enter("expire").expire_if_equals(key, token, ttl_ms)

    def close(self) -> None:
        self._node.operation_counts["close"] += 1


class MemoryStoreNode(_MemoryNodeBase, StoreNode):
    """Blocking node over a ``MemoryStore``."""

    def connect(self) -> MemoryConnection:
        self._check("connect")
        return MemoryConnection(self)


class AsyncMemoryConnection(AsyncStoreConnection):
    """Asyncio connection to an ``AsyncMemoryStoreNode``."""

    def __init__(self, node: "AsyncMemoryStoreNode"):
        self._node = node
        self.label = node.label

    async def _enter(self, operation: str) -> MemoryStore:
        self._node._check(operation)
        if self._node.latency:
            await asyncio.sleep(self._node.latency)
        return self._node.store

    async def set_if_absent_with_expiry(self, key: str, value: str, ttl_ms: int) -> bool:
        return (await self._enter("set")).set_if_absent(key, value, ttl_ms)

    async def compare_token_and_delete(self, key: str, token: str) -> bool:
        return (await self._enter("delete")).delete_if_equals(key, token)

    async def compare_token_and_expire(self, key: str, token: str, ttl_ms: int) -> bool:
        return (await self._enter("expire")).expire_if_equals(key, token, ttl_ms)

    async def close(self) -> None:
        self._node.operation_counts["close"] += 1


class AsyncMemoryStoreNode(_MemoryNodeBase, AsyncStoreNode):
    """Asyncio node over a ``MemoryStore``."""

    async def connect(self) -> AsyncMemoryConnection:
        self._check("connect")
        return AsyncMemoryConnection(self)
