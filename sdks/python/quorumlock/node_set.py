"""Fan-out of lock operations over the configured nodes."""

import asyncio
from typing import Any, Awaitable, Callable, List, Optional, Sequence

import structlog

from .exceptions import NodeError
from .nodes import AsyncStoreConnection, AsyncStoreNode, StoreNode
from .timing import quorum_for

logger = structlog.get_logger(__name__)


class _Slot:
    """A node paired with its live connection, if any."""

    __slots__ = ("node", "connection")

    def __init__(self, node):
        self.node = node
        self.connection = None

    @property
    def ready(self) -> bool:
        return self.connection is not None


class NodeSet:
    """Owns one connection per node and counts successful operations.

    Failures on a single node never escape: a node that cannot connect stays
    out of the round, and a node that errors mid-operation is torn down until
    the next ``ensure_quorum_ready`` reconnects it.
    """

    def __init__(self, nodes: Sequence[StoreNode]):
        self._slots = [_Slot(node) for node in nodes]
        self.quorum = quorum_for(len(self._slots))

    def __len__(self) -> int:
        return len(self._slots)

    @property
    def nodes(self) -> List[StoreNode]:
        return [slot.node for slot in self._slots]

    @property
    def ready_count(self) -> int:
        return sum(1 for slot in self._slots if slot.ready)

    def ensure_quorum_ready(self) -> int:
        """Connect every node that has no live connection; return the ready count."""
        for slot in self._slots:
            if slot.ready:
                continue
            try:
                slot.connection = slot.node.connect()
            except NodeError as e:
                logger.warning("redlock_node_connect_failed", node=slot.node.label, error=str(e))
        return self.ready_count

    def apply_to_all(self, operation: Callable[..., Any], *args: Any) -> int:
        """Call ``operation(connection, *args)`` on every ready node.

        Returns:
            Number of nodes for which the call returned a truthy result
        """
        successes = 0
        for slot in self._slots:
            if not slot.ready:
                continue
            try:
                if operation(slot.connection, *args):
                    successes += 1
            except NodeError as e:
                logger.warning("redlock_node_operation_failed", node=slot.node.label, error=str(e))
                self._teardown(slot)
        return successes

    def _teardown(self, slot: _Slot) -> None:
        connection, slot.connection = slot.connection, None
        try:
            connection.close()
        except NodeError as e:
            logger.debug("redlock_node_close_failed", node=slot.node.label, error=str(e))

    def close(self) -> None:
        """Drop every live connection."""
        for slot in self._slots:
            if slot.ready:
                self._teardown(slot)

    def clone(self) -> "NodeSet":
        """A node set over the same nodes with no live connections."""
        return NodeSet(self.nodes)


class AsyncNodeSet:
    """Asyncio flavour of ``NodeSet`` that contacts nodes concurrently."""

    def __init__(self, nodes: Sequence[AsyncStoreNode]):
        self._slots = [_Slot(node) for node in nodes]
        self.quorum = quorum_for(len(self._slots))

    def __len__(self) -> int:
        return len(self._slots)

    @property
    def nodes(self) -> List[AsyncStoreNode]:
        return [slot.node for slot in self._slots]

    @property
    def ready_count(self) -> int:
        return sum(1 for slot in self._slots if slot.ready)

    async def _connect(self, slot: _Slot) -> None:
        try:
            slot.connection = await slot.node.connect()
        except NodeError as e:
            logger.warning("redlock_node_connect_failed", node=slot.node.label, error=str(e))

    async def ensure_quorum_ready(self) -> int:
        """Connect every node that has no live connection; return the ready count."""
        pending = [self._connect(slot) for slot in self._slots if not slot.ready]
        if pending:
            await asyncio.gather(*pending)
        return self.ready_count

    async def _apply(
        self,
        slot: _Slot,
        connection: AsyncStoreConnection,
        operation: Callable[..., Awaitable[Any]],
        args: tuple,
    ) -> bool:
        try:
            return bool(await operation(connection, *args))
        except NodeError as e:
            logger.warning("redlock_node_operation_failed", node=slot.node.label, error=str(e))
            await self._teardown(slot, connection)
            return False

    async def apply_to_all(self, operation: Callable[..., Awaitable[Any]], *args: Any) -> int:
        """Await ``operation(connection, *args)`` on every ready node concurrently.

        Returns:
            Number of nodes for which the call returned a truthy result
        """
        calls = [
            self._apply(slot, slot.connection, operation, args)
            for slot in self._slots
            if slot.ready
        ]
        if not calls:
            return 0
        results = await asyncio.gather(*calls)
        return sum(1 for ok in results if ok)

    async def _teardown(self, slot: _Slot, connection: Optional[AsyncStoreConnection] = None) -> None:
        connection = connection or slot.connection
        if slot.connection is connection:
            slot.connection = None
        if connection is None:
            return
        try:
            await connection.close()
        except NodeError as e:
            logger.debug("redlock_node_close_failed", node=slot.node.label, error=str(e))

    async def close(self) -> None:
        """Drop every live connection."""
        await asyncio.gather(*(self._teardown(slot) for slot in self._slots if slot.ready))

    def clone(self) -> "AsyncNodeSet":
        """A node set over the same nodes with no live connections."""
        return AsyncNodeSet(self.nodes)
