"""quorumlock - Redlock distributed locks over independent Redis nodes."""

from .client import AsyncRedlock, Redlock
from .config import RedlockSettings
from .exceptions import (
    QuorumLockError,
    ConfigurationError,
    QuorumUnavailableError,
    NodeError,
)
from .memory import AsyncMemoryStoreNode, MemoryStore, MemoryStoreNode
from .models import (
    AddressDescriptor,
    ConnectionDescriptor,
    Lock,
    RetryPolicy,
    Serializer,
    by_address,
    by_connection,
    descriptor_from_url,
)
from .nodes import AsyncStoreConnection, AsyncStoreNode, StoreConnection, StoreNode
from .tokens import TokenGenerator

__version__ = "1.0.0"
__all__ = [
    "Redlock",
    "AsyncRedlock",
    "RedlockSettings",
    "QuorumLockError",
    "ConfigurationError",
    "QuorumUnavailableError",
    "NodeError",
    "MemoryStore",
    "MemoryStoreNode",
    "AsyncMemoryStoreNode",
    "AddressDescriptor",
    "ConnectionDescriptor",
    "Lock",
    "RetryPolicy",
    "Serializer",
    "by_address",
    "by_connection",
    "descriptor_from_url",
    "StoreNode",
    "StoreConnection",
    "AsyncStoreNode",
    "AsyncStoreConnection",
    "TokenGenerator",
]
