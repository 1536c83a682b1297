"""Lock store nodes.

A node knows how to open a connection to one independent store. Connections
expose the three atomic operations the lock algorithm is built on, and report
every transport or protocol failure as ``NodeError``.
"""

import hashlib
from abc import ABC, abstractmethod
from typing import Any, Dict, Tuple

import redis
import redis.asyncio
import structlog
from redis.exceptions import NoScriptError, RedisError

from .exceptions import ConfigurationError, NodeError
from .models import AddressDescriptor, ConnectionDescriptor, Serializer

logger = structlog.get_logger(__name__)

UNLOCK_SCRIPT = (
    'if redis.call("GET", KEYS[1]) == ARGV[1] then '
    'return redis.call("DEL", KEYS[1]) else return 0 end'
)
EXTEND_SCRIPT = (
    'if redis.call("GET", KEYS[1]) == ARGV[1] then '
    'return redis.call("PEXPIRE", KEYS[1], ARGV[2]) else return 0 end'
)
SCRIPTS = {"unlock": UNLOCK_SCRIPT, "extend": EXTEND_SCRIPT}


def script_sha(body: str) -> str:
    """SHA1 digest Redis uses to identify a loaded script."""
    return hashlib.sha1(body.encode("utf-8")).hexdigest()


class StoreConnection(ABC):
    """A live connection to one lock store node."""

    label: str = "node"

    @abstractmethod
    def set_if_absent_with_expiry(self, key: str, value: str, ttl_ms: int) -> bool:
        """Set ``key`` to ``value`` with a ttl only if ``key`` is absent."""

    @abstractmethod
    def compare_token_and_delete(self, key: str, token: str) -> bool:
        """Delete ``key`` only if it currently holds ``token``."""

    @abstractmethod
    def compare_token_and_expire(self, key: str, token: str, ttl_ms: int) -> bool:
        """Reset the ttl of ``key`` only if it currently holds ``token``."""

    @abstractmethod
    def close(self) -> None:
        """Release the connection."""


class StoreNode(ABC):
    """Connection factory for one lock store node."""

    label: str = "node"

    @abstractmethod
    def connect(self) -> StoreConnection:
        """Open and verify a connection, raising ``NodeError`` on failure."""


class AsyncStoreConnection(ABC):
    """Asyncio flavour of ``StoreConnection``."""

    label: str = "node"

    @abstractmethod
    async def set_if_absent_with_expiry(self, key: str, value: str, ttl_ms: int) -> bool:
        ...

    @abstractmethod
    async def compare_token_and_delete(self, key: str, token: str) -> bool:
        ...

    @abstractmethod
    async def compare_token_and_expire(self, key: str, token: str, ttl_ms: int) -> bool:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


class AsyncStoreNode(ABC):
    """Asyncio flavour of ``StoreNode``."""

    label: str = "node"

    @abstractmethod
    async def connect(self) -> AsyncStoreConnection:
        ...


class _RedisKeyspace:
    """Key prefixing and value encoding shared by both Redis connections."""

    def __init__(self, prefix: str, serializer: Serializer):
        self._prefix = prefix or ""
        self._serializer = serializer

    def key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def value(self, value: str) -> str:
        return self._serializer.encode(value)


def _verify_sha(label: str, name: str, sha: Any) -> str:
    if isinstance(sha, bytes):
        sha = sha.decode("ascii")
    expected = script_sha(SCRIPTS[name])
    if str(sha).lower() != expected:
        raise NodeError(f"Script '{name}' loaded with unexpected digest {sha!r}", node=label)
    return expected


class RedisStoreConnection(StoreConnection):
    """Connection to a Redis node using redis-py."""

    def __init__(
        self,
        client: redis.Redis,
        shas: Dict[str, str],
        keyspace: _RedisKeyspace,
        owned: bool,
        label: str,
    ):
        self._client = client
        self._shas = shas
        self._keyspace = keyspace
        self._owned = owned
        self.label = label

    def set_if_absent_with_expiry(self, key: str, value: str, ttl_ms: int) -> bool:
        try:
            result = self._client.set(
                self._keyspace.key(key), self._keyspace.value(value), nx=True, px=ttl_ms
            )
        except RedisError as e:
            raise NodeError(f"SET failed on {self.label}: {e}", node=self.label) from e
        return bool(result)

    def compare_token_and_delete(self, key: str, token: str) -> bool:
        return bool(self._run_script("unlock", key, self._keyspace.value(token)))

    def compare_token_and_expire(self, key: str, token: str, ttl_ms: int) -> bool:
        return bool(self._run_script("extend", key, self._keyspace.value(token), ttl_ms))

    def _run_script(self, name: str, key: str, *args: Any) -> Any:
        full_key = self._keyspace.key(key)
        try:
            try:
                return self._client.evalsha(self._shas[name], 1, full_key, *args)
            except NoScriptError:
                # script cache flushed on the server since connect
                logger.debug("redlock_script_reloaded", node=self.label, script=name)
                return self._client.eval(SCRIPTS[name], 1, full_key, *args)
        except RedisError as e:
            raise NodeError(f"Script '{name}' failed on {self.label}: {e}", node=self.label) from e

    def close(self) -> None:
        if not self._owned:
            return
        try:
            self._client.close()
        except RedisError as e:
            raise NodeError(f"Close failed on {self.label}: {e}", node=self.label) from e


class RedisStoreNode(StoreNode):
    """A Redis node reached by address or through an existing client."""

    def __init__(self, descriptor):
        self.descriptor = descriptor
        self.label = descriptor.label

    def _open_client(self) -> Tuple[redis.Redis, bool]:
        d = self.descriptor
        if isinstance(d, ConnectionDescriptor):
            return d.client, False
        client = redis.Redis(
            host=d.host,
            port=d.port,
            db=d.db or 0,
            username=d.username,
            password=d.password,
            socket_timeout=d.timeout,
            socket_connect_timeout=d.timeout,
            ssl=d.ssl,
        )
        return client, True

    def connect(self) -> RedisStoreConnection:
        client, owned = self._open_client()
        try:
            client.ping()
            shas = {
                name: _verify_sha(self.label, name, client.script_load(body))
                for name, body in SCRIPTS.items()
            }
        except (RedisError, NodeError) as e:
            if owned:
                client.close()
            if isinstance(e, NodeError):
                raise
            raise NodeError(f"Could not connect to {self.label}: {e}", node=self.label) from e

        return RedisStoreConnection(
            client,
            shas,
            _RedisKeyspace(self.descriptor.prefix, self.descriptor.serializer),
            owned,
            self.label,
        )


class AsyncRedisStoreConnection(AsyncStoreConnection):
    """Connection to a Redis node using ``redis.asyncio``."""

    def __init__(
        self,
        client: redis.asyncio.Redis,
        shas: Dict[str, str],
        keyspace: _RedisKeyspace,
        owned: bool,
        label: str,
    ):
        self._client = client
        self._shas = shas
        self._keyspace = keyspace
        self._owned = owned
        self.label = label

    async def set_if_absent_with_expiry(self, key: str, value: str, ttl_ms: int) -> bool:
        try:
            result = await self._client.set(
                self._keyspace.key(key), self._keyspace.value(value), nx=True, px=ttl_ms
            )
        except RedisError as e:
            raise NodeError(f"SET failed on {self.label}: {e}", node=self.label) from e
        return bool(result)

    async def compare_token_and_delete(self, key: str, token: str) -> bool:
        return bool(await self._run_script("unlock", key, self._keyspace.value(token)))

    async def compare_token_and_expire(self, key: str, token: str, ttl_ms: int) -> bool:
        return bool(await self._run_script("extend", key, self._keyspace.value(token), ttl_ms))

    async def _run_script(self, name: str, key: str, *args: Any) -> Any:
        full_key = self._keyspace.key(key)
        try:
            try:
                return await self._client.evalsha(self._shas[name], 1, full_key, *args)
            except NoScriptError:
                logger.debug("redlock_script_reloaded", node=self.label, script=name)
                return await self._client.eval(SCRIPTS[name], 1, full_key, *args)
        except RedisError as e:
            raise NodeError(f"Script '{name}' failed on {self.label}: {e}", node=self.label) from e

    async def close(self) -> None:
        if not self._owned:
            return
        try:
            await self._client.aclose()
        except RedisError as e:
            raise NodeError(f"Close failed on {self.label}: {e}", node=self.label) from e


class AsyncRedisStoreNode(AsyncStoreNode):
    """Asyncio Redis node reached by address or through an existing client."""

    def __init__(self, descriptor):
        self.descriptor = descriptor
        self.label = descriptor.label

    def _open_client(self) -> Tuple[redis.asyncio.Redis, bool]:
        d = self.descriptor
        if isinstance(d, ConnectionDescriptor):
            return d.client, False
        client = redis.asyncio.Redis(
            host=d.host,
            port=d.port,
            db=d.db or 0,
            username=d.username,
            password=d.password,
            socket_timeout=d.timeout,
            socket_connect_timeout=d.timeout,
            ssl=d.ssl,
        )
        return client, True

    async def connect(self) -> AsyncRedisStoreConnection:
        client, owned = self._open_client()
        try:
            await client.ping()
            shas = {}
            for name, body in SCRIPTS.items():
                shas[name] = _verify_sha(self.label, name, await client.script_load(body))
        except (RedisError, NodeError) as e:
            if owned:
                await client.aclose()
            if isinstance(e, NodeError):
                raise
            raise NodeError(f"Could not connect to {self.label}: {e}", node=self.label) from e

        return AsyncRedisStoreConnection(
            client,
            shas,
            _RedisKeyspace(self.descriptor.prefix, self.descriptor.serializer),
            owned,
            self.label,
        )


def node_from_spec(spec: Any) -> StoreNode:
    """Turn a descriptor or node into a blocking ``StoreNode``."""
    if isinstance(spec, StoreNode):
        return spec
    if isinstance(spec, AddressDescriptor):
        return RedisStoreNode(spec)
    if isinstance(spec, ConnectionDescriptor):
        if not isinstance(spec.client, redis.Redis):
            raise ConfigurationError(
                f"Expected a redis.Redis client, got {type(spec.client).__name__}"
            )
        return RedisStoreNode(spec)
    raise ConfigurationError(f"Unrecognised node entry of type {type(spec).__name__}")


def async_node_from_spec(spec: Any) -> AsyncStoreNode:
    """Turn a descriptor or node into an ``AsyncStoreNode``."""
    if isinstance(spec, AsyncStoreNode):
        return spec
    if isinstance(spec, AddressDescriptor):
        return AsyncRedisStoreNode(spec)
    if isinstance(spec, ConnectionDescriptor):
        if not isinstance(spec.client, redis.asyncio.Redis):
            raise ConfigurationError(
                f"Expected a redis.asyncio.Redis client, got {type(spec.client).__name__}"
            )
        return AsyncRedisStoreNode(spec)
    raise ConfigurationError(f"Unrecognised node entry of type {type(spec).__name__}")
