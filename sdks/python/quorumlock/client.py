"""quorumlock Redlock clients."""

import asyncio
import inspect
import threading
import time
from contextlib import asynccontextmanager, contextmanager
from typing import Any, Callable, Mapping, Optional, Sequence, Tuple, Union

import structlog

from .config import RedlockSettings
from .exceptions import ConfigurationError, QuorumLockError, QuorumUnavailableError
from .models import (
    DEFAULT_CLOCK_DRIFT_FACTOR,
    DEFAULT_RETRY_COUNT,
    DEFAULT_RETRY_DELAY,
    DEFAULT_TTL,
    Lock,
    RetryPolicy,
)
from .node_set import AsyncNodeSet, NodeSet
from .nodes import async_node_from_spec, node_from_spec
from .timing import compute_validity, jittered_delay, monotonic_ms
from .tokens import TokenGenerator

logger = structlog.get_logger(__name__)

LockLike = Union[Lock, Mapping[str, Any]]


def _do_lock(connection, resource, token, ttl):
    return connection.set_if_absent_with_expiry(resource, token, ttl)


def _do_unlock(connection, resource, token):
    return connection.compare_token_and_delete(resource, token)


def _do_extend(connection, resource, token, ttl):
    return connection.compare_token_and_expire(resource, token, ttl)


async def _async_do_lock(connection, resource, token, ttl):
    return await connection.set_if_absent_with_expiry(resource, token, ttl)


async def _async_do_unlock(connection, resource, token):
    return await connection.compare_token_and_delete(resource, token)


async def _async_do_extend(connection, resource, token, ttl):
    return await connection.compare_token_and_expire(resource, token, ttl)


def _build_nodes(nodes: Sequence[Any], build: Callable[[Any], Any]) -> list:
    if not isinstance(nodes, (list, tuple)):
        raise ConfigurationError("Nodes must be given as a list or tuple")
    if not nodes:
        raise ConfigurationError("Empty node list")
    built = []
    for index, entry in enumerate(nodes):
        try:
            built.append(build(entry))
        except ConfigurationError as e:
            raise ConfigurationError(f"Invalid node entry at index {index}: {e}") from e
    return built


class _RedlockBase:
    """Validation and settings shared by the blocking and asyncio clients."""

    policy: RetryPolicy

    @classmethod
    def from_settings(cls, settings: Optional[RedlockSettings] = None, **kwargs):
        """Build a client from ``RedlockSettings`` (read from the environment by default).

        Extra keyword arguments, such as ``token_generator``, go to the constructor.
        """
        settings = settings or RedlockSettings()
        return cls(
            settings.descriptors(),
            retry_delay=settings.retry_delay,
            retry_count=settings.retry_count,
            clock_drift_factor=settings.clock_drift_factor,
            eager_init=settings.eager_init,
            **kwargs,
        )

    @property
    def quorum(self) -> int:
        return self._nodes.quorum

    @property
    def node_count(self) -> int:
        return len(self._nodes)

    @staticmethod
    def _validate_resource(resource: str) -> None:
        if not isinstance(resource, str) or not resource:
            raise ConfigurationError("Resource must be a non-empty string")

    @staticmethod
    def _validate_ttl(ttl: int) -> None:
        if isinstance(ttl, bool) or not isinstance(ttl, int) or ttl <= 0:
            raise ConfigurationError("TTL must be a positive number of milliseconds")

    @staticmethod
    def _validate_token(token: str) -> None:
        if not isinstance(token, str) or not token:
            raise ConfigurationError("Token must be a non-empty string")

    @staticmethod
    def _lock_fields(lock: LockLike) -> Tuple[str, str]:
        if isinstance(lock, Lock):
            resource, token = lock.resource, lock.token
        elif isinstance(lock, Mapping):
            if "resource" not in lock:
                raise ConfigurationError("Missing 'resource'")
            if "token" not in lock:
                raise ConfigurationError("Missing 'token'")
            resource, token = lock["resource"], lock["token"]
        else:
            raise ConfigurationError(f"Expected a Lock, got {type(lock).__name__}")
        _RedlockBase._validate_resource(resource)
        _RedlockBase._validate_token(token)
        return resource, token

    def _check_quorum(self, ready: int, operation: str, resource: str) -> None:
        if ready < self.quorum:
            logger.error(
                "redlock_quorum_unavailable",
                operation=operation,
                resource=resource,
                ready=ready,
                quorum=self.quorum,
            )
            raise QuorumUnavailableError(
                f"No quorum: {ready} nodes ready, {self.quorum} required",
                ready=ready,
                quorum=self.quorum,
            )

    def _round_result(self, resource: str, token: str, ttl: int, acquired: int, elapsed: float, attempt: int):
        validity = compute_validity(ttl, elapsed, self.policy.clock_drift_factor)
        if acquired >= self.quorum and validity > 0:
            logger.debug("redlock_lock_acquired", resource=resource, attempt=attempt, validity=validity)
            return Lock(resource=resource, token=token, validity=validity)
        logger.info(
            "redlock_lock_round_failed",
            resource=resource,
            attempt=attempt,
            acquired=acquired,
            quorum=self.quorum,
            validity=validity,
        )
        return None

    def _clone_into(self, other, nodes) -> None:
        other.policy = self.policy
        other._nodes = nodes
        other._tokens = TokenGenerator()


class Redlock(_RedlockBase):
    """Blocking Redlock client over N independent nodes."""

    def __init__(
        self,
        nodes: Sequence[Any],
        retry_delay: int = DEFAULT_RETRY_DELAY,
        retry_count: int = DEFAULT_RETRY_COUNT,
        clock_drift_factor: float = DEFAULT_CLOCK_DRIFT_FACTOR,
        eager_init: bool = False,
        token_generator: Optional[TokenGenerator] = None,
    ):
        """Initialize the client.

        Args:
            nodes: Descriptors (``by_address``, ``by_connection``) or ``StoreNode`` instances
            retry_delay: Upper bound of the random delay between rounds, in milliseconds
            retry_count: Rounds allowed after the first one
            clock_drift_factor: Fraction of the ttl reserved for clock drift
            eager_init: Connect to every node right away instead of on first use
            token_generator: Token source; each client gets its own by default
        """
        self.policy = RetryPolicy(retry_delay, retry_count, clock_drift_factor)
        self._nodes = NodeSet(_build_nodes(nodes, node_from_spec))
        self._tokens = token_generator or TokenGenerator()
        if eager_init:
            self._nodes.ensure_quorum_ready()

    def _require_quorum(self, operation: str, resource: str) -> None:
        self._check_quorum(self._nodes.ensure_quorum_ready(), operation, resource)

    def lock(
        self,
        resource: str,
        ttl: int = DEFAULT_TTL,
        token: Optional[str] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Union[Lock, bool]:
        """Try to acquire a lock on ``resource``.

        Args:
            resource: Name of the resource to lock
            ttl: Expiry of the lock on each node, in milliseconds
            token: Ownership token; a fresh one is generated when omitted
            cancel: Event that stops further rounds once set

        Returns:
            The acquired Lock, or False if no round reached quorum

        Raises:
            ConfigurationError: On a malformed resource, ttl or token
            QuorumUnavailableError: If fewer than quorum nodes are reachable
        """
        self._validate_resource(resource)
        self._validate_ttl(ttl)
        if token is None:
            token = self._tokens.next_token()
        else:
            self._validate_token(token)

        self._require_quorum("lock", resource)

        for attempt in range(1, self.policy.max_attempts + 1):
            if cancel is not None and cancel.is_set():
                logger.info("redlock_lock_cancelled", resource=resource, attempt=attempt)
                return False

            start = monotonic_ms()
            try:
                acquired = self._nodes.apply_to_all(_do_lock, resource, token, ttl)
            except BaseException:
                self._release_round(resource, token)
                raise
            lock = self._round_result(resource, token, ttl, acquired, monotonic_ms() - start, attempt)
            if lock is not None:
                return lock

            self._release_round(resource, token)

            if attempt < self.policy.max_attempts:
                self._backoff(cancel)

        logger.info("redlock_lock_exhausted", resource=resource, attempts=self.policy.max_attempts)
        return False

    def _release_round(self, resource: str, token: str) -> None:
        """Best-effort release of a failed round on every reachable node.

        Nodes torn down during the round are reconnected first, since a SET can
        land even when its reply is lost. No quorum check: this never raises.
        """
        self._nodes.ensure_quorum_ready()
        self._nodes.apply_to_all(_do_unlock, resource, token)

    def _backoff(self, cancel: Optional[threading.Event]) -> None:
        delay = jittered_delay(self.policy.retry_delay)
        if cancel is not None:
            cancel.wait(delay)
        else:
            time.sleep(delay)

    def unlock(self, lock: LockLike) -> bool:
        """Release a lock.

        Returns:
            Whether a quorum of nodes released it
        """
        resource, token = self._lock_fields(lock)
        self._require_quorum("unlock", resource)
        released = self._nodes.apply_to_all(_do_unlock, resource, token)
        if released < self.quorum:
            logger.warning("redlock_unlock_no_quorum", resource=resource, released=released, quorum=self.quorum)
            return False
        return True

    def extend(self, lock: LockLike, ttl: int = DEFAULT_TTL) -> bool:
        """Reset the expiry of a held lock to ``ttl`` milliseconds.

        Returns:
            Whether a quorum of nodes extended it
        """
        resource, token = self._lock_fields(lock)
        self._validate_ttl(ttl)
        self._require_quorum("extend", resource)
        extended = self._nodes.apply_to_all(_do_extend, resource, token, ttl)
        if extended < self.quorum:
            logger.warning("redlock_extend_no_quorum", resource=resource, extended=extended, quorum=self.quorum)
            return False
        return True

    def with_lock(self, resource: str, work: Callable[[Lock], Any], ttl: int = DEFAULT_TTL) -> Any:
        """Run ``work(lock)`` while holding a lock on ``resource``.

        Returns:
            Whatever ``work`` returns, or None if the lock was not acquired
        """
        self._validate_ttl(ttl)
        lock = self.lock(resource, ttl)
        if lock is False:
            return None
        try:
            result = work(lock)
        except BaseException:
            self._release_after_error(lock)
            raise
        self.unlock(lock)
        return result

    @contextmanager
    def locked(self, resource: str, ttl: int = DEFAULT_TTL):
        """Context manager yielding the Lock, or None if it was not acquired."""
        lock = self.lock(resource, ttl)
        if lock is False:
            yield None
            return
        try:
            yield lock
        except BaseException:
            self._release_after_error(lock)
            raise
        self.unlock(lock)

    def _release_after_error(self, lock: Lock) -> None:
        try:
            self.unlock(lock)
        except QuorumLockError as e:
            logger.warning("redlock_release_after_error_failed", resource=lock.resource, error=str(e))

    def clone(self) -> "Redlock":
        """A client with the same nodes and policy but its own connections and tokens.

        Nodes built with ``by_address`` open a new Redis client for the clone.
        Nodes built with ``by_connection`` keep using the caller's client, which
        both copies then share through its connection pool.
        """
        other = object.__new__(type(self))
        self._clone_into(other, self._nodes.clone())
        return other

    def __copy__(self) -> "Redlock":
        return self.clone()

    def __deepcopy__(self, memo) -> "Redlock":
        return self.clone()

    def close(self) -> None:
        """Close every node connection."""
        self._nodes.close()

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()


class AsyncRedlock(_RedlockBase):
    """Asyncio Redlock client; nodes are contacted concurrently."""

    def __init__(
        self,
        nodes: Sequence[Any],
        retry_delay: int = DEFAULT_RETRY_DELAY,
        retry_count: int = DEFAULT_RETRY_COUNT,
        clock_drift_factor: float = DEFAULT_CLOCK_DRIFT_FACTOR,
        eager_init: bool = False,
        token_generator: Optional[TokenGenerator] = None,
    ):
        """Initialize the async client.

        Takes the same arguments as ``Redlock``. With ``eager_init`` the nodes
        are connected on ``async with`` entry, since a constructor cannot await.
        """
        self.policy = RetryPolicy(retry_delay, retry_count, clock_drift_factor)
        self._nodes = AsyncNodeSet(_build_nodes(nodes, async_node_from_spec))
        self._tokens = token_generator or TokenGenerator()
        self.eager_init = eager_init

    async def initialize(self) -> int:
        """Connect every node that is not connected yet; return the ready count."""
        return await self._nodes.ensure_quorum_ready()

    async def _require_quorum(self, operation: str, resource: str) -> None:
        self._check_quorum(await self._nodes.ensure_quorum_ready(), operation, resource)

    async def lock(
        self,
        resource: str,
        ttl: int = DEFAULT_TTL,
        token: Optional[str] = None,
    ) -> Union[Lock, bool]:
        """Try to acquire a lock on ``resource``.

        Cancelling the calling task releases whatever the current round set
        before the cancellation propagates.
        """
        self._validate_resource(resource)
        self._validate_ttl(ttl)
        if token is None:
            token = self._tokens.next_token()
        else:
            self._validate_token(token)

        await self._require_quorum("lock", resource)

        for attempt in range(1, self.policy.max_attempts + 1):
            start = monotonic_ms()
            try:
                acquired = await self._nodes.apply_to_all(_async_do_lock, resource, token, ttl)
            except BaseException:
                await self._release_round(resource, token)
                raise
            lock = self._round_result(resource, token, ttl, acquired, monotonic_ms() - start, attempt)
            if lock is not None:
                return lock

            await self._release_round(resource, token)

            if attempt < self.policy.max_attempts:
                await asyncio.sleep(jittered_delay(self.policy.retry_delay))

        logger.info("redlock_lock_exhausted", resource=resource, attempts=self.policy.max_attempts)
        return False

    async def _release_round(self, resource: str, token: str) -> None:
        await self._nodes.ensure_quorum_ready()
        await self._nodes.apply_to_all(_async_do_unlock, resource, token)

    async def unlock(self, lock: LockLike) -> bool:
        """Release a lock; return whether a quorum of nodes released it."""
        resource, token = self._lock_fields(lock)
        await self._require_quorum("unlock", resource)
        released = await self._nodes.apply_to_all(_async_do_unlock, resource, token)
        if released < self.quorum:
            logger.warning("redlock_unlock_no_quorum", resource=resource, released=released, quorum=self.quorum)
            return False
        return True

    async def extend(self, lock: LockLike, ttl: int = DEFAULT_TTL) -> bool:
        """Reset the expiry of a held lock; return whether a quorum extended it."""
        resource, token = self._lock_fields(lock)
        self._validate_ttl(ttl)
        await self._require_quorum("extend", resource)
        extended = await self._nodes.apply_to_all(_async_do_extend, resource, token, ttl)
        if extended < self.quorum:
            logger.warning("redlock_extend_no_quorum", resource=resource, extended=extended, quorum=self.quorum)
            return False
        return True

    async def with_lock(self, resource: str, work: Callable[[Lock], Any], ttl: int = DEFAULT_TTL) -> Any:
        """Run ``work(lock)`` while holding a lock on ``resource``.

        ``work`` may be a plain callable or a coroutine function.
        """
        self._validate_ttl(ttl)
        lock = await self.lock(resource, ttl)
        if lock is False:
            return None
        try:
            result = work(lock)
            if inspect.isawaitable(result):
                result = await result
        except BaseException:
            await self._release_after_error(lock)
            raise
        await self.unlock(lock)
        return result

    @asynccontextmanager
    async def locked(self, resource: str, ttl: int = DEFAULT_TTL):
        """Async context manager yielding the Lock, or None if it was not acquired."""
        lock = await self.lock(resource, ttl)
        if lock is False:
            yield None
            return
        try:
            yield lock
        except BaseException:
            await self._release_after_error(lock)
            raise
        await self.unlock(lock)

    async def _release_after_error(self, lock: Lock) -> None:
        try:
            await self.unlock(lock)
        except QuorumLockError as e:
            logger.warning("redlock_release_after_error_failed", resource=lock.resource, error=str(e))

    def clone(self) -> "AsyncRedlock":
        """A client with the same nodes and policy but its own connections and tokens.

        Nodes built with ``by_address`` open a new Redis client for the clone.
        Nodes built with ``by_connection`` keep using the caller's client, which
        both copies then share through its connection pool.
        """
        other = object.__new__(type(self))
        self._clone_into(other, self._nodes.clone())
        other.eager_init = self.eager_init
        return other

    def __copy__(self) -> "AsyncRedlock":
        return self.clone()

    def __deepcopy__(self, memo) -> "AsyncRedlock":
        return self.clone()

    async def close(self) -> None:
        """Close every node connection."""
        await self._nodes.close()

    async def __aenter__(self):
        """Async context manager entry; connects the nodes when ``eager_init`` is set."""
        if self.eager_init:
            await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()
