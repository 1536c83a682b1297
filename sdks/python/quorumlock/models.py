"""quorumlock data models."""

import json
import math
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Optional
from urllib.parse import parse_qs, unquote, urlsplit

from .exceptions import ConfigurationError

DEFAULT_TTL = 500
DEFAULT_RETRY_DELAY = 200
DEFAULT_RETRY_COUNT = 3
DEFAULT_CLOCK_DRIFT_FACTOR = 0.01

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 6379


class Serializer(str, Enum):
    """How lock tokens are encoded before they are stored on a node."""
    NONE = "none"
    JSON = "json"

    def encode(self, value: str) -> str:
        """Encode a token the way it is stored on the node."""
        if self is Serializer.JSON:
            return json.dumps(value)
        return value


@dataclass(frozen=True)
class Lock:
    """A lock held on a quorum of nodes.

    ``validity`` is the remaining safe-to-hold time in milliseconds at the
    moment the lock was returned. It is advisory: expiry is enforced by each
    node's own TTL.
    """
    resource: str
    token: str
    validity: float

    def to_dict(self) -> Dict[str, Any]:
        """Lock as a plain dict."""
        return asdict(self)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry and clock drift settings used by lock acquisition.

    Attributes:
        retry_delay: Upper bound of the jittered backoff, in milliseconds
        retry_count: Attempts allowed after the first one
        clock_drift_factor: Fraction of the ttl reserved for clock drift
    """
    retry_delay: int = DEFAULT_RETRY_DELAY
    retry_count: int = DEFAULT_RETRY_COUNT
    clock_drift_factor: float = DEFAULT_CLOCK_DRIFT_FACTOR

    def __post_init__(self):
        if not _is_int(self.retry_delay) or self.retry_delay < 0:
            raise ConfigurationError("Retry delay must be a non-negative integer")
        if not _is_int(self.retry_count) or self.retry_count < 0:
            raise ConfigurationError("Retry count must be a non-negative integer")
        factor = self.clock_drift_factor
        if (
            isinstance(factor, bool)
            or not isinstance(factor, (int, float))
            or not math.isfinite(factor)
            or factor < 0
        ):
            raise ConfigurationError("Clock drift factor must be a non-negative number")

    @property
    def max_attempts(self) -> int:
        return self.retry_count + 1


@dataclass(frozen=True)
class AddressDescriptor:
    """Connection parameters for a node reached by host and port."""
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    timeout: Optional[float] = None
    db: Optional[int] = None
    username: Optional[str] = None
    password: Optional[str] = None
    prefix: Optional[str] = None
    serializer: Serializer = Serializer.NONE
    ssl: bool = False

    @property
    def label(self) -> str:
        return f"{self.host}:{self.port}"

    def __repr__(self) -> str:
        # keep credentials out of logs and tracebacks
        return (
            f"AddressDescriptor(host={self.host!r}, port={self.port}, db={self.db}, "
            f"prefix={self.prefix!r}, serializer={self.serializer.value!r})"
        )


@dataclass(frozen=True)
class ConnectionDescriptor:
    """A node reached through a client the caller already created.

    The client is never closed by quorumlock.
    """
    client: Any
    prefix: Optional[str] = None
    serializer: Serializer = Serializer.NONE

    @property
    def label(self) -> str:
        return f"client@{id(self.client):x}"


def by_address(
    host: str = DEFAULT_HOST,
    port: int = DEFAULT_PORT,
    *,
    timeout: Optional[float] = None,
    db: Optional[int] = None,
    username: Optional[str] = None,
    password: Optional[str] = None,
    prefix: Optional[str] = None,
    serializer: Any = Serializer.NONE,
    ssl: bool = False,
) -> AddressDescriptor:
    """Build a validated descriptor for a node reached by address."""
    if not isinstance(host, str) or not host:
        raise ConfigurationError("Host must be a non-empty string")
    if not _is_int(port) or not 0 < port < 65536:
        raise ConfigurationError(f"Invalid port: {port!r}")
    if timeout is not None and (
        isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout < 0
    ):
        raise ConfigurationError("Timeout must be a non-negative number")
    if db is not None and (not _is_int(db) or db < 0):
        raise ConfigurationError("Database index must be a non-negative integer")
    _validate_prefix(prefix)
    return AddressDescriptor(
        host=host,
        port=port,
        timeout=timeout,
        db=db,
        username=username,
        password=password,
        prefix=prefix or None,
        serializer=_coerce_serializer(serializer),
        ssl=bool(ssl),
    )


def by_connection(
    client: Any,
    *,
    prefix: Optional[str] = None,
    serializer: Any = Serializer.NONE,
) -> ConnectionDescriptor:
    """Build a descriptor around an existing client."""
    if client is None:
        raise ConfigurationError("A client instance is required")
    _validate_prefix(prefix)
    return ConnectionDescriptor(
        client=client,
        prefix=prefix or None,
        serializer=_coerce_serializer(serializer),
    )


def descriptor_from_url(url: str) -> AddressDescriptor:
    """Parse ``redis://[user[:password]@]host[:port][/db]`` into a descriptor.

    Supported query parameters: ``timeout`` (seconds), ``prefix`` and
    ``serializer``. The ``rediss`` scheme enables TLS.
    """
    if not isinstance(url, str) or not url.strip():
        raise ConfigurationError("Node URL must be a non-empty string")
    parts = urlsplit(url.strip())
    if parts.scheme not in ("redis", "rediss"):
        raise ConfigurationError(f"Unsupported node URL scheme: {parts.scheme!r}")

    try:
        port = parts.port if parts.port is not None else DEFAULT_PORT
    except ValueError:
        raise ConfigurationError(f"Invalid port in node URL: {url!r}") from None

    db = None
    path = parts.path.strip("/")
    if path:
        if not path.isdigit():
            raise ConfigurationError(f"Invalid database index in node URL: {path!r}")
        db = int(path)

    query = {key: values[-1] for key, values in parse_qs(parts.query).items()}
    unknown = set(query) - {"timeout", "prefix", "serializer"}
    if unknown:
        raise ConfigurationError(f"Unknown node URL options: {', '.join(sorted(unknown))}")

    timeout = None
    if "timeout" in query:
        try:
            timeout = float(query["timeout"])
        except ValueError:
            raise ConfigurationError(f"Invalid timeout: {query['timeout']!r}") from None

    return by_address(
        parts.hostname or DEFAULT_HOST,
        port,
        timeout=timeout,
        db=db,
        username=unquote(parts.username) if parts.username else None,
        password=unquote(parts.password) if parts.password else None,
        prefix=query.get("prefix"),
        serializer=query.get("serializer", Serializer.NONE),
        ssl=parts.scheme == "rediss",
    )


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _validate_prefix(prefix: Optional[str]) -> None:
    if prefix is not None and not isinstance(prefix, str):
        raise ConfigurationError("Key prefix must be a string")


def _coerce_serializer(value: Any) -> Serializer:
    try:
        return Serializer(value)
    except ValueError:
        raise ConfigurationError(f"Unknown serializer: {value!r}") from None
