"""Quorum and validity arithmetic."""

import random
import time

from .exceptions import ConfigurationError

# Redis expiry precision is 1ms, plus 1ms minimum drift for small ttls.
DRIFT_FLOOR_MS = 2


def monotonic_ms() -> float:
    """Milliseconds on a clock that never goes backwards."""
    return time.monotonic() * 1000.0


def quorum_for(node_count: int) -> int:
    """Majority needed among ``node_count`` nodes.

    A single node yields a quorum of one: valid, but it tolerates no node
    being unavailable.
    """
    if isinstance(node_count, bool) or not isinstance(node_count, int) or node_count < 1:
        raise ConfigurationError("At least one node is required")
    return min(node_count, node_count // 2 + 1)


def clock_drift(ttl: int, clock_drift_factor: float) -> float:
    """Drift allowance in milliseconds for a lock of ``ttl`` milliseconds."""
    return ttl * clock_drift_factor + DRIFT_FLOOR_MS


def compute_validity(ttl: int, elapsed: float, clock_drift_factor: float) -> float:
    """Remaining validity of a lock after ``elapsed`` ms spent acquiring it."""
    return ttl - elapsed - clock_drift(ttl, clock_drift_factor)


def jittered_delay(retry_delay: int) -> float:
    """Backoff in seconds, uniform in ``[retry_delay / 2, retry_delay]`` ms."""
    return random.uniform(retry_delay / 2, retry_delay) / 1000.0
