"""Lock token generation."""

import hashlib
import os
import struct
import threading
import time
from typing import Callable, Optional

SEED_BYTES = 20


class TokenGenerator:
    """Produces unpredictable 160-bit lock tokens from a SHA1 hash chain.

    The chain is seeded once from ``entropy`` and then advanced with the
    current nanosecond timestamp on every call, so each token depends on all
    tokens issued before it by this generator.
    """

    def __init__(self, entropy: Callable[[int], bytes] = os.urandom):
        self._entropy = entropy
        self._state: Optional[bytes] = None
        self._lock = threading.Lock()

    def next_token(self) -> str:
        """Advance the chain and return the new state as 40 hex characters."""
        with self._lock:
            if self._state is None:
                self._state = self._entropy(SEED_BYTES)
            stamp = struct.pack("<Q", time.time_ns() & 0xFFFFFFFFFFFFFFFF)
            self._state = hashlib.sha1(self._state + stamp).digest()
            return self._state.hex()

    __call__ = next_token
