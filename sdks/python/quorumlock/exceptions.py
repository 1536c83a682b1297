"""quorumlock exception classes."""

class QuorumLockError(Exception):
    """Base exception for all quorumlock errors."""
    pass


class ConfigurationError(QuorumLockError):
    """Raised when a node list, policy, ttl or lock value is malformed."""
    pass


class QuorumUnavailableError(QuorumLockError):
    """Raised when fewer than quorum nodes can be made ready."""

    def __init__(self, message: str, ready: int = 0, quorum: int = 0):
        super().__init__(message)
        self.ready = ready
        self.quorum = quorum


class NodeError(QuorumLockError):
    """Raised by a store node when a connection or protocol operation fails.

    The node set absorbs these; they never reach callers of the lock API.
    """

    def __init__(self, message: str, node: str = None):
        super().__init__(message)
        self.node = node
