import pytest

from quorumlock import AsyncMemoryStoreNode, AsyncRedlock, MemoryStoreNode, Redlock


@pytest.fixture
def make_nodes():
    """Factory for N independent in-memory nodes."""
    def _make(count=3, latency=0.0):
        return [MemoryStoreNode(label=f"node-{i}", latency=latency) for i in range(count)]
    return _make


@pytest.fixture
def make_async_nodes():
    def _make(count=3, latency=0.0):
        return [AsyncMemoryStoreNode(label=f"anode-{i}", latency=latency) for i in range(count)]
    return _make


@pytest.fixture
def make_client(make_nodes):
    """Blocking client over fresh nodes, with no backoff between rounds."""
    def _make(count=3, **kwargs):
        nodes = kwargs.pop("nodes", None) or make_nodes(count)
        kwargs.setdefault("retry_delay", 0)
        return Redlock(nodes, **kwargs), nodes
    return _make


@pytest.fixture
def make_async_client(make_async_nodes):
    def _make(count=3, latency=0.0, **kwargs):
        nodes = kwargs.pop("nodes", None) or make_async_nodes(count, latency)
        kwargs.setdefault("retry_delay", 0)
        return AsyncRedlock(nodes, **kwargs), nodes
    return _make
