import pytest

from quorumlock import MemoryStore, MemoryStoreNode, NodeError


class FakeClock:

    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return MemoryStore(clock=clock)


def test_set_if_absent(store):
    assert store.set_if_absent("r", "a", 1000)
    assert not store.set_if_absent("r", "b", 1000)
    assert store.get("r") == "a"


def test_entries_expire(store, clock):
    store.set_if_absent("r", "a", 1000)
    clock.now += 1.0
    assert store.get("r") is None
    assert store.set_if_absent("r", "b", 1000)


def test_delete_only_with_matching_token(store):
    store.set_if_absent("r", "a", 1000)
    assert not store.delete_if_equals("r", "b")
    assert store.get("r") == "a"
    assert store.delete_if_equals("r", "a")
    assert store.get("r") is None


def test_expire_only_with_matching_token(store, clock):
    store.set_if_absent("r", "a", 1000)
    assert not store.expire_if_equals("r", "b", 5000)
    assert store.ttl_ms("r") == pytest.approx(1000)
    assert store.expire_if_equals("r", "a", 5000)
    assert store.ttl_ms("r") == pytest.approx(5000)


def test_expire_missing_key(store):
    assert not store.expire_if_equals("r", "a", 5000)
    assert store.ttl_ms("r") is None


def test_len_counts_live_entries(store, clock):
    store.set_if_absent("a", "1", 500)
    store.set_if_absent("b", "1", 5000)
    clock.now += 1.0
    assert len(store) == 1


def test_unavailable_node_fails_connect_and_operations():
    node = MemoryStoreNode(label="n")
    connection = node.connect()
    node.available = False
    with pytest.raises(NodeError):
        connection.set_if_absent_with_expiry("r", "a", 100)
    with pytest.raises(NodeError) as info:
        node.connect()
    assert info.value.node == "n"
    assert node.operation_counts["set"] == 1
