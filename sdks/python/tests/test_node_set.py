import pytest

from quorumlock import ConfigurationError, MemoryStoreNode, NodeError
from quorumlock.node_set import NodeSet


def _set(connection, key, value, ttl):
    return connection.set_if_absent_with_expiry(key, value, ttl)


def test_quorum_computed_from_node_count(make_nodes):
    assert NodeSet(make_nodes(5)).quorum == 3


def test_empty_node_set_rejected():
    with pytest.raises(ConfigurationError):
        NodeSet([])


def test_ensure_quorum_ready_skips_unreachable(make_nodes):
    nodes = make_nodes(3)
    nodes[1].available = False
    node_set = NodeSet(nodes)

    assert node_set.ensure_quorum_ready() == 2
    assert nodes[1].operation_counts["connect"] == 1


def test_ready_nodes_are_not_reconnected(make_nodes):
    nodes = make_nodes(2)
    node_set = NodeSet(nodes)
    node_set.ensure_quorum_ready()
    node_set.ensure_quorum_ready()
    assert [n.operation_counts["connect"] for n in nodes] == [1, 1]


def test_recovered_node_rejoins(make_nodes):
    nodes = make_nodes(3)
    nodes[0].available = False
    node_set = NodeSet(nodes)
    assert node_set.ensure_quorum_ready() == 2

    nodes[0].available = True
    assert node_set.ensure_quorum_ready() == 3


def test_apply_to_all_counts_truthy_results(make_nodes):
    nodes = make_nodes(3)
    nodes[2].store.set_if_absent("r", "other", 10000)
    node_set = NodeSet(nodes)
    node_set.ensure_quorum_ready()

    assert node_set.apply_to_all(_set, "r", "mine", 10000) == 2


def test_apply_to_all_skips_nodes_that_are_not_ready(make_nodes):
    nodes = make_nodes(3)
    node_set = NodeSet(nodes)
    assert node_set.apply_to_all(_set, "r", "mine", 10000) == 0
    assert all(n.operation_counts["set"] == 0 for n in nodes)


def test_failing_node_is_torn_down_and_error_absorbed(make_nodes):
    nodes = make_nodes(3)
    node_set = NodeSet(nodes)
    node_set.ensure_quorum_ready()
    nodes[1].available = False

    assert node_set.apply_to_all(_set, "r", "mine", 10000) == 2
    assert node_set.ready_count == 2
    assert nodes[1].operation_counts["close"] == 1

    # excluded from later rounds until reconnected
    node_set.apply_to_all(_set, "s", "mine", 10000)
    assert nodes[1].operation_counts["set"] == 1


def test_close_failure_during_teardown_is_absorbed(make_nodes):
    class BrokenClose(MemoryStoreNode):
        def connect(self):
            connection = super().connect()

            def close():
                raise NodeError("close failed", node=self.label)

            connection.close = close
            return connection

    node = BrokenClose(label="broken")
    node_set = NodeSet([node])
    node_set.ensure_quorum_ready()
    node.available = False

    assert node_set.apply_to_all(_set, "r", "mine", 100) == 0
    assert node_set.ready_count == 0


def test_clone_does_not_share_connections(make_nodes):
    node_set = NodeSet(make_nodes(3))
    node_set.ensure_quorum_ready()
    other = node_set.clone()
    assert other.ready_count == 0
    assert other.nodes == node_set.nodes


def test_close_drops_every_connection(make_nodes):
    nodes = make_nodes(3)
    node_set = NodeSet(nodes)
    node_set.ensure_quorum_ready()
    node_set.close()
    assert node_set.ready_count == 0
    assert all(n.operation_counts["close"] == 1 for n in nodes)
