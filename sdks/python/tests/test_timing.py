import pytest

from quorumlock.exceptions import ConfigurationError
from quorumlock.timing import clock_drift, compute_validity, jittered_delay, quorum_for


@pytest.mark.parametrize(
    "nodes,quorum",
    [(1, 1), (2, 2), (3, 2), (4, 3), (5, 3), (7, 4)],
)
def test_quorum_is_strict_majority(nodes, quorum):
    assert quorum_for(nodes) == quorum


@pytest.mark.parametrize("nodes", [0, -1, True, 2.0])
def test_quorum_rejects_bad_node_counts(nodes):
    with pytest.raises(ConfigurationError):
        quorum_for(nodes)


def test_validity_subtracts_elapsed_and_drift():
    assert clock_drift(1000, 0.01) == 12
    assert compute_validity(1000, 50, 0.01) == 938


def test_validity_with_zero_drift_factor_keeps_floor():
    assert compute_validity(100, 0, 0.0) == 98


def test_jittered_delay_stays_in_upper_half():
    for _ in range(200):
        delay = jittered_delay(200)
        assert 0.1 <= delay <= 0.2


def test_jittered_delay_zero():
    assert jittered_delay(0) == 0
