import pytest
from pydantic import ValidationError

from quorumlock import RedlockSettings, Serializer


def test_defaults(monkeypatch):
    for name in ("NODES", "RETRY_DELAY", "RETRY_COUNT", "CLOCK_DRIFT_FACTOR", "EAGER_INIT"):
        monkeypatch.delenv(f"QUORUMLOCK_{name}", raising=False)
    settings = RedlockSettings()
    assert settings.retry_delay == 200
    assert settings.retry_count == 3
    assert settings.clock_drift_factor == 0.01
    assert settings.eager_init is False
    assert [d.label for d in settings.descriptors()] == ["127.0.0.1:6379"]


def test_reads_environment(monkeypatch):
    monkeypatch.setenv("QUORUMLOCK_NODES", "redis://a:7000/1?prefix=l:&serializer=json,redis://b")
    monkeypatch.setenv("QUORUMLOCK_EAGER_INIT", "true")
    settings = RedlockSettings()

    first, second = settings.descriptors()
    assert (first.host, first.port, first.db, first.prefix) == ("a", 7000, 1, "l:")
    assert first.serializer is Serializer.JSON
    assert second.label == "b:6379"
    assert settings.eager_init is True


def test_blank_entries_are_ignored():
    settings = RedlockSettings(nodes="redis://a, ,redis://b,")
    assert settings.node_urls() == ["redis://a", "redis://b"]


@pytest.mark.parametrize(
    "field,value",
    [("retry_delay", -1), ("retry_count", -2), ("clock_drift_factor", -0.5)],
)
def test_rejects_negative_values(field, value):
    with pytest.raises(ValidationError):
        RedlockSettings(**{field: value})
