import hashlib
import struct

from quorumlock.tokens import TokenGenerator


def test_tokens_are_160_bit_hex():
    token = TokenGenerator().next_token()
    assert len(token) == 40
    int(token, 16)


def test_ten_thousand_tokens_are_unique():
    generator = TokenGenerator()
    tokens = {generator.next_token() for _ in range(10000)}
    assert len(tokens) == 10000


def test_seeded_once_from_entropy():
    calls = []

    def entropy(size):
        calls.append(size)
        return b"\x01" * size

    generator = TokenGenerator(entropy=entropy)
    generator.next_token()
    generator()
    assert calls == [20]


def test_chain_hashes_previous_state_with_timestamp(monkeypatch):
    monkeypatch.setattr("quorumlock.tokens.time.time_ns", lambda: 1234)
    seed = b"\x07" * 20
    generator = TokenGenerator(entropy=lambda size: seed)

    stamp = struct.pack("<Q", 1234)
    first = hashlib.sha1(seed + stamp).digest()
    second = hashlib.sha1(first + stamp).digest()

    assert generator.next_token() == first.hex()
    assert generator.next_token() == second.hex()


def test_generators_do_not_share_state():
    seed = b"\x00" * 20
    a = TokenGenerator(entropy=lambda size: seed)
    b = TokenGenerator(entropy=lambda size: b"\xff" * size)
    assert a.next_token() != b.next_token()
