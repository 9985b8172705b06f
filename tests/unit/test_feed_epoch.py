"""Unit tests for the CEK hash chain."""

import hashlib

import pytest

from privfeed.core.exceptions import EpochOutOfRangeError
from privfeed.feed import epoch
from privfeed.feed.epoch import EpochChain
from privfeed.security.crypto import kdf

SEED = b"\x42" * 32


def test_generate_chain_shape():
    chain = epoch.generate_chain(SEED, 50)
    assert len(chain) == 50
    assert chain[-1] == kdf(SEED, "cek-root")
    for i in range(49):
        assert chain[i] == hashlib.sha256(chain[i + 1]).digest()


def test_generate_chain_is_deterministic():
    assert epoch.generate_chain(SEED, 10) == epoch.generate_chain(SEED, 10)
    assert epoch.generate_chain(SEED, 10) != epoch.generate_chain(b"\x43" * 32, 10)


def test_derive_matches_chain_for_every_epoch():
    chain = epoch.generate_chain(SEED, 30)
    for e in range(1, 30):
        assert epoch.derive(chain[e], e + 1, e) == chain[e - 1]
    assert epoch.derive(chain[-1], 30, 1) == chain[0]
    assert epoch.derive(chain[4], 5, 5) == chain[4]


def test_forward_derivation_is_refused():
    chain = epoch.generate_chain(SEED, 10)
    with pytest.raises(EpochOutOfRangeError, match="forward"):
        epoch.derive(chain[2], 3, 4)


def test_derive_below_one_is_refused():
    with pytest.raises(EpochOutOfRangeError):
        epoch.derive(SEED, 3, 0)


def test_generate_requires_positive_max():
    with pytest.raises(EpochOutOfRangeError):
        epoch.generate_chain(SEED, 0)


class TestEpochChain:
    def test_lookup_and_root(self):
        chain = EpochChain(SEED, 20)
        assert chain.current_epoch == 1
        assert chain.root_cek == chain.cek(20)
        assert chain.derive(7) == chain.cek(7)
        assert chain.current_cek == chain.cek(1)

    def test_out_of_range_lookup(self):
        chain = EpochChain(SEED, 20)
        with pytest.raises(EpochOutOfRangeError):
            chain.cek(0)
        with pytest.raises(EpochOutOfRangeError):
            chain.cek(21)

    def test_advance_until_exhausted(self):
        chain = EpochChain(SEED, 3)
        assert chain.advance() == 2
        assert chain.advance() == 3
        with pytest.raises(EpochOutOfRangeError, match="exhausted"):
            chain.next_epoch()
        assert chain.current_epoch == 3

    def test_invalid_start_epoch(self):
        with pytest.raises(EpochOutOfRangeError):
            EpochChain(SEED, 3, current_epoch=4)
