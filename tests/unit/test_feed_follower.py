"""Unit tests for the follower key store state machine."""

import pytest

from privfeed.config import FeedConfig
from privfeed.core.exceptions import KeyNotFoundError, MalformedBundleError, StaleEpochError
from privfeed.feed.engine import FeedKeyEngine
from privfeed.feed.follower import FollowerKeyStore, FollowerState
from privfeed.feed.grant import open_grant
from privfeed.security.cache import TTLCache
from privfeed.security.crypto import generate_keypair

FAST = {"time_cost": 1, "memory_cost": 8}
CONFIG = FeedConfig(tree_capacity=8, max_epoch=20)
SEED = b"\x04" * 32


@pytest.fixture
def engine():
    return FeedKeyEngine("alice", SEED, config=CONFIG)


def follow(engine, follower_id):
    priv, pub = generate_keypair()
    store = FollowerKeyStore(config=CONFIG)
    store.apply_grant(open_grant(engine.grant(follower_id, pub), priv))
    return store


def test_new_store_is_uninitialized():
    store = FollowerKeyStore()
    assert store.state is FollowerState.UNINITIALIZED
    with pytest.raises(KeyNotFoundError):
        store.get_cek(1)


def test_rekey_before_grant_fails(engine):
    follow(engine, "bob")
    event = engine.revoke("bob").rekey
    with pytest.raises(KeyNotFoundError):
        FollowerKeyStore().apply_rekey_event(event)


def test_grant_makes_store_current(engine):
    store = follow(engine, "bob")
    assert store.state is FollowerState.CURRENT
    assert store.slot == 0
    assert store.epoch == 1
    assert store.get_cek(1) == engine.current_cek


def test_rekey_advances_remaining_follower(engine):
    carol = follow(engine, "carol")
    follow(engine, "bob")
    event = engine.revoke("bob").rekey

    assert carol.apply_rekey_event(event) is FollowerState.CURRENT
    assert carol.epoch == 2
    assert carol.get_cek(2) == engine.chain.cek(2)
    assert carol.get_cek(1) == engine.chain.cek(1)
    assert carol.known_keys[engine.tree.leaf(0).parent()] == 2


def test_revoked_follower_is_locked_but_keeps_history(engine):
    follow(engine, "carol")
    bob = follow(engine, "bob")
    first = engine.revoke("bob").rekey
    second = engine.revoke("carol").rekey

    assert bob.apply_rekey_event(first) is FollowerState.LOCKED
    assert bob.epoch == 1
    assert bob.get_cek(1) == engine.chain.cek(1)
    with pytest.raises(KeyNotFoundError):
        bob.get_cek(2)
    # further events are ignored
    assert bob.apply_rekey_event(second) is FollowerState.LOCKED


def test_skipped_event_is_rejected(engine):
    dave = follow(engine, "dave")
    follow(engine, "bob")
    follow(engine, "carol")
    engine.revoke("bob")
    second = engine.revoke("carol").rekey
    with pytest.raises(StaleEpochError):
        dave.apply_rekey_event(second)
    assert dave.epoch == 1


def test_catch_up_applies_events_in_order(engine):
    dave = follow(engine, "dave")
    follow(engine, "bob")
    follow(engine, "carol")
    first = engine.revoke("bob").rekey
    second = engine.revoke("carol").rekey

    assert dave.catch_up([second, first, first]) is FollowerState.CURRENT
    assert dave.epoch == 3
    assert dave.get_cek(3) == engine.current_cek


def test_catch_up_stops_when_locked(engine):
    bob = follow(engine, "bob")
    follow(engine, "carol")
    first = engine.revoke("bob").rekey
    second = engine.revoke("carol").rekey
    assert bob.catch_up([first, second]) is FollowerState.LOCKED
    assert bob.epoch == 1


def test_observe_newer_epoch_marks_store_stale(engine):
    dave = follow(engine, "dave")
    follow(engine, "bob")
    event = engine.revoke("bob").rekey

    assert dave.observe_epoch(2) is FollowerState.STALE
    assert dave.apply_rekey_event(event) is FollowerState.CURRENT
    assert dave.observe_epoch(1) is FollowerState.CURRENT


def test_older_grant_rejected(engine):
    priv, pub = generate_keypair()
    old_bundle = open_grant(engine.grant("dave", pub), priv)
    follow(engine, "bob")
    engine.revoke("bob")
    engine.revoke("dave")

    store = FollowerKeyStore(config=CONFIG)
    store.apply_grant(open_grant(engine.grant("dave", pub), priv))
    assert store.epoch == 3
    with pytest.raises(StaleEpochError):
        store.apply_grant(old_bundle)


def test_regrant_replaces_locked_state(engine):
    priv, pub = generate_keypair()
    store = FollowerKeyStore(config=CONFIG)
    store.apply_grant(open_grant(engine.grant("bob", pub), priv))
    store.apply_rekey_event(engine.revoke("bob").rekey)
    assert store.state is FollowerState.LOCKED

    store.apply_grant(open_grant(engine.grant("bob", pub), priv))
    assert store.state is FollowerState.CURRENT
    assert store.get_cek(2) == engine.current_cek


def test_cek_cache_cleared_on_epoch_advance(engine):
    cache = TTLCache(ttl_seconds=60)
    store = FollowerKeyStore(config=CONFIG, cache=cache)
    priv, pub = generate_keypair()
    store.apply_grant(open_grant(engine.grant("dave", pub), priv))
    follow(engine, "bob")

    store.get_cek(1)
    assert 1 in cache
    store.apply_rekey_event(engine.revoke("bob").rekey)
    assert len(cache) == 0


def test_decrypt_post(engine):
    store = follow(engine, "bob")
    post = engine.encrypt_post("hello followers")
    assert store.decrypt_post("alice", post) == b"hello followers"


def test_decrypt_post_from_future_epoch_needs_catch_up(engine):
    store = follow(engine, "dave")
    follow(engine, "bob")
    engine.revoke("bob")
    post = engine.encrypt_post("after revocation")

    with pytest.raises(KeyNotFoundError, match="catch up"):
        store.decrypt_post("alice", post)
    assert store.state is FollowerState.STALE


def test_export_import_roundtrip(engine):
    store = follow(engine, "bob")
    blob = store.export_state("s3cret", **FAST)
    restored = FollowerKeyStore.import_state(blob, "s3cret", config=CONFIG)

    assert restored.state is FollowerState.CURRENT
    assert restored.slot == store.slot
    assert restored.epoch == store.epoch
    assert restored.known_keys == store.known_keys
    assert restored.get_cek(1) == engine.current_cek


def test_from_dict_rejects_garbage():
    with pytest.raises(MalformedBundleError):
        FollowerKeyStore.from_dict({"state": "current"})
    with pytest.raises(MalformedBundleError):
        FollowerKeyStore.from_dict(
            {"state": "bogus", "slot": 0, "epoch": 1, "cek": None, "keys": []}
        )
