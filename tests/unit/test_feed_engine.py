"""Unit tests for the owner-side FeedKeyEngine."""

import pytest

from privfeed.config import FeedConfig
from privfeed.core.exceptions import (
    DecryptionFailure,
    KeyNotFoundError,
    MalformedBundleError,
    StaleEpochError,
    UnknownFollowerError,
)
from privfeed.core.models import FeedState
from privfeed.feed.engine import FeedKeyEngine
from privfeed.feed.post import encrypt_post
from privfeed.security.crypto import generate_keypair

FAST = {"time_cost": 1, "memory_cost": 8}
CONFIG = FeedConfig(tree_capacity=8, max_epoch=50)


@pytest.fixture
def owner_keys():
    return generate_keypair()


@pytest.fixture
def engine(owner_keys):
    engine, _ = FeedKeyEngine.create("alice", owner_keys[1], config=CONFIG)
    return engine


def test_seed_must_be_32_bytes():
    with pytest.raises(ValueError):
        FeedKeyEngine("alice", b"short")


def test_create_starts_at_epoch_one(owner_keys):
    engine, state = FeedKeyEngine.create("alice", owner_keys[1], config=CONFIG)
    assert engine.current_epoch == 1
    assert engine.followers() == {}
    assert state.owner_id == "alice"
    assert state.tree_capacity == 8
    assert state.max_epoch == 50


def test_create_uses_fresh_seed(owner_keys):
    a, _ = FeedKeyEngine.create("alice", owner_keys[1], config=CONFIG)
    b, _ = FeedKeyEngine.create("alice", owner_keys[1], config=CONFIG)
    assert a.current_cek != b.current_cek


def test_grant_and_revoke_bookkeeping(engine):
    _, pub = generate_keypair()
    engine.grant("bob", pub)
    engine.grant("carol", pub)
    assert engine.followers() == {"bob": 0, "carol": 1}
    assert set(engine.grants) == {"bob", "carol"}

    event = engine.revoke("bob")
    assert event.rekey.new_epoch == 2
    assert engine.current_epoch == 2
    assert engine.followers() == {"carol": 1}
    assert set(engine.grants) == {"carol"}
    with pytest.raises(UnknownFollowerError):
        engine.revoke("bob")


def test_owner_reads_posts_from_every_epoch(engine):
    _, pub = generate_keypair()
    engine.grant("bob", pub)
    old = engine.encrypt_post("epoch one")
    engine.revoke("bob")
    new = engine.encrypt_post("epoch two", teaser="tease")

    assert old.epoch == 1 and new.epoch == 2
    assert engine.decrypt_post(old) == b"epoch one"
    assert engine.decrypt_post(new) == b"epoch two"


def test_owner_rejects_post_from_future_epoch(engine):
    future = encrypt_post(engine.chain.cek(7), "alice", b"future", epoch=7)
    with pytest.raises(KeyNotFoundError, match="newer"):
        engine.decrypt_post(future)


def test_recover_from_published_records(owner_keys):
    priv, pub = owner_keys
    engine, state = FeedKeyEngine.create("alice", pub, config=CONFIG)
    _, follower_pub = generate_keypair()
    for name in ("bob", "carol", "dave"):
        engine.grant(name, follower_pub)
    events = [engine.revoke("carol").rekey, engine.revoke("bob").rekey]
    engine.grant("erin", follower_pub)

    state = FeedState.from_bytes(state.to_bytes())
    recovered = FeedKeyEngine.recover(state, priv, grants=engine.grants.values(), events=events)

    assert recovered.current_epoch == 3
    assert recovered.current_cek == engine.current_cek
    assert recovered.followers() == engine.followers()
    for slot in range(8):
        for node in [recovered.tree.leaf(slot)] + recovered.tree.path_to_root(slot):
            assert recovered.tree.node_key(node) == engine.tree.node_key(node)

    # the recovered engine carries on where the first one stopped
    _, pub2 = generate_keypair()
    recovered.grant("frank", pub2)
    assert recovered.revoke("dave").rekey.new_epoch == 4


def test_recover_needs_every_event(owner_keys):
    priv, pub = owner_keys
    engine, state = FeedKeyEngine.create("alice", pub, config=CONFIG)
    _, follower_pub = generate_keypair()
    engine.grant("bob", follower_pub)
    engine.grant("carol", follower_pub)
    engine.revoke("bob")
    second = engine.revoke("carol").rekey
    with pytest.raises(StaleEpochError):
        FeedKeyEngine.recover(state, priv, events=[second])


def test_recover_with_wrong_key_fails(owner_keys):
    _, pub = owner_keys
    _, state = FeedKeyEngine.create("alice", pub, config=CONFIG)
    other_priv, _ = generate_keypair()
    with pytest.raises(DecryptionFailure):
        FeedKeyEngine.recover(state, other_priv)


def test_export_import_roundtrip(engine):
    _, pub = generate_keypair()
    engine.grant("bob", pub)
    engine.grant("carol", pub)
    engine.revoke("bob")
    post = engine.encrypt_post("kept")

    blob = engine.export_state("pw", **FAST)
    restored = FeedKeyEngine.import_state(blob, "pw")

    assert restored.owner_id == "alice"
    assert restored.config.tree_capacity == 8
    assert restored.config.max_epoch == 50
    assert restored.current_epoch == 2
    assert restored.followers() == {"carol": 1}
    assert restored.grants["carol"] == engine.grants["carol"]
    assert restored.decrypt_post(post) == b"kept"
    leaf = restored.tree.leaf(0)
    assert restored.tree.node_key(leaf) == engine.tree.node_key(leaf)


def test_import_with_wrong_passphrase(engine):
    blob = engine.export_state("pw", **FAST)
    with pytest.raises(DecryptionFailure):
        FeedKeyEngine.import_state(blob, "nope")


def test_from_dict_rejects_garbage():
    with pytest.raises(MalformedBundleError):
        FeedKeyEngine.from_dict({"owner_id": "alice"})
