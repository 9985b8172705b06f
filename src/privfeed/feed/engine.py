"""
Owner-side facade over the key tree, the epoch chain and the grant / revoke
protocols.

A FeedKeyEngine is constructed and owned by the caller; the owner's device is
its single writer. Nothing here talks to the ledger: every operation returns
records (FeedState, Grant, RekeyEvent, EncryptedPost) for the caller to
publish.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import os
from typing import Dict, Iterable, Optional, Tuple

from privfeed.config import FeedConfig
from privfeed.core.exceptions import KeyNotFoundError, MalformedBundleError, StaleEpochError
from privfeed.core.models import EncryptedPost, FeedState, Grant, RekeyEvent
from privfeed.security.crypto import hybrid_decrypt, hybrid_encrypt
from privfeed.security.sealed import open_state, seal_state
from .epoch import EpochChain
from .grant import GrantBuilder
from .post import PostCipher
from .revocation import RevocationEngine, RevocationEvent, open_snapshot, snapshot_key_from_seed
from .tree import KeyTree


logger = logging.getLogger(__name__)

SEED_SIZE = 32


class FeedKeyEngine:
    def __init__(
        self,
        owner_id: str,
        seed: bytes,
        config: Optional[FeedConfig] = None,
        current_epoch: int = 1,
        tree: Optional[KeyTree] = None,
    ):
        if len(seed) != SEED_SIZE:
            raise ValueError(f"seed must be {SEED_SIZE} bytes")
        self.owner_id = owner_id
        self.config = config or FeedConfig()
        self._seed = seed
        self.chain = EpochChain(seed, self.config.max_epoch, current_epoch)
        self.tree = tree if tree is not None else KeyTree(seed, self.config.tree_capacity)
        if self.tree.capacity != self.config.tree_capacity:
            raise ValueError("tree capacity does not match config")
        self.grants: Dict[str, Grant] = {}
        self._granter = GrantBuilder(self.tree, self.chain)
        self._revoker = RevocationEngine(self.tree, self.chain, snapshot_key_from_seed(seed))
        self._posts = PostCipher(owner_id)

    # ------------------------------------------------------------------
    # Feed lifecycle
    # ------------------------------------------------------------------

    @classmethod
    def create(
        cls,
        owner_id: str,
        owner_public_key: bytes,
        config: Optional[FeedConfig] = None,
    ) -> Tuple["FeedKeyEngine", FeedState]:
        """
        Enable a private feed for ``owner_id``.

        Generates a fresh random seed, starts at epoch 1 with every slot free
        and returns the engine together with the FeedState record, whose seed
        is sealed to the owner's own public key for recovery on other devices.
        """
        engine = cls(owner_id, os.urandom(SEED_SIZE), config=config)
        state = engine.feed_state(owner_public_key)
        logger.info(
            "private feed enabled for %s (capacity %d, %d epochs)",
            owner_id, engine.config.tree_capacity, engine.config.max_epoch,
        )
        return engine, state

    def feed_state(self, owner_public_key: bytes) -> FeedState:
        return FeedState(
            owner_id=self.owner_id,
            encrypted_seed=hybrid_encrypt(owner_public_key, self._seed),
            tree_capacity=self.config.tree_capacity,
            max_epoch=self.config.max_epoch,
        )

    @classmethod
    def recover(
        cls,
        feed_state: FeedState,
        owner_private_key: bytes,
        grants: Iterable[Grant] = (),
        events: Iterable[RekeyEvent] = (),
        config: Optional[FeedConfig] = None,
    ) -> "FeedKeyEngine":
        """
        Rebuild the engine on another device from published records only.

        ``grants`` are the live (not deleted) grant records and ``events``
        every rekey event of the feed. The owner snapshots inside the events
        restore the node keys each revocation issued.
        """
        seed = hybrid_decrypt(owner_private_key, feed_state.encrypted_seed)
        if len(seed) != SEED_SIZE:
            raise MalformedBundleError("FeedState seed has the wrong length")
        config = dataclasses.replace(
            config or FeedConfig(),
            tree_capacity=feed_state.tree_capacity,
            max_epoch=feed_state.max_epoch,
        )
        tree = KeyTree(seed, config.tree_capacity)
        snapshot_key = snapshot_key_from_seed(seed)

        epoch = 1
        for event in sorted(events, key=lambda e: e.new_epoch):
            if event.new_epoch != epoch + 1:
                raise StaleEpochError(f"missing rekey event for epoch {epoch + 1}")
            if not event.owner_snapshot:
                raise MalformedBundleError(f"rekey event {event.new_epoch} carries no owner snapshot")
            snapshot = open_snapshot(event.owner_snapshot, snapshot_key, event.new_epoch)
            for node_key in snapshot.keys:
                tree.install(node_key)
            epoch = event.new_epoch

        grants = list(grants)
        tree.restore_assignments((g.follower_id, g.slot) for g in grants)
        engine = cls(feed_state.owner_id, seed, config=config, current_epoch=epoch, tree=tree)
        engine.grants = {g.follower_id: g for g in grants}
        logger.info(
            "recovered feed of %s at epoch %d with %d followers",
            feed_state.owner_id, epoch, len(engine.grants),
        )
        return engine

    # ------------------------------------------------------------------
    # Followers
    # ------------------------------------------------------------------

    @property
    def current_epoch(self) -> int:
        return self.chain.current_epoch

    @property
    def current_cek(self) -> bytes:
        return self.chain.current_cek

    def grant(self, follower_id: str, follower_public_key: bytes) -> Grant:
        grant = self._granter.grant(follower_id, follower_public_key)
        self.grants[follower_id] = grant
        return grant

    def revoke(self, follower_id: str) -> RevocationEvent:
        """Evict ``follower_id``; the caller publishes the rekey event and deletes the grant."""
        event = self._revoker.revoke(follower_id)
        self.grants.pop(follower_id, None)
        return event

    def followers(self) -> Dict[str, int]:
        return self.tree.assignments

    # ------------------------------------------------------------------
    # Posts
    # ------------------------------------------------------------------

    def encrypt_post(self, plaintext, teaser: Optional[str] = None) -> EncryptedPost:
        return self._posts.encrypt(self.current_cek, self.current_epoch, plaintext, teaser=teaser)

    def decrypt_post(self, post: EncryptedPost) -> bytes:
        if post.epoch > self.current_epoch:
            raise KeyNotFoundError(
                f"post epoch {post.epoch} is newer than the feed epoch {self.current_epoch}"
            )
        return self._posts.decrypt(self.chain.cek(post.epoch), post)

    # ------------------------------------------------------------------
    # Sealed snapshot
    # ------------------------------------------------------------------

    def to_dict(self) -> dict:
        return {
            "owner_id": self.owner_id,
            "seed": self._seed.hex(),
            "epoch": self.current_epoch,
            "max_epoch": self.config.max_epoch,
            "tree": self.tree.to_dict(),
            "grants": {
                fid: {"slot": g.slot, "ciphertext": g.ciphertext.hex()}
                for fid, g in sorted(self.grants.items())
            },
        }

    @classmethod
    def from_dict(cls, data: dict, config: Optional[FeedConfig] = None) -> "FeedKeyEngine":
        try:
            seed = bytes.fromhex(data["seed"])
            tree = KeyTree.from_dict(seed, data["tree"])
            config = dataclasses.replace(
                config or FeedConfig(),
                tree_capacity=tree.capacity,
                max_epoch=int(data["max_epoch"]),
            )
            engine = cls(data["owner_id"], seed, config=config,
                         current_epoch=int(data["epoch"]), tree=tree)
            engine.grants = {
                fid: Grant(fid, int(g["slot"]), bytes.fromhex(g["ciphertext"]))
                for fid, g in data.get("grants", {}).items()
            }
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedBundleError(f"invalid engine state: {e}") from e
        return engine

    def export_state(self, passphrase, **kdf_params) -> bytes:
        payload = json.dumps(self.to_dict(), sort_keys=True).encode("utf-8")
        return seal_state(passphrase, payload, **kdf_params)

    @classmethod
    def import_state(cls, blob: bytes, passphrase, config: Optional[FeedConfig] = None) -> "FeedKeyEngine":
        raw = open_state(passphrase, blob)
        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MalformedBundleError("sealed engine state is not valid JSON") from e
        return cls.from_dict(data, config=config)
