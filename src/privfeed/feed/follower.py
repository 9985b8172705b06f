"""
Follower-side key state.

A FollowerKeyStore starts uninitialized, becomes current after a Grant and
then advances one epoch at a time by replaying published rekey events:

    uninitialized --apply_grant--> current(e)
    current(e) --observe_epoch(e' > e)--> stale(e)
    current(e) / stale(e) --apply_rekey_event(e+1)--> current(e+1)
    current(e) / stale(e) --apply_rekey_event, root unreachable--> locked(e)

Locked is terminal for rekey events: the store still derives every CEK up to
the epoch it was revoked at, so history stays readable.
"""

from __future__ import annotations

import json
import logging
from enum import Enum
from typing import Dict, Iterable, Optional

from privfeed.config import FeedConfig
from privfeed.core.exceptions import (
    KeyNotFoundError,
    MalformedBundleError,
    StaleEpochError,
)
from privfeed.core.hashing import sha256_bytes
from privfeed.core.models import EncryptedPost, GrantBundle, NodeId, NodeKey, RekeyEvent
from privfeed.security.cache import TTLCache
from privfeed.security.sealed import open_state, seal_state
from . import epoch as epoch_chain
from .post import decrypt_post
from .revocation import unwrap_cek, unwrap_node_key


logger = logging.getLogger(__name__)

ROOT = NodeId(0, 0)


class FollowerState(Enum):
    UNINITIALIZED = "uninitialized"
    CURRENT = "current"
    STALE = "stale"
    LOCKED = "locked"


class FollowerKeyStore:
    def __init__(self, config: Optional[FeedConfig] = None, cache: Optional[TTLCache] = None):
        self.config = config or FeedConfig()
        self.state = FollowerState.UNINITIALIZED
        self.slot: Optional[int] = None
        self.epoch = 0
        self.latest_seen_epoch = 0
        self._cek: Optional[bytes] = None
        self._keys: Dict[NodeId, NodeKey] = {}
        self._cek_cache: TTLCache = cache if cache is not None else TTLCache(
            ttl_seconds=self.config.cek_cache_ttl,
            max_entries=self.config.cek_cache_size,
        )

    @property
    def known_keys(self) -> Dict[NodeId, int]:
        """Node id -> version for every key this follower holds."""
        return {node: nk.version for node, nk in self._keys.items()}

    def _on_epoch_advance(self, reason: str) -> None:
        dropped = len(self._cek_cache)
        self._cek_cache.clear()
        logger.debug("CEK cache cleared (%s, %d entries)", reason, dropped)

    def _refresh_state(self) -> None:
        if self.state is FollowerState.LOCKED:
            return
        if self.latest_seen_epoch > self.epoch:
            self.state = FollowerState.STALE
        else:
            self.state = FollowerState.CURRENT

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def apply_grant(self, bundle: GrantBundle) -> FollowerState:
        """
        Install the keys of a Grant bundle.

        A grant may replace existing state (re-grant after revocation) as long
        as it is not older than what the store already knows.
        """
        if self.state is not FollowerState.UNINITIALIZED and bundle.epoch < self.epoch:
            raise StaleEpochError(
                f"grant for epoch {bundle.epoch} is older than known epoch {self.epoch}"
            )
        keys = {nk.node: nk for nk in bundle.path_keys}
        if ROOT not in keys:
            raise MalformedBundleError("grant bundle does not contain the root key")

        self._keys = keys
        self._cek = bundle.cek
        self.slot = bundle.slot
        self.epoch = bundle.epoch
        self.state = FollowerState.CURRENT
        self._refresh_state()
        self._on_epoch_advance("grant applied")
        logger.info("grant applied: slot %d, epoch %d", bundle.slot, bundle.epoch)
        return self.state

    def apply_rekey_event(self, event: RekeyEvent) -> FollowerState:
        if self.state is FollowerState.UNINITIALIZED:
            raise KeyNotFoundError("no grant applied yet")
        if self.state is FollowerState.LOCKED:
            logger.debug("ignoring rekey event %d: store is locked", event.new_epoch)
            return self.state
        if event.new_epoch != self.epoch + 1:
            raise StaleEpochError(
                f"expected rekey event for epoch {self.epoch + 1}, got {event.new_epoch}"
            )

        learned: Dict[NodeId, NodeKey] = {}
        for packet in event.packets:
            if packet.target in learned:
                continue
            holder = learned.get(packet.encrypting) or self._keys.get(packet.encrypting)
            if holder is None or holder.version != packet.encrypting_version:
                continue
            learned[packet.target] = unwrap_node_key(packet, holder.key, event.new_epoch)

        root = learned.get(ROOT) or self._keys.get(ROOT)
        if root is None or root.version != event.root_version:
            self.state = FollowerState.LOCKED
            self.latest_seen_epoch = max(self.latest_seen_epoch, event.new_epoch)
            logger.info("locked out at epoch %d (revoked)", self.epoch)
            return self.state

        new_cek = unwrap_cek(event.encrypted_cek, root.key, root.version, event.new_epoch)
        if sha256_bytes(new_cek) != self._cek:
            raise MalformedBundleError(
                f"CEK for epoch {event.new_epoch} does not chain to epoch {self.epoch}"
            )

        self._keys.update(learned)
        self._cek = new_cek
        self.epoch = event.new_epoch
        self._refresh_state()
        self._on_epoch_advance(f"epoch {event.new_epoch}")
        logger.info("advanced to epoch %d (%d node keys updated)", self.epoch, len(learned))
        return self.state

    def catch_up(self, events: Iterable[RekeyEvent]) -> FollowerState:
        """Apply every event newer than the current epoch, in epoch order."""
        for event in sorted(events, key=lambda e: e.new_epoch):
            if event.new_epoch <= self.epoch:
                continue
            if self.apply_rekey_event(event) is FollowerState.LOCKED:
                break
        return self.state

    def observe_epoch(self, epoch: int) -> FollowerState:
        """Record that content from ``epoch`` exists; the store goes stale if behind."""
        if epoch > self.latest_seen_epoch:
            self.latest_seen_epoch = epoch
        if self.state is not FollowerState.UNINITIALIZED:
            self._refresh_state()
        return self.state

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    def get_cek(self, epoch: int) -> bytes:
        if self._cek is None:
            raise KeyNotFoundError("no grant applied yet")
        if epoch > self.epoch:
            raise KeyNotFoundError(
                f"epoch {epoch} is newer than known epoch {self.epoch}; catch up first"
            )
        cached = self._cek_cache.get(epoch)
        if cached is not None:
            return cached
        cek = epoch_chain.derive(self._cek, self.epoch, epoch)
        self._cek_cache.put(epoch, cek)
        return cek

    def decrypt_post(self, author_id: str, post: EncryptedPost) -> bytes:
        self.observe_epoch(post.epoch)
        return decrypt_post(self.get_cek(post.epoch), author_id, post)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "slot": self.slot,
            "epoch": self.epoch,
            "latest_seen_epoch": self.latest_seen_epoch,
            "cek": self._cek.hex() if self._cek is not None else None,
            "keys": [
                {"level": n.level, "index": n.index, "version": nk.version, "key": nk.key.hex()}
                for n, nk in sorted(self._keys.items())
            ],
        }

    @classmethod
    def from_dict(cls, data: dict, config: Optional[FeedConfig] = None) -> "FollowerKeyStore":
        store = cls(config=config)
        try:
            store.state = FollowerState(data["state"])
            store.slot = data["slot"]
            store.epoch = int(data["epoch"])
            store.latest_seen_epoch = int(data.get("latest_seen_epoch", store.epoch))
            store._cek = bytes.fromhex(data["cek"]) if data["cek"] is not None else None
            for entry in data["keys"]:
                node = NodeId(int(entry["level"]), int(entry["index"]))
                store._keys[node] = NodeKey(node, int(entry["version"]), bytes.fromhex(entry["key"]))
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedBundleError(f"invalid follower state: {e}") from e
        return store

    def export_state(self, passphrase, **kdf_params) -> bytes:
        payload = json.dumps(self.to_dict(), sort_keys=True).encode("utf-8")
        return seal_state(passphrase, payload, **kdf_params)

    @classmethod
    def import_state(cls, blob: bytes, passphrase, config: Optional[FeedConfig] = None) -> "FollowerKeyStore":
        raw = open_state(passphrase, blob)
        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MalformedBundleError("sealed follower state is not valid JSON") from e
        return cls.from_dict(data, config=config)
