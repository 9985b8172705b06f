"""
Key tree (Logical Key Hierarchy)

Structure for reference:
==============================
 level 0                 root (0:0)
 level 1          (1:0)            (1:1)
 ...
 level depth   (d:0) (d:1) ...           (d:capacity-1)   <- leaf slots
==============================

> Nodes are identified by (level, index); the parent of (l, i) is (l-1, i>>1)
> and its sibling is (l, i^1). Leaf slot s is node (depth, s).
> Every node carries a version counter starting at 1. Version 1 keys are
> derived from the feed seed; every later version is fresh randomness and
> is kept so older versions stay retrievable, but it is never issued again
> once superseded.
> A follower holds the keys of its leaf and of every ancestor up to the root.
"""

from __future__ import annotations

import heapq
import logging
from typing import Dict, Iterable, List, Optional, Tuple

from privfeed.core.exceptions import CapacityExceededError, UnknownFollowerError
from privfeed.core.models import NodeId, NodeKey
from privfeed.security.crypto import kdf, random_key


logger = logging.getLogger(__name__)


def node_seed_context(node: NodeId) -> str:
    return f"node:{node.level}:{node.index}"


class KeyTree:
    """Fixed-capacity binary tree of versioned node keys plus slot assignment."""

    def __init__(self, seed: bytes, capacity: int = 1024):
        if capacity < 2 or capacity & (capacity - 1):
            raise ValueError("capacity must be a power of two >= 2")
        self.capacity = capacity
        self.depth = capacity.bit_length() - 1
        self._seed = seed
        self._versions: Dict[NodeId, int] = {}
        self._keys: Dict[Tuple[NodeId, int], bytes] = {}
        self._slot_owner: Dict[int, str] = {}
        self._follower_slot: Dict[str, int] = {}
        self._members: Dict[NodeId, int] = {}
        self._free: List[int] = list(range(capacity))

    # ------------------------------------------------------------------
    # Node helpers
    # ------------------------------------------------------------------

    def leaf(self, slot: int) -> NodeId:
        if not 0 <= slot < self.capacity:
            raise ValueError(f"slot {slot} outside 0..{self.capacity - 1}")
        return NodeId(self.depth, slot)

    def _check_node(self, node: NodeId) -> None:
        if not 0 <= node.level <= self.depth or not 0 <= node.index < (1 << node.level):
            raise ValueError(f"node {node} is not in the tree")

    def version(self, node: NodeId) -> int:
        self._check_node(node)
        return self._versions.get(node, 1)

    def key(self, node: NodeId, version: Optional[int] = None) -> bytes:
        """Return the node key at ``version`` (default: current)."""
        current = self.version(node)
        if version is None:
            version = current
        if not 1 <= version <= current:
            raise KeyError(f"node {node} has no version {version}")
        if version == 1 and (node, 1) not in self._keys:
            self._keys[(node, 1)] = kdf(self._seed, node_seed_context(node))
        return self._keys[(node, version)]

    def node_key(self, node: NodeId) -> NodeKey:
        return NodeKey(node, self.version(node), self.key(node))

    def bump_version(self, node: NodeId) -> bytes:
        """Issue a fresh random key for ``node`` and advance its version."""
        new_version = self.version(node) + 1
        new_key = random_key()
        self._keys[(node, new_version)] = new_key
        self._versions[node] = new_version
        logger.debug("node %s advanced to version %d", node, new_version)
        return new_key

    def install(self, node_key: NodeKey) -> None:
        """Record a known key version (owner recovery); the current version only moves forward."""
        self._check_node(node_key.node)
        self._keys[(node_key.node, node_key.version)] = node_key.key
        if node_key.version > self.version(node_key.node):
            self._versions[node_key.node] = node_key.version

    def path_to_root(self, slot: int) -> List[NodeId]:
        """Ancestors of the slot's leaf, from its parent up to the root (inclusive)."""
        node = self.leaf(slot)
        path = []
        while not node.is_root:
            node = node.parent()
            path.append(node)
        return path

    def sibling_path(self, slot: int) -> List[NodeId]:
        """Sibling of the leaf and of every path node below the root, bottom-up."""
        node = self.leaf(slot)
        siblings = []
        while not node.is_root:
            siblings.append(node.sibling())
            node = node.parent()
        return siblings

    def path_keys(self, slot: int) -> List[NodeKey]:
        """Current keys for the leaf and its whole root-path, leaf first."""
        return [self.node_key(n) for n in [self.leaf(slot)] + self.path_to_root(slot)]

    def has_members(self, node: NodeId, excluding: Optional[int] = None) -> bool:
        """True if any assigned slot other than ``excluding`` lies under ``node``."""
        self._check_node(node)
        count = self._members.get(node, 0)
        if (
            excluding is not None
            and excluding in self._slot_owner
            and excluding >> (self.depth - node.level) == node.index
        ):
            count -= 1
        return count > 0

    def _count_member(self, slot: int, delta: int) -> None:
        node = self.leaf(slot)
        while True:
            self._members[node] = self._members.get(node, 0) + delta
            if node.is_root:
                break
            node = node.parent()

    # ------------------------------------------------------------------
    # Slot assignment
    # ------------------------------------------------------------------

    def assign_leaf(self, follower_id: str) -> int:
        """Assign the lowest free slot to ``follower_id`` and return it."""
        if follower_id in self._follower_slot:
            slot = self._follower_slot[follower_id]
            logger.debug("follower %s already holds slot %d", follower_id, slot)
            return slot
        if not self._free:
            raise CapacityExceededError(f"all {self.capacity} leaf slots are assigned")
        slot = heapq.heappop(self._free)
        self._slot_owner[slot] = follower_id
        self._follower_slot[follower_id] = slot
        self._count_member(slot, 1)
        logger.info("assigned slot %d to follower %s", slot, follower_id)
        return slot

    def release_leaf(self, follower_id: str) -> int:
        """
        Free the follower's slot and burn its leaf key.

        The leaf is bumped to a fresh version so that the next holder of the
        slot never shares a key with the previous one.
        """
        slot = self.lookup_slot(follower_id)
        del self._follower_slot[follower_id]
        del self._slot_owner[slot]
        self._count_member(slot, -1)
        self.bump_version(self.leaf(slot))
        heapq.heappush(self._free, slot)
        logger.info("released slot %d held by follower %s", slot, follower_id)
        return slot

    def lookup_slot(self, follower_id: str) -> int:
        try:
            return self._follower_slot[follower_id]
        except KeyError:
            raise UnknownFollowerError(f"follower {follower_id!r} holds no leaf slot") from None

    def follower_at(self, slot: int) -> Optional[str]:
        return self._slot_owner.get(slot)

    @property
    def assignments(self) -> Dict[str, int]:
        return dict(self._follower_slot)

    @property
    def free_slots(self) -> int:
        return len(self._free)

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    def to_dict(self) -> dict:
        """Serializable snapshot of versions, non-derivable keys and assignments."""
        return {
            "capacity": self.capacity,
            "nodes": [
                {"level": n.level, "index": n.index, "version": v}
                for n, v in sorted(self._versions.items())
            ],
            "keys": [
                {"level": n.level, "index": n.index, "version": v, "key": k.hex()}
                for (n, v), k in sorted(self._keys.items())
                if v > 1
            ],
            "assignments": {fid: slot for fid, slot in sorted(self._follower_slot.items())},
        }

    @classmethod
    def from_dict(cls, seed: bytes, data: dict) -> "KeyTree":
        tree = cls(seed, capacity=int(data["capacity"]))
        for entry in data.get("nodes", []):
            tree._versions[NodeId(entry["level"], entry["index"])] = int(entry["version"])
        for entry in data.get("keys", []):
            node = NodeId(entry["level"], entry["index"])
            tree._keys[(node, int(entry["version"]))] = bytes.fromhex(entry["key"])
        tree.restore_assignments(data.get("assignments", {}).items())
        return tree

    def restore_assignments(self, assignments: Iterable[Tuple[str, int]]) -> None:
        """Mark the given (follower, slot) pairs as assigned."""
        for follower_id, slot in assignments:
            self.leaf(slot)
            if slot in self._slot_owner and self._slot_owner[slot] != follower_id:
                raise ValueError(f"slot {slot} assigned twice")
            self._slot_owner[slot] = follower_id
            self._follower_slot[follower_id] = slot
        self._members = {}
        for slot in self._slot_owner:
            self._count_member(slot, 1)
        taken = set(self._slot_owner)
        self._free = [s for s in range(self.capacity) if s not in taken]
        heapq.heapify(self._free)
