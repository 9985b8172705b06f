"""
Revocation: evict one follower with O(log capacity) rekey packets.

For an evicted leaf L with root-path p1 (parent of L) ... pd (root) and
siblings s0 (sibling of L) ... s(d-1), every path node is bumped bottom-up and
its new key is wrapped:

- under the new key of its on-path child p(i-1)', when that child's subtree
  still has members (never for p1, whose on-path child is L itself), then
- under the current key of its off-path child s(i-1), when that subtree has
  members.

Empty subtrees get no packet. Every key used for wrapping is either fresh or
the current version of a node off the evicted path, so the evicted follower
can open none of the packets. The new epoch's CEK is sealed under the new root
key, and a snapshot of all bumped keys is sealed for the owner's own devices.
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from typing import List, Optional

from privfeed.core.models import KeySnapshot, NodeId, NodeKey, RekeyEvent, RekeyPacket
from privfeed.security.crypto import kdf, seal, unseal
from .epoch import EpochChain
from .tree import KeyTree


logger = logging.getLogger(__name__)

PATH_CONTEXT = "path"
CEK_CONTEXT = "cek"
SNAPSHOT_CONTEXT = "owner-snapshot"


def _packet_aad(packet_target: NodeId, target_version: int, encrypting: NodeId,
                encrypting_version: int, epoch: int) -> bytes:
    return struct.pack(
        ">BIIBIII",
        packet_target.level, packet_target.index, target_version,
        encrypting.level, encrypting.index, encrypting_version,
        epoch,
    )


def wrap_node_key(new: NodeKey, encrypting: NodeKey, epoch: int) -> RekeyPacket:
    aad = _packet_aad(new.node, new.version, encrypting.node, encrypting.version, epoch)
    ciphertext = seal(kdf(encrypting.key, PATH_CONTEXT), new.key, aad=aad)
    return RekeyPacket(new.node, new.version, encrypting.node, encrypting.version, ciphertext)


def unwrap_node_key(packet: RekeyPacket, encrypting_key: bytes, epoch: int) -> NodeKey:
    """Open a rekey packet; raises DecryptionFailure on a wrong key or tampering."""
    aad = _packet_aad(packet.target, packet.target_version, packet.encrypting,
                      packet.encrypting_version, epoch)
    key = unseal(kdf(encrypting_key, PATH_CONTEXT), packet.ciphertext, aad=aad)
    return NodeKey(packet.target, packet.target_version, key)


def _cek_aad(epoch: int, root_version: int) -> bytes:
    return struct.pack(">II", epoch, root_version)


def wrap_cek(cek: bytes, root_key: bytes, root_version: int, epoch: int) -> bytes:
    return seal(kdf(root_key, CEK_CONTEXT), cek, aad=_cek_aad(epoch, root_version))


def unwrap_cek(blob: bytes, root_key: bytes, root_version: int, epoch: int) -> bytes:
    return unseal(kdf(root_key, CEK_CONTEXT), blob, aad=_cek_aad(epoch, root_version))


def seal_snapshot(snapshot: KeySnapshot, snapshot_key: bytes) -> bytes:
    return seal(snapshot_key, snapshot.to_bytes(), aad=struct.pack(">I", snapshot.epoch))


def open_snapshot(blob: bytes, snapshot_key: bytes, epoch: int) -> KeySnapshot:
    snapshot = KeySnapshot.from_bytes(unseal(snapshot_key, blob, aad=struct.pack(">I", epoch)))
    return snapshot


def snapshot_key_from_seed(seed: bytes) -> bytes:
    return kdf(seed, SNAPSHOT_CONTEXT)


@dataclass(frozen=True)
class RevocationEvent:
    follower_id: str
    slot: int
    rekey: RekeyEvent

    @property
    def packet_count(self) -> int:
        # node-key packets plus the sealed CEK
        return len(self.rekey.packets) + 1


class RevocationEngine:
    def __init__(self, tree: KeyTree, chain: EpochChain, snapshot_key: Optional[bytes] = None):
        self.tree = tree
        self.chain = chain
        self.snapshot_key = snapshot_key

    def revoke(self, follower_id: str) -> RevocationEvent:
        tree = self.tree
        slot = tree.lookup_slot(follower_id)
        new_epoch = self.chain.next_epoch()

        path = tree.path_to_root(slot)
        siblings = tree.sibling_path(slot)

        packets: List[RekeyPacket] = []
        bumped: List[NodeKey] = []
        child = tree.leaf(slot)
        child_new: Optional[NodeKey] = None

        for node, sibling in zip(path, siblings):
            tree.bump_version(node)
            new = tree.node_key(node)
            if child_new is not None and tree.has_members(child, excluding=slot):
                packets.append(wrap_node_key(new, child_new, new_epoch))
            if tree.has_members(sibling, excluding=slot):
                packets.append(wrap_node_key(new, tree.node_key(sibling), new_epoch))
            bumped.append(new)
            child, child_new = node, new

        root = bumped[-1]
        encrypted_cek = wrap_cek(self.chain.derive(new_epoch), root.key, root.version, new_epoch)

        tree.release_leaf(follower_id)
        bumped.insert(0, tree.node_key(tree.leaf(slot)))

        owner_snapshot = b""
        if self.snapshot_key is not None:
            owner_snapshot = seal_snapshot(KeySnapshot(new_epoch, bumped), self.snapshot_key)

        self.chain.advance()
        event = RekeyEvent(
            new_epoch=new_epoch,
            packets=packets,
            root_version=root.version,
            encrypted_cek=encrypted_cek,
            owner_snapshot=owner_snapshot,
        )
        logger.info(
            "revoked follower %s (slot %d): epoch %d, %d rekey packets",
            follower_id, slot, new_epoch, len(packets),
        )
        return RevocationEvent(follower_id=follower_id, slot=slot, rekey=event)
