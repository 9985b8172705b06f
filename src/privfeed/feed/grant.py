"""Grant protocol: onboard a follower by sealing its path keys and the current CEK to its public key."""

from __future__ import annotations

import logging

from privfeed.core.exceptions import MalformedBundleError
from privfeed.core.hashing import key_fingerprint
from privfeed.core.models import Grant, GrantBundle
from privfeed.security.crypto import check_public_key, hybrid_decrypt, hybrid_encrypt
from .epoch import EpochChain
from .tree import KeyTree


logger = logging.getLogger(__name__)


class GrantBuilder:
    def __init__(self, tree: KeyTree, chain: EpochChain):
        self.tree = tree
        self.chain = chain

    def grant(self, follower_id: str, follower_public_key: bytes) -> Grant:
        """
        Assign a leaf to ``follower_id`` and return its Grant record.

        The bundle holds the leaf key and every ancestor key at its current
        version, plus the current CEK and epoch. CapacityExceededError from
        the tree propagates unchanged; the follower is not onboarded.
        """
        check_public_key(follower_public_key)
        slot = self.tree.assign_leaf(follower_id)
        epoch = self.chain.current_epoch
        bundle = GrantBundle(
            slot=slot,
            epoch=epoch,
            cek=self.chain.derive(epoch),
            path_keys=self.tree.path_keys(slot),
        )
        ciphertext = hybrid_encrypt(follower_public_key, bundle.to_bytes())
        logger.info(
            "granted follower %s (key %s) slot %d at epoch %d",
            follower_id, key_fingerprint(follower_public_key), slot, epoch,
        )
        return Grant(follower_id=follower_id, slot=slot, ciphertext=ciphertext)


def open_grant(grant: Grant, private_key: bytes) -> GrantBundle:
    """Follower side: decrypt and parse a Grant addressed to ``private_key``."""
    bundle = GrantBundle.from_bytes(hybrid_decrypt(private_key, grant.ciphertext))
    if bundle.slot != grant.slot:
        raise MalformedBundleError(
            f"grant slot {grant.slot} does not match sealed bundle slot {bundle.slot}"
        )
    return bundle
