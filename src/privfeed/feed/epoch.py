"""
Epoch chain of Content Encryption Keys.

The chain is built from the top down from a single seed:

    CEK[max_epoch] = kdf(seed, "cek-root")
    CEK[e]         = SHA256(CEK[e + 1])

so anyone holding CEK[e] can walk back to every older epoch, while moving to
a newer one would mean inverting SHA-256.
"""

from __future__ import annotations

import logging
from typing import List

from privfeed.core.exceptions import EpochOutOfRangeError
from privfeed.core.hashing import sha256_bytes
from privfeed.security.crypto import kdf


logger = logging.getLogger(__name__)

CEK_ROOT_CONTEXT = "cek-root"


def generate_chain(seed: bytes, max_epoch: int) -> List[bytes]:
    """Return CEK[1..max_epoch] as a list (index 0 holds epoch 1)."""
    if max_epoch < 1:
        raise EpochOutOfRangeError("max_epoch must be >= 1")
    chain = [b""] * max_epoch
    chain[-1] = kdf(seed, CEK_ROOT_CONTEXT)
    for i in range(max_epoch - 2, -1, -1):
        chain[i] = sha256_bytes(chain[i + 1])
    return chain


def derive(known_cek: bytes, known_epoch: int, target_epoch: int) -> bytes:
    """Hash backward from a known CEK to an older (or equal) epoch."""
    if target_epoch < 1:
        raise EpochOutOfRangeError(f"epoch {target_epoch} is below 1")
    if target_epoch > known_epoch:
        raise EpochOutOfRangeError(
            f"cannot derive epoch {target_epoch} from epoch {known_epoch}: forward derivation is impossible"
        )
    cek = known_cek
    for _ in range(known_epoch - target_epoch):
        cek = sha256_bytes(cek)
    return cek


class EpochChain:
    """Owner-side view of the chain with O(1) lookups and the current epoch."""

    def __init__(self, seed: bytes, max_epoch: int, current_epoch: int = 1):
        self.max_epoch = max_epoch
        self._chain = generate_chain(seed, max_epoch)
        if not 1 <= current_epoch <= max_epoch:
            raise EpochOutOfRangeError(f"epoch {current_epoch} outside 1..{max_epoch}")
        self.current_epoch = current_epoch
        logger.debug("precomputed CEK chain with %d epochs", max_epoch)

    @property
    def root_cek(self) -> bytes:
        return self._chain[-1]

    @property
    def current_cek(self) -> bytes:
        return self.cek(self.current_epoch)

    def next_epoch(self) -> int:
        """Return the epoch a revocation would move to, or raise if exhausted."""
        new_epoch = self.current_epoch + 1
        if new_epoch > self.max_epoch:
            raise EpochOutOfRangeError(f"epoch counter exhausted at {self.max_epoch}")
        return new_epoch

    def advance(self) -> int:
        self.current_epoch = self.next_epoch()
        logger.info("advanced to epoch %d", self.current_epoch)
        return self.current_epoch

    def cek(self, epoch: int) -> bytes:
        if epoch < 1 or epoch > self.max_epoch:
            raise EpochOutOfRangeError(f"epoch {epoch} outside 1..{self.max_epoch}")
        return self._chain[epoch - 1]

    def derive(self, target_epoch: int) -> bytes:
        """Derive CEK[target_epoch] from the chain root, as a follower would."""
        return derive(self.root_cek, self.max_epoch, target_epoch)
