"""privfeed: key management for private feeds on a public, append-only ledger.

Content is always public ciphertext. Access is controlled by who can compute
the decryption key: a binary Logical Key Hierarchy (LKH) over follower leaf
slots, plus a SHA-256 hash chain of per-epoch Content Encryption Keys.
"""

from privfeed.feed.engine import FeedKeyEngine
from privfeed.feed.follower import FollowerKeyStore, FollowerState
from privfeed.feed.post import PostCipher

__version__ = "0.1.0"
__all__ = [
    "FeedKeyEngine",
    "FollowerKeyStore",
    "FollowerState",
    "PostCipher",
]
