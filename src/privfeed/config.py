"""Runtime configuration for the feed key engine and follower stores."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional


DEFAULT_TREE_CAPACITY = 1024
DEFAULT_MAX_EPOCH = 2000


@dataclass(frozen=True)
class FeedConfig:
    tree_capacity: int = DEFAULT_TREE_CAPACITY
    max_epoch: int = DEFAULT_MAX_EPOCH
    cek_cache_ttl: float = 300.0
    cek_cache_size: int = 256

    def __post_init__(self):
        cap = self.tree_capacity
        if cap < 2 or cap & (cap - 1):
            raise ValueError(f"tree_capacity must be a power of two >= 2, got {cap}")
        if self.max_epoch < 1:
            raise ValueError("max_epoch must be >= 1")
        if self.cek_cache_size < 1:
            raise ValueError("cek_cache_size must be >= 1")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "FeedConfig":
        """
        Build a config from ``PRIVFEED_*`` environment variables.

        Unset variables fall back to the defaults; malformed values raise
        ValueError rather than being ignored.
        """
        env = os.environ if environ is None else environ
        kwargs = {}
        if "PRIVFEED_TREE_CAPACITY" in env:
            kwargs["tree_capacity"] = int(env["PRIVFEED_TREE_CAPACITY"])
        if "PRIVFEED_MAX_EPOCH" in env:
            kwargs["max_epoch"] = int(env["PRIVFEED_MAX_EPOCH"])
        if "PRIVFEED_CEK_CACHE_TTL" in env:
            kwargs["cek_cache_ttl"] = float(env["PRIVFEED_CEK_CACHE_TTL"])
        if "PRIVFEED_CEK_CACHE_SIZE" in env:
            kwargs["cek_cache_size"] = int(env["PRIVFEED_CEK_CACHE_SIZE"])
        return cls(**kwargs)
