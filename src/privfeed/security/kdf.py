import os
from typing import Union

from argon2.low_level import Type, hash_secret_raw


DEFAULT_TIME_COST = 3
DEFAULT_MEMORY_COST = 65536
DEFAULT_PARALLELISM = 1

# upper bounds accepted from a sealed-state header (memory in KiB)
MAX_TIME_COST = 64
MAX_MEMORY_COST = 1 << 22
MAX_PARALLELISM = 16
MIN_SALT_LEN = 8


def generate_salt(length: int = 16) -> bytes:
    """Return a cryptographically secure random salt."""
    return os.urandom(length)


def check_params(salt: bytes, time_cost: int, memory_cost: int, parallelism: int) -> None:
    """Raise ValueError for Argon2id parameters outside the accepted range."""
    if len(salt) < MIN_SALT_LEN:
        raise ValueError(f"salt must be at least {MIN_SALT_LEN} bytes")
    if not 1 <= time_cost <= MAX_TIME_COST:
        raise ValueError(f"time_cost {time_cost} outside 1..{MAX_TIME_COST}")
    if not 1 <= parallelism <= MAX_PARALLELISM:
        raise ValueError(f"parallelism {parallelism} outside 1..{MAX_PARALLELISM}")
    if not 8 * parallelism <= memory_cost <= MAX_MEMORY_COST:
        raise ValueError(f"memory_cost {memory_cost} KiB outside {8 * parallelism}..{MAX_MEMORY_COST}")


def derive_passphrase_key(
    passphrase: Union[bytes, str],
    salt: bytes,
    time_cost: int = DEFAULT_TIME_COST,
    memory_cost: int = DEFAULT_MEMORY_COST,
    parallelism: int = DEFAULT_PARALLELISM,
    key_len: int = 32,
) -> bytes:
    """
    Derive a state-sealing key from a passphrase using Argon2id.
    Only local state at rest is protected this way; nothing published to the
    ledger depends on a passphrase.
    """
    check_params(salt, time_cost, memory_cost, parallelism)
    if isinstance(passphrase, str):
        passphrase = passphrase.encode("utf-8")

    return hash_secret_raw(
        secret=passphrase,
        salt=salt,
        time_cost=time_cost,
        memory_cost=memory_cost,
        parallelism=parallelism,
        hash_len=key_len,
        type=Type.ID,
    )
