""" Utility for hashing operations. """

import hashlib


def sha256_bytes(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def sha256_hex(data: bytes) -> str:
    # Short fingerprints for log lines; never log the key itself.
    return hashlib.sha256(data).hexdigest()


def key_fingerprint(key: bytes) -> str:
    return sha256_hex(b"privfeed-fingerprint" + key)[:12]
