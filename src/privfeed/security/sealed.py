"""Passphrase-sealed blobs for keeping owner / follower key state at rest.

Header layout (binary, all big-endian):
- 4 bytes: magic b'PFS1'
- 1 byte: version (1)
- 1 byte: alg_id (1 = AESGCM)
- 1 byte: len_salt (S)
- S bytes: Argon2id salt
- 4 bytes: time_cost
- 4 bytes: memory_cost (KiB)
- 1 byte: parallelism
- 12 bytes: nonce

Body: AES-256-GCM ciphertext of the payload. The whole header is passed as
associated data, so tampering with the KDF parameters fails authentication
just like tampering with the body.
"""
import logging
import os
import struct

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from privfeed.core.exceptions import DecryptionFailure, MalformedBundleError
from .kdf import (
    DEFAULT_MEMORY_COST,
    DEFAULT_PARALLELISM,
    DEFAULT_TIME_COST,
    check_params,
    derive_passphrase_key,
    generate_salt,
)


logger = logging.getLogger(__name__)

MAGIC = b"PFS1"
VERSION = 1
ALG_ID_AESGCM = 1
GCM_NONCE_SIZE = 12

_FIXED = struct.Struct(">4sBBB")
_PARAMS = struct.Struct(">IIB")


def seal_state(
    passphrase,
    payload: bytes,
    time_cost: int = DEFAULT_TIME_COST,
    memory_cost: int = DEFAULT_MEMORY_COST,
    parallelism: int = DEFAULT_PARALLELISM,
) -> bytes:
    salt = generate_salt()
    nonce = os.urandom(GCM_NONCE_SIZE)

    header = bytearray()
    header += _FIXED.pack(MAGIC, VERSION, ALG_ID_AESGCM, len(salt))
    header += salt
    header += _PARAMS.pack(time_cost, memory_cost, parallelism)
    header += nonce

    key = derive_passphrase_key(
        passphrase,
        salt,
        time_cost=time_cost,
        memory_cost=memory_cost,
        parallelism=parallelism,
    )
    ct = AESGCM(key).encrypt(nonce, payload, bytes(header))
    return bytes(header) + ct


def open_state(passphrase, blob: bytes) -> bytes:
    if len(blob) < _FIXED.size:
        raise MalformedBundleError("sealed state truncated")
    magic, ver, alg, salt_len = _FIXED.unpack_from(blob, 0)
    if magic != MAGIC:
        raise MalformedBundleError("Invalid sealed state (magic mismatch)")
    if ver != VERSION:
        raise MalformedBundleError("Unsupported sealed state version")
    if alg != ALG_ID_AESGCM:
        raise MalformedBundleError("Unsupported algorithm")

    pos = _FIXED.size
    header_len = pos + salt_len + _PARAMS.size + GCM_NONCE_SIZE
    if len(blob) < header_len:
        raise MalformedBundleError("sealed state header truncated")
    salt = blob[pos:pos + salt_len]
    pos += salt_len
    time_cost, memory_cost, parallelism = _PARAMS.unpack_from(blob, pos)
    pos += _PARAMS.size
    nonce = blob[pos:pos + GCM_NONCE_SIZE]

    try:
        check_params(salt, time_cost, memory_cost, parallelism)
    except ValueError as e:
        raise MalformedBundleError(f"sealed state has unusable KDF parameters: {e}") from e
    key = derive_passphrase_key(
        passphrase,
        salt,
        time_cost=time_cost,
        memory_cost=memory_cost,
        parallelism=parallelism,
    )
    try:
        return AESGCM(key).decrypt(nonce, blob[header_len:], blob[:header_len])
    except InvalidTag as e:
        logger.debug("sealed state failed authentication")
        raise DecryptionFailure("wrong passphrase or corrupted sealed state") from e
