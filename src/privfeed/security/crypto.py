"""Cryptographic primitives: AEAD, HKDF and a secp256k1 ECIES-style hybrid scheme.

Symmetric ciphertext layout: the caller supplies the 24-byte nonce, and
aead_encrypt returns ``ciphertext || tag``.

Hybrid ciphertext layout (all concatenated, no length prefixes):
- 33 bytes: ephemeral public key (compressed SEC1 point on secp256k1)
- 24 bytes: nonce
- rest: XChaCha20-Poly1305 ciphertext + 16-byte tag

All functions are pure. Decryption failures surface as DecryptionFailure and
never return unauthenticated bytes.
"""
import os
from typing import Optional, Tuple, Union

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from nacl import bindings
from nacl.exceptions import CryptoError

from privfeed.core.exceptions import DecryptionFailure


KEY_SIZE = bindings.crypto_aead_xchacha20poly1305_ietf_KEYBYTES
NONCE_SIZE = bindings.crypto_aead_xchacha20poly1305_ietf_NPUBBYTES
TAG_SIZE = bindings.crypto_aead_xchacha20poly1305_ietf_ABYTES
PUBLIC_KEY_SIZE = 33
PRIVATE_KEY_SIZE = 32

_CURVE = ec.SECP256K1()


def random_key() -> bytes:
    return os.urandom(KEY_SIZE)


def random_nonce() -> bytes:
    return os.urandom(NONCE_SIZE)


def _check_key(key: bytes) -> None:
    if len(key) != KEY_SIZE:
        raise ValueError(f"key must be {KEY_SIZE} bytes")


def aead_encrypt(key: bytes, nonce: bytes, plaintext: bytes, aad: Optional[bytes] = None) -> bytes:
    _check_key(key)
    if len(nonce) != NONCE_SIZE:
        raise ValueError(f"nonce must be {NONCE_SIZE} bytes")
    return bindings.crypto_aead_xchacha20poly1305_ietf_encrypt(plaintext, aad, nonce, key)


def aead_decrypt(key: bytes, nonce: bytes, ciphertext: bytes, aad: Optional[bytes] = None) -> bytes:
    _check_key(key)
    if len(nonce) != NONCE_SIZE:
        raise ValueError(f"nonce must be {NONCE_SIZE} bytes")
    if len(ciphertext) < TAG_SIZE:
        raise DecryptionFailure("ciphertext shorter than authentication tag")
    try:
        return bindings.crypto_aead_xchacha20poly1305_ietf_decrypt(ciphertext, aad, nonce, key)
    except CryptoError as e:
        raise DecryptionFailure("authentication tag mismatch") from e


def seal(key: bytes, plaintext: bytes, aad: Optional[bytes] = None) -> bytes:
    """Encrypt under a fresh random nonce and return ``nonce || ciphertext``."""
    nonce = random_nonce()
    return nonce + aead_encrypt(key, nonce, plaintext, aad)


def unseal(key: bytes, blob: bytes, aad: Optional[bytes] = None) -> bytes:
    """Inverse of :func:`seal`."""
    if len(blob) < NONCE_SIZE + TAG_SIZE:
        raise DecryptionFailure("sealed blob too short")
    return aead_decrypt(key, blob[:NONCE_SIZE], blob[NONCE_SIZE:], aad)


def kdf(ikm: bytes, context: Union[str, bytes], length: int = 32) -> bytes:
    """HKDF-SHA256 with the context as the HKDF ``info`` for domain separation."""
    info = context.encode("utf-8") if isinstance(context, str) else bytes(context)
    hkdf = HKDF(algorithm=hashes.SHA256(), length=length, salt=None, info=info)
    return hkdf.derive(ikm)


# ----------------------------------------------------------------------
# Hybrid public-key encryption (Grant delivery)
# ----------------------------------------------------------------------


def _load_private(private_key: bytes) -> ec.EllipticCurvePrivateKey:
    if len(private_key) != PRIVATE_KEY_SIZE:
        raise ValueError(f"private key must be {PRIVATE_KEY_SIZE} bytes")
    return ec.derive_private_key(int.from_bytes(private_key, "big"), _CURVE)


def _load_public(public_key: bytes) -> ec.EllipticCurvePublicKey:
    return ec.EllipticCurvePublicKey.from_encoded_point(_CURVE, public_key)


def _encode_public(key: ec.EllipticCurvePublicKey) -> bytes:
    return key.public_bytes(serialization.Encoding.X962, serialization.PublicFormat.CompressedPoint)


def generate_keypair() -> Tuple[bytes, bytes]:
    """Return ``(private_key, public_key)`` as raw 32-byte scalar and compressed point."""
    priv = ec.generate_private_key(_CURVE)
    raw = priv.private_numbers().private_value.to_bytes(PRIVATE_KEY_SIZE, "big")
    return raw, _encode_public(priv.public_key())


def check_public_key(public_key: bytes) -> None:
    """Raise ValueError unless ``public_key`` is a valid compressed secp256k1 point."""
    if len(public_key) != PUBLIC_KEY_SIZE:
        raise ValueError(f"public key must be {PUBLIC_KEY_SIZE} bytes")
    _load_public(public_key)


def public_key_from_private(private_key: bytes) -> bytes:
    return _encode_public(_load_private(private_key).public_key())


def _hybrid_key(shared: bytes, ephemeral_pub: bytes, recipient_pub: bytes) -> bytes:
    return kdf(shared, b"ecies" + ephemeral_pub + recipient_pub)


def hybrid_encrypt(public_key: bytes, plaintext: bytes) -> bytes:
    recipient = _load_public(public_key)
    recipient_pub = _encode_public(recipient)
    ephemeral = ec.generate_private_key(_CURVE)
    ephemeral_pub = _encode_public(ephemeral.public_key())
    shared = ephemeral.exchange(ec.ECDH(), recipient)
    key = _hybrid_key(shared, ephemeral_pub, recipient_pub)
    return ephemeral_pub + seal(key, plaintext, aad=ephemeral_pub)


def hybrid_decrypt(private_key: bytes, ciphertext: bytes) -> bytes:
    if len(ciphertext) < PUBLIC_KEY_SIZE + NONCE_SIZE + TAG_SIZE:
        raise DecryptionFailure("hybrid ciphertext too short")
    ephemeral_pub = ciphertext[:PUBLIC_KEY_SIZE]
    priv = _load_private(private_key)
    try:
        ephemeral = _load_public(ephemeral_pub)
    except ValueError as e:
        raise DecryptionFailure("invalid ephemeral public key") from e
    shared = priv.exchange(ec.ECDH(), ephemeral)
    key = _hybrid_key(shared, ephemeral_pub, _encode_public(priv.public_key()))
    return unseal(key, ciphertext[PUBLIC_KEY_SIZE:], aad=ephemeral_pub)
