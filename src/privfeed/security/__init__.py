"""Security helpers for privfeed.

- XChaCha20-Poly1305 AEAD, HKDF-SHA256 and secp256k1 hybrid encryption
- Argon2id passphrase sealing for key state kept at rest
- TTL cache for derived key material
- optional OS keyring storage of owner secrets
"""

from .crypto import (
    aead_encrypt,
    aead_decrypt,
    kdf,
    generate_keypair,
    public_key_from_private,
    hybrid_encrypt,
    hybrid_decrypt,
)
from .cache import TTLCache
from .sealed import seal_state, open_state
from .keystore import FeedSecretStore

__all__ = [
    "aead_encrypt",
    "aead_decrypt",
    "kdf",
    "generate_keypair",
    "public_key_from_private",
    "hybrid_encrypt",
    "hybrid_decrypt",
    "TTLCache",
    "seal_state",
    "open_state",
    "FeedSecretStore",
]
