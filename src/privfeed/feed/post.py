"""Per-post encryption.

Each post gets its own key, ``kdf(cek, "post" || nonce || author_id)``, and
is sealed with XChaCha20-Poly1305 using the same random 24-byte nonce. The
epoch is bound in as associated data, so a ciphertext moved to another epoch
or author fails authentication.
"""

from __future__ import annotations

import struct
from typing import Optional, Union

from privfeed.core.models import EncryptedPost
from privfeed.security.crypto import aead_decrypt, aead_encrypt, kdf, random_nonce


POST_CONTEXT = b"post"


def derive_post_key(cek: bytes, nonce: bytes, author_id: str) -> bytes:
    return kdf(cek, POST_CONTEXT + nonce + author_id.encode("utf-8"))


def _epoch_aad(epoch: int) -> bytes:
    return struct.pack(">I", epoch)


def encrypt_post(
    cek: bytes,
    author_id: str,
    plaintext: Union[bytes, str],
    epoch: int,
    teaser: Optional[str] = None,
) -> EncryptedPost:
    if isinstance(plaintext, str):
        plaintext = plaintext.encode("utf-8")
    nonce = random_nonce()
    post_key = derive_post_key(cek, nonce, author_id)
    ciphertext = aead_encrypt(post_key, nonce, plaintext, aad=_epoch_aad(epoch))
    return EncryptedPost(ciphertext=ciphertext, nonce=nonce, epoch=epoch, teaser=teaser)


def decrypt_post(cek: bytes, author_id: str, post: EncryptedPost) -> bytes:
    """Raises DecryptionFailure when ``cek`` is not the key of ``post.epoch``."""
    post_key = derive_post_key(cek, post.nonce, author_id)
    return aead_decrypt(post_key, post.nonce, post.ciphertext, aad=_epoch_aad(post.epoch))


class PostCipher:
    """Encrypts and decrypts the private posts of one author."""

    def __init__(self, author_id: str):
        self.author_id = author_id

    def encrypt(self, cek: bytes, epoch: int, plaintext: Union[bytes, str],
                teaser: Optional[str] = None) -> EncryptedPost:
        return encrypt_post(cek, self.author_id, plaintext, epoch, teaser=teaser)

    def decrypt(self, cek: bytes, post: EncryptedPost) -> bytes:
        return decrypt_post(cek, self.author_id, post)
