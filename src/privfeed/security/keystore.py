"""OS keystore integration for identity private keys.

`FeedSecretStore` keeps an identity private key in the platform keyring
(base64-encoded) under one service name, account `<owner>:identity-key`.
Storage is opt-in; hex key files remain the default.
"""
import base64
import binascii
import logging
from typing import Optional

try:
    import keyring
except Exception:
    keyring = None


logger = logging.getLogger(__name__)

DEFAULT_SERVICE = "privfeed"

IDENTITY_KEY = "identity-key"


def _require_keyring():
    if keyring is None:
        raise RuntimeError("keyring package is not available; install keyring to use keystore features")


def assess_keyring_backend() -> tuple[bool, str]:
    """Return (is_secure, message) describing the current keyring backend."""
    if keyring is None:
        return False, "keyring package is not installed"

    try:
        backend = keyring.get_keyring()
    except Exception as e:
        return False, f"failed to get keyring backend: {e}"

    name = backend.__class__.__name__
    priority = getattr(backend, "priority", None)

    if any(tok in name for tok in ("Plaintext", "Uncrypted", "Null", "Fail")):
        return False, f"insecure backend detected: {name}"

    if priority is not None and priority <= 0:
        return False, f"no suitable secure keyring backend available (priority={priority}, backend={name})"

    return True, f"backend {name} (priority={priority})"


class FeedSecretStore:
    def __init__(self, owner_id: str, service: str = DEFAULT_SERVICE, allow_insecure: bool = False):
        self.owner_id = owner_id
        self.service = service
        self.allow_insecure = allow_insecure

    def _account(self, kind: str) -> str:
        return f"{self.owner_id}:{kind}"

    def _save(self, kind: str, secret: bytes) -> None:
        _require_keyring()
        if not self.allow_insecure:
            secure, msg = assess_keyring_backend()
            if not secure:
                raise RuntimeError(f"refusing to store {kind} in OS keystore: {msg}")
        keyring.set_password(self.service, self._account(kind), base64.b64encode(secret).decode("ascii"))
        logger.info("stored %s for owner %s in OS keystore", kind, self.owner_id)

    def _load(self, kind: str) -> Optional[bytes]:
        _require_keyring()
        stored = keyring.get_password(self.service, self._account(kind))
        if stored is None:
            return None
        try:
            return base64.b64decode(stored, validate=True)
        except (binascii.Error, ValueError):
            logger.warning("ignoring undecodable %s entry for owner %s", kind, self.owner_id)
            return None

    def save_identity_key(self, private_key: bytes) -> None:
        self._save(IDENTITY_KEY, private_key)

    def load_identity_key(self) -> Optional[bytes]:
        return self._load(IDENTITY_KEY)
