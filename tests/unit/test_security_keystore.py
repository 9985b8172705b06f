"""
Unit tests for the keyring-backed FeedSecretStore.
"""

import base64
import pytest
from unittest.mock import MagicMock, patch

from privfeed.security import keystore
from privfeed.security.keystore import FeedSecretStore


# ==============================================================================
# Fixtures
# ==============================================================================

@pytest.fixture
def mock_keyring_lib():
    """Patches the keyring module within privfeed.security.keystore."""
    with patch("privfeed.security.keystore.keyring") as mock_lib:
        backend = MagicMock()
        backend.__class__.__name__ = "KeychainKeyring"
        backend.priority = 5
        mock_lib.get_keyring.return_value = backend
        yield mock_lib


@pytest.fixture
def no_keyring_lib():
    """Simulates keyring not being installed."""
    with patch("privfeed.security.keystore.keyring", None):
        yield


@pytest.fixture
def store():
    return FeedSecretStore("alice")


# ==============================================================================
# Tests: Dependency Availability
# ==============================================================================

def test_store_raises_if_keyring_missing(no_keyring_lib, store):
    with pytest.raises(RuntimeError, match="keyring package is not available"):
        store.save_identity_key(b"\x00" * 32)
    with pytest.raises(RuntimeError, match="keyring package is not available"):
        store.load_identity_key()


def test_assess_backend_returns_false_if_missing(no_keyring_lib):
    is_secure, msg = keystore.assess_keyring_backend()
    assert is_secure is False
    assert "not installed" in msg


# ==============================================================================
# Tests: Save / Load
# ==============================================================================

def test_save_encodes_under_owner_account(mock_keyring_lib, store):
    key = b"\x01\x02\x03" * 10 + b"\x04\x05"
    store.save_identity_key(key)

    service, account, secret = mock_keyring_lib.set_password.call_args[0]
    assert service == "privfeed"
    assert account == "alice:identity-key"
    assert secret == base64.b64encode(key).decode("ascii")


def test_custom_service_name(mock_keyring_lib):
    FeedSecretStore("alice", service="privfeed-test").save_identity_key(b"\x09" * 32)
    assert mock_keyring_lib.set_password.call_args[0][0] == "privfeed-test"


def test_load_decodes(mock_keyring_lib, store):
    key = b"\xaa" * 32
    mock_keyring_lib.get_password.return_value = base64.b64encode(key).decode("ascii")
    assert store.load_identity_key() == key
    mock_keyring_lib.get_password.assert_called_with("privfeed", "alice:identity-key")


def test_load_missing_returns_none(mock_keyring_lib, store):
    mock_keyring_lib.get_password.return_value = None
    assert store.load_identity_key() is None


def test_load_corrupt_returns_none(mock_keyring_lib, store):
    mock_keyring_lib.get_password.return_value = "NotValidBase64!!!"
    assert store.load_identity_key() is None


def test_refuses_insecure_backend(mock_keyring_lib, store):
    backend = MagicMock()
    backend.__class__.__name__ = "PlaintextKeyring"
    mock_keyring_lib.get_keyring.return_value = backend

    with pytest.raises(RuntimeError, match="refusing to store identity-key"):
        store.save_identity_key(b"\x00" * 32)
    mock_keyring_lib.set_password.assert_not_called()


def test_allow_insecure_skips_assessment(mock_keyring_lib):
    backend = MagicMock()
    backend.__class__.__name__ = "PlaintextKeyring"
    mock_keyring_lib.get_keyring.return_value = backend

    FeedSecretStore("bob", allow_insecure=True).save_identity_key(b"\x00" * 32)
    mock_keyring_lib.set_password.assert_called_once()


# ==============================================================================
# Tests: Backend Assessment
# ==============================================================================

def test_assess_backend_handles_exception(mock_keyring_lib):
    mock_keyring_lib.get_keyring.side_effect = Exception("DBus error")
    is_secure, msg = keystore.assess_keyring_backend()
    assert is_secure is False
    assert "failed to get keyring backend" in msg


def test_assess_backend_low_priority(mock_keyring_lib):
    backend = MagicMock()
    backend.__class__.__name__ = "SomeGenericBackend"
    backend.priority = 0
    mock_keyring_lib.get_keyring.return_value = backend
    is_secure, msg = keystore.assess_keyring_backend()
    assert is_secure is False
    assert "no suitable secure keyring backend" in msg


def test_assess_backend_secure(mock_keyring_lib):
    is_secure, msg = keystore.assess_keyring_backend()
    assert is_secure is True
    assert "KeychainKeyring" in msg
