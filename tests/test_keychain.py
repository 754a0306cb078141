"""Tests for keychain storage."""

from unittest.mock import patch

from keyring.errors import KeyringError, NoKeyringError, PasswordDeleteError

from allisa_connector.auth.keychain import ALLISA_API_KEY, SERVICE_NAME, KeychainManager


class TestKeychainManager:
    """Tests for KeychainManager."""

    def setup_method(self):
        """Set up test fixtures."""
        self.keychain = KeychainManager()

    @patch("allisa_connector.auth.keychain.keyring")
    def test_store(self, mock_keyring):
        """Test storing a secret."""
        assert self.keychain.store(ALLISA_API_KEY, "secret") is True

        mock_keyring.set_password.assert_called_once_with(SERVICE_NAME, ALLISA_API_KEY, "secret")

    @patch("allisa_connector.auth.keychain.keyring")
    def test_store_failure(self, mock_keyring):
        """Test store reports keychain errors."""
        mock_keyring.set_password.side_effect = KeyringError("locked")

        assert self.keychain.store(ALLISA_API_KEY, "secret") is False

    @patch("allisa_connector.auth.keychain.keyring")
    def test_load(self, mock_keyring):
        """Test loading a secret."""
        mock_keyring.get_password.return_value = "secret"

        assert self.keychain.load(ALLISA_API_KEY) == "secret"

    @patch("allisa_connector.auth.keychain.keyring")
    def test_load_missing(self, mock_keyring):
        """Test absent or empty secrets load as None."""
        mock_keyring.get_password.return_value = ""

        assert self.keychain.load(ALLISA_API_KEY) is None

    @patch("allisa_connector.auth.keychain.keyring")
    def test_load_without_backend(self, mock_keyring):
        """Test a headless host without a keychain backend."""
        mock_keyring.get_password.side_effect = NoKeyringError("no backend")

        assert self.keychain.load(ALLISA_API_KEY) is None

    @patch("allisa_connector.auth.keychain.keyring")
    def test_delete_missing_is_ok(self, mock_keyring):
        """Test deleting a secret that does not exist."""
        mock_keyring.delete_password.side_effect = PasswordDeleteError("not found")

        assert self.keychain.delete(ALLISA_API_KEY) is True

    @patch("allisa_connector.auth.keychain.keyring")
    def test_delete_failure(self, mock_keyring):
        """Test delete reports keychain errors."""
        mock_keyring.delete_password.side_effect = KeyringError("locked")

        assert self.keychain.delete(ALLISA_API_KEY) is False
