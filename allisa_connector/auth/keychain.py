"""API key storage using the system keychain.

Used as a fallback when API keys are not supplied through the environment
or the config file (e.g. a connector installed on an office workstation).
"""

import logging
from typing import Optional

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

__all__ = ["KeychainManager", "WISETIME_API_KEY", "ALLISA_API_KEY"]

logger = logging.getLogger(__name__)

SERVICE_NAME = "WiseTime Allisa Connector"

# Keychain account names
WISETIME_API_KEY = "wisetime_api_key"
ALLISA_API_KEY = "allisa_api_key"


class KeychainManager:
    """Manages API keys in the OS keychain."""

    def __init__(self, service_name: str = SERVICE_NAME):
        """Initialize keychain manager.

        Args:
            service_name: Service name for keychain entries
        """
        self.service_name = service_name

    def store(self, account: str, secret: str) -> bool:
        """Store a secret.

        Returns:
            True if stored successfully
        """
        try:
            keyring.set_password(self.service_name, account, secret)
            logger.info(f"Stored {account} in keychain")
            return True
        except KeyringError as e:
            logger.error(f"Failed to store {account}: {e}")
            return False

    def load(self, account: str) -> Optional[str]:
        """Load a secret, or None if absent or the keychain is unavailable."""
        try:
            return keyring.get_password(self.service_name, account) or None
        except KeyringError as e:
            logger.debug(f"Keychain unavailable for {account}: {e}")
            return None

    def delete(self, account: str) -> bool:
        """Delete a secret.

        Returns:
            True if deleted (or didn't exist)
        """
        try:
            keyring.delete_password(self.service_name, account)
            logger.info(f"Deleted {account} from keychain")
            return True
        except PasswordDeleteError:
            return True
        except KeyringError as e:
            logger.error(f"Failed to delete {account}: {e}")
            return False
