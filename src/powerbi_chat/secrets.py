"""
API key storage in the system keychain
"""
import logging
from typing import Dict, Optional

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from powerbi_chat.events import ChatProvider

logger = logging.getLogger(__name__)

SERVICE_NAME = "powerbi-mcp"


class KeyringSecretStore:
    """
    Chat provider API keys, one keyring entry per provider

    Keys are read on every request and never cached in memory.
    """

    def __init__(self, service_name: str = SERVICE_NAME):
        self._service = service_name

    @staticmethod
    def _key(provider) -> str:
        return f"{ChatProvider.parse(provider).value}-api-key"

    def get(self, provider) -> Optional[str]:
        """Return the stored key, or None if not set"""
        try:
            return keyring.get_password(self._service, self._key(provider))
        except KeyringError as e:
            logger.warning(f"Keyring read failed for {provider}: {e}")
            return None

    def set(self, provider, key: str):
        if not key:
            raise ValueError("API key must not be empty")
        try:
            keyring.set_password(self._service, self._key(provider), key)
        except KeyringError as e:
            raise RuntimeError(f"Could not store API key in the system keychain: {e}") from e
        logger.info(f"Stored API key for {ChatProvider.parse(provider).value}")

    def delete(self, provider):
        try:
            keyring.delete_password(self._service, self._key(provider))
            logger.info(f"Deleted API key for {ChatProvider.parse(provider).value}")
        except PasswordDeleteError:
            logger.debug(f"No API key stored for {provider}")

    def has(self, provider) -> bool:
        return self.get(provider) is not None

    def status(self) -> Dict[str, bool]:
        """Which providers have a key stored"""
        return {provider.value: self.has(provider) for provider in ChatProvider}
