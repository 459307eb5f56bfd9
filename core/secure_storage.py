"""
Secure credential management using the keyring library.
Credentials are serialized only here, on their way into the OS vault.
"""

import json
import logging
from typing import Optional

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from .models import Credential
from .utils import parse_timestamp

logger = logging.getLogger(__name__)

# Use a single, consistent service name for the application
KEYRING_SERVICE_NAME = "AniSync"


class SecureStorage:
    """A wrapper for the keyring library."""

    def __init__(self, service_name: str = KEYRING_SERVICE_NAME):
        self.service_name = service_name

    def set_credential(self, key: str, password: str):
        """
        Saves a secret to the OS secure vault.

        Args:
            key: The unique identifier (e.g., "kitsu_credential")
            password: The secret to store.
        """
        try:
            keyring.set_password(self.service_name, key, password)
            logger.info(f"Securely stored credential for: {key}")
        except KeyringError as e:
            logger.error(f"Failed to store credential for {key}: {e}", exc_info=True)

    def get_credential(self, key: str) -> str | None:
        """
        Retrieves a secret from the OS secure vault.

        Args:
            key: The unique identifier (e.g., "kitsu_credential")
        Returns:
            The stored secret or None if not found.
        """
        try:
            password = keyring.get_password(self.service_name, key)
            if password:
                logger.debug(f"Retrieved credential for: {key}")
            return password
        except KeyringError as e:
            logger.error(f"Failed to retrieve credential for {key}: {e}", exc_info=True)
            return None

    def delete_credential(self, key: str):
        """
        Deletes a secret from the OS secure vault.

        Args:
            key: The unique identifier (e.g., "kitsu_credential")
        """
        try:
            keyring.delete_password(self.service_name, key)
            logger.info(f"Deleted credential for: {key}")
        except PasswordDeleteError:
            logger.warning(f"No credential found to delete for: {key}")
        except KeyringError as e:
            logger.error(f"Failed to delete credential for {key}: {e}", exc_info=True)

    # --- Service Credentials ---

    @staticmethod
    def _key(service: str) -> str:
        return service if service.endswith("_credential") else f"{service}_credential"

    def save_credential(self, service: str, credential: Credential):
        """Stores a service credential as JSON under '<service>_credential'."""
        document = {
            "access_token": credential.access_token,
            "expires_at": credential.expires_at.isoformat() if credential.expires_at else None,
            "refresh_token": credential.refresh_token,
            "metadata": credential.metadata,
        }
        self.set_credential(self._key(service), json.dumps(document))

    def forget_credential(self, service: str):
        """Removes the stored credential of a service."""
        self.delete_credential(self._key(service))

    def load_credential(self, service: str) -> Optional[Credential]:
        raw = self.get_credential(self._key(service))
        if not raw:
            return None
        try:
            document = json.loads(raw)
            return Credential(
                access_token=document["access_token"],
                expires_at=parse_timestamp(document.get("expires_at")),
                refresh_token=document.get("refresh_token"),
                metadata=document.get("metadata") or {},
            )
        except (ValueError, KeyError, TypeError) as e:
            logger.error(f"Stored credential for {service} is unreadable, ignoring it: {e}")
            return None
