"""Secure secret storage using the system keychain.

Uses the `keyring` library which maps to:
  macOS: Keychain Access
  Windows: Windows Credential Manager
  Linux: Secret Service API

Webhook secrets are keyed by webhook URL, so two agents sharing an endpoint
share its secret. All entries live under one service name.
"""

import logging
from typing import Protocol

import keyring
import keyring.errors

logger = logging.getLogger(__name__)

SERVICE_NAME = "com.hookchat.app"

WEBHOOK_SECRET_PREFIX = "webhook_secret:"


def webhook_secret_key(webhook_url: str) -> str:
    """Keychain key under which the secret for a webhook URL is stored."""
    return f"{WEBHOOK_SECRET_PREFIX}{webhook_url}"


class SecretProvider(Protocol):
    """Capability interface for secret lookup.

    The dispatcher depends only on this protocol; tests substitute a dict.
    """

    def load_secret(self, key: str) -> str | None: ...

    def save_secret(self, key: str, value: str) -> None: ...

    def delete_secret(self, key: str) -> None: ...


class KeyringSecretStore:
    """Thin wrapper around keyring implementing SecretProvider."""

    def __init__(self, service_name: str = SERVICE_NAME) -> None:
        self._service = service_name

    def load_secret(self, key: str) -> str | None:
        """Retrieve a secret. Returns None if unset or the backend fails."""
        try:
            return keyring.get_password(self._service, key)
        except Exception:
            logger.warning("Keyring read failed for %s", key, exc_info=True)
            return None

    def save_secret(self, key: str, value: str) -> None:
        """Store a secret."""
        keyring.set_password(self._service, key, value)
        logger.info("Stored secret: %s", key)

    def delete_secret(self, key: str) -> None:
        """Remove a secret. Missing entries are ignored."""
        try:
            keyring.delete_password(self._service, key)
            logger.info("Deleted secret: %s", key)
        except keyring.errors.PasswordDeleteError:
            logger.debug("Secret %s not found for deletion", key)

    def has_secret(self, key: str) -> bool:
        return self.load_secret(key) is not None


class InMemorySecretStore:
    """SecretProvider backed by a dict, for headless runs without a keychain."""

    def __init__(self, secrets: dict[str, str] | None = None) -> None:
        self._secrets = dict(secrets or {})

    def load_secret(self, key: str) -> str | None:
        return self._secrets.get(key)

    def save_secret(self, key: str, value: str) -> None:
        self._secrets[key] = value

    def delete_secret(self, key: str) -> None:
        self._secrets.pop(key, None)
