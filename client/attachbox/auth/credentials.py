"""Keyring-backed storage of the API token."""

import logging
import os
from typing import Optional

import keyring
import keyring.errors

log = logging.getLogger(__name__)

KEY_API_TOKEN = "api_token"


def _keyring_service_name() -> str:
    """Use a separate keyring namespace when ATTACHBOX_CONFIG_DIR is set (tests, scripts)."""
    if os.environ.get("ATTACHBOX_CONFIG_DIR", "").strip():
        return "AttachBox-Isolated"
    return "AttachBox"


class CredentialsStore:
    """
    Stores the bearer token in the OS keyring (Windows Credential Manager,
    macOS Keychain, Linux Secret Service). ATTACHBOX_API_TOKEN overrides it.
    """

    def get_token(self) -> Optional[str]:
        """Token from the environment or keyring, or None. Keyring read errors count as no token."""
        env = os.environ.get("ATTACHBOX_API_TOKEN", "").strip()
        if env:
            return env
        try:
            return keyring.get_password(_keyring_service_name(), KEY_API_TOKEN)
        except keyring.errors.KeyringError as e:
            log.warning("Could not read stored token: %s", e)
            return None

    def set_token(self, token: str) -> None:
        keyring.set_password(_keyring_service_name(), KEY_API_TOKEN, token)
        log.debug("Stored API token in keyring")

    def clear_token(self) -> None:
        try:
            keyring.delete_password(_keyring_service_name(), KEY_API_TOKEN)
        except keyring.errors.PasswordDeleteError:
            pass
