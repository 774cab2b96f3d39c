"""Generation and custody of the run's transient secrets.

Secrets handed out here reach external engines only through a child's
stdin. They are never placed on a command line, in a child's environment,
or in a log line.
"""

from __future__ import annotations

import base64
import logging
import secrets

from .config import PASSPHRASE_VAR, ProvisionConfig
from .types import SecureString

logger = logging.getLogger("yubikey-provision.secrets")

DEFAULT_PASSPHRASE_BYTES = 24


def new_passphrase(byte_length: int = DEFAULT_PASSPHRASE_BYTES) -> SecureString:
    """Create a random passphrase.

    The byte length must be a multiple of 3 so the base64 rendering uses
    every character for entropy and carries no ``=`` padding.
    """
    if byte_length <= 0 or byte_length % 3 != 0:
        raise ValueError(f"byte_length must be a positive multiple of 3, got {byte_length}")

    return SecureString(base64.b64encode(secrets.token_bytes(byte_length)).decode("ascii"))


def current_passphrase(config: ProvisionConfig) -> SecureString | None:
    """Return the passphrase bound for this run, or None with a warning."""
    if config.passphrase is None:
        logger.warning(
            "No passphrase configured (%s is unset); the key will be unprotected",
            PASSPHRASE_VAR,
        )
        return None

    if len(config.passphrase) == 0:
        logger.warning("Configured passphrase is empty; the key will be unprotected")

    return config.passphrase


class SecretHandler:
    """Owns every secret value issued during one run."""

    def __init__(self, config: ProvisionConfig) -> None:
        self._config = config
        self._issued: list[SecureString] = []

    def _track(self, secret: SecureString) -> SecureString:
        self._issued.append(secret)
        return secret

    def passphrase(self) -> SecureString:
        """The key passphrase; an unset binding yields the empty passphrase."""
        secret = current_passphrase(self._config)
        return self._track(secret if secret is not None else SecureString(""))

    def admin_pin(self) -> SecureString:
        return self._track(self._config.admin_pin)

    def clear(self) -> None:
        for secret in self._issued:
            secret.clear()
        self._issued.clear()
