"""Sequencing of the operator-facing operations.

Each operation front-loads its checks: everything that can be verified
without touching the token is verified before discovery, and discovery
happens before anything on the token is mutated.
"""

from __future__ import annotations

from collections.abc import Callable
from contextlib import AbstractContextManager
from datetime import UTC, datetime
from typing import TypeVar

from . import preflight
from .agent import AgentChannel, agent_session
from .card_edit import CardEditor
from .config import ProvisionConfig
from .errors import (
    EngineProtocolError,
    ErrorLogger,
    InterruptHandler,
    ProvisionError,
    RecoveryHint,
    VerificationFailure,
    wrap_exception,
)
from .gpg_ops import GPGOperations
from .prompts import Prompts
from .protocol import SecretProvisioningProtocol
from .secret_handler import SecretHandler
from .types import (
    CardStatus,
    Identity,
    KeyPair,
    KeyType,
    KeyUsage,
    PinKind,
    Result,
    SecureString,
    TokenHandle,
)
from .yubikey_ops import YubiKeyOperations

T = TypeVar("T")

AgentFactory = Callable[[ProvisionConfig], AbstractContextManager[AgentChannel]]
PROVISION_STEPS = 6


class Orchestrator:
    def __init__(
        self,
        config: ProvisionConfig,
        gpg: GPGOperations | None = None,
        yubikey: YubiKeyOperations | None = None,
        prompts: Prompts | None = None,
        agent_factory: AgentFactory = agent_session,
        card_editor: CardEditor | None = None,
        error_logger: ErrorLogger | None = None,
    ) -> None:
        self._config = config
        self._gpg = gpg or GPGOperations(config)
        self._yubikey = yubikey or YubiKeyOperations(config)
        self._prompts = prompts or Prompts()
        self._agent_factory = agent_factory
        self._card_editor = card_editor or CardEditor(config)
        self._error_logger = error_logger
        self._secrets = SecretHandler(config)

    @property
    def error_logger(self) -> ErrorLogger:
        if self._error_logger is None:
            self._error_logger = ErrorLogger(self._config.log_path)
        return self._error_logger

    def close(self) -> None:
        self._secrets.clear()
        if self._error_logger is not None:
            self._error_logger.close()

    def _fail(self, error: Exception) -> Result[T]:
        wrapped = wrap_exception(error)
        self.error_logger.log_error(wrapped)
        return Result.err(wrapped)

    def _passphrase(self) -> SecureString:
        passphrase = self._secrets.passphrase()
        self.error_logger.register_secret(passphrase)
        return passphrase

    def _admin_pin(self) -> SecureString:
        admin_pin = self._secrets.admin_pin()
        self.error_logger.register_secret(admin_pin)
        return admin_pin

    def generate_key(
        self,
        identity: Identity,
        key_type: KeyType = KeyType.ED25519,
    ) -> Result[KeyPair]:
        """Create the primary key and its encryption subkey, then publish the public key."""
        checked = preflight.check(self._config, card_operation=False)
        if checked.is_err():
            return self._fail(checked.unwrap_err())

        passphrase = self._passphrase()

        self._prompts.show_step(1, 4, f"Generating {key_type.value} primary key")
        primary = self._gpg.create_primary_key(identity, passphrase, key_type)
        if primary.is_err():
            return self._fail(primary.unwrap_err())
        fingerprint = primary.unwrap()

        self._prompts.show_step(2, 4, "Adding encryption subkey")
        subkey = self._gpg.create_subkey(fingerprint, passphrase, key_type, KeyUsage.ENCRYPT)
        if subkey.is_err():
            return self._fail(subkey.unwrap_err())

        self._prompts.show_step(3, 4, "Checking the stored identity")
        described = self._gpg.describe_key(fingerprint)
        if described.is_err():
            return self._fail(described.unwrap_err())
        if described.unwrap() != identity:
            return self._fail(
                EngineProtocolError(
                    f"Key {fingerprint} carries '{described.unwrap().user_id}', "
                    f"expected '{identity.user_id}'",
                    operation="list-keys",
                )
            )

        self._prompts.show_step(4, 4, "Writing public key")
        artifact = self._gpg.write_public_key(fingerprint, self._config.output_dir)
        if artifact.is_err():
            return self._fail(artifact.unwrap_err())

        key_pair = KeyPair(
            primary_key_id=fingerprint,
            subkey_id=subkey.unwrap(),
            algorithm=key_type,
            created_at=datetime.now(UTC),
        )
        self._prompts.show_key_info(key_pair, identity, str(artifact.unwrap()))
        return Result.ok(key_pair)

    def provision_card(
        self,
        key_id: str,
        serial: str,
        force: bool = False,
    ) -> Result[CardStatus]:
        """Reset the token and copy the key onto it.

        The agent is started only for the card phase and stopped on every
        exit path, so no cached PIN or passphrase outlives the run.
        """
        checked = preflight.check(self._config, card_operation=True)
        if checked.is_err():
            return self._fail(checked.unwrap_err())
        preflight.ensure_terminal_binding(self._config)

        passphrase = self._passphrase()
        admin_pin = self._admin_pin()

        described = self._gpg.describe_key(key_id)
        if described.is_err():
            return self._fail(described.unwrap_err())
        identity = described.unwrap()

        if not self._config.artifact_path(key_id).exists():
            artifact = self._gpg.write_public_key(key_id, self._config.output_dir)
            if artifact.is_err():
                return self._fail(artifact.unwrap_err())

        found = self._yubikey.find_token(serial)
        if found.is_err():
            return self._fail(found.unwrap_err())
        handle = found.unwrap()

        try:
            with InterruptHandler() as interrupts, self._agent_factory(self._config) as agent:
                interrupts.register_cleanup(self._secrets.clear)
                result = self._provision(
                    handle, key_id, identity, agent, passphrase, admin_pin, force
                )
        except ProvisionError as e:
            return self._fail(e)

        if result.is_err():
            return self._fail(result.unwrap_err())
        return result

    def _provision(
        self,
        handle: TokenHandle,
        key_id: str,
        identity: Identity,
        agent: AgentChannel,
        passphrase: SecureString,
        admin_pin: SecureString,
        force: bool,
    ) -> Result[CardStatus]:
        prompts = self._prompts

        prompts.show_step(1, PROVISION_STEPS, f"Resetting OpenPGP applet on {handle.serial}")
        reset = self._yubikey.reset_openpgp(
            handle,
            force=force,
            confirm=lambda: prompts.confirm_destructive(handle.serial, "reset the OpenPGP applet"),
        )
        if reset.is_err():
            return Result.err(reset.unwrap_err())

        prompts.show_step(2, PROVISION_STEPS, "Switching transport to CCID only")
        mode = self._yubikey.set_transport_mode(handle)
        if mode.is_err():
            return Result.err(mode.unwrap_err())

        prompts.show_step(3, PROVISION_STEPS, "Writing cardholder data")
        metadata = self._card_editor.set_cardholder(identity, admin_pin)
        if metadata.is_err():
            return Result.err(metadata.unwrap_err())

        prompts.show_step(4, PROVISION_STEPS, "Copying keys to the card")
        protocol = SecretProvisioningProtocol(handle, key_id, agent, self._gpg)
        moved = protocol.run(admin_pin, passphrase)
        if moved.is_err():
            return Result.err(moved.unwrap_err())

        prompts.show_step(5, PROVISION_STEPS, "Fixing touch policies")
        released = agent.release_card()
        if released.is_err():
            return Result.err(released.unwrap_err())
        touch = self._yubikey.configure_touch_policies(handle, admin_pin)
        if touch.is_err():
            return Result.err(touch.unwrap_err())

        prompts.show_step(6, PROVISION_STEPS, "Checking card status")
        status = self._yubikey.get_card_status(handle)
        if status.is_err():
            return Result.err(status.unwrap_err())

        card = status.unwrap()
        if not card.signature_key or not card.encryption_key:
            return Result.err(
                VerificationFailure(
                    f"Token {handle.serial} does not report both signature and encryption keys",
                    hints=[RecoveryHint("Inspect the card", command="gpg --card-status")],
                )
            )

        prompts.show_card_status(card)
        return Result.ok(card)

    def _change(self, kind: PinKind) -> Result[None]:
        checked = preflight.check(self._config, card_operation=True)
        if checked.is_err():
            return self._fail(checked.unwrap_err())
        preflight.ensure_terminal_binding(self._config)

        found = self._yubikey.discover()
        if found.is_err():
            return self._fail(found.unwrap_err())

        self._prompts.show_pin_dialog_notice(kind.value)
        changed = self._card_editor.change_pin(kind)
        if changed.is_err():
            return self._fail(changed.unwrap_err())

        self._prompts.show_success(
            f"{kind.value.capitalize()} PIN changed on token {found.unwrap().serial}"
        )
        return Result.ok(None)

    def change_pin(self) -> Result[None]:
        return self._change(PinKind.USER)

    def change_admin_pin(self) -> Result[None]:
        return self._change(PinKind.ADMIN)
