from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .agent import AgentChannel
from .errors import InvalidTransitionError
from .gpg_ops import GPGOperations
from .types import VALID_TRANSITIONS, ProvisioningState, Result, SecureString, TokenHandle

logger = logging.getLogger("yubikey-provision.protocol")


@dataclass
class CompletedStep:
    state: ProvisioningState
    completed_at: datetime
    artifacts: dict[str, Any] = field(default_factory=dict)


class SecretProvisioningProtocol:
    """Cache the card and key secrets in the agent, then copy the key to the card.

    Each step may only run from the state the previous one left behind. A
    failed step leaves the machine in its ``*_REQUESTED`` or in-flight state,
    from which nothing can proceed; a new run needs a new instance.
    """

    def __init__(
        self,
        handle: TokenHandle,
        key_id: str,
        agent: AgentChannel,
        gpg: GPGOperations,
    ) -> None:
        self._handle = handle
        self._key_id = key_id
        self._agent = agent
        self._gpg = gpg
        self._state = ProvisioningState.IDLE
        self._history: list[CompletedStep] = []
        self._error_log: list[dict[str, Any]] = []

    @property
    def current_state(self) -> ProvisioningState:
        return self._state

    @property
    def history(self) -> list[CompletedStep]:
        return list(self._history)

    @property
    def error_log(self) -> list[dict[str, Any]]:
        return list(self._error_log)

    def can_transition(self, to_state: ProvisioningState) -> bool:
        return to_state in VALID_TRANSITIONS.get(self._state, [])

    def transition(
        self, to_state: ProvisioningState, artifacts: dict[str, Any] | None = None
    ) -> Result[None]:
        if not self.can_transition(to_state):
            return Result.err(
                InvalidTransitionError(
                    f"Invalid transition from {self._state.value} to {to_state.value}"
                )
            )

        self._history.append(
            CompletedStep(
                state=to_state,
                completed_at=datetime.now(UTC),
                artifacts=artifacts or {},
            )
        )
        self._state = to_state
        logger.info("Provisioning %s: %s", self._handle.serial, to_state.value)
        return Result.ok(None)

    def log_error(self, error: Exception, context: str = "") -> None:
        self._error_log.append(
            {
                "timestamp": datetime.now(UTC).isoformat(),
                "error": str(error),
                "error_type": type(error).__name__,
                "context": context,
                "state": self._state.value,
            }
        )

    def _fail(self, error: Exception, context: str) -> Result[None]:
        self.log_error(error, context)
        return Result.err(error)

    def preset_pin(self, admin_pin: SecureString) -> Result[None]:
        """Cache the Admin PIN for this card and have the card verify it."""
        started = self.transition(ProvisioningState.PIN_PRESET_REQUESTED)
        if started.is_err():
            return started

        aid = self._agent.query_card_serial(self._handle)
        if aid.is_err():
            return self._fail(aid.unwrap_err(), "SCD SERIALNO")

        preset = self._agent.preset_admin_pin(aid.unwrap(), admin_pin)
        if preset.is_err():
            return self._fail(preset.unwrap_err(), "PRESET_PASSPHRASE")

        return self.transition(ProvisioningState.PIN_PRESET_CONFIRMED, {"aid": aid.unwrap()})

    def preset_passphrase(self, passphrase: SecureString) -> Result[None]:
        """Cache the key passphrase under every keygrip of the key."""
        started = self.transition(ProvisioningState.PASSPHRASE_PRESET_REQUESTED)
        if started.is_err():
            return started

        if len(passphrase) == 0:
            # An unprotected key has nothing to cache
            return self.transition(ProvisioningState.PASSPHRASE_PRESET_CONFIRMED, {"keygrips": 0})

        grips = self._gpg.list_keygrips(self._key_id)
        if grips.is_err():
            return self._fail(grips.unwrap_err(), "list keygrips")

        for grip in grips.unwrap():
            preset = self._agent.preset_passphrase(grip, passphrase)
            if preset.is_err():
                return self._fail(preset.unwrap_err(), f"preset {grip}")

        return self.transition(
            ProvisioningState.PASSPHRASE_PRESET_CONFIRMED,
            {"keygrips": len(grips.unwrap())},
        )

    def transfer(self) -> Result[None]:
        """Copy primary and encryption subkey to the card, leaving the keystore as it was."""
        started = self.transition(ProvisioningState.KEY_MOVE_IN_FLIGHT)
        if started.is_err():
            return started

        moved = self._gpg.transfer_to_card(self._key_id)
        if moved.is_err():
            return self._fail(moved.unwrap_err(), "keytocard")

        committed = self.transition(ProvisioningState.KEY_MOVE_NOT_COMMITTED)
        if committed.is_err():
            return committed

        return self.transition(ProvisioningState.DONE)

    def run(self, admin_pin: SecureString, passphrase: SecureString) -> Result[None]:
        return (
            self.preset_pin(admin_pin)
            .and_then(lambda _: self.preset_passphrase(passphrase))
            .and_then(lambda _: self.transfer())
        )
