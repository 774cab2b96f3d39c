"""Side channel to the GnuPG caching agent.

Card PINs and key passphrases are cached in the agent before the key
transfer so the edit session never has to ask for them. Scripts are fed to
``gpg-connect-agent`` on stdin; replies are read line by line.
"""

from __future__ import annotations

import logging
import subprocess
from collections.abc import Generator
from contextlib import contextmanager

from .config import ProvisionConfig
from .errors import EngineProtocolError, PassphrasePresetFailed, PinPresetFailed, TokenNotFound
from .preflight import resolve_preset_helper
from .types import Result, SecureString, TokenHandle

logger = logging.getLogger("yubikey-provision.agent")

# PRESET_PASSPHRASE and SCD CHECKPIN each acknowledge once
EXPECTED_PIN_PRESET_ACKS = 2

# Offset of the 8 BCD serial digits inside an OpenPGP card AID
AID_SERIAL_SLICE = slice(20, 28)


def count_acknowledgements(output: str) -> int:
    """Count ``OK`` reply lines in gpg-connect-agent output.

    Status (``S``), data (``D``) and ``ERR`` lines are not acknowledgements.
    """
    count = 0
    for line in output.split("\n"):
        line = line.strip()
        if line == "OK" or line.startswith("OK "):
            count += 1
    return count


def parse_serialno(output: str) -> str | None:
    """Extract the AID from an ``S SERIALNO <aid>`` status line."""
    for line in output.split("\n"):
        parts = line.strip().split()
        if len(parts) >= 3 and parts[0] == "S" and parts[1] == "SERIALNO":
            return parts[2]
    return None


def aid_matches_serial(aid: str, serial: str) -> bool:
    return aid[AID_SERIAL_SLICE] == serial.zfill(8)


class AgentChannel:
    def __init__(self, config: ProvisionConfig) -> None:
        self._config = config
        self._env = dict(config.engine_env)
        if config.gnupghome:
            self._env["GNUPGHOME"] = str(config.gnupghome)

    def _run(self, cmd: list[str], input_text: str | None = None) -> subprocess.CompletedProcess[str]:
        env = dict(self._env)
        if "GPG_TTY" in self._config.engine_env:
            env["GPG_TTY"] = self._config.engine_env["GPG_TTY"]
        return subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            env=env,
            input=input_text,
        )

    def send_script(self, commands: list[str]) -> subprocess.CompletedProcess[str]:
        """Send a multi-command script to the agent in one connection."""
        script = "\n".join(commands + ["/bye"]) + "\n"
        return self._run(["gpg-connect-agent"], input_text=script)

    def launch(self) -> Result[None]:
        result = self._run(["gpgconf", "--launch", "gpg-agent"])
        if result.returncode != 0:
            return Result.err(
                EngineProtocolError(
                    "Could not launch gpg-agent",
                    operation="gpgconf --launch",
                    engine_output=result.stderr,
                )
            )
        logger.info("gpg-agent launched")
        return Result.ok(None)

    def kill(self) -> Result[None]:
        result = self._run(["gpgconf", "--kill", "gpg-agent"])
        if result.returncode != 0:
            return Result.err(
                EngineProtocolError(
                    "Could not stop gpg-agent",
                    operation="gpgconf --kill",
                    engine_output=result.stderr,
                )
            )
        logger.info("gpg-agent stopped")
        return Result.ok(None)

    def release_card(self) -> Result[None]:
        """Stop scdaemon so it no longer holds the card's PC/SC connection."""
        result = self._run(["gpgconf", "--kill", "scdaemon"])
        if result.returncode != 0:
            return Result.err(
                EngineProtocolError(
                    "Could not stop scdaemon",
                    operation="gpgconf --kill",
                    engine_output=result.stderr,
                )
            )
        logger.info("scdaemon stopped")
        return Result.ok(None)

    def query_card_serial(self, handle: TokenHandle) -> Result[str]:
        """Return the card AID, checking it belongs to the discovered token."""
        result = self.send_script(["SCD SERIALNO openpgp"])
        aid = parse_serialno(result.stdout)

        if aid is None:
            return Result.err(
                EngineProtocolError(
                    "Card application serial not reported by the agent",
                    operation="SCD SERIALNO",
                    engine_output=result.stdout + result.stderr,
                )
            )

        if not aid_matches_serial(aid, handle.serial):
            return Result.err(
                TokenNotFound(
                    handle.serial,
                    f"Card {aid} seen by the agent is not token {handle.serial}",
                )
            )

        return Result.ok(aid)

    def preset_admin_pin(self, aid: str, admin_pin: SecureString) -> Result[None]:
        """Cache the Admin PIN for the card and have the card check it.

        The reply must contain exactly two OK lines, one per command.
        """
        hex_pin = admin_pin.get().encode("utf-8").hex().upper()
        result = self.send_script(
            [
                f"PRESET_PASSPHRASE {aid}/OPENPGP.3 -1 {hex_pin}",
                f"SCD CHECKPIN {aid}[CHV3]",
            ]
        )

        acks = count_acknowledgements(result.stdout)
        if acks != EXPECTED_PIN_PRESET_ACKS:
            return Result.err(
                PinPresetFailed(
                    f"Admin PIN preset got {acks} acknowledgements, "
                    f"expected {EXPECTED_PIN_PRESET_ACKS}",
                    operation="PRESET_PASSPHRASE/CHECKPIN",
                    engine_output=result.stdout + result.stderr,
                )
            )

        return Result.ok(None)

    def preset_passphrase(self, keygrip: str, passphrase: SecureString) -> Result[None]:
        helper = resolve_preset_helper(self._config)
        if helper is None:
            return Result.err(
                PassphrasePresetFailed(
                    "gpg-preset-passphrase not found",
                    operation="gpg-preset-passphrase",
                )
            )

        result = self._run([helper, "--preset", keygrip], input_text=passphrase.get() + "\n")
        if result.returncode != 0:
            return Result.err(
                PassphrasePresetFailed(
                    f"Passphrase preset failed for keygrip {keygrip}",
                    operation="gpg-preset-passphrase",
                    engine_output=result.stderr,
                )
            )

        return Result.ok(None)


@contextmanager
def agent_session(config: ProvisionConfig) -> Generator[AgentChannel, None, None]:
    """A running agent for the duration of the block, killed on every exit."""
    channel = AgentChannel(config)
    channel.launch().unwrap()
    try:
        yield channel
    finally:
        stopped = channel.kill()
        if stopped.is_err():
            logger.warning("%s", stopped.unwrap_err())
