from __future__ import annotations

import subprocess

import pexpect

from .config import ProvisionConfig
from .errors import CardMetadataFailed, EngineProtocolError, PinChangeFailed
from .types import Identity, PinKind, Result, SecureString

CARD_PROMPT = r"gpg/card>"
MENU_PROMPT = r"Your selection\?"
SC_OP_SUCCESS = r"\[GNUPG:\] SC_OP_SUCCESS"
SC_OP_FAILURE = r"\[GNUPG:\] SC_OP_FAILURE"

PASSWD_SELECTORS = {PinKind.USER: "1", PinKind.ADMIN: "3"}
MENU_TIMEOUT = 30


def split_name(display_name: str) -> tuple[str, str]:
    """Split a display name into (surname, given names) for the card."""
    parts = display_name.split()
    if not parts:
        return "", ""
    return parts[-1], " ".join(parts[:-1])


class CardEditor:
    """Scripted and interactive ``gpg --card-edit`` sessions."""

    def __init__(self, config: ProvisionConfig) -> None:
        self._config = config
        self._gpg = config.gpg_path

    def _env(self) -> dict[str, str]:
        env = dict(self._config.engine_env)
        if self._config.gnupghome:
            env["GNUPGHOME"] = str(self._config.gnupghome)
        return env

    def set_cardholder(self, identity: Identity, admin_pin: SecureString) -> Result[None]:
        """Write cardholder name and login data to the card.

        The Admin PIN is the first line on stdin and is consumed by the
        loopback pinentry before the menu commands are read. gpg reports
        problems only on stderr, so any stderr output is a failure.
        """
        surname, given = split_name(identity.display_name)
        script = [
            admin_pin.get(),
            "admin",
            "name",
            surname,
            given,
            "login",
            identity.email_address,
            "quit",
        ]
        cmd = [
            self._gpg,
            "--quiet",
            "--pinentry-mode",
            "loopback",
            "--passphrase-fd",
            "0",
            "--command-fd",
            "0",
            "--card-edit",
        ]

        result = subprocess.run(
            cmd,
            input="\n".join(script) + "\n",
            capture_output=True,
            text=True,
            env=self._env(),
        )

        if result.stderr.strip():
            return Result.err(
                CardMetadataFailed(
                    "Setting cardholder data failed",
                    operation="card-edit name/login",
                    engine_output=result.stderr,
                )
            )

        return Result.ok(None)

    def change_pin(self, kind: PinKind) -> Result[None]:
        """Change the PIN or Admin PIN through gpg's card menu.

        Both PINs are entered by the operator in pinentry on their own
        terminal; this session waits for the card's answer without a
        timeout. Only ``SC_OP_SUCCESS`` counts as success.
        """
        cmd = [self._gpg, "--status-fd", "1", "--card-edit"]

        try:
            child = pexpect.spawn(
                cmd[0],
                cmd[1:],
                env=self._env(),
                encoding="utf-8",
                timeout=MENU_TIMEOUT,
            )

            child.expect(CARD_PROMPT)
            child.sendline("admin")

            child.expect(CARD_PROMPT)
            child.sendline("passwd")

            child.expect(MENU_PROMPT)
            child.sendline(PASSWD_SELECTORS[kind])

            # The operator is in pinentry now
            outcome = child.expect(
                [SC_OP_SUCCESS, SC_OP_FAILURE, MENU_PROMPT, pexpect.EOF],
                timeout=None,
            )
        except pexpect.TIMEOUT as e:
            return Result.err(
                EngineProtocolError(
                    "Card menu did not respond",
                    operation="card-edit passwd",
                    cause=e,
                )
            )
        except pexpect.EOF as e:
            return Result.err(PinChangeFailed(kind.value, engine_output=str(e)))

        transcript = child.before or ""
        if outcome != 0:
            child.close(force=True)
            return Result.err(PinChangeFailed(kind.value, engine_output=transcript))

        try:
            child.expect(MENU_PROMPT)
            child.sendline("q")
            child.expect(CARD_PROMPT)
            child.sendline("quit")
            child.expect(pexpect.EOF)
        except (pexpect.TIMEOUT, pexpect.EOF):
            # The card already confirmed the change; leaving the menu is cosmetic
            pass
        finally:
            child.close(force=True)

        return Result.ok(None)
