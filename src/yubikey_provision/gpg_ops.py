from __future__ import annotations

import os
import re
import subprocess
from pathlib import Path

from .config import ProvisionConfig
from .errors import CardTransferFailed, EngineProtocolError, KeyCreationFailed, KeyNotFoundError
from .types import Identity, KeyType, KeyUsage, Result, SecureString

STATUS_PREFIX = "[GNUPG:] "

# Engine text that means a scripted edit session went wrong even if gpg
# still exited 0.
UNEXPECTED_DIAGNOSTIC = re.compile(r"\b(error|failed|failure|bad|cancel(?:l?ed)?|invalid)\b", re.I)
FAILURE_STATUS_TOKENS = frozenset({"ERROR", "FAILURE", "SC_OP_FAILURE", "KEY_NOT_CREATED"})

# Card edit script for the primary (-> signature slot) and the encryption
# subkey (-> encryption slot). It ends with "quit" and declines to save,
# so the local keystore never commits the removal of its secret keys.
TRANSFER_SCRIPT = (
    "keytocard",
    "y",  # really move the primary key
    "1",  # signature slot
    "key 1",
    "keytocard",
    "2",  # encryption slot
    "quit",
    "n",  # do not save changes
)

PRIMARY_ALGORITHMS = {KeyType.ED25519: "ed25519", KeyType.RSA4096: "rsa4096"}
ENCRYPTION_ALGORITHMS = {KeyType.ED25519: "cv25519", KeyType.RSA4096: "rsa4096"}
USAGE_NAMES = {KeyUsage.ENCRYPT: "encr"}


class GPGError(Exception):
    pass


def parse_status_lines(output: str) -> list[tuple[str, list[str]]]:
    """Extract ``[GNUPG:] KEYWORD args...`` records from a diagnostic stream."""
    records = []
    for line in output.split("\n"):
        line = line.strip()
        if line.startswith(STATUS_PREFIX):
            parts = line[len(STATUS_PREFIX) :].split()
            if parts:
                records.append((parts[0], parts[1:]))
    return records


def find_key_created(output: str, kind: str) -> str | None:
    """Return the fingerprint from a ``KEY_CREATED <kind> <fpr>`` status line.

    ``kind`` is ``P`` for a primary key, ``S`` for a subkey (``B`` covers both).
    """
    for keyword, args in parse_status_lines(output):
        if keyword == "KEY_CREATED" and len(args) >= 2 and args[0] in (kind, "B"):
            return args[1]
    return None


def find_unexpected_diagnostics(output: str) -> list[str]:
    """Lines of a diagnostic stream that signal a failed step."""
    problems = []
    for line in output.split("\n"):
        stripped = line.strip()
        if not stripped:
            continue
        if stripped.startswith(STATUS_PREFIX):
            keyword = stripped[len(STATUS_PREFIX) :].split(" ", 1)[0]
            if keyword in FAILURE_STATUS_TOKENS:
                problems.append(stripped)
        elif UNEXPECTED_DIAGNOSTIC.search(stripped):
            problems.append(stripped)
    return problems


def _unescape(value: str) -> str:
    """Undo the \\xNN escaping gpg applies inside colon-listing fields."""
    return re.sub(r"\\x([0-9a-fA-F]{2})", lambda m: chr(int(m.group(1), 16)), value)


class GPGOperations:
    def __init__(self, config: ProvisionConfig) -> None:
        self._config = config
        self._gpg = config.gpg_path
        self._env = dict(config.engine_env)
        if config.gnupghome:
            self._env["GNUPGHOME"] = str(config.gnupghome)

    @property
    def gnupghome(self) -> Path | None:
        return self._config.gnupghome

    def _engine_env(self) -> dict[str, str]:
        # GPG_TTY may be bound after construction
        env = dict(self._env)
        env.update({k: v for k, v in self._config.engine_env.items() if k == "GPG_TTY"})
        return env

    def _run_gpg(
        self, args: list[str], input_text: str | None = None
    ) -> subprocess.CompletedProcess[str]:
        cmd = [self._gpg, "--batch", "--yes"] + args
        return subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            env=self._engine_env(),
            input=input_text,
        )

    def _run_gpg_with_passphrase(
        self, args: list[str], passphrase: SecureString
    ) -> subprocess.CompletedProcess[str]:
        """Run a GPG command with the passphrase provided via stdin."""
        cmd = [
            self._gpg,
            "--batch",
            "--yes",
            "--status-fd",
            "2",
            "--pinentry-mode",
            "loopback",
            "--passphrase-fd",
            "0",
        ] + args
        return subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            env=self._engine_env(),
            input=passphrase.get() + "\n",
        )

    def create_primary_key(
        self,
        identity: Identity,
        passphrase: SecureString,
        key_type: KeyType = KeyType.ED25519,
    ) -> Result[str]:
        """Create a certify-only primary key and return its fingerprint.

        The fingerprint comes from the KEY_CREATED status line on stderr;
        gpg's stdout does not reliably carry it.
        """
        result = self._run_gpg_with_passphrase(
            [
                "--quick-generate-key",
                identity.user_id,
                PRIMARY_ALGORITHMS[key_type],
                "cert",
                "never",
            ],
            passphrase,
        )

        fingerprint = find_key_created(result.stderr, "P")
        if result.returncode != 0 or not fingerprint:
            return Result.err(
                KeyCreationFailed(
                    "Primary key creation failed: no KEY_CREATED status from gpg",
                    operation="quick-generate-key",
                    engine_output=result.stderr,
                )
            )

        return Result.ok(fingerprint)

    def create_subkey(
        self,
        key_id: str,
        passphrase: SecureString,
        key_type: KeyType = KeyType.ED25519,
        usage: KeyUsage = KeyUsage.ENCRYPT,
    ) -> Result[str]:
        """Add a subkey bound to the primary, protected by the same passphrase.

        gpg has no notion of a per-subkey passphrase, so the primary's
        passphrase is the only one that can unlock the operation.
        """
        if usage not in USAGE_NAMES:
            return Result.err(GPGError(f"Cannot create subkey with {usage.name} usage"))

        algo = ENCRYPTION_ALGORITHMS[key_type]

        result = self._run_gpg_with_passphrase(
            ["--quick-add-key", key_id, algo, USAGE_NAMES[usage], "never"],
            passphrase,
        )

        fingerprint = find_key_created(result.stderr, "S")
        if result.returncode != 0 or not fingerprint:
            return Result.err(
                KeyCreationFailed(
                    f"Subkey creation failed for {key_id}",
                    operation="quick-add-key",
                    engine_output=result.stderr,
                )
            )

        return Result.ok(fingerprint)

    def verify_key_exists(
        self,
        key_id: str,
        secret: bool = False,
    ) -> bool:
        cmd = "--list-secret-keys" if secret else "--list-keys"
        result = self._run_gpg([cmd, key_id])
        return result.returncode == 0

    def describe_key(self, key_id: str) -> Result[Identity]:
        """Return the identity bound to a key.

        A colon listing of a missing key exits quietly, so existence is
        probed first with a listing that does fail.
        """
        if not self.verify_key_exists(key_id):
            return Result.err(KeyNotFoundError(key_id))

        result = self._run_gpg(["--with-colons", "--list-keys", key_id])
        if result.returncode != 0:
            return Result.err(
                EngineProtocolError(
                    f"Could not list key {key_id}",
                    operation="list-keys",
                    engine_output=result.stderr,
                )
            )

        for line in result.stdout.split("\n"):
            if line.startswith("uid:"):
                fields = line.split(":")
                if len(fields) > 9:
                    return Result.ok(Identity.from_user_id(_unescape(fields[9])))

        return Result.err(
            EngineProtocolError(
                f"No user ID found for key {key_id}",
                operation="list-keys",
                engine_output=result.stdout,
            )
        )

    def export_public_key(self, key_id: str) -> Result[bytes]:
        result = self._run_gpg(["--armor", "--export", key_id])

        if result.returncode != 0 or not result.stdout.strip():
            return Result.err(
                EngineProtocolError(
                    f"Public key export failed for {key_id}",
                    operation="export",
                    engine_output=result.stderr,
                )
            )

        return Result.ok(result.stdout.encode("ascii"))

    def write_public_key(self, key_id: str, directory: Path) -> Result[Path]:
        """Export the public key to ``<directory>/<key_id>.asc`` and fsync it.

        A key that lives only on a card cannot regenerate this file.
        """
        exported = self.export_public_key(key_id)
        if exported.is_err():
            return Result.err(exported.unwrap_err())

        output_path = directory / f"{key_id}.asc"
        try:
            directory.mkdir(parents=True, exist_ok=True)
            with open(output_path, "wb") as f:
                f.write(exported.unwrap())
                f.flush()
                os.fsync(f.fileno())
            dir_fd = os.open(directory, os.O_RDONLY)
            try:
                os.fsync(dir_fd)
            finally:
                os.close(dir_fd)
        except OSError as e:
            return Result.err(GPGError(f"Could not write {output_path}: {e}"))

        return Result.ok(output_path)

    def list_keygrips(self, key_id: str) -> Result[list[str]]:
        """Keygrips of the primary key and every subkey."""
        result = self._run_gpg(["--with-colons", "--with-keygrip", "--list-secret-keys", key_id])

        if result.returncode != 0:
            return Result.err(KeyNotFoundError(key_id, engine_output=result.stderr))

        grips = []
        for line in result.stdout.split("\n"):
            if line.startswith("grp:"):
                fields = line.split(":")
                if len(fields) > 9 and fields[9]:
                    grips.append(fields[9])

        if not grips:
            return Result.err(
                EngineProtocolError(
                    f"No keygrips listed for {key_id}",
                    operation="list-secret-keys",
                    engine_output=result.stdout,
                )
            )

        return Result.ok(grips)

    def secret_key_state(self, key_id: str) -> Result[dict[str, str]]:
        """Map each key fingerprint to where its secret lives.

        ``+`` means the secret is in the local keystore, ``#`` a stub, and a
        card serial number means it exists only on that card.
        """
        result = self._run_gpg(["--with-colons", "--list-secret-keys", key_id])

        if result.returncode != 0:
            return Result.err(KeyNotFoundError(key_id, engine_output=result.stderr))

        states: dict[str, str] = {}
        pending: str | None = None
        for line in result.stdout.split("\n"):
            fields = line.split(":")
            if fields[0] in ("sec", "ssb"):
                pending = fields[14] if len(fields) > 14 else ""
            elif fields[0] == "fpr" and pending is not None:
                if len(fields) > 9:
                    states[fields[9]] = pending
                pending = None

        return Result.ok(states)

    def transfer_to_card(self, key_id: str) -> Result[None]:
        """Copy the primary and encryption subkey onto the connected card.

        The local keystore is left unchanged: the edit session moves both
        keys and is then abandoned without saving. The card keeps what it
        received; the keystore never commits the removal. Secrets must be
        cached in the agent beforehand.
        """
        cmd = [
            self._gpg,
            "--command-fd",
            "0",
            "--status-fd",
            "2",
            "--edit-key",
            key_id,
        ]
        result = subprocess.run(
            cmd,
            input="\n".join(TRANSFER_SCRIPT) + "\n",
            capture_output=True,
            text=True,
            env=self._engine_env(),
        )

        diagnostics = result.stdout + result.stderr
        problems = find_unexpected_diagnostics(result.stderr)
        if result.returncode != 0 or problems:
            return Result.err(
                CardTransferFailed(
                    f"Key transfer to card failed (exit {result.returncode})",
                    operation="keytocard",
                    engine_output=diagnostics,
                )
            )

        state = self.secret_key_state(key_id)
        if state.is_err():
            return Result.err(state.unwrap_err())

        states = state.unwrap()
        if not states or any(where != "+" for where in states.values()):
            return Result.err(
                CardTransferFailed(
                    "Local secret keys were not preserved after the card transfer",
                    operation="keytocard",
                    engine_output=diagnostics,
                )
            )

        return Result.ok(None)
