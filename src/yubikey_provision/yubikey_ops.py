from __future__ import annotations

import re
import subprocess
from collections.abc import Callable

from .config import ProvisionConfig
from .errors import (
    AmbiguousToken,
    EngineProtocolError,
    NoTokenFound,
    OperatorAbort,
    TokenNotFound,
    TouchPolicyVerificationFailed,
)
from .types import (
    CardStatus,
    KeySlot,
    Result,
    SecureString,
    TokenHandle,
    TokenInfo,
    TouchPolicy,
    TransportMode,
)

SLOT_LABELS = {
    "signature key": KeySlot.SIGNATURE,
    "encryption key": KeySlot.ENCRYPTION,
    "authentication key": KeySlot.AUTHENTICATION,
}
ALL_SLOTS = (KeySlot.SIGNATURE, KeySlot.ENCRYPTION, KeySlot.AUTHENTICATION)
FINGERPRINT = re.compile(r"\b([A-F0-9]{40})\b", re.IGNORECASE)
TOUCH_REJECTED = "not allowed"


def parse_device_info(serial: str, output: str) -> TokenInfo:
    """Parse the text output of ``ykman --device S info``."""
    version = "unknown"
    form_factor = "unknown"
    has_openpgp = False

    for line in output.split("\n"):
        line = line.strip()
        if line.startswith("Firmware version:"):
            version = line.split(":", 1)[1].strip()
        elif line.startswith("Form factor:"):
            form_factor = line.split(":", 1)[1].strip()
        elif line.startswith("OpenPGP") and "Enabled" in line:
            has_openpgp = True

    return TokenInfo(
        serial=serial,
        version=version,
        form_factor=form_factor,
        has_openpgp=has_openpgp,
    )


def _touch_policy(value: str) -> TouchPolicy | None:
    normalized = re.sub(r"[\s()_]+", "-", value.strip().lower()).strip("-")
    try:
        return TouchPolicy(normalized)
    except ValueError:
        return None


def parse_openpgp_info(serial: str, output: str) -> CardStatus:
    """Parse ``ykman openpgp info``.

    Handles both the per-counter layout (``PIN tries remaining: 3`` and
    ``Admin PIN tries remaining: 3``) and the combined ``3/0/3`` layout.
    Slot lines carrying a 40-hex value are fingerprints; inside the
    ``Touch policies`` block they carry the policy. Counters that cannot be
    read are reported as 0.
    """
    fingerprints: dict[KeySlot, str] = {}
    touch: dict[KeySlot, TouchPolicy] = {}
    pin_retries = 0
    admin_retries = 0

    for raw in output.split("\n"):
        line = raw.strip()
        if ":" not in line:
            continue
        label, _, value = line.partition(":")
        label = label.strip().lower()
        value = value.strip()

        if label.startswith("admin pin tries") or label.startswith("admin pin retries"):
            match = re.search(r"(\d+)", value)
            if match:
                admin_retries = int(match.group(1))
        elif label.startswith("pin tries") or label.startswith("pin retries"):
            combined = re.search(r"(\d+)/(\d+)/(\d+)", value)
            if combined:
                pin_retries = int(combined.group(1))
                admin_retries = int(combined.group(3))
            else:
                match = re.search(r"(\d+)", value)
                if match:
                    pin_retries = int(match.group(1))
        else:
            for slot_label, slot in SLOT_LABELS.items():
                if not label.startswith(slot_label):
                    continue
                match = FINGERPRINT.search(value)
                if match:
                    fingerprints[slot] = match.group(1).upper()
                else:
                    policy = _touch_policy(value)
                    if policy is not None:
                        touch[slot] = policy
                break

    return CardStatus(
        serial=serial,
        signature_key=fingerprints.get(KeySlot.SIGNATURE),
        encryption_key=fingerprints.get(KeySlot.ENCRYPTION),
        authentication_key=fingerprints.get(KeySlot.AUTHENTICATION),
        pin_retries=pin_retries,
        admin_pin_retries=admin_retries,
        touch_policies=touch,
    )


def parse_card_fingerprints(output: str) -> dict[KeySlot, str]:
    """Slot fingerprints from the ``fpr:`` record of ``gpg --card-status --with-colons``."""
    for line in output.split("\n"):
        if line.startswith("fpr:"):
            fields = line.split(":")[1:4]
            return {slot: fpr.upper() for slot, fpr in zip(ALL_SLOTS, fields) if fpr}
    return {}


class YubiKeyOperations:
    def __init__(self, config: ProvisionConfig) -> None:
        self._config = config
        self._ykman_path = config.ykman_path
        self._env = dict(config.engine_env)
        if config.gnupghome:
            self._env["GNUPGHOME"] = str(config.gnupghome)

    def _run_ykman(
        self, args: list[str], input_text: str | None = None
    ) -> subprocess.CompletedProcess[str]:
        # No controlling terminal, so ykman reads its PIN prompts from stdin
        cmd = [self._ykman_path] + args
        return subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            env=self._env,
            input=input_text,
            start_new_session=True,
        )

    def _run_gpg(self, args: list[str]) -> subprocess.CompletedProcess[str]:
        cmd = [self._config.gpg_path, "--batch"] + args
        return subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            env=self._env,
        )

    def list_tokens(self) -> Result[list[TokenInfo]]:
        """Discover connected tokens; exactly one must be present."""
        result = self._run_ykman(["list", "--serials"])

        if result.returncode != 0:
            return Result.err(
                EngineProtocolError(
                    "Token discovery failed",
                    operation="ykman list",
                    engine_output=result.stderr,
                )
            )

        serials = [s.strip() for s in result.stdout.strip().split("\n") if s.strip()]
        if not serials:
            return Result.err(NoTokenFound())
        if len(serials) > 1:
            return Result.err(AmbiguousToken(serials))

        info = self._run_ykman(["--device", serials[0], "info"])
        if info.returncode != 0:
            return Result.err(
                EngineProtocolError(
                    f"Could not read token {serials[0]}",
                    operation="ykman info",
                    engine_output=info.stderr,
                )
            )

        return Result.ok([parse_device_info(serials[0], info.stdout)])

    def find_token(self, serial: str) -> Result[TokenHandle]:
        """Discover the single connected token and check it is ``serial``."""
        tokens = self.list_tokens()
        if tokens.is_err():
            return Result.err(tokens.unwrap_err())

        info = tokens.unwrap()[0]
        if info.serial != serial:
            return Result.err(
                TokenNotFound(serial, f"Connected token is {info.serial}, not {serial}")
            )

        return Result.ok(TokenHandle(serial=info.serial, info=info))

    def discover(self) -> Result[TokenHandle]:
        """Discover the single connected token, whatever its serial."""
        tokens = self.list_tokens()
        if tokens.is_err():
            return Result.err(tokens.unwrap_err())

        info = tokens.unwrap()[0]
        return Result.ok(TokenHandle(serial=info.serial, info=info))

    def reset_openpgp(
        self,
        handle: TokenHandle,
        force: bool = False,
        confirm: Callable[[], bool] | None = None,
    ) -> Result[None]:
        """Factory-reset the OpenPGP applet, destroying every key on it.

        Without ``force`` the ``confirm`` callback must approve the reset.
        Afterwards both PIN retry counters must be back at their maximum.
        """
        if not force and (confirm is None or not confirm()):
            return Result.err(OperatorAbort(f"Reset of token {handle.serial} declined"))

        result = self._run_ykman(["--device", handle.serial, "openpgp", "reset", "--force"])

        if result.returncode != 0:
            return Result.err(
                EngineProtocolError(
                    f"Reset of token {handle.serial} failed",
                    operation="openpgp reset",
                    engine_output=result.stderr,
                )
            )

        status = self.get_card_status(handle)
        if status.is_err():
            return Result.err(status.unwrap_err())

        card = status.unwrap()
        if not card.retries_at_maximum:
            return Result.err(
                EngineProtocolError(
                    f"Retry counters after reset are {card.pin_retries}/"
                    f"{card.admin_pin_retries}, expected maximum",
                    operation="openpgp reset",
                )
            )

        return Result.ok(None)

    def set_transport_mode(
        self,
        handle: TokenHandle,
        mode: TransportMode = TransportMode.CCID,
    ) -> Result[None]:
        result = self._run_ykman(
            ["--device", handle.serial, "config", "mode", mode.value, "--force"]
        )

        if result.returncode != 0:
            return Result.err(
                EngineProtocolError(
                    f"Could not set transport mode {mode.value}",
                    operation="config mode",
                    engine_output=result.stderr,
                )
            )

        return Result.ok(None)

    def get_card_status(self, handle: TokenHandle) -> Result[CardStatus]:
        """Card state from ykman, with slot fingerprints filled in by gpg."""
        result = self._run_ykman(["--device", handle.serial, "openpgp", "info"])

        if result.returncode != 0:
            return Result.err(
                EngineProtocolError(
                    f"Status check of token {handle.serial} failed",
                    operation="openpgp info",
                    engine_output=result.stderr,
                )
            )

        status = parse_openpgp_info(handle.serial, result.stdout)
        if status.signature_key and status.encryption_key:
            return Result.ok(status)

        card = self._run_gpg(["--with-colons", "--card-status"])
        if card.returncode != 0:
            return Result.ok(status)

        fingerprints = parse_card_fingerprints(card.stdout)
        return Result.ok(
            CardStatus(
                serial=status.serial,
                signature_key=status.signature_key or fingerprints.get(KeySlot.SIGNATURE),
                encryption_key=status.encryption_key or fingerprints.get(KeySlot.ENCRYPTION),
                authentication_key=status.authentication_key
                or fingerprints.get(KeySlot.AUTHENTICATION),
                pin_retries=status.pin_retries,
                admin_pin_retries=status.admin_pin_retries,
                touch_policies=status.touch_policies,
            )
        )

    def set_touch_policy(
        self,
        handle: TokenHandle,
        slot: KeySlot,
        policy: TouchPolicy,
        admin_pin: SecureString,
    ) -> Result[str]:
        """Request a touch policy for a slot; returns the engine's output.

        The Admin PIN is answered on stdin when ykman prompts for it.
        """
        result = self._run_ykman(
            [
                "--device",
                handle.serial,
                "openpgp",
                "keys",
                "set-touch",
                slot.value,
                policy.value,
                "--force",
            ],
            input_text=admin_pin.get() + "\n",
        )

        output = result.stdout + result.stderr
        if result.returncode != 0:
            return Result.err(
                EngineProtocolError(
                    f"Touch policy change for slot '{slot.value}' failed",
                    operation="set-touch",
                    engine_output=output,
                )
            )

        return Result.ok(output)

    def verify_touch_policy(
        self,
        handle: TokenHandle,
        slot: KeySlot,
        admin_pin: SecureString,
    ) -> Result[None]:
        """Prove a slot's policy is fixed by trying to switch it off.

        A fixed policy makes the card refuse with "not allowed". Anything
        else, including a quiet success, means the policy was not fixed.
        """
        result = self._run_ykman(
            [
                "--device",
                handle.serial,
                "openpgp",
                "keys",
                "set-touch",
                slot.value,
                TouchPolicy.OFF.value,
                "--force",
            ],
            input_text=admin_pin.get() + "\n",
        )

        output = result.stdout + result.stderr
        if TOUCH_REJECTED in output.lower():
            return Result.ok(None)

        return Result.err(TouchPolicyVerificationFailed(slot.value, engine_output=output))

    def configure_touch_policies(
        self,
        handle: TokenHandle,
        admin_pin: SecureString,
        slots: tuple[KeySlot, ...] = ALL_SLOTS,
    ) -> Result[None]:
        """Fix the touch policy of every slot and verify each one."""
        for slot in slots:
            requested = self.set_touch_policy(handle, slot, TouchPolicy.FIXED, admin_pin)
            if requested.is_err():
                return Result.err(requested.unwrap_err())

            verified = self.verify_touch_policy(handle, slot, admin_pin)
            if verified.is_err():
                return verified

        return Result.ok(None)

