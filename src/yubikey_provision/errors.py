"""Structured error types with recovery hints for token provisioning.

This module provides the error taxonomy used across the package:
- Precondition errors, raised before anything on the token is mutated
- Engine protocol errors, carrying the engine's diagnostic text verbatim
- Verification failures for outcomes the engines cannot confirm directly
- Operator aborts for declined confirmations and interrupts

It also provides error logging that never records secret values, and
graceful interrupt handling that still runs teardown callbacks.
"""

from __future__ import annotations

import contextlib
import logging
import signal
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum, auto
from pathlib import Path
from types import FrameType
from typing import NoReturn

from .types import SecureString


class ErrorCategory(Enum):
    """Categories of errors for routing recovery strategies."""

    PRECONDITION = auto()  # Missing tools, bad state dir, wrong token count
    ENGINE_PROTOCOL = auto()  # Unparsable or unexpected engine response
    VERIFICATION = auto()  # Outcome could not be confirmed
    OPERATOR_ABORT = auto()  # Declined confirmation, Ctrl+C
    INTERNAL = auto()  # Unexpected errors, bugs


@dataclass
class RecoveryHint:
    """A suggested recovery action for an error."""

    action: str
    command: str | None = None

    def __str__(self) -> str:
        result = self.action
        if self.command:
            result += f"\n  Command: {self.command}"
        return result


RETRY_WHOLE_RUN = RecoveryHint("Retry the whole run, or reseat the token and retry")


@dataclass
class ProvisionError(Exception):
    """Base error type with recovery hints."""

    message: str
    category: ErrorCategory
    recovery_hints: list[RecoveryHint] = field(default_factory=list)
    cause: Exception | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __str__(self) -> str:
        return self.message

    def __post_init__(self) -> None:
        super().__init__(self.message)

    def format_full(self) -> str:
        """Format error with all recovery hints."""
        lines = [f"Error: {self.message}"]

        if self.cause:
            lines.append(f"Caused by: {self.cause}")

        if self.recovery_hints:
            lines.append("\nRecovery options:")
            for i, hint in enumerate(self.recovery_hints, 1):
                lines.append(f"  {i}. {hint}")

        return "\n".join(lines)


# Preconditions: reported before any mutation


class PreconditionError(ProvisionError):
    """A requirement for running the operation is not met."""

    def __init__(
        self,
        message: str,
        hints: list[RecoveryHint] | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(
            message=message,
            category=ErrorCategory.PRECONDITION,
            recovery_hints=hints or [],
            cause=cause,
        )


class MissingDependencyError(PreconditionError):
    """One or more external engines or files are missing."""

    def __init__(self, missing: list[str], hints: list[RecoveryHint] | None = None) -> None:
        self.missing = missing
        super().__init__(
            f"Unmet dependencies: {', '.join(missing)}",
            hints=hints,
        )


class InvalidStateDirError(PreconditionError):
    """The working state directory is missing, not a directory, or read-only."""

    def __init__(self, message: str, path: Path | None = None) -> None:
        self.path = path
        super().__init__(
            message,
            hints=[
                RecoveryHint(
                    "Point GNUPGHOME at a private, writable directory",
                    command="export GNUPGHOME=$(mktemp -d)",
                )
            ],
        )


class NoTokenFound(PreconditionError):
    def __init__(self, message: str = "No token connected") -> None:
        super().__init__(
            message,
            hints=[
                RecoveryHint("Insert exactly one token"),
                RecoveryHint("Check the token is detected", command="ykman list"),
            ],
        )


class AmbiguousToken(PreconditionError):
    def __init__(self, serials: list[str]) -> None:
        self.serials = serials
        super().__init__(
            f"{len(serials)} tokens connected ({', '.join(serials)}); exactly one is required",
            hints=[RecoveryHint("Disconnect every token except the one to provision")],
        )


class TokenNotFound(PreconditionError):
    def __init__(self, serial: str, message: str | None = None) -> None:
        self.serial = serial
        super().__init__(
            message or f"Token {serial} is not connected",
            hints=[RecoveryHint("Check the serial number", command="ykman list --serials")],
        )


class KeyNotFoundError(PreconditionError):
    def __init__(self, key_id: str, engine_output: str | None = None) -> None:
        self.key_id = key_id
        super().__init__(
            f"Key {key_id} not found in keystore",
            hints=[RecoveryHint("List available keys", command="gpg --list-secret-keys")],
        )
        self.engine_output = engine_output


# Engine protocol errors: the engine answered, but not as expected


class EngineProtocolError(ProvisionError):
    """Unparsable or unexpected response from an external engine."""

    def __init__(
        self,
        message: str,
        operation: str | None = None,
        engine_output: str | None = None,
        cause: Exception | None = None,
    ) -> None:
        hints = []

        if engine_output:
            lower = engine_output.lower()
            if "card error" in lower or "no such device" in lower:
                hints.append(
                    RecoveryHint(
                        "Restart the smart card daemon", command="gpgconf --kill scdaemon"
                    )
                )
            if "agent" in lower:
                hints.append(
                    RecoveryHint("Restart the caching agent", command="gpgconf --kill gpg-agent")
                )
            if "bad pin" in lower or "bad passphrase" in lower:
                hints.append(RecoveryHint("Check the PIN and the remaining retry counter"))

        hints.append(RETRY_WHOLE_RUN)

        super().__init__(
            message=message,
            category=ErrorCategory.ENGINE_PROTOCOL,
            recovery_hints=hints,
            cause=cause,
        )
        self.operation = operation
        self.engine_output = engine_output


class KeyCreationFailed(EngineProtocolError):
    pass


class PinPresetFailed(EngineProtocolError):
    pass


class PassphrasePresetFailed(EngineProtocolError):
    pass


class CardTransferFailed(EngineProtocolError):
    pass


class CardMetadataFailed(EngineProtocolError):
    pass


# Verification failures: the outcome could not be confirmed


class VerificationFailure(ProvisionError):
    """The engine did not confirm an operation's outcome."""

    def __init__(
        self,
        message: str,
        hints: list[RecoveryHint] | None = None,
        engine_output: str | None = None,
    ) -> None:
        super().__init__(
            message=message,
            category=ErrorCategory.VERIFICATION,
            recovery_hints=hints or [],
        )
        self.engine_output = engine_output


class TouchPolicyVerificationFailed(VerificationFailure):
    def __init__(self, slot: str, engine_output: str | None = None) -> None:
        self.slot = slot
        super().__init__(
            f"Touch policy for slot '{slot}' could not be verified as fixed",
            hints=[
                RecoveryHint("Inspect the policy", command="ykman openpgp info"),
                RETRY_WHOLE_RUN,
            ],
            engine_output=engine_output,
        )


class PinChangeFailed(VerificationFailure):
    def __init__(self, kind: str, engine_output: str | None = None) -> None:
        self.kind = kind
        super().__init__(
            f"{kind.capitalize()} PIN change failed: the card did not confirm the change",
            hints=[
                RecoveryHint("The current PIN may have been wrong"),
                RecoveryHint("The new PIN may be too short for the card's policy"),
                RecoveryHint("The card may be locked", command="ykman openpgp info"),
            ],
            engine_output=engine_output,
        )


class OperatorAbort(ProvisionError):
    """Operator declined a confirmation or interrupted the run."""

    def __init__(
        self,
        message: str = "Operation cancelled by operator",
        cause: Exception | None = None,
    ) -> None:
        super().__init__(
            message=message,
            category=ErrorCategory.OPERATOR_ABORT,
            recovery_hints=[],
            cause=cause,
        )


class InvalidTransitionError(ProvisionError):
    """Out-of-order use of the provisioning state machine."""

    def __init__(self, message: str) -> None:
        super().__init__(message=message, category=ErrorCategory.INTERNAL)


# Error logging


class ErrorLogger:
    """Logger for structured error tracking that never records secrets."""

    def __init__(self, log_path: Path | None = None) -> None:
        self._log_path = log_path or Path.home() / ".yubikey-provision" / "errors.log"
        self._logger = logging.getLogger("yubikey-provision.errors")
        self._secrets: list[SecureString] = []
        self._setup_logging()

    def _setup_logging(self) -> None:
        """Configure file logging."""
        self._log_path.parent.mkdir(parents=True, exist_ok=True)

        handler = logging.FileHandler(self._log_path)
        handler.setLevel(logging.WARNING)
        formatter = logging.Formatter("%(asctime)s - %(levelname)s - %(name)s - %(message)s")
        handler.setFormatter(formatter)

        self._logger.addHandler(handler)
        self._logger.setLevel(logging.WARNING)
        self._logger.propagate = False
        self._handler = handler

    def close(self) -> None:
        self._logger.removeHandler(self._handler)
        self._handler.close()

    def register_secret(self, secret: SecureString) -> None:
        """Remember a secret so it is masked in every logged line."""
        if len(secret) > 0:
            self._secrets.append(secret)

    def scrub(self, text: str) -> str:
        for secret in self._secrets:
            value = secret.get()
            if value:
                text = text.replace(value, "****")
        return text

    def log_error(self, error: ProvisionError) -> None:
        """Log an error with full context."""
        context = {
            "category": error.category.name,
            "error_message": self.scrub(error.message),
            "timestamp": error.timestamp.isoformat(),
        }
        if error.cause:
            context["cause"] = self.scrub(str(error.cause))

        self._logger.error(
            self.scrub(f"[{error.category.name}] {error.message}"),
            extra=context,
        )


# Interrupt handling


class InterruptHandler:
    """Graceful handling of operator interrupts (Ctrl+C)."""

    def __init__(self) -> None:
        self._original_handler: Callable[[int, FrameType | None], None] | int | None = None
        self._cleanup_callbacks: list[Callable[[], None]] = []

    def register_cleanup(self, callback: Callable[[], None]) -> None:
        """Register a cleanup callback to run on interrupt."""
        self._cleanup_callbacks.append(callback)

    def _handle_interrupt(self, _signum: int, _frame: FrameType | None) -> NoReturn:
        """Handle SIGINT (Ctrl+C)."""
        # Run cleanup callbacks in reverse order
        for callback in reversed(self._cleanup_callbacks):
            with contextlib.suppress(Exception):
                callback()

        raise OperatorAbort("Interrupted by operator (Ctrl+C)")

    def __enter__(self) -> InterruptHandler:
        """Install interrupt handler."""
        self._original_handler = signal.signal(signal.SIGINT, self._handle_interrupt)
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        """Restore original handler."""
        if self._original_handler is not None:
            signal.signal(signal.SIGINT, self._original_handler)


def wrap_exception(
    exception: Exception,
    category: ErrorCategory = ErrorCategory.INTERNAL,
) -> ProvisionError:
    """Wrap a generic exception in a ProvisionError."""
    if isinstance(exception, ProvisionError):
        return exception

    return ProvisionError(
        message=str(exception) or type(exception).__name__,
        category=category,
        recovery_hints=[RETRY_WHOLE_RUN],
        cause=exception,
    )
