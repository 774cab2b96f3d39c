from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Generic, TypeVar

T = TypeVar("T")
U = TypeVar("U")

DEFAULT_USER_PIN = "123456"
DEFAULT_ADMIN_PIN = "12345678"
MAX_PIN_RETRIES = 3


class ProvisioningState(Enum):
    IDLE = "idle"
    PIN_PRESET_REQUESTED = "pin_preset_requested"
    PIN_PRESET_CONFIRMED = "pin_preset_confirmed"
    PASSPHRASE_PRESET_REQUESTED = "passphrase_preset_requested"
    PASSPHRASE_PRESET_CONFIRMED = "passphrase_preset_confirmed"
    KEY_MOVE_IN_FLIGHT = "key_move_in_flight"
    KEY_MOVE_NOT_COMMITTED = "key_move_not_committed"
    DONE = "done"


class KeyType(Enum):
    RSA4096 = "rsa4096"
    ED25519 = "ed25519"


class KeyUsage(Enum):
    CERTIFY = "certify"
    ENCRYPT = "encrypt"


class KeySlot(Enum):
    SIGNATURE = "sig"
    ENCRYPTION = "enc"
    AUTHENTICATION = "aut"


class TouchPolicy(Enum):
    OFF = "off"
    ON = "on"
    FIXED = "fixed"
    CACHED = "cached"
    CACHED_FIXED = "cached-fixed"


class TransportMode(Enum):
    CCID = "CCID"


class PinKind(Enum):
    USER = "user"
    ADMIN = "admin"


@dataclass(frozen=True)
class Identity:
    display_name: str
    email_address: str

    @property
    def user_id(self) -> str:
        return f"{self.display_name} <{self.email_address}>"

    @classmethod
    def from_user_id(cls, user_id: str) -> Identity:
        """Split a ``Name <email>`` user-ID into its parts."""
        if "<" in user_id:
            name, _, rest = user_id.partition("<")
            return cls(display_name=name.strip(), email_address=rest.rstrip(">").strip())
        return cls(display_name=user_id.strip(), email_address="")


@dataclass(frozen=True)
class KeyPair:
    primary_key_id: str
    subkey_id: str
    algorithm: KeyType
    created_at: datetime


@dataclass(frozen=True)
class TokenInfo:
    serial: str
    version: str
    form_factor: str
    has_openpgp: bool


@dataclass(frozen=True)
class TokenHandle:
    """The one token a run operates on, fixed at discovery time."""

    serial: str
    info: TokenInfo


@dataclass(frozen=True)
class CardStatus:
    serial: str
    signature_key: str | None
    encryption_key: str | None
    authentication_key: str | None
    pin_retries: int
    admin_pin_retries: int
    touch_policies: dict[KeySlot, TouchPolicy] = field(default_factory=dict)

    @property
    def retries_at_maximum(self) -> bool:
        return self.pin_retries == MAX_PIN_RETRIES and self.admin_pin_retries == MAX_PIN_RETRIES


class SecureString:
    __slots__ = ("_value",)

    def __init__(self, value: str) -> None:
        self._value = value

    def get(self) -> str:
        return self._value

    def __repr__(self) -> str:
        return "SecureString(****)"

    def __str__(self) -> str:
        return "****"

    def __len__(self) -> int:
        return len(self._value)

    def clear(self) -> None:
        self._value = "\x00" * len(self._value)
        self._value = ""


class Result(Generic[T]):
    __slots__ = ("_value", "_error", "_is_ok")

    def __init__(self, value: T | None, error: Exception | None, is_ok: bool) -> None:
        self._value = value
        self._error = error
        self._is_ok = is_ok

    @staticmethod
    def ok(value: T) -> Result[T]:
        return Result(value, None, True)

    @staticmethod
    def err(error: Exception) -> Result[T]:
        return Result(None, error, False)

    def is_ok(self) -> bool:
        return self._is_ok

    def is_err(self) -> bool:
        return not self._is_ok

    def unwrap(self) -> T:
        if not self._is_ok:
            raise self._error if self._error else RuntimeError("Result is error but no error set")
        return self._value  # type: ignore

    def unwrap_err(self) -> Exception:
        if self._is_ok:
            raise RuntimeError("Called unwrap_err on Ok result")
        return self._error  # type: ignore

    def and_then(self, fn: Callable[[T], Result[U]]) -> Result[U]:
        if self._is_ok:
            return fn(self._value)  # type: ignore
        return Result.err(self._error)  # type: ignore


VALID_TRANSITIONS: dict[ProvisioningState, list[ProvisioningState]] = {
    ProvisioningState.IDLE: [ProvisioningState.PIN_PRESET_REQUESTED],
    ProvisioningState.PIN_PRESET_REQUESTED: [ProvisioningState.PIN_PRESET_CONFIRMED],
    ProvisioningState.PIN_PRESET_CONFIRMED: [ProvisioningState.PASSPHRASE_PRESET_REQUESTED],
    ProvisioningState.PASSPHRASE_PRESET_REQUESTED: [
        ProvisioningState.PASSPHRASE_PRESET_CONFIRMED
    ],
    ProvisioningState.PASSPHRASE_PRESET_CONFIRMED: [ProvisioningState.KEY_MOVE_IN_FLIGHT],
    ProvisioningState.KEY_MOVE_IN_FLIGHT: [ProvisioningState.KEY_MOVE_NOT_COMMITTED],
    ProvisioningState.KEY_MOVE_NOT_COMMITTED: [ProvisioningState.DONE],
    ProvisioningState.DONE: [],
}
