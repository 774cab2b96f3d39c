"""OpenPGP key generation and YubiKey provisioning.

This package generates a certify-only OpenPGP primary key with an
encryption subkey and copies it onto YubiKey tokens, one token at a time,
following the practices of drduh/YubiKey-Guide.
"""

from .agent import AgentChannel, agent_session, count_acknowledgements
from .card_edit import CardEditor
from .config import (
    HARDENED_GPG_CONF,
    ProvisionConfig,
    setup_all_configs,
    write_gpg_agent_conf,
    write_gpg_conf,
    write_scdaemon_conf,
)
from .errors import (
    AmbiguousToken,
    CardMetadataFailed,
    CardTransferFailed,
    EngineProtocolError,
    ErrorCategory,
    ErrorLogger,
    InterruptHandler,
    InvalidTransitionError,
    KeyCreationFailed,
    KeyNotFoundError,
    MissingDependencyError,
    NoTokenFound,
    OperatorAbort,
    PassphrasePresetFailed,
    PinChangeFailed,
    PinPresetFailed,
    PreconditionError,
    ProvisionError,
    RecoveryHint,
    TokenNotFound,
    TouchPolicyVerificationFailed,
    VerificationFailure,
    wrap_exception,
)
from .gpg_ops import GPGError, GPGOperations, find_unexpected_diagnostics, parse_status_lines
from .main import run
from .orchestrator import Orchestrator
from .preflight import CheckResult, PreflightReport, check, run_checks
from .prompts import MockPrompts, Prompts
from .protocol import SecretProvisioningProtocol
from .secret_handler import SecretHandler, current_passphrase, new_passphrase
from .types import (
    CardStatus,
    Identity,
    KeyPair,
    KeySlot,
    KeyType,
    KeyUsage,
    PinKind,
    ProvisioningState,
    Result,
    SecureString,
    TokenHandle,
    TokenInfo,
    TouchPolicy,
    TransportMode,
)
from .yubikey_ops import YubiKeyOperations, parse_openpgp_info

__version__ = "0.1.0"

__all__ = [
    # Types
    "CardStatus",
    "Identity",
    "KeyPair",
    "KeySlot",
    "KeyType",
    "KeyUsage",
    "PinKind",
    "ProvisioningState",
    "Result",
    "SecureString",
    "TokenHandle",
    "TokenInfo",
    "TouchPolicy",
    "TransportMode",
    # Configuration
    "ProvisionConfig",
    "setup_all_configs",
    "write_gpg_conf",
    "write_gpg_agent_conf",
    "write_scdaemon_conf",
    "HARDENED_GPG_CONF",
    # Secrets
    "SecretHandler",
    "new_passphrase",
    "current_passphrase",
    # Preflight
    "check",
    "run_checks",
    "CheckResult",
    "PreflightReport",
    # Operations
    "GPGOperations",
    "GPGError",
    "parse_status_lines",
    "find_unexpected_diagnostics",
    "YubiKeyOperations",
    "parse_openpgp_info",
    "CardEditor",
    "AgentChannel",
    "agent_session",
    "count_acknowledgements",
    # Provisioning
    "SecretProvisioningProtocol",
    "Orchestrator",
    # Prompts
    "Prompts",
    "MockPrompts",
    # Errors
    "ProvisionError",
    "ErrorCategory",
    "RecoveryHint",
    "PreconditionError",
    "MissingDependencyError",
    "NoTokenFound",
    "AmbiguousToken",
    "TokenNotFound",
    "KeyNotFoundError",
    "EngineProtocolError",
    "KeyCreationFailed",
    "PinPresetFailed",
    "PassphrasePresetFailed",
    "CardTransferFailed",
    "CardMetadataFailed",
    "VerificationFailure",
    "TouchPolicyVerificationFailed",
    "PinChangeFailed",
    "OperatorAbort",
    "InvalidTransitionError",
    "ErrorLogger",
    "InterruptHandler",
    "wrap_exception",
    # Main
    "run",
    "__version__",
]
