from __future__ import annotations

import os
import platform
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from .errors import InvalidStateDirError
from .types import DEFAULT_ADMIN_PIN, DEFAULT_USER_PIN, Result, SecureString

GNUPGHOME_VAR = "GNUPGHOME"
PASSPHRASE_VAR = "YUBIKEY_PROVISION_PASSPHRASE"
LOG_FILE_NAME = "yubikey-provision.log"


class ConfigError(Exception):
    pass


# Hardened gpg.conf based on drduh/YubiKey-Guide recommendations
HARDENED_GPG_CONF = """\
# Behavior
no-emit-version
no-comments
export-options export-minimal
keyid-format 0xlong
with-fingerprint
list-options show-uid-validity
verify-options show-uid-validity

# Algorithms and ciphers
personal-cipher-preferences AES256 AES192 AES
personal-digest-preferences SHA512 SHA384 SHA256
personal-compress-preferences ZLIB BZIP2 ZIP Uncompressed
default-preference-list SHA512 SHA384 SHA256 AES256 AES192 AES ZLIB BZIP2 ZIP Uncompressed
s2k-cipher-algo AES256
s2k-digest-algo SHA512
cert-digest-algo SHA512

# Security settings
require-cross-certification
no-symkey-cache
throw-keyids

# Display preferences
fixed-list-mode
charset utf-8
utf8-strings
"""

# The provisioning protocol caches the Admin PIN and the key passphrase
# through PRESET_PASSPHRASE, which the agent refuses unless allowed here.
PROVISIONING_GPG_AGENT_CONF = """\
# Cache TTL (in seconds)
default-cache-ttl 600
max-cache-ttl 7200

# Secrets are preset by yubikey-provision over the agent side channel
allow-preset-passphrase
allow-loopback-pinentry

# PIN entry program (platform-specific)
# pinentry-program /usr/bin/pinentry-curses
"""

SCDAEMON_CONF = """\
# Disable built-in CCID driver (use system's pcscd)
disable-ccid

# Card timeout (seconds)
card-timeout 5
"""


@dataclass
class ProvisionConfig:
    """Everything a run needs from its surroundings, read once.

    Components never consult ``os.environ`` themselves; they take this
    object (or the values on it) as parameters.
    """

    gnupghome: Path | None
    output_dir: Path = field(default_factory=Path.cwd)
    passphrase: SecureString | None = None
    user_pin: SecureString = field(default_factory=lambda: SecureString(DEFAULT_USER_PIN))
    admin_pin: SecureString = field(default_factory=lambda: SecureString(DEFAULT_ADMIN_PIN))
    gpg_path: str = "gpg"
    ykman_path: str = "ykman"
    engine_env: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_environ(
        cls,
        environ: Mapping[str, str],
        output_dir: Path | None = None,
    ) -> ProvisionConfig:
        home = environ.get(GNUPGHOME_VAR)
        gnupghome = Path(home) if home else None

        passphrase = None
        if PASSPHRASE_VAR in environ:
            passphrase = SecureString(environ[PASSPHRASE_VAR])

        # Children inherit the environment, so the secret binding stays out of it
        engine_env = {k: v for k, v in environ.items() if k != PASSPHRASE_VAR}

        return cls(
            gnupghome=gnupghome,
            output_dir=output_dir or Path.cwd(),
            passphrase=passphrase,
            engine_env=engine_env,
        )

    @property
    def log_path(self) -> Path:
        if self.gnupghome:
            return self.gnupghome / LOG_FILE_NAME
        return Path.home() / ".yubikey-provision" / LOG_FILE_NAME

    def artifact_path(self, key_id: str) -> Path:
        return self.output_dir / f"{key_id}.asc"


def ensure_gnupg_dir(gnupghome: Path) -> Result[Path]:
    """Ensure the GnuPG directory exists with correct permissions."""
    try:
        gnupghome.mkdir(parents=True, exist_ok=True)

        # Set restrictive permissions (0700)
        if platform.system() != "Windows":
            gnupghome.chmod(0o700)

        return Result.ok(gnupghome)
    except OSError as e:
        return Result.err(
            InvalidStateDirError(f"Could not create GnuPG directory: {e}", path=gnupghome)
        )


def _write_conf(path: Path, content: str, backup_existing: bool) -> Result[Path]:
    try:
        if backup_existing and path.exists():
            backup_path = path.with_suffix(".conf.bak")
            path.rename(backup_path)

        path.write_text(content)

        if platform.system() != "Windows":
            path.chmod(0o600)

        return Result.ok(path)
    except OSError as e:
        return Result.err(ConfigError(f"Could not write {path.name}: {e}"))


def write_gpg_conf(
    gnupghome: Path,
    content: str | None = None,
    backup_existing: bool = True,
) -> Result[Path]:
    """Write hardened gpg.conf to the GnuPG home directory."""
    return _write_conf(gnupghome / "gpg.conf", content or HARDENED_GPG_CONF, backup_existing)


def write_gpg_agent_conf(
    gnupghome: Path,
    content: str | None = None,
    backup_existing: bool = True,
) -> Result[Path]:
    """Write gpg-agent.conf allowing preset passphrases."""
    return _write_conf(
        gnupghome / "gpg-agent.conf",
        content or PROVISIONING_GPG_AGENT_CONF,
        backup_existing,
    )


def write_scdaemon_conf(
    gnupghome: Path,
    content: str | None = None,
    backup_existing: bool = True,
) -> Result[Path]:
    """Write scdaemon.conf to the GnuPG home directory."""
    return _write_conf(gnupghome / "scdaemon.conf", content or SCDAEMON_CONF, backup_existing)


def agent_allows_preset(gnupghome: Path) -> bool:
    conf_path = gnupghome / "gpg-agent.conf"
    try:
        lines = conf_path.read_text().splitlines()
    except OSError:
        return False
    return any(line.strip() == "allow-preset-passphrase" for line in lines)


def setup_all_configs(
    gnupghome: Path,
    backup_existing: bool = True,
) -> Result[dict[str, Path]]:
    """Set up all GnuPG configuration files needed for provisioning."""
    result = ensure_gnupg_dir(gnupghome)
    if result.is_err():
        return Result.err(result.unwrap_err())

    paths = {}
    writers = {
        "gpg.conf": write_gpg_conf,
        "gpg-agent.conf": write_gpg_agent_conf,
        "scdaemon.conf": write_scdaemon_conf,
    }
    for name, writer in writers.items():
        result = writer(gnupghome, backup_existing=backup_existing)
        if result.is_err():
            return Result.err(result.unwrap_err())
        paths[name] = result.unwrap()

    return Result.ok(paths)


def default_environ() -> dict[str, str]:
    """Snapshot of the process environment, for the CLI only."""
    return dict(os.environ)
