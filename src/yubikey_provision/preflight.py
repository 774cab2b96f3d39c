from __future__ import annotations

import os
import platform
import shutil
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path

from .config import GNUPGHOME_VAR, ProvisionConfig, agent_allows_preset
from .errors import MissingDependencyError, RecoveryHint
from .types import Result

REQUIRED_GPG_MAJOR = 2
REQUIRED_GPG_MINOR = 2
HELPER_BINARIES = ("gpg-agent", "gpg-connect-agent", "gpgconf")
PRESET_HELPER = "gpg-preset-passphrase"


@dataclass
class CheckResult:
    """Result of a single preflight check."""

    name: str
    passed: bool
    message: str
    critical: bool = True
    fix_hint: str | None = None


@dataclass
class PreflightReport:
    """Complete preflight report."""

    system: str
    checks: list[CheckResult] = field(default_factory=list)

    @property
    def all_passed(self) -> bool:
        return all(c.passed for c in self.checks if c.critical)

    @property
    def critical_failures(self) -> list[CheckResult]:
        return [c for c in self.checks if c.critical and not c.passed]

    @property
    def warnings(self) -> list[CheckResult]:
        return [c for c in self.checks if not c.critical and not c.passed]


def parse_gpg_version(output: str) -> tuple[int, int] | None:
    """Parse ``gpg (GnuPG) 2.4.0`` from the first line of ``gpg --version``."""
    lines = output.split("\n")
    if not lines or not lines[0].strip():
        return None
    version_parts = lines[0].split()[-1].split(".")
    try:
        major = int(version_parts[0])
        minor = int(version_parts[1]) if len(version_parts) > 1 else 0
    except ValueError:
        return None
    return major, minor


def check_gpg(config: ProvisionConfig) -> CheckResult:
    """Check GnuPG is installed at the required major version."""
    if not shutil.which(config.gpg_path):
        return CheckResult(
            name="GnuPG",
            passed=False,
            message=f"{config.gpg_path} not found in PATH",
            fix_hint="Install GnuPG: brew install gnupg (macOS) or apt install gnupg (Debian/Ubuntu)",
        )

    try:
        result = subprocess.run(
            [config.gpg_path, "--version"],
            capture_output=True,
            text=True,
        )
    except OSError as e:
        return CheckResult(
            name="GnuPG",
            passed=False,
            message=f"Error checking gpg: {e}",
            fix_hint="Reinstall GnuPG",
        )

    version = parse_gpg_version(result.stdout) if result.returncode == 0 else None
    if version is None:
        return CheckResult(
            name="GnuPG",
            passed=False,
            message="Could not determine GnuPG version",
            fix_hint="Ensure gpg is installed correctly",
        )

    major, minor = version
    if major == REQUIRED_GPG_MAJOR and minor >= REQUIRED_GPG_MINOR:
        return CheckResult(
            name="GnuPG",
            passed=True,
            message=f"Version {major}.{minor} (2.x, >= 2.2 required)",
        )

    return CheckResult(
        name="GnuPG",
        passed=False,
        message=f"Version {major}.{minor} is not supported (2.x, >= 2.2 required)",
        fix_hint="Install GnuPG 2.2 or later",
    )


def gpg_libexec_dir(config: ProvisionConfig) -> Path | None:
    """Ask gpgconf where GnuPG keeps its internal helpers."""
    try:
        result = subprocess.run(
            ["gpgconf", "--list-dirs", "libexecdir"],
            capture_output=True,
            text=True,
            env=config.engine_env or None,
        )
    except OSError:
        return None
    if result.returncode != 0 or not result.stdout.strip():
        return None
    return Path(result.stdout.strip())


def resolve_preset_helper(config: ProvisionConfig) -> str | None:
    """Locate gpg-preset-passphrase, which usually lives outside PATH."""
    on_path = shutil.which(PRESET_HELPER)
    if on_path:
        return on_path

    libexec = gpg_libexec_dir(config)
    if libexec:
        candidate = libexec / PRESET_HELPER
        if candidate.is_file() and os.access(candidate, os.X_OK):
            return str(candidate)

    return None


def check_helpers(config: ProvisionConfig) -> list[CheckResult]:
    """Check the GnuPG helper binaries are resolvable."""
    checks = []
    for helper in HELPER_BINARIES:
        found = shutil.which(helper)
        checks.append(
            CheckResult(
                name=helper,
                passed=found is not None,
                message=f"Found: {found}" if found else f"{helper} not found in PATH",
                fix_hint=None if found else "Install the full GnuPG suite",
            )
        )

    preset = resolve_preset_helper(config)
    checks.append(
        CheckResult(
            name=PRESET_HELPER,
            passed=preset is not None,
            message=f"Found: {preset}" if preset else f"{PRESET_HELPER} not found",
            fix_hint=None if preset else "Install the full GnuPG suite (gpg-agent package)",
        )
    )
    return checks


def check_ykman(config: ProvisionConfig, card_operation: bool) -> CheckResult:
    """Check YubiKey Manager is installed; only card operations need it."""
    if shutil.which(config.ykman_path):
        return CheckResult(
            name="YubiKey Manager",
            passed=True,
            message=f"Found: {config.ykman_path}",
            critical=card_operation,
        )

    return CheckResult(
        name="YubiKey Manager",
        passed=False,
        message="ykman not found in PATH",
        critical=card_operation,
        fix_hint="Install YubiKey Manager: brew install ykman (macOS) or pip install yubikey-manager",
    )


def check_state_dir(config: ProvisionConfig) -> CheckResult:
    """Check the working state directory is configured, present and writable."""
    home = config.gnupghome
    if home is None:
        return CheckResult(
            name="State directory",
            passed=False,
            message=f"{GNUPGHOME_VAR} is not set",
            fix_hint=f"export {GNUPGHOME_VAR}=$(mktemp -d)",
        )
    if not home.exists():
        return CheckResult(
            name="State directory",
            passed=False,
            message=f"{home} does not exist",
            fix_hint=f"mkdir -m 700 {home}",
        )
    if not home.is_dir():
        return CheckResult(
            name="State directory",
            passed=False,
            message=f"{home} is not a directory",
        )
    if not os.access(home, os.W_OK):
        return CheckResult(
            name="State directory",
            passed=False,
            message=f"{home} is not writable",
            fix_hint=f"chmod 700 {home}",
        )

    return CheckResult(name="State directory", passed=True, message=str(home))


def check_gpg_profile(config: ProvisionConfig) -> CheckResult:
    """Check gpg.conf is present and readable in the state directory."""
    if config.gnupghome is None:
        return CheckResult(
            name="gpg.conf",
            passed=False,
            message="No state directory to read gpg.conf from",
        )

    conf_path = config.gnupghome / "gpg.conf"
    if conf_path.is_file() and os.access(conf_path, os.R_OK):
        return CheckResult(name="gpg.conf", passed=True, message=str(conf_path))

    return CheckResult(
        name="gpg.conf",
        passed=False,
        message=f"{conf_path} is missing or unreadable",
        fix_hint="Write the default profile: yubikey-provision setup-config",
    )


def check_agent_profile(config: ProvisionConfig, card_operation: bool) -> CheckResult:
    """Check gpg-agent.conf allows preset passphrases."""
    if config.gnupghome is not None and agent_allows_preset(config.gnupghome):
        return CheckResult(
            name="gpg-agent.conf",
            passed=True,
            message="allow-preset-passphrase is enabled",
            critical=card_operation,
        )

    return CheckResult(
        name="gpg-agent.conf",
        passed=False,
        message="allow-preset-passphrase is not enabled",
        critical=card_operation,
        fix_hint="Write the default profile: yubikey-provision setup-config",
    )


def run_checks(config: ProvisionConfig, card_operation: bool = False) -> PreflightReport:
    """Run every check; never stops at the first failure."""
    report = PreflightReport(system=platform.system())

    report.checks.append(check_gpg(config))
    report.checks.extend(check_helpers(config))
    report.checks.append(check_ykman(config, card_operation))
    report.checks.append(check_state_dir(config))
    report.checks.append(check_gpg_profile(config))
    report.checks.append(check_agent_profile(config, card_operation))

    return report


def check(config: ProvisionConfig, card_operation: bool = False) -> Result[PreflightReport]:
    """Run preflight and fail with every unmet dependency itemized."""
    report = run_checks(config, card_operation)

    if report.all_passed:
        return Result.ok(report)

    failures = report.critical_failures
    hints = [RecoveryHint(f"{c.name}: {c.fix_hint}") for c in failures if c.fix_hint]
    return Result.err(MissingDependencyError([f"{c.name} ({c.message})" for c in failures], hints))


def ensure_terminal_binding(config: ProvisionConfig) -> str | None:
    """Bind GPG_TTY so pinentry can reach the operator.

    Uses the terminal behind stdin; falls back to ``/dev/tty`` when stdin
    or stdout is not attached to a terminal.
    """
    tty: str | None = None
    if sys.stdin.isatty() and sys.stdout.isatty():
        try:
            tty = os.ttyname(sys.stdin.fileno())
        except OSError:
            tty = None

    if tty is None and Path("/dev/tty").exists():
        tty = "/dev/tty"

    if tty is not None:
        config.engine_env["GPG_TTY"] = tty
    return tty
