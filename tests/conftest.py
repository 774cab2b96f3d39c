from __future__ import annotations

import contextlib
import os
import shutil
import subprocess
from collections.abc import Callable, Generator
from pathlib import Path

import pytest

from yubikey_provision.config import (
    ProvisionConfig,
    default_environ,
    write_gpg_agent_conf,
    write_gpg_conf,
)
from yubikey_provision.gpg_ops import GPGOperations
from yubikey_provision.prompts import MockPrompts
from yubikey_provision.types import SecureString, TokenHandle, TokenInfo
from yubikey_provision.yubikey_ops import YubiKeyOperations

TEST_SERIAL = "12345678"


def _gpg_agent_can_start() -> bool:
    """Check if gpg-agent can be started in a temp directory."""
    import tempfile
    import time

    with tempfile.TemporaryDirectory() as tmpdir:
        gnupghome = Path(tmpdir)
        (gnupghome / "gpg-agent.conf").write_text("allow-loopback-pinentry\n")
        env = os.environ.copy()
        env["GNUPGHOME"] = str(gnupghome)
        try:
            # gpg-agent --daemon forks, so we need to not capture output
            # and let it run in background
            subprocess.Popen(
                ["gpg-agent", "--daemon"],
                env=env,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
            time.sleep(0.5)
            started = (gnupghome / "S.gpg-agent").exists()
            subprocess.run(
                ["gpgconf", "--kill", "gpg-agent"],
                env=env,
                capture_output=True,
                timeout=5,
            )
            return started
        except Exception:
            return False


def yubikey_available() -> bool:
    """Check if exactly one YubiKey is connected."""
    ops = YubiKeyOperations(ProvisionConfig.from_environ(default_environ()))
    try:
        return ops.list_tokens().is_ok()
    except OSError:
        return False


# Cache the result
_GPG_AGENT_AVAILABLE: bool | None = None


def gpg_agent_available() -> bool:
    """Check if gpg-agent can be started (cached)."""
    global _GPG_AGENT_AVAILABLE
    if _GPG_AGENT_AVAILABLE is None:
        _GPG_AGENT_AVAILABLE = _gpg_agent_can_start()
    return _GPG_AGENT_AVAILABLE


@pytest.fixture
def gpg_home() -> Generator[Path, None, None]:
    """Create an isolated GNUPGHOME with the provisioning profile written.

    Note: Uses /tmp directly instead of pytest's tmp_path because Unix domain
    sockets have a maximum path length (~104 chars on macOS). Pytest's temp
    paths are often too long for gpg-agent's socket files.
    """
    import tempfile

    gnupghome = Path(tempfile.mkdtemp(prefix="gpg_"))
    gnupghome.chmod(0o700)

    write_gpg_conf(gnupghome, backup_existing=False).unwrap()
    write_gpg_agent_conf(gnupghome, backup_existing=False).unwrap()

    env = os.environ.copy()
    env["GNUPGHOME"] = str(gnupghome)

    yield gnupghome

    with contextlib.suppress(Exception):
        subprocess.run(
            ["gpgconf", "--kill", "gpg-agent"],
            env=env,
            capture_output=True,
            timeout=5,
        )

    shutil.rmtree(gnupghome, ignore_errors=True)


@pytest.fixture
def provision_config(gpg_home: Path, tmp_path: Path) -> ProvisionConfig:
    environ = dict(os.environ)
    environ["GNUPGHOME"] = str(gpg_home)
    environ.pop("YUBIKEY_PROVISION_PASSPHRASE", None)
    config = ProvisionConfig.from_environ(environ, output_dir=tmp_path / "out")
    config.passphrase = SecureString("test-passphrase-secure")
    return config


@pytest.fixture
def config(tmp_path: Path) -> ProvisionConfig:
    """Config for unit tests; every engine call is mocked."""
    home = tmp_path / "gnupg"
    home.mkdir()
    return ProvisionConfig(
        gnupghome=home,
        output_dir=tmp_path / "out",
        passphrase=SecureString("test-passphrase-secure"),
        engine_env={"PATH": "/usr/bin:/bin"},
    )


@pytest.fixture
def gpg_ops(provision_config: ProvisionConfig) -> GPGOperations:
    return GPGOperations(provision_config)


@pytest.fixture
def mock_prompts() -> MockPrompts:
    return MockPrompts(confirmations=True)


@pytest.fixture
def token_handle() -> TokenHandle:
    info = TokenInfo(
        serial=TEST_SERIAL,
        version="5.4.3",
        form_factor="Keychain (USB-A)",
        has_openpgp=True,
    )
    return TokenHandle(serial=TEST_SERIAL, info=info)


@pytest.fixture
def completed() -> Callable[..., subprocess.CompletedProcess[str]]:
    """Factory for fake ``subprocess.run`` results."""

    def make(
        returncode: int = 0, stdout: str = "", stderr: str = ""
    ) -> subprocess.CompletedProcess[str]:
        return subprocess.CompletedProcess(
            args=[], returncode=returncode, stdout=stdout, stderr=stderr
        )

    return make


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "hardware: marks tests as requiring physical YubiKey")
    config.addinivalue_line("markers", "slow: marks tests as slow-running")


def pytest_collection_modifyitems(  # noqa: ARG001
    config: pytest.Config, items: list[pytest.Item]
) -> None:
    skip_hardware = pytest.mark.skip(reason="No YubiKey connected")
    skip_gpg_agent = pytest.mark.skip(reason="gpg-agent cannot start in isolated environment")

    for item in items:
        if "hardware" in item.keywords and not yubikey_available():
            item.add_marker(skip_hardware)
        # Slow tests drive real gpg and gpg-agent
        if "slow" in item.keywords and not gpg_agent_available():
            item.add_marker(skip_gpg_agent)
