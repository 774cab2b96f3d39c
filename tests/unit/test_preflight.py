"""Tests for preflight checks."""

from __future__ import annotations

import subprocess
from collections.abc import Callable
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from yubikey_provision.config import ProvisionConfig, write_gpg_agent_conf, write_gpg_conf
from yubikey_provision.errors import MissingDependencyError
from yubikey_provision.preflight import (
    PRESET_HELPER,
    CheckResult,
    PreflightReport,
    check,
    check_agent_profile,
    check_gpg,
    check_gpg_profile,
    check_state_dir,
    check_ykman,
    ensure_terminal_binding,
    parse_gpg_version,
    resolve_preset_helper,
    run_checks,
)

Completed = Callable[..., subprocess.CompletedProcess[str]]


@pytest.fixture
def profiled_config(config: ProvisionConfig) -> ProvisionConfig:
    assert config.gnupghome is not None
    write_gpg_conf(config.gnupghome)
    write_gpg_agent_conf(config.gnupghome)
    return config


class TestParseGpgVersion:
    def test_parses_first_line(self) -> None:
        output = "gpg (GnuPG) 2.4.3\nlibgcrypt 1.10.2\n"
        assert parse_gpg_version(output) == (2, 4)

    def test_major_only(self) -> None:
        assert parse_gpg_version("gpg (GnuPG) 2\n") == (2, 0)

    def test_garbage(self) -> None:
        assert parse_gpg_version("not a version\n") is None

    def test_empty(self) -> None:
        assert parse_gpg_version("") is None


class TestCheckGpg:
    def test_not_installed(self, config: ProvisionConfig) -> None:
        with patch("yubikey_provision.preflight.shutil.which", return_value=None):
            result = check_gpg(config)
        assert not result.passed
        assert result.fix_hint is not None

    def test_supported_version(self, config: ProvisionConfig, completed: Completed) -> None:
        with (
            patch("yubikey_provision.preflight.shutil.which", return_value="/usr/bin/gpg"),
            patch(
                "yubikey_provision.preflight.subprocess.run",
                return_value=completed(stdout="gpg (GnuPG) 2.2.40\n"),
            ),
        ):
            result = check_gpg(config)
        assert result.passed
        assert "2.2" in result.message

    @pytest.mark.parametrize("version", ["1.4.23", "2.1.18", "3.0.0"])
    def test_unsupported_versions(
        self, config: ProvisionConfig, completed: Completed, version: str
    ) -> None:
        with (
            patch("yubikey_provision.preflight.shutil.which", return_value="/usr/bin/gpg"),
            patch(
                "yubikey_provision.preflight.subprocess.run",
                return_value=completed(stdout=f"gpg (GnuPG) {version}\n"),
            ),
        ):
            result = check_gpg(config)
        assert not result.passed

    def test_os_error(self, config: ProvisionConfig) -> None:
        with (
            patch("yubikey_provision.preflight.shutil.which", return_value="/usr/bin/gpg"),
            patch("yubikey_provision.preflight.subprocess.run", side_effect=OSError("denied")),
        ):
            result = check_gpg(config)
        assert not result.passed
        assert "denied" in result.message


class TestPresetHelper:
    def test_found_on_path(self, config: ProvisionConfig) -> None:
        with patch(
            "yubikey_provision.preflight.shutil.which", return_value="/usr/bin/" + PRESET_HELPER
        ):
            assert resolve_preset_helper(config) == "/usr/bin/" + PRESET_HELPER

    def test_found_in_libexec(
        self, config: ProvisionConfig, completed: Completed, tmp_path: Path
    ) -> None:
        helper = tmp_path / PRESET_HELPER
        helper.write_text("#!/bin/sh\n")
        helper.chmod(0o755)
        with (
            patch("yubikey_provision.preflight.shutil.which", return_value=None),
            patch(
                "yubikey_provision.preflight.subprocess.run",
                return_value=completed(stdout=f"{tmp_path}\n"),
            ) as mock_run,
        ):
            assert resolve_preset_helper(config) == str(helper)
        assert mock_run.call_args[0][0] == ["gpgconf", "--list-dirs", "libexecdir"]

    def test_not_found(self, config: ProvisionConfig, completed: Completed, tmp_path: Path) -> None:
        with (
            patch("yubikey_provision.preflight.shutil.which", return_value=None),
            patch(
                "yubikey_provision.preflight.subprocess.run",
                return_value=completed(stdout=f"{tmp_path}\n"),
            ),
        ):
            assert resolve_preset_helper(config) is None


class TestCheckYkman:
    def test_missing_is_critical_for_card_operations(self, config: ProvisionConfig) -> None:
        with patch("yubikey_provision.preflight.shutil.which", return_value=None):
            result = check_ykman(config, card_operation=True)
        assert not result.passed
        assert result.critical

    def test_missing_is_warning_otherwise(self, config: ProvisionConfig) -> None:
        with patch("yubikey_provision.preflight.shutil.which", return_value=None):
            result = check_ykman(config, card_operation=False)
        assert not result.passed
        assert not result.critical


class TestCheckStateDir:
    def test_unset(self) -> None:
        result = check_state_dir(ProvisionConfig(gnupghome=None))
        assert not result.passed
        assert "GNUPGHOME" in result.message

    def test_missing(self, tmp_path: Path) -> None:
        result = check_state_dir(ProvisionConfig(gnupghome=tmp_path / "nope"))
        assert not result.passed
        assert "does not exist" in result.message

    def test_not_a_directory(self, tmp_path: Path) -> None:
        file_path = tmp_path / "file"
        file_path.write_text("")
        result = check_state_dir(ProvisionConfig(gnupghome=file_path))
        assert not result.passed
        assert "not a directory" in result.message

    def test_valid(self, config: ProvisionConfig) -> None:
        assert check_state_dir(config).passed


class TestProfileChecks:
    def test_gpg_conf_missing(self, config: ProvisionConfig) -> None:
        result = check_gpg_profile(config)
        assert not result.passed
        assert "setup-config" in (result.fix_hint or "")

    def test_gpg_conf_present(self, profiled_config: ProvisionConfig) -> None:
        assert check_gpg_profile(profiled_config).passed

    def test_agent_profile(self, profiled_config: ProvisionConfig) -> None:
        assert check_agent_profile(profiled_config, card_operation=True).passed

    def test_agent_profile_missing(self, config: ProvisionConfig) -> None:
        result = check_agent_profile(config, card_operation=True)
        assert not result.passed
        assert result.critical


class TestReport:
    def test_properties(self) -> None:
        report = PreflightReport(
            system="Linux",
            checks=[
                CheckResult("a", True, "ok"),
                CheckResult("b", False, "bad"),
                CheckResult("c", False, "meh", critical=False),
            ],
        )
        assert not report.all_passed
        assert [c.name for c in report.critical_failures] == ["b"]
        assert [c.name for c in report.warnings] == ["c"]


class TestCheck:
    def test_reports_every_failure(self) -> None:
        config = ProvisionConfig(gnupghome=None)
        with (
            patch("yubikey_provision.preflight.shutil.which", return_value=None),
            patch(
                "yubikey_provision.preflight.subprocess.run",
                side_effect=FileNotFoundError("gpgconf"),
            ),
        ):
            result = check(config, card_operation=True)

        assert result.is_err()
        error = result.unwrap_err()
        assert isinstance(error, MissingDependencyError)
        names = " ".join(error.missing)
        for expected in ("GnuPG", "gpg-agent", "gpgconf", PRESET_HELPER, "YubiKey Manager"):
            assert expected in names
        assert "State directory" in names
        assert "gpg-agent.conf" in names
        assert error.recovery_hints

    def test_passes_when_everything_is_present(
        self, profiled_config: ProvisionConfig, completed: Completed
    ) -> None:
        with (
            patch("yubikey_provision.preflight.shutil.which", side_effect=lambda n: f"/bin/{n}"),
            patch(
                "yubikey_provision.preflight.subprocess.run",
                return_value=completed(stdout="gpg (GnuPG) 2.4.3\n"),
            ),
        ):
            result = check(profiled_config, card_operation=True)

        assert result.is_ok()
        assert result.unwrap().all_passed

    def test_ykman_only_warns_for_key_generation(
        self, profiled_config: ProvisionConfig, completed: Completed
    ) -> None:
        def which(name: str) -> str | None:
            return None if name == "ykman" else f"/bin/{name}"

        with (
            patch("yubikey_provision.preflight.shutil.which", side_effect=which),
            patch(
                "yubikey_provision.preflight.subprocess.run",
                return_value=completed(stdout="gpg (GnuPG) 2.4.3\n"),
            ),
        ):
            report = run_checks(profiled_config, card_operation=False)

        assert report.all_passed
        assert [w.name for w in report.warnings] == ["YubiKey Manager"]


class TestTerminalBinding:
    def test_uses_stdin_terminal(self, config: ProvisionConfig) -> None:
        fake_sys = MagicMock()
        fake_sys.stdin.isatty.return_value = True
        fake_sys.stdout.isatty.return_value = True
        fake_sys.stdin.fileno.return_value = 0
        with (
            patch("yubikey_provision.preflight.sys", fake_sys),
            patch("yubikey_provision.preflight.os.ttyname", return_value="/dev/pts/3"),
        ):
            assert ensure_terminal_binding(config) == "/dev/pts/3"
        assert config.engine_env["GPG_TTY"] == "/dev/pts/3"

    def test_falls_back_to_dev_tty(self, config: ProvisionConfig) -> None:
        fake_sys = MagicMock()
        fake_sys.stdin.isatty.return_value = False
        with (
            patch("yubikey_provision.preflight.sys", fake_sys),
            patch("yubikey_provision.preflight.Path.exists", return_value=True),
        ):
            assert ensure_terminal_binding(config) == "/dev/tty"
        assert config.engine_env["GPG_TTY"] == "/dev/tty"
