"""Tests for configuration and GnuPG profile files."""

from __future__ import annotations

import platform
from pathlib import Path

import pytest

from yubikey_provision.config import (
    HARDENED_GPG_CONF,
    LOG_FILE_NAME,
    PASSPHRASE_VAR,
    PROVISIONING_GPG_AGENT_CONF,
    ProvisionConfig,
    agent_allows_preset,
    ensure_gnupg_dir,
    setup_all_configs,
    write_gpg_agent_conf,
    write_gpg_conf,
)
from yubikey_provision.errors import InvalidStateDirError
from yubikey_provision.types import DEFAULT_ADMIN_PIN, DEFAULT_USER_PIN


class TestProvisionConfigFromEnviron:
    def test_reads_gnupghome(self, tmp_path: Path) -> None:
        config = ProvisionConfig.from_environ({"GNUPGHOME": str(tmp_path)})
        assert config.gnupghome == tmp_path

    def test_missing_gnupghome_is_none(self) -> None:
        config = ProvisionConfig.from_environ({})
        assert config.gnupghome is None

    def test_passphrase_binding(self) -> None:
        config = ProvisionConfig.from_environ({PASSPHRASE_VAR: "s3cret"})
        assert config.passphrase is not None
        assert config.passphrase.get() == "s3cret"

    def test_empty_passphrase_is_bound(self) -> None:
        config = ProvisionConfig.from_environ({PASSPHRASE_VAR: ""})
        assert config.passphrase is not None
        assert len(config.passphrase) == 0

    def test_unset_passphrase_is_none(self) -> None:
        assert ProvisionConfig.from_environ({}).passphrase is None

    def test_passphrase_not_passed_to_engines(self) -> None:
        config = ProvisionConfig.from_environ({PASSPHRASE_VAR: "s3cret", "PATH": "/usr/bin"})
        assert PASSPHRASE_VAR not in config.engine_env
        assert config.engine_env["PATH"] == "/usr/bin"

    def test_default_pins(self) -> None:
        config = ProvisionConfig.from_environ({})
        assert config.user_pin.get() == DEFAULT_USER_PIN
        assert config.admin_pin.get() == DEFAULT_ADMIN_PIN

    def test_output_dir(self, tmp_path: Path) -> None:
        config = ProvisionConfig.from_environ({}, output_dir=tmp_path)
        assert config.artifact_path("ABCDEF") == tmp_path / "ABCDEF.asc"

    def test_log_path_in_gnupghome(self, tmp_path: Path) -> None:
        config = ProvisionConfig.from_environ({"GNUPGHOME": str(tmp_path)})
        assert config.log_path == tmp_path / LOG_FILE_NAME


class TestProfileFiles:
    def test_ensure_gnupg_dir(self, tmp_path: Path) -> None:
        home = tmp_path / "gnupg"
        result = ensure_gnupg_dir(home)
        assert result.is_ok()
        assert home.is_dir()
        if platform.system() != "Windows":
            assert home.stat().st_mode & 0o777 == 0o700

    def test_ensure_gnupg_dir_under_a_file(self, tmp_path: Path) -> None:
        blocker = tmp_path / "file"
        blocker.write_text("")
        error = ensure_gnupg_dir(blocker / "gnupg").unwrap_err()
        assert isinstance(error, InvalidStateDirError)
        assert error.path == blocker / "gnupg"

    def test_write_gpg_conf(self, tmp_path: Path) -> None:
        result = write_gpg_conf(tmp_path)
        assert result.is_ok()
        assert result.unwrap().read_text() == HARDENED_GPG_CONF

    def test_write_backs_up_existing(self, tmp_path: Path) -> None:
        (tmp_path / "gpg.conf").write_text("old\n")
        write_gpg_conf(tmp_path, backup_existing=True)
        assert (tmp_path / "gpg.conf.bak").read_text() == "old\n"

    def test_custom_content(self, tmp_path: Path) -> None:
        write_gpg_conf(tmp_path, content="custom\n")
        assert (tmp_path / "gpg.conf").read_text() == "custom\n"

    def test_agent_conf_allows_preset(self, tmp_path: Path) -> None:
        write_gpg_agent_conf(tmp_path)
        assert "allow-preset-passphrase" in PROVISIONING_GPG_AGENT_CONF
        assert agent_allows_preset(tmp_path)

    def test_agent_conf_missing(self, tmp_path: Path) -> None:
        assert not agent_allows_preset(tmp_path)

    def test_agent_conf_commented_out(self, tmp_path: Path) -> None:
        (tmp_path / "gpg-agent.conf").write_text("# allow-preset-passphrase\n")
        assert not agent_allows_preset(tmp_path)

    def test_setup_all_configs(self, tmp_path: Path) -> None:
        home = tmp_path / "gnupg"
        result = setup_all_configs(home)
        assert result.is_ok()
        assert set(result.unwrap()) == {"gpg.conf", "gpg-agent.conf", "scdaemon.conf"}
        for path in result.unwrap().values():
            assert path.exists()

    @pytest.mark.skipif(platform.system() == "Windows", reason="POSIX permissions")
    def test_conf_permissions(self, tmp_path: Path) -> None:
        path = write_gpg_conf(tmp_path).unwrap()
        assert path.stat().st_mode & 0o777 == 0o600
