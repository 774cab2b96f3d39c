from __future__ import annotations

import base64
import logging
from pathlib import Path

import pytest

from yubikey_provision.config import ProvisionConfig
from yubikey_provision.secret_handler import SecretHandler, current_passphrase, new_passphrase
from yubikey_provision.types import SecureString


class TestNewPassphrase:
    def test_default_length_has_no_padding(self) -> None:
        passphrase = new_passphrase()
        assert len(passphrase) == 32
        assert "=" not in passphrase.get()
        assert len(base64.b64decode(passphrase.get())) == 24

    @pytest.mark.parametrize("byte_length", [3, 12, 33])
    def test_multiples_of_three(self, byte_length: int) -> None:
        passphrase = new_passphrase(byte_length)
        assert len(passphrase) == byte_length // 3 * 4
        assert "=" not in passphrase.get()

    @pytest.mark.parametrize("byte_length", [0, -3, 1, 16, 25])
    def test_rejects_other_lengths(self, byte_length: int) -> None:
        with pytest.raises(ValueError, match="multiple of 3"):
            new_passphrase(byte_length)

    def test_values_differ(self) -> None:
        assert new_passphrase().get() != new_passphrase().get()


class TestCurrentPassphrase:
    def test_returns_bound_value(self) -> None:
        config = ProvisionConfig(gnupghome=None, passphrase=SecureString("bound"))
        passphrase = current_passphrase(config)
        assert passphrase is not None
        assert passphrase.get() == "bound"

    def test_unset_warns(self, caplog: pytest.LogCaptureFixture) -> None:
        config = ProvisionConfig(gnupghome=None)
        with caplog.at_level(logging.WARNING, logger="yubikey-provision.secrets"):
            assert current_passphrase(config) is None
        assert "No passphrase configured" in caplog.text

    def test_empty_warns_but_is_returned(self, caplog: pytest.LogCaptureFixture) -> None:
        config = ProvisionConfig(gnupghome=None, passphrase=SecureString(""))
        with caplog.at_level(logging.WARNING, logger="yubikey-provision.secrets"):
            passphrase = current_passphrase(config)
        assert passphrase is not None
        assert len(passphrase) == 0
        assert "empty" in caplog.text

    def test_value_never_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        config = ProvisionConfig(gnupghome=None, passphrase=SecureString("do-not-log-me"))
        with caplog.at_level(logging.DEBUG):
            current_passphrase(config)
        assert "do-not-log-me" not in caplog.text


class TestSecretHandler:
    def test_unset_passphrase_becomes_empty(self, tmp_path: Path) -> None:
        handler = SecretHandler(ProvisionConfig(gnupghome=tmp_path))
        assert handler.passphrase().get() == ""

    def test_admin_pin_comes_from_config(self) -> None:
        handler = SecretHandler(ProvisionConfig(gnupghome=None))
        assert handler.admin_pin().get() == "12345678"

    def test_clear_wipes_issued(self) -> None:
        config = ProvisionConfig(gnupghome=None, passphrase=SecureString("secret"))
        handler = SecretHandler(config)
        passphrase = handler.passphrase()
        handler.clear()
        assert passphrase.get() == ""
        assert handler._issued == []
