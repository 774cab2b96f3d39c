"""Tests for gpg card-edit sessions."""

from __future__ import annotations

import subprocess
from collections.abc import Callable
from unittest.mock import MagicMock, patch

import pexpect
import pytest

from yubikey_provision.card_edit import CardEditor, split_name
from yubikey_provision.config import ProvisionConfig
from yubikey_provision.errors import CardMetadataFailed, EngineProtocolError, PinChangeFailed
from yubikey_provision.types import Identity, PinKind, SecureString

Completed = Callable[..., subprocess.CompletedProcess[str]]


@pytest.fixture
def editor(config: ProvisionConfig) -> CardEditor:
    return CardEditor(config)


def fake_child(*outcomes: object) -> MagicMock:
    child = MagicMock()
    child.expect.side_effect = list(outcomes)
    child.before = "[GNUPG:] PINENTRY_LAUNCHED 1234\n"
    return child


class TestSplitName:
    def test_last_word_is_surname(self) -> None:
        assert split_name("Ada King Lovelace") == ("Lovelace", "Ada King")

    def test_single_word(self) -> None:
        assert split_name("Plato") == ("Plato", "")

    def test_empty(self) -> None:
        assert split_name("   ") == ("", "")


class TestSetCardholder:
    def test_script_on_stdin(self, editor: CardEditor, completed: Completed) -> None:
        identity = Identity("Ada Lovelace", "ada@example.org")
        with patch(
            "yubikey_provision.card_edit.subprocess.run", return_value=completed()
        ) as mock_run:
            result = editor.set_cardholder(identity, SecureString("12345678"))

        assert result.is_ok()
        cmd = mock_run.call_args[0][0]
        assert cmd[-1] == "--card-edit"
        assert "12345678" not in cmd
        lines = mock_run.call_args[1]["input"].split("\n")
        assert lines[:8] == [
            "12345678",
            "admin",
            "name",
            "Lovelace",
            "Ada",
            "login",
            "ada@example.org",
            "quit",
        ]

    def test_any_stderr_is_failure(self, editor: CardEditor, completed: Completed) -> None:
        with patch(
            "yubikey_provision.card_edit.subprocess.run",
            return_value=completed(stderr="gpg: error setting Name: Bad PIN\n"),
        ):
            result = editor.set_cardholder(
                Identity("Ada Lovelace", "ada@example.org"), SecureString("000000")
            )

        error = result.unwrap_err()
        assert isinstance(error, CardMetadataFailed)
        assert "Bad PIN" in (error.engine_output or "")


class TestChangePin:
    def test_success(self, editor: CardEditor) -> None:
        child = fake_child(0, 0, 0, 0, 0, 0, 0)
        with patch("yubikey_provision.card_edit.pexpect.spawn", return_value=child) as spawn:
            result = editor.change_pin(PinKind.USER)

        assert result.is_ok()
        assert spawn.call_args[0][1] == ["--status-fd", "1", "--card-edit"]
        sent = [c[0][0] for c in child.sendline.call_args_list]
        assert sent == ["admin", "passwd", "1", "q", "quit"]
        child.close.assert_called_with(force=True)

    def test_waits_without_timeout_for_operator(self, editor: CardEditor) -> None:
        child = fake_child(0, 0, 0, 0, 0, 0, 0)
        with patch("yubikey_provision.card_edit.pexpect.spawn", return_value=child):
            editor.change_pin(PinKind.USER)
        assert child.expect.call_args_list[3][1] == {"timeout": None}

    def test_admin_selector(self, editor: CardEditor) -> None:
        child = fake_child(0, 0, 0, 0, 0, 0, 0)
        with patch("yubikey_provision.card_edit.pexpect.spawn", return_value=child):
            editor.change_pin(PinKind.ADMIN)
        assert child.sendline.call_args_list[2][0][0] == "3"

    @pytest.mark.parametrize("outcome", [1, 2, 3])
    def test_anything_but_success_fails(self, editor: CardEditor, outcome: int) -> None:
        child = fake_child(0, 0, 0, outcome)
        with patch("yubikey_provision.card_edit.pexpect.spawn", return_value=child):
            result = editor.change_pin(PinKind.ADMIN)

        error = result.unwrap_err()
        assert isinstance(error, PinChangeFailed)
        assert error.kind == "admin"
        assert str(error).startswith("Admin PIN change failed")
        assert "PINENTRY_LAUNCHED" in (error.engine_output or "")
        child.close.assert_called_once_with(force=True)

    def test_menu_timeout(self, editor: CardEditor) -> None:
        child = fake_child(0, pexpect.TIMEOUT("timed out"))
        with patch("yubikey_provision.card_edit.pexpect.spawn", return_value=child):
            result = editor.change_pin(PinKind.USER)
        assert type(result.unwrap_err()) is EngineProtocolError

    def test_session_ends_early(self, editor: CardEditor) -> None:
        child = fake_child(pexpect.EOF("gpg exited"))
        with patch("yubikey_provision.card_edit.pexpect.spawn", return_value=child):
            result = editor.change_pin(PinKind.USER)
        assert isinstance(result.unwrap_err(), PinChangeFailed)

    def test_leaving_menu_after_success_is_ignored(self, editor: CardEditor) -> None:
        child = fake_child(0, 0, 0, 0, pexpect.TIMEOUT("slow"))
        with patch("yubikey_provision.card_edit.pexpect.spawn", return_value=child):
            result = editor.change_pin(PinKind.USER)
        assert result.is_ok()
        child.close.assert_called_with(force=True)
