"""Tests for output module."""

import json

import pytest

from integrate_sdk.errors import (
    CallbackTimeoutError,
    IntegrateSDKError,
    InvalidStateError,
    TokenExchangeError,
)
from integrate_sdk.output import OutputHandler, format_error_json, format_json, help_for_error


class TestFormatJson:
    """Tests for format_json function."""

    def test_format_success(self):
        """Test formatting successful response."""
        parsed = json.loads(format_json({"provider": "github"}))
        assert parsed == {"success": True, "data": {"provider": "github"}}

    def test_format_non_serializable(self):
        """Test that unknown types fall back to str()."""
        parsed = json.loads(format_json({"value": object}))
        assert parsed["data"]["value"] == str(object)


class TestFormatErrorJson:
    """Tests for format_error_json function."""

    def test_format_error(self):
        """Test formatting an error with help text."""
        parsed = json.loads(format_error_json(InvalidStateError("bad state"), "try again"))

        assert parsed["success"] is False
        assert parsed["error"] == {"type": "InvalidStateError", "message": "bad state", "help": "try again"}

    def test_format_error_without_help(self):
        """Test that missing help becomes an empty string."""
        parsed = json.loads(format_error_json(ValueError("oops")))
        assert parsed["error"]["help"] == ""


class TestHelpForError:
    """Tests for help_for_error function."""

    def test_known_errors(self):
        """Test advice for errors the user can act on."""
        assert "--timeout" in help_for_error(CallbackTimeoutError("timed out"))  # type: ignore[operator]
        assert "oauthApiBase" in help_for_error(TokenExchangeError("failed"))  # type: ignore[operator]

    def test_unknown_error(self):
        """Test that generic errors have no advice."""
        assert help_for_error(IntegrateSDKError("generic")) is None


class TestOutputHandler:
    """Tests for OutputHandler class."""

    def test_success_json_mode(self, capsys):
        """Test success output in JSON mode."""
        OutputHandler(json_mode=True).success({"authorized": True})

        parsed = json.loads(capsys.readouterr().out)
        assert parsed == {"success": True, "data": {"authorized": True}}

    def test_success_human_message(self, capsys):
        """Test success output with a human message."""
        OutputHandler().success({"authorized": True}, human_message="Authorized github")
        assert capsys.readouterr().out.strip() == "Authorized github"

    def test_error_json_mode(self, capsys):
        """Test error output in JSON mode exits with status 1."""
        with pytest.raises(SystemExit) as exc_info:
            OutputHandler(json_mode=True).error(InvalidStateError("bad state"))

        assert exc_info.value.code == 1
        parsed = json.loads(capsys.readouterr().out)
        assert parsed["error"]["type"] == "InvalidStateError"
        assert "authorize" in parsed["error"]["help"]

    def test_error_human_mode(self, capsys):
        """Test error output goes to stderr with help."""
        with pytest.raises(SystemExit):
            OutputHandler().error(IntegrateSDKError("Unknown provider: slack"), help_text="Configured providers: github")

        err = capsys.readouterr().err
        assert "Error: Unknown provider: slack" in err
        assert "Configured providers: github" in err

    def test_table_human(self, capsys):
        """Test aligned table output."""
        OutputHandler().table(["Provider", "Authorized"], [["github", "yes"], ["gmail", "no"]])

        lines = capsys.readouterr().out.splitlines()
        assert lines[0].split() == ["Provider", "Authorized"]
        assert lines[2].split() == ["github", "yes"]
        assert lines[3].split() == ["gmail", "no"]

    def test_table_json(self, capsys):
        """Test that JSON tables are lists of row objects."""
        OutputHandler(json_mode=True).table(["Provider", "Authorized"], [["github", "yes"]])

        parsed = json.loads(capsys.readouterr().out)
        assert parsed["data"] == [{"Provider": "github", "Authorized": "yes"}]
