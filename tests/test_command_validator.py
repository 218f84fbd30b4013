"""
Tests for command validation and non-shell execution.

Uses Python's unittest module. Process spawning is mocked.
"""

from __future__ import annotations

import subprocess
import unittest
from unittest.mock import MagicMock, patch

from uchelper.security.command_validator import (
    INVALID_COMMAND_MESSAGE,
    CommandValidator,
    SafeCommand,
    tokenize,
)


class TestTokenize(unittest.TestCase):
    """Tests for the quote-aware tokenizer."""

    def test_splits_on_whitespace(self) -> None:
        """Test splitting on runs of spaces and tabs."""
        self.assertEqual(tokenize("git  status\t-s"), ["git", "status", "-s"])

    def test_quotes_group_tokens(self) -> None:
        """Test that quoted spaces stay inside one token."""
        self.assertEqual(
            tokenize("echo 'hello world' \"a b\""),
            ["echo", "hello world", "a b"],
        )

    def test_adjacent_quotes_join(self) -> None:
        """Test that quoted and bare parts of one word join."""
        self.assertEqual(tokenize("ab'c d'e"), ["abc de"])

    def test_empty_input(self) -> None:
        """Test that blank input yields no tokens."""
        self.assertEqual(tokenize("   "), [])


class TestParseCommand(unittest.TestCase):
    """Tests for CommandValidator.parse_command."""

    def setUp(self) -> None:
        """Create a validator."""
        self.validator = CommandValidator()

    def test_program_and_args(self) -> None:
        """Test splitting into program and arguments."""
        parsed = self.validator.parse_command("npm install -g pkg")
        self.assertEqual(parsed.program, "npm")
        self.assertEqual(parsed.args, ["install", "-g", "pkg"])

    def test_empty_and_non_string(self) -> None:
        """Test that empty and non-string input yield an empty program."""
        for value in ("", "   ", None, 42):
            parsed = self.validator.parse_command(value)  # type: ignore[arg-type]
            self.assertEqual(parsed.program, "")
            self.assertEqual(parsed.args, [])


class TestValidate(unittest.TestCase):
    """Tests for CommandValidator.validate."""

    def setUp(self) -> None:
        """Create a validator."""
        self.validator = CommandValidator()

    def test_rejects_injection_idioms(self) -> None:
        """Test that every chaining, substitution and redirection form is rejected."""
        rejected = [
            "ls; rm -rf /",
            "ls && whoami",
            "ls || whoami",
            "ls | cat",
            "echo `whoami`",
            "echo $(whoami)",
            "ls > out",
            "ls >> out",
            "cat < in",
            "echo $HOME",
            "ls *",
            "ls\x00rm",
            "echo 'a;b'",
            "ls {a,b}",
            "cmd \\n",
            "echo !1",
            "ls # comment",
        ]
        for command in rejected:
            result = self.validator.validate(command)
            self.assertFalse(result.is_valid, command)
            self.assertIsNotNone(result.error, command)

    def test_accepts_plain_commands(self) -> None:
        """Test that ordinary tool invocations are accepted."""
        accepted = [
            "ls -la",
            "git status",
            "npm install",
            "node --version",
            "/usr/bin/env",
            "./bin/tool run",
            "python3 -m pip list",
        ]
        for command in accepted:
            result = self.validator.validate(command)
            self.assertTrue(result.is_valid, f"{command}: {result.error}")
            self.assertIsNone(result.error)

    def test_quoted_command_rejected_with_unquoted_args(self) -> None:
        """Test that quote characters are rejected and the parsed args come back unquoted."""
        result = self.validator.validate("git checkout \"main\"")

        self.assertFalse(result.is_valid)
        self.assertEqual(result.command, "git")
        self.assertEqual(result.args, ["checkout", "main"])

    def test_empty_messages(self) -> None:
        """Test error messages for empty input."""
        self.assertEqual(self.validator.validate(None).error, "Command is empty or invalid")
        self.assertEqual(self.validator.validate("").error, "Command is empty or invalid")
        self.assertEqual(self.validator.validate("   ").error, "Command is empty")

    def test_pattern_error_names_the_pattern(self) -> None:
        """Test that the error explains what was matched."""
        result = self.validator.validate("ls && whoami")
        self.assertEqual(
            result.error,
            "Command contains invalid characters (command chaining '&&')",
        )

    def test_unsafe_program_name(self) -> None:
        """Test that characters outside the allow-list are rejected in the program."""
        result = self.validator.validate("to@l --help")
        self.assertFalse(result.is_valid)
        self.assertEqual(result.error, "Command contains invalid characters: to@l")

    def test_unsafe_argument(self) -> None:
        """Test that characters outside the allow-list are rejected in arguments."""
        result = self.validator.validate("git commit --author=me")
        self.assertFalse(result.is_valid)
        self.assertEqual(result.error, "Argument contains invalid characters: --author=me")

    def test_parent_directory_warning(self) -> None:
        """Test that a .. segment in the program path is allowed with a warning."""
        result = self.validator.validate("../bin/tool")
        self.assertTrue(result.is_valid)
        self.assertEqual(len(result.warnings), 1)

    def test_parsed_fields_attached_on_failure(self) -> None:
        """Test that command and args are filled in even when rejected."""
        result = self.validator.validate("ls $HOME")
        self.assertFalse(result.is_valid)
        self.assertEqual(result.command, "ls")
        self.assertEqual(result.args, ["$HOME"])


class TestSafetyHelpers(unittest.TestCase):
    """Tests for the token-level checks."""

    def setUp(self) -> None:
        """Create a validator."""
        self.validator = CommandValidator()

    def test_is_safe_command_name(self) -> None:
        """Test bare names and paths."""
        self.assertTrue(self.validator.is_safe_command_name("node"))
        self.assertTrue(self.validator.is_safe_command_name("/usr/local/bin/claude-code"))
        self.assertFalse(self.validator.is_safe_command_name("rm -rf"))
        self.assertFalse(self.validator.is_safe_command_name(""))

    def test_is_safe_argument(self) -> None:
        """Test that empty arguments are allowed and metacharacters are not."""
        self.assertTrue(self.validator.is_safe_argument(""))
        self.assertTrue(self.validator.is_safe_argument("--version"))
        self.assertFalse(self.validator.is_safe_argument("a;b"))
        self.assertFalse(self.validator.is_safe_argument("a b"))

    def test_find_dangerous_pattern(self) -> None:
        """Test that specific idioms are reported before the catch-all."""
        self.assertEqual(self.validator.find_dangerous_pattern("a|b"), "pipe")
        self.assertEqual(self.validator.find_dangerous_pattern("a*"), "shell metacharacter")
        self.assertIsNone(self.validator.find_dangerous_pattern("plain text"))


class TestMakeSafe(unittest.TestCase):
    """Tests for CommandValidator.make_safe."""

    def setUp(self) -> None:
        """Create a validator."""
        self.validator = CommandValidator()

    def test_valid_command(self) -> None:
        """Test that a valid command becomes a SafeCommand."""
        safe = self.validator.make_safe("git status -s")

        self.assertEqual(safe, SafeCommand(cmd="git", args=["status", "-s"]))
        self.assertEqual(safe.argv, ["git", "status", "-s"])

    def test_invalid_command(self) -> None:
        """Test that an invalid command yields None."""
        self.assertIsNone(self.validator.make_safe("git status; rm -rf /"))

    def test_warning_is_logged(self) -> None:
        """Test that warnings are logged but do not block."""
        with self.assertLogs("uchelper.security.command_validator", level="WARNING"):
            safe = self.validator.make_safe("../tool")
        self.assertIsNotNone(safe)


class TestRun(unittest.TestCase):
    """Tests for CommandValidator.run."""

    def setUp(self) -> None:
        """Create a validator."""
        self.validator = CommandValidator()

    @patch("uchelper.security.command_validator.subprocess.run")
    def test_runs_without_shell(self, mock_run: MagicMock) -> None:
        """Test that the argv is passed with shell=False."""
        mock_run.return_value = subprocess.CompletedProcess(
            args=["git", "--version"], returncode=0, stdout="git 2.45\n", stderr=""
        )

        result = self.validator.run("git --version", env={"A": "1"}, timeout=5)

        self.assertTrue(result.success)
        self.assertEqual(result.stdout, "git 2.45\n")
        self.assertEqual(result.returncode, 0)
        args, kwargs = mock_run.call_args
        self.assertEqual(args[0], ["git", "--version"])
        self.assertFalse(kwargs["shell"])
        self.assertEqual(kwargs["env"], {"A": "1"})
        self.assertEqual(kwargs["timeout"], 5)

    @patch("uchelper.security.command_validator.subprocess.run")
    def test_rejected_command_never_spawns(self, mock_run: MagicMock) -> None:
        """Test that a rejected command is not executed."""
        result = self.validator.run("ls; whoami")

        self.assertFalse(result.success)
        self.assertEqual(result.error, INVALID_COMMAND_MESSAGE)
        mock_run.assert_not_called()

    @patch("uchelper.security.command_validator.subprocess.run")
    def test_nonzero_exit(self, mock_run: MagicMock) -> None:
        """Test that a non-zero exit is reported as failure with output."""
        mock_run.return_value = subprocess.CompletedProcess(
            args=["false"], returncode=3, stdout="", stderr="boom"
        )

        result = self.validator.run("false")

        self.assertFalse(result.success)
        self.assertEqual(result.returncode, 3)
        self.assertEqual(result.stderr, "boom")

    @patch("uchelper.security.command_validator.subprocess.run")
    def test_missing_program(self, mock_run: MagicMock) -> None:
        """Test that a spawn error is reported as failure."""
        mock_run.side_effect = FileNotFoundError("No such file: nope")

        result = self.validator.run("nope")

        self.assertFalse(result.success)
        self.assertIsNone(result.returncode)
        self.assertIn("nope", result.error)

    @patch("uchelper.security.command_validator.subprocess.run")
    def test_timeout(self, mock_run: MagicMock) -> None:
        """Test that a timeout is reported as failure."""
        mock_run.side_effect = subprocess.TimeoutExpired(cmd=["sleep", "10"], timeout=1)

        result = self.validator.run("sleep 10", timeout=1)

        self.assertFalse(result.success)
        self.assertIn("timed out", result.error)


if __name__ == "__main__":
    unittest.main()
