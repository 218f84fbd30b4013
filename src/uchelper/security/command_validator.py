"""
Command validation for safe process execution.

Every external tool uchelper launches (installers, version probes, the
``exec`` command) goes through this module first. A command string is
accepted only if it can be run as a plain argument vector with no shell
involved:

    1. The whole raw string is scanned for injection idioms (chaining,
       substitution, redirection, shell metacharacters, NUL bytes).
    2. The string is split into program and arguments by a small
       quote-aware lexer.
    3. The program and each argument must match a conservative character
       allow-list.

An attacker has to get past both the pattern scan and the allow-list.
Accepted commands are run with ``subprocess.run([...], shell=False)``.
"""

from __future__ import annotations

import logging
import re
import subprocess
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)

# Order matters only for the error message: specific idioms are listed
# before the catch-all metacharacter class.
DANGEROUS_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    ("null byte", re.compile(r"\x00")),
    ("command chaining '&&'", re.compile(r"&&")),
    ("command chaining '||'", re.compile(r"\|\|")),
    ("command chaining ';'", re.compile(r";")),
    ("backtick command substitution", re.compile(r"`")),
    ("$() command substitution", re.compile(r"\$\(")),
    ("output redirection '>>'", re.compile(r">>")),
    ("output redirection '>'", re.compile(r">")),
    ("input redirection '<'", re.compile(r"<")),
    ("pipe", re.compile(r"\|")),
    ("shell metacharacter", re.compile(r"[;&|`$(){}\[\]<>\\!#*?\"']")),
]

SAFE_TOKEN_PATTERN = re.compile(r"^[a-zA-Z0-9._\-/]+$")

INVALID_COMMAND_MESSAGE = "Invalid command - validation failed"


class LexState(Enum):
    """States of the command tokenizer."""

    NORMAL = "normal"
    IN_SINGLE_QUOTE = "single"
    IN_DOUBLE_QUOTE = "double"


@dataclass
class ParsedCommand:
    """A command line split into program and arguments."""

    program: str
    args: list[str] = field(default_factory=list)


@dataclass
class ValidationResult:
    """
    Outcome of validating a command string.

    The parsed command and args are attached even when validation fails,
    for diagnostics. Callers must check is_valid before using them.
    """

    is_valid: bool
    command: str = ""
    args: list[str] = field(default_factory=list)
    error: str | None = None
    warnings: list[str] = field(default_factory=list)


@dataclass
class SafeCommand:
    """A validated program and argument list ready for a non-shell spawn."""

    cmd: str
    args: list[str]

    @property
    def argv(self) -> list[str]:
        return [self.cmd, *self.args]


@dataclass
class ExecResult:
    """Result of running a validated command."""

    success: bool
    stdout: str = ""
    stderr: str = ""
    returncode: int | None = None
    error: str | None = None


def tokenize(text: str) -> list[str]:
    """
    Split a command line into tokens, honouring single and double quotes.

    Quotes only group characters (including spaces) into one token; they
    are stripped from the output. There is no backslash escaping.
    """
    tokens: list[str] = []
    current: list[str] = []
    state = LexState.NORMAL

    for char in text:
        if state is LexState.NORMAL:
            if char == "'":
                state = LexState.IN_SINGLE_QUOTE
            elif char == '"':
                state = LexState.IN_DOUBLE_QUOTE
            elif char.isspace():
                if current:
                    tokens.append("".join(current))
                    current = []
            else:
                current.append(char)
        elif state is LexState.IN_SINGLE_QUOTE:
            if char == "'":
                state = LexState.NORMAL
            else:
                current.append(char)
        else:
            if char == '"':
                state = LexState.NORMAL
            else:
                current.append(char)

    if current:
        tokens.append("".join(current))

    return tokens


class CommandValidator:
    """
    Validates and parses command strings before they are executed.

    The validator is stateless; the CLI builds one and hands it to
    whatever needs to spawn processes.

    Usage:
        validator = CommandValidator()
        safe = validator.make_safe("git status")
        if safe is None:
            ...  # do not execute
        subprocess.run(safe.argv, shell=False)
    """

    def parse_command(self, command_string: str | None) -> ParsedCommand:
        """
        Parse a command string into program and arguments.

        Args:
            command_string: Raw command line.

        Returns:
            ParsedCommand. Empty or non-string input yields an empty program.
        """
        if not command_string or not isinstance(command_string, str):
            return ParsedCommand(program="")

        tokens = tokenize(command_string.strip())
        if not tokens:
            return ParsedCommand(program="")

        return ParsedCommand(program=tokens[0], args=tokens[1:])

    def validate(self, command_string: str | None) -> ValidationResult:
        """
        Validate a command string for injection risks.

        Never raises for bad input; problems are reported in the result.

        Args:
            command_string: Raw command line.

        Returns:
            ValidationResult with is_valid and, on failure, an error message.
        """
        result = ValidationResult(is_valid=False)

        if not command_string or not isinstance(command_string, str):
            result.error = "Command is empty or invalid"
            return result

        trimmed = command_string.strip()
        if not trimmed:
            result.error = "Command is empty"
            return result

        parsed = self.parse_command(trimmed)
        result.command = parsed.program
        result.args = parsed.args

        if not parsed.program:
            result.error = "Command is empty"
            return result

        # Scan the raw string: metacharacters can hide between tokens
        matched = self.find_dangerous_pattern(command_string)
        if matched is not None:
            result.error = f"Command contains invalid characters ({matched})"
            return result

        if not self.is_safe_command_name(parsed.program):
            result.error = f"Command contains invalid characters: {parsed.program}"
            return result

        for arg in parsed.args:
            if not self.is_safe_argument(arg):
                result.error = f"Argument contains invalid characters: {arg}"
                return result

        if ".." in parsed.program.split("/"):
            result.warnings.append(
                f"Command path contains a parent directory reference: {parsed.program}"
            )

        result.is_valid = True
        return result

    def find_dangerous_pattern(self, text: str) -> str | None:
        """Return the description of the first dangerous pattern in text."""
        for description, pattern in DANGEROUS_PATTERNS:
            if pattern.search(text):
                return description
        return None

    def is_safe_command_name(self, command: str) -> bool:
        """Check a program name: bare names, relative and absolute paths."""
        return bool(SAFE_TOKEN_PATTERN.match(command))

    def is_safe_argument(self, arg: str) -> bool:
        """Check a single argument. Empty arguments are allowed."""
        if not arg:
            return True
        if self.find_dangerous_pattern(arg) is not None:
            return False
        return bool(SAFE_TOKEN_PATTERN.match(arg))

    def make_safe(self, command_string: str | None) -> SafeCommand | None:
        """
        Gate a command string before spawning it.

        Returns:
            SafeCommand, or None if the command must not be executed.
        """
        validation = self.validate(command_string)

        if not validation.is_valid:
            logger.debug(f"Command validation failed: {validation.error}")
            return None

        if validation.warnings:
            logger.warning(f"Command has warnings: {', '.join(validation.warnings)}")

        return SafeCommand(cmd=validation.command, args=validation.args)

    def run(
        self,
        command_string: str | None,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> ExecResult:
        """
        Validate and execute a command without a shell.

        Args:
            command_string: Raw command line.
            cwd: Working directory for the child.
            env: Complete environment for the child (None inherits ours).
            timeout: Seconds before the child is killed.

        Returns:
            ExecResult. Rejections, spawn errors, timeouts and non-zero
            exits are all reported as success=False.
        """
        safe = self.make_safe(command_string)
        if safe is None:
            return ExecResult(success=False, error=INVALID_COMMAND_MESSAGE)

        try:
            completed = subprocess.run(
                safe.argv,
                shell=False,
                cwd=cwd,
                env=dict(env) if env is not None else None,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            logger.warning(f"Command timed out after {timeout}s: {safe.cmd}")
            return ExecResult(success=False, error=f"Command timed out: {e}")
        except OSError as e:
            logger.debug(f"Could not start {safe.cmd}: {e}")
            return ExecResult(success=False, error=str(e))

        if completed.returncode != 0:
            return ExecResult(
                success=False,
                stdout=completed.stdout,
                stderr=completed.stderr,
                returncode=completed.returncode,
                error=f"Command exited with status {completed.returncode}",
            )

        return ExecResult(
            success=True,
            stdout=completed.stdout,
            stderr=completed.stderr,
            returncode=completed.returncode,
        )
