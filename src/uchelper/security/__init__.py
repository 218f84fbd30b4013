"""
Cryptography and process-safety primitives for uchelper.

This package holds the pieces everything else builds its trust boundary
on: the password codec for user secrets, the machine-bound key and codec
for the credential index, and the command validator used before any
external process is spawned.
"""

from uchelper.security.command_validator import (
    CommandValidator,
    ExecResult,
    ParsedCommand,
    SafeCommand,
    ValidationResult,
    tokenize,
)
from uchelper.security.crypto import (
    CiphertextFormatError,
    CryptoError,
    DecryptionError,
    MachineKeyCodec,
    PasswordCodec,
    decrypt,
    derive_key,
    encrypt,
)
from uchelper.security.machine_key import MachineKeyProvider

__all__ = [
    # Codecs
    "PasswordCodec",
    "MachineKeyCodec",
    "encrypt",
    "decrypt",
    "derive_key",
    "CryptoError",
    "DecryptionError",
    "CiphertextFormatError",
    # Machine key
    "MachineKeyProvider",
    # Command validation
    "CommandValidator",
    "ValidationResult",
    "ParsedCommand",
    "SafeCommand",
    "ExecResult",
    "tokenize",
]
