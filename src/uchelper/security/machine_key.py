"""
Machine-bound key for the credential store index.

The credential store has to be readable without prompting for a password
(tools launched from wrapper scripts cannot answer prompts), so its index
is sealed with a key derived from stable machine attributes:

    fingerprint = hostname + home directory + sys.platform + CPU architecture
    key         = PBKDF2-HMAC-SHA256(fingerprint, MACHINE_KEY_SALT, 100,000, 32)

The derived key (not the fingerprint) is written to ``machine.key`` with
owner-only permissions on first use and loaded from there afterwards.

Threat Model:
    - Protects against: the credential index leaking through backups,
      synced folders, or casual inspection of the state directory
    - Does NOT protect against: anyone who can read machine.key, or anyone
      on the same host who can read the fingerprint inputs and re-derive
      the key. It is not a substitute for a user password.

Losing machine.key on a host whose fingerprint has changed (renamed host,
moved home directory) makes the sealed index unrecoverable.
"""

from __future__ import annotations

import logging
import os
import platform
import socket
import sys
from pathlib import Path

from uchelper.security.crypto import KEY_LENGTH, derive_key

logger = logging.getLogger(__name__)

# Versioned so a future change of derivation can coexist with old key files
MACHINE_KEY_SALT = b"uchelper-machine-key-v1"
MACHINE_KEY_FILE = "machine.key"


class MachineKeyProvider:
    """
    Derives, caches and persists the machine-bound key.

    Attributes:
        state_dir: Directory holding the key file.
        key_path: Path to the persisted key.
    """

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = Path(state_dir)
        self.key_path = self.state_dir / MACHINE_KEY_FILE
        self._key: bytes | None = None

    @staticmethod
    def fingerprint() -> str:
        """Concatenate the machine attributes the key is bound to."""
        return (
            socket.gethostname()
            + str(Path.home())
            + sys.platform
            + platform.machine()
        )

    def derive(self) -> bytes:
        """Derive the key from the current machine fingerprint."""
        return derive_key(self.fingerprint(), MACHINE_KEY_SALT)

    def get_key(self) -> bytes:
        """
        Return the machine key, loading or creating the key file as needed.

        Returns:
            32 bytes of key material.

        Raises:
            OSError: If a new key file cannot be written.
        """
        if self._key is not None:
            return self._key

        key = self._load_key_file()
        if key is None:
            key = self.derive()
            self._write_key_file(key)
            logger.info(f"Created machine key: {self.key_path}")

        self._key = key
        return key

    def clear_cache(self) -> None:
        """Forget the in-memory key. The key file is left alone."""
        self._key = None

    def _load_key_file(self) -> bytes | None:
        if not self.key_path.exists():
            return None

        data = self.key_path.read_bytes()
        if len(data) != KEY_LENGTH:
            logger.warning(
                f"Ignoring malformed machine key file {self.key_path} "
                f"({len(data)} bytes); re-deriving"
            )
            return None
        return data

    def _write_key_file(self, key: bytes) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        temp_path = self.key_path.with_suffix(".tmp")

        try:
            # Create with 0600 so the key is never briefly world-readable
            fd = os.open(temp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "wb") as f:
                f.write(key)

            try:
                os.chmod(temp_path, 0o600)
            except OSError:
                # Windows - no POSIX permission bits
                pass

            temp_path.replace(self.key_path)

        except Exception:
            if temp_path.exists():
                temp_path.unlink()
            raise
