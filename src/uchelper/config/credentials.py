"""
Secure credential storage for uchelper.

This module keeps the index of per-platform, per-tool secrets that coding
assistants need at launch time, and makes each secret available to its
tool through one of several storage strategies.

Security Design:
    - The whole index is sealed with AES-256-GCM under the machine-bound
      key (uchelper.security.machine_key), so no password prompt is needed
    - The index is rewritten in full on every mutation, via a temp file
      and atomic rename, with owner-only (0600) permissions
    - Wrapper scripts never contain secret values; they pull the values
      from the encrypted index at the moment they are sourced
    - A legacy plaintext index is migrated on first load and then deleted

Storage Strategies:
    env       Exported into the current process environment as
              CPA_<PLATFORM>_<TOOL>_<KEY>. Reapplied from the index with
              load_credentials_to_environment(). Removing a credential does
              NOT unset a variable already exported in this process unless
              unset_env=True is passed.
    wrapper   A .sh/.bat pair per (platform, tool) that exports the pair's
              variables when sourced.
    keychain  Accepted and recorded in the index, but there is no OS
              keychain backend: the value lives only in the encrypted
              index, and a warning is logged every time it is chosen.

Threat Model:
    - Protects against: the index leaking through backups or casual
      inspection of the state directory
    - Does NOT protect against: local users who can read machine.key,
      memory inspection, or anything inheriting an exported environment

File Structure:
    ~/.unified-coding-helper/machine.key               - Machine key (32 bytes)
    ~/.unified-coding-helper/env-credentials.json.enc  - Encrypted index
    ~/.unified-coding-helper/env-credentials.json      - Legacy index (migrated)
    ~/.unified-coding-helper/wrapper-scripts/          - Generated scripts
"""

from __future__ import annotations

import json
import logging
import os
import re
import shlex
import sys
import time
from collections.abc import Iterable, MutableMapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from uchelper.config.settings import DEFAULT_CONFIG_DIR
from uchelper.security.crypto import DecryptionError, MachineKeyCodec
from uchelper.security.machine_key import MachineKeyProvider

logger = logging.getLogger(__name__)

STORE_VERSION = 1
CREDENTIALS_FILE = "env-credentials.json"
ENCRYPTED_SUFFIX = ".enc"
WRAPPER_SCRIPTS_DIR = "wrapper-scripts"
ENV_VAR_PREFIX = "CPA"
CLI_COMMAND = "uchelper"

# Identifiers end up in environment variable names and script text
IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


class StorageType(str, Enum):
    """How a credential is made available to its tool."""

    ENV = "env"
    WRAPPER = "wrapper"
    KEYCHAIN = "keychain"


class CredentialError(Exception):
    """Base exception for credential-related errors."""

    pass


class CredentialStoreCorruptedError(CredentialError):
    """Raised when the credential index exists but cannot be read."""

    pass


def composite_key(platform_id: str, tool_id: str, key: str) -> str:
    """Build the platform:tool:key identity of a credential."""
    return f"{platform_id}:{tool_id}:{key}"


def env_var_name(platform_id: str, tool_id: str, key: str) -> str:
    """
    Environment variable name for a credential.

    This naming is a public contract: tools and user scripts read these
    variables directly.

    Example:
        env_var_name("glm", "claude-code", "api_key") == "CPA_GLM_CLAUDE_CODE_API_KEY"
    """
    parts = [part.upper().replace("-", "_") for part in (platform_id, tool_id, key)]
    return "_".join([ENV_VAR_PREFIX, *parts])


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class CredentialEntry:
    """A single stored credential."""

    platform_id: str
    tool_id: str
    key: str
    value: str
    storage_type: StorageType
    created_at: int
    updated_at: int

    @property
    def composite_key(self) -> str:
        return composite_key(self.platform_id, self.tool_id, self.key)

    @property
    def env_var_name(self) -> str:
        return env_var_name(self.platform_id, self.tool_id, self.key)

    def to_dict(self) -> dict[str, Any]:
        """Convert entry to its on-disk dictionary form."""
        return {
            "platformId": self.platform_id,
            "toolId": self.tool_id,
            "key": self.key,
            "value": self.value,
            "storageType": self.storage_type.value,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CredentialEntry:
        """
        Create an entry from its on-disk dictionary form.

        Raises:
            KeyError: If an identity field or the value is missing.
            ValueError: If the storage type is unknown.
        """
        now = _now_ms()
        created_at = int(data.get("createdAt") or now)
        return cls(
            platform_id=str(data["platformId"]),
            tool_id=str(data["toolId"]),
            key=str(data["key"]),
            value=str(data["value"]),
            storage_type=StorageType(data.get("storageType", StorageType.ENV.value)),
            created_at=created_at,
            updated_at=int(data.get("updatedAt") or created_at),
        )


class SecureCredentialStore:
    """
    Encrypted index of tool credentials with pluggable storage strategies.

    Build one per process and pass it to whatever needs it. The index is
    loaded (and a legacy plaintext index migrated) on construction.

    Usage:
        store = SecureCredentialStore()

        store.set_credential("glm", "cursor", "api_key", "sk-...")
        os.environ["CPA_GLM_CURSOR_API_KEY"]  # "sk-..."

        store.set_credential("minimax", "claude-code", "api_key", "mm-...", "wrapper")
        # ~/.unified-coding-helper/wrapper-scripts/minimax.claude-code.sh

        store.remove_credential("glm", "cursor", "api_key")

    For callers that must not touch the ambient environment, pass
    apply_env=False and merge env_credentials() into a child environment.

    Attributes:
        state_dir: Directory holding the index, key file and scripts.
        store_path: Path to the encrypted index.
        legacy_path: Path to the legacy plaintext index.
        wrapper_dir: Directory for generated wrapper scripts.
        apply_env: Whether env-type credentials are exported on set.
    """

    def __init__(
        self,
        state_dir: Path | None = None,
        key_provider: MachineKeyProvider | None = None,
        environ: MutableMapping[str, str] | None = None,
        apply_env: bool = True,
    ) -> None:
        """
        Initialize the store and load the index.

        Args:
            state_dir: State directory. Defaults to ~/.unified-coding-helper
            key_provider: Machine key source. Defaults to one for state_dir.
            environ: Environment mapping to export into. Defaults to os.environ.
            apply_env: If False, set_credential never mutates environ.

        Raises:
            CredentialStoreCorruptedError: If an index exists but cannot be
                decrypted or parsed.
        """
        self.state_dir = Path(state_dir) if state_dir else DEFAULT_CONFIG_DIR
        self.store_path = self.state_dir / (CREDENTIALS_FILE + ENCRYPTED_SUFFIX)
        self.legacy_path = self.state_dir / CREDENTIALS_FILE
        self.wrapper_dir = self.state_dir / WRAPPER_SCRIPTS_DIR
        self.key_provider = key_provider or MachineKeyProvider(self.state_dir)
        self.apply_env = apply_env
        self._environ: MutableMapping[str, str] = os.environ if environ is None else environ
        self._codec: MachineKeyCodec | None = None
        self._credentials: dict[str, CredentialEntry] = self._load_store()

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_credential(self, platform_id: str, tool_id: str, key: str) -> str | None:
        """Return a credential value, or None if it is not stored."""
        entry = self._credentials.get(composite_key(platform_id, tool_id, key))
        return entry.value if entry else None

    def has_credential(self, platform_id: str, tool_id: str, key: str) -> bool:
        """Check if a credential exists without retrieving it."""
        return composite_key(platform_id, tool_id, key) in self._credentials

    def get_storage_type(self, platform_id: str, tool_id: str, key: str) -> StorageType | None:
        """Return the storage strategy of a credential, or None."""
        entry = self._credentials.get(composite_key(platform_id, tool_id, key))
        return entry.storage_type if entry else None

    def get_all_credentials_for_tool(self, tool_id: str) -> list[CredentialEntry]:
        return [c for c in self._credentials.values() if c.tool_id == tool_id]

    def get_all_credentials_for_platform(self, platform_id: str) -> list[CredentialEntry]:
        return [c for c in self._credentials.values() if c.platform_id == platform_id]

    def list_all_credentials(self) -> list[CredentialEntry]:
        return list(self._credentials.values())

    def get_credential_count(self) -> int:
        return len(self._credentials)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def set_credential(
        self,
        platform_id: str,
        tool_id: str,
        key: str,
        value: str,
        storage_type: StorageType | str = StorageType.ENV,
    ) -> bool:
        """
        Store or update a credential and apply its storage strategy.

        Args:
            platform_id: Platform identifier (e.g., "glm").
            tool_id: Tool identifier (e.g., "claude-code").
            key: Credential key (e.g., "api_key").
            value: Secret value.
            storage_type: "env", "wrapper" or "keychain".

        Returns:
            True if the index was saved and the side effect applied.
            False if saving failed (the in-memory index is rolled back) or
            the side effect failed (the index keeps the new value).

        Raises:
            ValueError: If an identifier contains characters other than
                letters, digits, '_' and '-', or storage_type is unknown.
        """
        for label, ident in (("platform", platform_id), ("tool", tool_id), ("key", key)):
            if not IDENTIFIER_PATTERN.match(ident):
                raise ValueError(f"Invalid {label} identifier: {ident!r}")
        storage = StorageType(storage_type)

        ckey = composite_key(platform_id, tool_id, key)
        previous = self._credentials.get(ckey)
        now = _now_ms()

        entry = CredentialEntry(
            platform_id=platform_id,
            tool_id=tool_id,
            key=key,
            value=value,
            storage_type=storage,
            created_at=previous.created_at if previous else now,
            updated_at=now,
        )
        self._credentials[ckey] = entry

        try:
            self._save_store()
        except OSError as e:
            logger.error(f"Failed to save credential store: {e}")
            if previous is None:
                del self._credentials[ckey]
            else:
                self._credentials[ckey] = previous
            return False

        # A credential moving away from wrapper storage must not linger in
        # the old script's variable list
        if previous and previous.storage_type is StorageType.WRAPPER and storage is not StorageType.WRAPPER:
            self._refresh_wrapper_scripts(platform_id, tool_id)

        return self._apply_storage(entry)

    def remove_credential(
        self,
        platform_id: str,
        tool_id: str,
        key: str,
        unset_env: bool = False,
    ) -> bool:
        """
        Remove a credential and tear down its storage side effects.

        Removing a credential that does not exist succeeds.

        Args:
            unset_env: Also drop the variable from this process's environment.
                By default an already exported variable is left in place.

        Returns:
            True on success, False if the index could not be saved.
        """
        ckey = composite_key(platform_id, tool_id, key)
        entry = self._credentials.get(ckey)

        if entry is None:
            return True

        if entry.storage_type is StorageType.WRAPPER:
            self.remove_wrapper_script(platform_id, tool_id)

        del self._credentials[ckey]

        try:
            self._save_store()
        except OSError as e:
            logger.error(f"Failed to remove credential: {e}")
            self._credentials[ckey] = entry
            return False

        if entry.storage_type is StorageType.WRAPPER:
            self._refresh_wrapper_scripts(platform_id, tool_id)

        if unset_env:
            self._environ.pop(entry.env_var_name, None)

        return True

    def clear_all_credentials(self) -> bool:
        """Remove every credential and every generated wrapper script."""
        pairs = {(c.platform_id, c.tool_id) for c in self._credentials.values()}
        for platform_id, tool_id in pairs:
            self.remove_wrapper_script(platform_id, tool_id)

        previous = self._credentials
        self._credentials = {}

        try:
            self._save_store()
        except OSError as e:
            logger.error(f"Failed to clear credential store: {e}")
            self._credentials = previous
            return False

        return True

    # ------------------------------------------------------------------
    # Environment
    # ------------------------------------------------------------------

    def apply_env_credential(self, name: str, value: str) -> bool:
        """
        Export one variable into the environment mapping.

        This is process-global state with no undo.
        """
        try:
            self._environ[name] = value
            return True
        except (ValueError, OSError) as e:
            logger.error(f"Failed to set environment variable {name}: {e}")
            return False

    def load_credentials_to_environment(self) -> int:
        """
        Export every env-type credential into the environment mapping.

        Credentials with other storage types are never exported here.

        Returns:
            Number of variables exported.
        """
        count = 0
        for entry in self._credentials.values():
            if entry.storage_type is StorageType.ENV:
                if self.apply_env_credential(entry.env_var_name, entry.value):
                    count += 1
        return count

    def env_credentials(
        self,
        platform_id: str | None = None,
        tool_id: str | None = None,
        storage_types: Iterable[StorageType | str] | None = (StorageType.ENV,),
    ) -> dict[str, str]:
        """
        Return variable name/value pairs without touching any environment.

        Args:
            platform_id: Only this platform, if given.
            tool_id: Only this tool, if given.
            storage_types: Storage types to include. None includes all.

        Returns:
            Mapping of CPA_* names to values, for a child process env.
        """
        allowed = None if storage_types is None else {StorageType(s) for s in storage_types}

        result: dict[str, str] = {}
        for entry in self._credentials.values():
            if platform_id is not None and entry.platform_id != platform_id:
                continue
            if tool_id is not None and entry.tool_id != tool_id:
                continue
            if allowed is not None and entry.storage_type not in allowed:
                continue
            result[entry.env_var_name] = entry.value
        return result

    def shell_exports(self, platform_id: str, tool_id: str, shell: str = "sh") -> str:
        """
        Render the pair's variables as shell assignments.

        This is what wrapper scripts evaluate at run time, so only the
        pair's wrapper-type credentials are included.

        Args:
            shell: "sh" for POSIX export lines, "bat" for cmd.exe set lines.

        Raises:
            ValueError: If shell is not "sh" or "bat".
        """
        variables = self.env_credentials(
            platform_id, tool_id, storage_types=(StorageType.WRAPPER,)
        )

        if shell == "sh":
            lines = [f"export {name}={shlex.quote(value)}" for name, value in variables.items()]
        elif shell == "bat":
            lines = [f'set "{name}={value}"' for name, value in variables.items()]
        else:
            raise ValueError(f"Unsupported shell format: {shell}")

        return "\n".join(lines) + ("\n" if lines else "")

    def export_to_env_file(self, file_path: Path | str) -> bool:
        """
        Write every credential as NAME=value lines.

        The output holds plaintext secrets; it is written 0600 but the
        caller is responsible for handling the file as sensitive.
        """
        lines = [f"{c.env_var_name}={c.value}" for c in self._credentials.values()]
        content = "\n".join(lines) + ("\n" if lines else "")

        try:
            self._write_secure_file(Path(file_path), content.encode("utf-8"))
        except OSError as e:
            logger.error(f"Failed to export to env file: {e}")
            return False

        return True

    # ------------------------------------------------------------------
    # Wrapper scripts
    # ------------------------------------------------------------------

    def get_wrapper_script_path(
        self,
        platform_id: str,
        tool_id: str,
        windows: bool | None = None,
    ) -> Path:
        """Path of the pair's wrapper script (.bat on Windows, .sh elsewhere)."""
        if windows is None:
            windows = sys.platform == "win32"
        # "." cannot appear in an identifier, so each pair gets its own files
        base = f"{platform_id}.{tool_id}"
        return self.wrapper_dir / (base + (".bat" if windows else ".sh"))

    def create_wrapper_script(self, platform_id: str, tool_id: str) -> bool:
        """
        Generate the .sh and .bat wrapper scripts for a platform/tool pair.

        The scripts list variable names only and call back into the CLI
        for the values, so no secret is ever written to them.

        Returns:
            False if the pair has no wrapper credentials or writing failed.
        """
        entries = self._wrapper_entries(platform_id, tool_id)
        if not entries:
            return False

        names = sorted(entry.env_var_name for entry in entries)
        env_cmd = f"{CLI_COMMAND} credentials env --platform {platform_id} --tool {tool_id}"

        sh_content = "\n".join([
            "#!/bin/sh",
            f"# Generated by {CLI_COMMAND} for platform '{platform_id}' and tool '{tool_id}'.",
            "# Secret values are not stored here; they are read from the encrypted",
            "# credential store every time this script is sourced.",
            f"# Provides: {' '.join(names)}",
            f'eval "$({env_cmd} --format sh)"',
            "",
        ])
        bat_content = "\r\n".join([
            "@echo off",
            f"rem Generated by {CLI_COMMAND} for platform '{platform_id}' and tool '{tool_id}'.",
            "rem Secret values are read from the encrypted credential store at run time.",
            f"rem Provides: {' '.join(names)}",
            f'for /f "usebackq delims=" %%L in (`{env_cmd} --format bat`) do %%L',
            "",
        ])

        sh_path = self.get_wrapper_script_path(platform_id, tool_id, windows=False)
        bat_path = self.get_wrapper_script_path(platform_id, tool_id, windows=True)

        try:
            self.wrapper_dir.mkdir(parents=True, exist_ok=True)
            sh_path.write_text(sh_content, encoding="utf-8")
            try:
                os.chmod(sh_path, 0o755)
            except OSError:
                # Windows or permission error - continue anyway
                pass
            bat_path.write_text(bat_content, encoding="utf-8", newline="")
        except OSError as e:
            logger.error(f"Failed to create wrapper script: {e}")
            return False

        logger.debug(f"Wrote wrapper scripts for {platform_id}/{tool_id}: {sh_path}")
        return True

    def remove_wrapper_script(self, platform_id: str, tool_id: str) -> bool:
        """
        Delete the pair's wrapper scripts. Best-effort: failures are logged.

        Returns:
            True if both files are gone afterwards.
        """
        ok = True
        for windows in (False, True):
            path = self.get_wrapper_script_path(platform_id, tool_id, windows=windows)
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.error(f"Failed to remove wrapper script {path}: {e}")
                ok = False
        return ok

    def _wrapper_entries(self, platform_id: str, tool_id: str) -> list[CredentialEntry]:
        return [
            c for c in self._credentials.values()
            if c.platform_id == platform_id
            and c.tool_id == tool_id
            and c.storage_type is StorageType.WRAPPER
        ]

    def _refresh_wrapper_scripts(self, platform_id: str, tool_id: str) -> None:
        """Regenerate the pair's scripts, or delete them if nothing is left."""
        if self._wrapper_entries(platform_id, tool_id):
            self.create_wrapper_script(platform_id, tool_id)
        else:
            self.remove_wrapper_script(platform_id, tool_id)

    def _apply_storage(self, entry: CredentialEntry) -> bool:
        if entry.storage_type is StorageType.ENV:
            if not self.apply_env:
                return True
            return self.apply_env_credential(entry.env_var_name, entry.value)

        if entry.storage_type is StorageType.WRAPPER:
            return self.create_wrapper_script(entry.platform_id, entry.tool_id)

        logger.warning(
            f"Keychain storage is not implemented; '{entry.composite_key}' "
            "is kept in the encrypted credential store only"
        )
        return True

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    @property
    def codec(self) -> MachineKeyCodec:
        if self._codec is None:
            self._codec = MachineKeyCodec(self.key_provider.get_key())
        return self._codec

    def _load_store(self) -> dict[str, CredentialEntry]:
        """Load the encrypted index, migrating a legacy plaintext one."""
        if self.store_path.exists():
            try:
                text = self.store_path.read_text(encoding="utf-8")
                document = json.loads(self.codec.decrypt(text))
                return self._parse_document(document)
            except (DecryptionError, ValueError, KeyError, TypeError) as e:
                raise CredentialStoreCorruptedError(
                    f"Cannot read credential store {self.store_path}: {e}. "
                    "The machine key may have changed."
                ) from e

        if self.legacy_path.exists():
            return self._migrate_legacy_store()

        return {}

    def _migrate_legacy_store(self) -> dict[str, CredentialEntry]:
        """Re-encrypt a legacy plaintext index and delete the plaintext copy."""
        try:
            document = json.loads(self.legacy_path.read_text(encoding="utf-8"))
            credentials = self._parse_document(document)
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise CredentialStoreCorruptedError(
                f"Cannot read legacy credential store {self.legacy_path}: {e}"
            ) from e

        self._credentials = credentials
        try:
            self._save_store()
        except OSError as e:
            # Keep the plaintext file: it is still the only durable copy
            logger.error(f"Failed to migrate legacy credential store: {e}")
            return credentials

        logger.info(f"Migrated {len(credentials)} credentials to encrypted store")

        try:
            self.legacy_path.unlink()
        except OSError as e:
            logger.warning(f"Could not delete legacy credential store {self.legacy_path}: {e}")

        return credentials

    @staticmethod
    def _parse_document(document: Any) -> dict[str, CredentialEntry]:
        if not isinstance(document, dict):
            raise ValueError("credential store must be a JSON object")

        raw_credentials = document.get("credentials") or {}
        if not isinstance(raw_credentials, dict):
            raise ValueError("'credentials' must be a JSON object")

        credentials: dict[str, CredentialEntry] = {}
        for raw in raw_credentials.values():
            if not isinstance(raw, dict):
                raise ValueError(
                    f"credential entry must be a JSON object, got {type(raw).__name__}"
                )
            entry = CredentialEntry.from_dict(raw)
            credentials[entry.composite_key] = entry
        return credentials

    def _save_store(self) -> None:
        """Encrypt and write the whole index."""
        document = {
            "version": STORE_VERSION,
            "credentials": {k: e.to_dict() for k, e in self._credentials.items()},
        }
        sealed = self.codec.encrypt(json.dumps(document))
        self._write_secure_file(self.store_path, sealed.encode("utf-8"))

    def _write_secure_file(self, path: Path, data: bytes) -> None:
        """
        Write data to file with restrictive permissions.

        Uses atomic write (write to temp, then rename) to prevent
        partial writes from corrupting the file.
        """
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = path.with_name(path.name + ".tmp")

        try:
            fd = os.open(temp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "wb") as f:
                f.write(data)

            # Set restrictive permissions (owner read/write only)
            try:
                os.chmod(temp_path, 0o600)
            except OSError:
                # Windows or permission error - continue anyway
                pass

            # Atomic rename
            temp_path.replace(path)

        except Exception:
            # Clean up temp file on error
            if temp_path.exists():
                temp_path.unlink()
            raise
