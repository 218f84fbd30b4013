"""
Authenticated encryption for uchelper secrets.

Two cipher layouts live here, and they are NOT interchangeable:

    PasswordCodec:
        Protects user secrets (platform API keys in config.yaml) with a
        human password. Output is base64 of::

            salt(32) || iv(16) || tag(16) || ciphertext

        A fresh salt and IV are drawn on every call, so encrypting the same
        plaintext twice never yields the same blob.

    MachineKeyCodec:
        Protects the credential store index with the machine-bound key
        (see uchelper.security.machine_key). Output is hex text::

            iv:tag:ciphertext

Both use AES-256-GCM with no associated data. A failed tag check always
raises; neither codec ever returns partial or garbled plaintext.
"""

from __future__ import annotations

import base64
import binascii
import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

# Layout and key-derivation parameters. Changing any of these breaks every
# blob already written to disk.
PBKDF2_ITERATIONS = 100_000
KEY_LENGTH = 32  # AES-256
SALT_LENGTH = 32
IV_LENGTH = 16
TAG_LENGTH = 16
MIN_BLOB_LENGTH = SALT_LENGTH + IV_LENGTH + TAG_LENGTH

DECRYPT_FAILED_MESSAGE = "Failed to decrypt - check your password"


class CryptoError(Exception):
    """Base exception for encryption errors."""

    pass


class DecryptionError(CryptoError):
    """
    Raised when a blob cannot be decrypted.

    The message is deliberately the same for a wrong password and for
    tampered ciphertext.
    """

    pass


class CiphertextFormatError(DecryptionError):
    """Raised when a blob is not valid encoded data or is truncated."""

    pass


def derive_key(secret: str | bytes, salt: bytes) -> bytes:
    """
    Derive a 256-bit key with PBKDF2-HMAC-SHA256.

    Shared by the password codec and the machine key provider.

    Args:
        secret: Password or machine fingerprint. Strings are UTF-8 encoded.
        salt: Salt bytes.

    Returns:
        32 bytes of key material.
    """
    if isinstance(secret, str):
        secret = secret.encode("utf-8")

    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=PBKDF2_ITERATIONS,
    )
    return kdf.derive(secret)


def _seal(key: bytes, iv: bytes, plaintext: bytes) -> tuple[bytes, bytes]:
    """Encrypt with AES-GCM and split the result into (ciphertext, tag)."""
    sealed = AESGCM(key).encrypt(iv, plaintext, None)
    return sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]


def _open(key: bytes, iv: bytes, tag: bytes, ciphertext: bytes) -> bytes:
    """Verify the tag and decrypt."""
    try:
        return AESGCM(key).decrypt(iv, ciphertext + tag, None)
    except InvalidTag as e:
        raise DecryptionError(DECRYPT_FAILED_MESSAGE) from e


class PasswordCodec:
    """
    Password-based codec for user secrets.

    Usage:
        blob = PasswordCodec.encrypt("sk-live-123", "hunter22")
        PasswordCodec.decrypt(blob, "hunter22")  # "sk-live-123"
    """

    @staticmethod
    def encrypt(plaintext: str, password: str) -> str:
        """
        Encrypt plaintext under a password.

        Args:
            plaintext: Secret to protect (may be empty).
            password: User password.

        Returns:
            Base64 text of salt || iv || tag || ciphertext.
        """
        salt = secrets.token_bytes(SALT_LENGTH)
        iv = secrets.token_bytes(IV_LENGTH)
        key = derive_key(password, salt)

        ciphertext, tag = _seal(key, iv, plaintext.encode("utf-8"))

        return base64.b64encode(salt + iv + tag + ciphertext).decode("ascii")

    @staticmethod
    def decrypt(blob: str, password: str) -> str:
        """
        Decrypt a blob produced by encrypt().

        Args:
            blob: Base64 text from encrypt().
            password: The password used to encrypt.

        Returns:
            The original plaintext.

        Raises:
            CiphertextFormatError: If the blob is empty, not base64, or too
                short to hold salt, IV and tag.
            DecryptionError: If the password is wrong or the blob was
                modified.
        """
        if not blob:
            raise CiphertextFormatError("Encrypted data is empty")

        try:
            data = base64.b64decode(blob, validate=True)
        except (binascii.Error, ValueError) as e:
            raise CiphertextFormatError("Encrypted data is not valid base64") from e

        if len(data) < MIN_BLOB_LENGTH:
            raise CiphertextFormatError(
                f"Encrypted data is truncated ({len(data)} bytes, "
                f"need at least {MIN_BLOB_LENGTH})"
            )

        salt = data[:SALT_LENGTH]
        iv = data[SALT_LENGTH:SALT_LENGTH + IV_LENGTH]
        tag = data[SALT_LENGTH + IV_LENGTH:MIN_BLOB_LENGTH]
        ciphertext = data[MIN_BLOB_LENGTH:]

        key = derive_key(password, salt)
        plaintext = _open(key, iv, tag, ciphertext)

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionError(DECRYPT_FAILED_MESSAGE) from e


class MachineKeyCodec:
    """
    Codec keyed by a raw 32-byte machine key.

    Used only for the credential store index. The on-disk text is
    ``hex(iv):hex(tag):hex(ciphertext)``.
    """

    def __init__(self, key: bytes) -> None:
        if len(key) != KEY_LENGTH:
            raise ValueError(f"Machine key must be {KEY_LENGTH} bytes, got {len(key)}")
        self._key = key

    def encrypt(self, plaintext: str) -> str:
        """Encrypt plaintext and return iv:tag:ciphertext hex text."""
        iv = secrets.token_bytes(IV_LENGTH)
        ciphertext, tag = _seal(self._key, iv, plaintext.encode("utf-8"))
        return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, text: str) -> str:
        """
        Decrypt iv:tag:ciphertext hex text.

        Raises:
            CiphertextFormatError: If the text is not three hex fields with
                correctly sized IV and tag.
            DecryptionError: If the tag does not verify.
        """
        parts = text.strip().split(":")
        if len(parts) != 3:
            raise CiphertextFormatError("Encrypted store must have iv:tag:ciphertext fields")

        try:
            iv, tag, ciphertext = (bytes.fromhex(part) for part in parts)
        except ValueError as e:
            raise CiphertextFormatError("Encrypted store is not valid hex") from e

        if len(iv) != IV_LENGTH or len(tag) != TAG_LENGTH:
            raise CiphertextFormatError("Encrypted store has malformed IV or tag")

        plaintext = _open(self._key, iv, tag, ciphertext)
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionError(DECRYPT_FAILED_MESSAGE) from e


def encrypt(plaintext: str, password: str) -> str:
    """Encrypt plaintext under a password. See PasswordCodec.encrypt."""
    return PasswordCodec.encrypt(plaintext, password)


def decrypt(blob: str, password: str) -> str:
    """Decrypt a password-protected blob. See PasswordCodec.decrypt."""
    return PasswordCodec.decrypt(blob, password)
