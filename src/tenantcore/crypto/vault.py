"""
Field-level encryption and searchable hashing of PII.

Stored format for an encrypted field is four lowercase hex segments::

    iv:salt:ciphertext:tag

with a 12-byte IV, 16-byte salt and 16-byte GCM tag. Values that do not
parse into that shape are legacy plaintext written before encryption was
introduced. They are returned unchanged by ``decrypt_safe`` and are never
re-encrypted implicitly.

Example:
    >>> vault = EncryptionVault("00" * 32)
    >>> stored = vault.encrypt("+15551234567")
    >>> vault.decrypt(stored)
    '+15551234567'
    >>> vault.decrypt_safe("+15551234567")
    '+15551234567'
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import os
import re
import secrets
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from tenantcore.config import Settings, get_settings
from tenantcore.exceptions import DecryptionError, EncryptionError, EncryptionKeyError

logger = logging.getLogger(__name__)

KEY_HEX_LENGTH = 64
IV_LENGTH = 12
SALT_LENGTH = 16
TAG_LENGTH = 16
SEGMENT_COUNT = 4

_HEX_RE = re.compile(r"^[0-9a-fA-F]*$")


# =============================================================================
# Parsed representation
# =============================================================================


@dataclass(frozen=True)
class Encrypted:
    """A stored value in the ``iv:salt:ciphertext:tag`` format."""

    iv: bytes
    salt: bytes
    ciphertext: bytes
    tag: bytes


@dataclass(frozen=True)
class Legacy:
    """A stored value that is plaintext from before encryption was enabled."""

    value: str


ParsedField = Encrypted | Legacy


def _is_hex(segment: str) -> bool:
    return len(segment) % 2 == 0 and _HEX_RE.match(segment) is not None


def parse_stored(stored: str) -> ParsedField:
    """
    Classify a stored string as encrypted or legacy plaintext.

    A value is Encrypted only when it has exactly four colon-separated hex
    segments and the IV, salt and tag have the expected byte lengths.
    Everything else is Legacy. This function never raises.

    Args:
        stored: Raw column value

    Returns:
        Encrypted with decoded parts, or Legacy wrapping the original string
    """
    parts = stored.split(":")
    if len(parts) != SEGMENT_COUNT or not all(_is_hex(p) for p in parts):
        return Legacy(stored)

    iv, salt, ciphertext, tag = (bytes.fromhex(p) for p in parts)
    if len(iv) != IV_LENGTH or len(salt) != SALT_LENGTH or len(tag) != TAG_LENGTH:
        return Legacy(stored)
    return Encrypted(iv=iv, salt=salt, ciphertext=ciphertext, tag=tag)


# =============================================================================
# Vault
# =============================================================================


class EncryptionVault:
    """
    AES-256-GCM encryption with HMAC-SHA256 search hashes.

    The key is validated on construction: a missing key, or one that is not
    exactly 64 hex characters, raises EncryptionKeyError so the process
    cannot start without working PII protection.

    Args:
        key_hex: 32-byte key as 64 hex characters

    Raises:
        EncryptionKeyError: If the key is missing or malformed
    """

    def __init__(self, key_hex: str | None) -> None:
        if not key_hex:
            raise EncryptionKeyError(
                "TENANTCORE_ENCRYPTION_KEY environment variable is required for data encryption"
            )
        if len(key_hex) != KEY_HEX_LENGTH or not _HEX_RE.match(key_hex):
            raise EncryptionKeyError("Encryption key must be 32 bytes (64 hex characters)")

        self._aesgcm = AESGCM(bytes.fromhex(key_hex))
        # Search hashes are keyed with the hex string itself so existing
        # hashes stay comparable.
        self._hmac_key = key_hex.encode("utf-8")

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> EncryptionVault:
        """Build a vault from ``TENANTCORE_ENCRYPTION_KEY``."""
        settings = settings or get_settings()
        return cls(settings.encryption_key)

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a value with a fresh IV and salt.

        Two calls with the same plaintext produce different output.

        Raises:
            EncryptionError: If the value cannot be encrypted
        """
        try:
            iv = os.urandom(IV_LENGTH)
            salt = os.urandom(SALT_LENGTH)
            sealed = self._aesgcm.encrypt(iv, plaintext.encode("utf-8"), None)
        except (TypeError, ValueError, AttributeError) as e:
            raise EncryptionError(str(e)) from e

        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return ":".join(part.hex() for part in (iv, salt, ciphertext, tag))

    def decrypt(self, stored: str) -> str:
        """
        Decrypt a stored ``iv:salt:ciphertext:tag`` value.

        Raises:
            DecryptionError: On a malformed value, failed authentication
                (tampering) or a wrong key
        """
        parts = stored.split(":")
        if len(parts) != SEGMENT_COUNT:
            raise DecryptionError("Invalid encrypted data format")
        if not all(_is_hex(p) for p in parts):
            raise DecryptionError("Encrypted segments must be hex")

        iv, _salt, ciphertext, tag = (bytes.fromhex(p) for p in parts)
        if len(iv) != IV_LENGTH:
            raise DecryptionError("Invalid IV size")
        if len(tag) != TAG_LENGTH:
            raise DecryptionError("Invalid authentication tag size")

        return self._open(iv, ciphertext, tag)

    def _open(self, iv: bytes, ciphertext: bytes, tag: bytes) -> str:
        try:
            plaintext = self._aesgcm.decrypt(iv, ciphertext + tag, None)
        except InvalidTag as e:
            raise DecryptionError("Authentication tag verification failed") from e
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionError("Plaintext is not valid UTF-8") from e

    def decrypt_safe(self, stored: str) -> str:
        """
        Decrypt if the value is encrypted, otherwise return it unchanged.

        Legacy plaintext never raises. An Encrypted value that fails
        authentication still raises DecryptionError.
        """
        parsed = parse_stored(stored)
        if isinstance(parsed, Legacy):
            return parsed.value
        return self._open(parsed.iv, parsed.ciphertext, parsed.tag)

    def is_encrypted(self, stored: str) -> bool:
        return isinstance(parse_stored(stored), Encrypted)

    # -------------------------------------------------------------------------
    # Search hashes and signatures
    # -------------------------------------------------------------------------

    def hash_for_search(self, plaintext: str) -> str:
        """Deterministic HMAC-SHA256 hex digest for equality lookups."""
        return hmac.new(self._hmac_key, plaintext.encode("utf-8"), hashlib.sha256).hexdigest()

    def verify_hash_for_search(self, plaintext: str, expected_hash: str) -> bool:
        """Constant-time comparison of a plaintext against a stored search hash."""
        return hmac.compare_digest(self.hash_for_search(plaintext), expected_hash)

    def create_signature(self, data: str) -> str:
        """HMAC-SHA256 signature of arbitrary data (webhook payloads, tokens)."""
        return self.hash_for_search(data)

    def verify_signature(self, data: str, signature: str) -> bool:
        return self.verify_hash_for_search(data, signature)

    # -------------------------------------------------------------------------
    # EIN helpers
    # -------------------------------------------------------------------------

    def encrypt_ein(self, ein: str) -> str:
        """
        Normalize and encrypt an Employer Identification Number.

        Raises:
            ValueError: If the value does not contain exactly 9 digits
        """
        return self.encrypt(normalize_ein(ein))

    def decrypt_ein_safe(self, stored: str) -> str:
        """
        Decrypt an EIN column that may still hold legacy plaintext.

        Raises:
            DecryptionError: If an encrypted value fails authentication, or
                a legacy value is not a 9-digit EIN
        """
        parsed = parse_stored(stored)
        if isinstance(parsed, Encrypted):
            return self._open(parsed.iv, parsed.ciphertext, parsed.tag)
        digits = _digits(parsed.value)
        if len(digits) != 9:
            raise DecryptionError("Invalid EIN format")
        return digits

    def hash_ein(self, ein: str) -> str:
        """Search hash of the normalized 9-digit EIN."""
        return self.hash_for_search(normalize_ein(ein))


def _digits(value: str) -> str:
    return "".join(ch for ch in value if ch.isdigit())


def normalize_ein(ein: str) -> str:
    """Strip non-digits and require exactly 9 digits."""
    digits = _digits(ein)
    if len(digits) != 9:
        raise ValueError("EIN must be exactly 9 digits")
    return digits


def mask_ein(ein: str) -> str:
    """
    Mask an EIN for display, keeping only the last four digits.

    >>> mask_ein("12-3456789")
    'XX-XXX6789'
    >>> mask_ein("123")
    'XX-XXXXXXX'
    """
    digits = _digits(ein)
    if len(digits) != 9:
        return "XX-XXXXXXX"
    return f"XX-XXX{digits[-4:]}"


def generate_token(n_bytes: int = 32) -> str:
    """Random hex token suitable for opt-out links and API secrets."""
    return secrets.token_hex(n_bytes)


__all__ = [
    "EncryptionVault",
    "Encrypted",
    "Legacy",
    "ParsedField",
    "parse_stored",
    "normalize_ein",
    "mask_ein",
    "generate_token",
]
