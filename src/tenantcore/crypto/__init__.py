"""PII encryption and searchable hashing."""

from tenantcore.crypto.vault import (
    Encrypted,
    EncryptionVault,
    Legacy,
    ParsedField,
    generate_token,
    mask_ein,
    normalize_ein,
    parse_stored,
)

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
