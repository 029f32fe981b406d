"""Unit tests for EncryptionVault and the stored-field parser."""

import pytest

from tenantcore.config import Settings
from tenantcore.crypto import (
    Encrypted,
    EncryptionVault,
    Legacy,
    generate_token,
    mask_ein,
    normalize_ein,
    parse_stored,
)
from tenantcore.exceptions import DecryptionError, EncryptionKeyError

KEY = "0f" * 32
OTHER_KEY = "a1" * 32


@pytest.fixture
def vault() -> EncryptionVault:
    return EncryptionVault(KEY)


class TestKeyValidation:
    """Tests for key checks on construction."""

    def test_missing_key_raises(self):
        """A missing key refuses to build a vault."""
        with pytest.raises(EncryptionKeyError, match="required"):
            EncryptionVault(None)

    def test_empty_key_raises(self):
        with pytest.raises(EncryptionKeyError):
            EncryptionVault("")

    def test_short_key_raises(self):
        """A key that is not 64 hex characters is rejected."""
        with pytest.raises(EncryptionKeyError, match="64 hex characters"):
            EncryptionVault("ab" * 16)

    def test_non_hex_key_raises(self):
        with pytest.raises(EncryptionKeyError):
            EncryptionVault("zz" * 32)

    def test_from_settings(self):
        """Vault reads its key from Settings."""
        vault = EncryptionVault.from_settings(Settings(encryption_key=KEY))
        assert vault.decrypt(vault.encrypt("x")) == "x"


class TestEncryptDecrypt:
    """Tests for encrypt/decrypt."""

    def test_round_trip(self, vault: EncryptionVault):
        """Decrypt returns the original plaintext."""
        assert vault.decrypt(vault.encrypt("+15551234567")) == "+15551234567"

    def test_unicode_round_trip(self, vault: EncryptionVault):
        assert vault.decrypt(vault.encrypt("José Müller ✝")) == "José Müller ✝"

    def test_empty_string_round_trip(self, vault: EncryptionVault):
        assert vault.decrypt(vault.encrypt("")) == ""

    def test_output_format(self, vault: EncryptionVault):
        """Output is iv:salt:ciphertext:tag in hex with fixed part sizes."""
        iv, salt, ciphertext, tag = vault.encrypt("hello").split(":")

        assert len(iv) == 24
        assert len(salt) == 32
        assert len(tag) == 32
        assert len(ciphertext) == len("hello") * 2

    def test_same_plaintext_encrypts_differently(self, vault: EncryptionVault):
        """Each call uses a fresh IV and salt."""
        assert vault.encrypt("same") != vault.encrypt("same")

    def test_tampered_ciphertext_fails(self, vault: EncryptionVault):
        """Flipping a ciphertext byte fails authentication."""
        iv, salt, ciphertext, tag = vault.encrypt("secret").split(":")
        flipped = f"{int(ciphertext[:2], 16) ^ 0x01:02x}" + ciphertext[2:]

        with pytest.raises(DecryptionError, match="Authentication"):
            vault.decrypt(":".join([iv, salt, flipped, tag]))

    def test_tampered_tag_fails(self, vault: EncryptionVault):
        iv, salt, ciphertext, tag = vault.encrypt("secret").split(":")
        tag = ("00" if tag[:2] != "00" else "11") + tag[2:]

        with pytest.raises(DecryptionError):
            vault.decrypt(":".join([iv, salt, ciphertext, tag]))

    def test_wrong_key_fails(self, vault: EncryptionVault):
        stored = vault.encrypt("secret")

        with pytest.raises(DecryptionError):
            EncryptionVault(OTHER_KEY).decrypt(stored)

    def test_wrong_segment_count(self, vault: EncryptionVault):
        with pytest.raises(DecryptionError, match="format"):
            vault.decrypt("abcd:ef01")

    def test_non_hex_segments(self, vault: EncryptionVault):
        with pytest.raises(DecryptionError, match="hex"):
            vault.decrypt("zz:zz:zz:zz")

    def test_bad_iv_size(self, vault: EncryptionVault):
        with pytest.raises(DecryptionError, match="IV"):
            vault.decrypt(f"{'00' * 8}:{'00' * 16}:abcd:{'00' * 16}")

    def test_bad_tag_size(self, vault: EncryptionVault):
        with pytest.raises(DecryptionError, match="tag"):
            vault.decrypt(f"{'00' * 12}:{'00' * 16}:abcd:{'00' * 4}")

    def test_error_message_prefix(self, vault: EncryptionVault):
        with pytest.raises(DecryptionError) as exc_info:
            vault.decrypt("nope")
        assert str(exc_info.value).startswith("Decryption failed:")


class TestParseStored:
    """Tests for the tagged stored-value parser."""

    def test_encrypted_value(self, vault: EncryptionVault):
        parsed = parse_stored(vault.encrypt("hi"))

        assert isinstance(parsed, Encrypted)
        assert len(parsed.iv) == 12
        assert len(parsed.salt) == 16
        assert len(parsed.tag) == 16

    @pytest.mark.parametrize(
        "stored",
        [
            "+15551234567",
            "",
            "a:b:c:d",
            "12:34:56:78",
            "not:encrypted:at:all:really",
        ],
    )
    def test_legacy_values(self, stored: str):
        """Anything outside the exact format is Legacy and never raises."""
        assert parse_stored(stored) == Legacy(stored)

    def test_is_encrypted(self, vault: EncryptionVault):
        assert vault.is_encrypted(vault.encrypt("x")) is True
        assert vault.is_encrypted("plain") is False


class TestDecryptSafe:
    """Tests for decrypt_safe legacy handling."""

    def test_legacy_plaintext_returned_unchanged(self, vault: EncryptionVault):
        assert vault.decrypt_safe("+15551234567") == "+15551234567"

    def test_encrypted_value_decrypted(self, vault: EncryptionVault):
        assert vault.decrypt_safe(vault.encrypt("member@example.com")) == "member@example.com"

    def test_tampered_encrypted_value_still_raises(self, vault: EncryptionVault):
        """decrypt_safe only forgives plaintext, not failed authentication."""
        stored = vault.encrypt("secret")

        with pytest.raises(DecryptionError):
            EncryptionVault(OTHER_KEY).decrypt_safe(stored)


class TestSearchHash:
    """Tests for HMAC search hashes and signatures."""

    def test_deterministic(self, vault: EncryptionVault):
        assert vault.hash_for_search("+15551234567") == vault.hash_for_search("+15551234567")

    def test_hex_sha256_length(self, vault: EncryptionVault):
        assert len(vault.hash_for_search("x")) == 64

    def test_different_inputs_differ(self, vault: EncryptionVault):
        assert vault.hash_for_search("a") != vault.hash_for_search("b")

    def test_keyed(self, vault: EncryptionVault):
        """Hashes depend on the key."""
        assert vault.hash_for_search("a") != EncryptionVault(OTHER_KEY).hash_for_search("a")

    def test_verify(self, vault: EncryptionVault):
        digest = vault.hash_for_search("+15551234567")

        assert vault.verify_hash_for_search("+15551234567", digest) is True
        assert vault.verify_hash_for_search("+15550000000", digest) is False

    def test_signature(self, vault: EncryptionVault):
        signature = vault.create_signature('{"event":"delivered"}')

        assert vault.verify_signature('{"event":"delivered"}', signature) is True
        assert vault.verify_signature('{"event":"failed"}', signature) is False


class TestEIN:
    """Tests for EIN helpers."""

    def test_encrypt_decrypt_and_mask(self, vault: EncryptionVault):
        """EIN encrypts to four segments, decrypts back, and masks to last four."""
        stored = vault.encrypt_ein("123456789")

        assert len(stored.split(":")) == 4
        assert vault.decrypt(stored) == "123456789"
        assert mask_ein("123456789") == "XX-XXX6789"

    def test_encrypt_normalizes_dashes(self, vault: EncryptionVault):
        assert vault.decrypt(vault.encrypt_ein("12-3456789")) == "123456789"

    def test_encrypt_rejects_bad_ein(self, vault: EncryptionVault):
        with pytest.raises(ValueError, match="9 digits"):
            vault.encrypt_ein("1234")

    def test_decrypt_ein_safe_legacy(self, vault: EncryptionVault):
        assert vault.decrypt_ein_safe("12-3456789") == "123456789"

    def test_decrypt_ein_safe_encrypted(self, vault: EncryptionVault):
        assert vault.decrypt_ein_safe(vault.encrypt_ein("987654321")) == "987654321"

    def test_decrypt_ein_safe_invalid_legacy(self, vault: EncryptionVault):
        with pytest.raises(DecryptionError, match="EIN"):
            vault.decrypt_ein_safe("12345")

    def test_hash_ein_normalizes(self, vault: EncryptionVault):
        assert vault.hash_ein("12-3456789") == vault.hash_ein("123456789")

    def test_mask_invalid(self):
        assert mask_ein("123") == "XX-XXXXXXX"

    def test_normalize(self):
        assert normalize_ein(" 12-345 6789 ") == "123456789"


class TestGenerateToken:
    def test_length(self):
        assert len(generate_token()) == 64
        assert len(generate_token(8)) == 16

    def test_unique(self):
        assert generate_token() != generate_token()
