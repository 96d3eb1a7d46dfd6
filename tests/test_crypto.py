"""
Refresh-token encryption.

Tokens must round-trip, never appear in the ciphertext, and any tampering
must raise instead of yielding altered plaintext.
"""

import base64

import pytest
from cryptography.fernet import Fernet

from gmail_link.core.errors import DecryptionError
from gmail_link.services.crypto import EncryptionKeyError, decrypt_str, encrypt_str, generate_key, get_fernet


class TestRoundTrip:

    @pytest.mark.parametrize("plaintext", [
        "1//test-refresh-token-not-real",
        "",
        "unicode éè✓",
        "x" * 4096,
    ])
    def test_decrypt_returns_plaintext(self, encryption_key, plaintext):
        assert decrypt_str(encrypt_str(plaintext, encryption_key), encryption_key) == plaintext

    def test_ciphertext_hides_plaintext(self, encryption_key):
        plaintext = "1//secret-refresh-value"
        token = encrypt_str(plaintext, encryption_key)
        assert plaintext not in token
        assert "secret" not in token

    def test_same_input_encrypts_differently(self, encryption_key):
        assert encrypt_str("same", encryption_key) != encrypt_str("same", encryption_key)

    def test_default_key_comes_from_settings(self):
        assert decrypt_str(encrypt_str("via-settings")) == "via-settings"


class TestTamperDetection:

    def test_flipped_byte_fails(self, encryption_key):
        token = encrypt_str("1//refresh", encryption_key)
        raw = bytearray(base64.urlsafe_b64decode(token))
        raw[-5] ^= 0x01
        tampered = base64.urlsafe_b64encode(bytes(raw)).decode()

        with pytest.raises(DecryptionError):
            decrypt_str(tampered, encryption_key)

    def test_truncated_fails(self, encryption_key):
        token = encrypt_str("1//refresh", encryption_key)
        with pytest.raises(DecryptionError):
            decrypt_str(token[:-10], encryption_key)

    def test_wrong_key_fails(self, encryption_key):
        token = encrypt_str("1//refresh", encryption_key)
        with pytest.raises(DecryptionError):
            decrypt_str(token, generate_key())

    def test_empty_ciphertext_fails(self, encryption_key):
        with pytest.raises(DecryptionError):
            decrypt_str("", encryption_key)

    def test_decryption_error_asks_for_reauthorization(self, encryption_key):
        with pytest.raises(DecryptionError) as exc:
            decrypt_str("not-a-fernet-token", encryption_key)
        assert exc.value.reauthorize is True
        assert exc.value.retryable is False


class TestKeyValidation:

    def test_empty_key_rejected(self):
        with pytest.raises(EncryptionKeyError):
            get_fernet("   ")

    def test_short_key_rejected(self):
        short = base64.urlsafe_b64encode(b"too-short").decode()
        with pytest.raises(EncryptionKeyError):
            get_fernet(short)

    def test_generated_key_is_usable(self):
        key = generate_key()
        assert isinstance(get_fernet(key), Fernet)
