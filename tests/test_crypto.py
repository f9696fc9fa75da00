"""Tests for FieldCipher — AES-GCM field encryption."""
import base64
import pytest

from utils.crypto import DecryptionError, EncryptionKeyError, FieldCipher

TEST_KEY = "0123456789abcdef0123456789abcdef"


class TestKey:
    @pytest.mark.parametrize("key", ["", "short", "x" * 31, "x" * 33, None])
    def test_wrong_length_is_fatal(self, key):
        with pytest.raises(EncryptionKeyError):
            FieldCipher(key)

    def test_bytes_key(self):
        FieldCipher(b"k" * 32)

    def test_from_settings(self):
        from config.settings import SecurityConfig, Settings
        settings = Settings(security=SecurityConfig(encryption_key=TEST_KEY))
        assert FieldCipher.from_settings(settings).decrypt(
            FieldCipher(TEST_KEY).encrypt("0901234567")
        ) == "0901234567"


class TestEncryptDecrypt:
    def test_roundtrip(self, cipher):
        token = cipher.encrypt("0901234567")
        assert token != "0901234567"
        assert token.count(":") == 1
        assert cipher.decrypt(token) == "0901234567"

    def test_fresh_nonce_per_value(self, cipher):
        assert cipher.encrypt("same") != cipher.encrypt("same")

    def test_unicode(self, cipher):
        assert cipher.decrypt(cipher.encrypt("Nguyễn Văn A")) == "Nguyễn Văn A"

    @pytest.mark.parametrize("token", [
        "", "no-separator", "a:b:c", "!!!:???", None, 42,
    ])
    def test_malformed_is_bad_format(self, cipher, token):
        with pytest.raises(DecryptionError) as exc:
            cipher.decrypt(token)
        assert exc.value.kind == "BAD_FORMAT"

    def test_tampered_ciphertext(self, cipher):
        nonce, data = cipher.encrypt("0901234567").split(":")
        raw = bytearray(base64.b64decode(data))
        raw[0] ^= 0x01
        with pytest.raises(DecryptionError):
            cipher.decrypt(f"{nonce}:{base64.b64encode(bytes(raw)).decode()}")

    def test_wrong_key(self, cipher):
        token = cipher.encrypt("0901234567")
        with pytest.raises(DecryptionError):
            FieldCipher("f" * 32).decrypt(token)

    def test_encrypt_optional(self, cipher):
        assert cipher.encrypt_optional("") is None
        assert cipher.encrypt_optional(None) is None
        assert cipher.decrypt(cipher.encrypt_optional("x")) == "x"

    def test_hash_is_stable(self):
        assert FieldCipher.hash("0901234567") == FieldCipher.hash("0901234567")
        assert len(FieldCipher.hash("0901234567")) == 64
