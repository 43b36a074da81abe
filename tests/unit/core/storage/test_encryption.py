"""Tests for the FieldEncryptor (Fernet encryption of context and source text)."""

from __future__ import annotations

import pytest
from cryptography.fernet import Fernet

from vigil.core.storage.encryption import EncryptionError, FieldEncryptor


@pytest.fixture
def encryptor() -> FieldEncryptor:
    return FieldEncryptor(Fernet.generate_key().decode())


class TestRoundTrip:
    def test_context_dict(self, encryptor: FieldEncryptor):
        data = {"location_type": "home", "stress_level": 3}
        token = encryptor.encrypt(data)
        assert token and "home" not in token
        assert encryptor.decrypt(token) == data

    def test_source_text(self, encryptor: FieldEncryptor):
        text = "my heart was racing at 120 this morning"
        assert encryptor.decrypt(encryptor.encrypt(text)) == text

    @pytest.mark.parametrize("empty", [None, {}, ""])
    def test_empty_values_store_nothing(self, encryptor: FieldEncryptor, empty):
        assert encryptor.encrypt(empty) == ""
        assert encryptor.decrypt("") is None


class TestKeyValidation:
    def test_empty_key_raises(self):
        with pytest.raises(EncryptionError, match="must not be empty"):
            FieldEncryptor("  ")

    def test_invalid_key_raises(self):
        with pytest.raises(EncryptionError, match="Invalid encryption key"):
            FieldEncryptor("not-a-valid-fernet-key")

    def test_generated_key_is_usable(self):
        enc = FieldEncryptor(FieldEncryptor.generate_key())
        assert enc.decrypt(enc.encrypt({"ok": True})) == {"ok": True}


class TestCorruptData:
    def test_wrong_key_cannot_decrypt(self, encryptor: FieldEncryptor):
        token = encryptor.encrypt({"secret": "data"})
        other = FieldEncryptor(Fernet.generate_key().decode())
        with pytest.raises(EncryptionError, match="invalid token"):
            other.decrypt(token)

    def test_garbage_token_raises(self, encryptor: FieldEncryptor):
        with pytest.raises(EncryptionError):
            encryptor.decrypt("not-a-valid-token")

    def test_non_serializable_raises(self, encryptor: FieldEncryptor):
        with pytest.raises(EncryptionError, match="JSON-serializable"):
            encryptor.encrypt({"when": object()})
