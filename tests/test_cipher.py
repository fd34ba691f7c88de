"""Tests for the payment field cipher."""

import pytest

from deckexc.service.cipher import FieldCipher, derive_key_material
from deckexc.service.errors import DecryptionFailedError

# Produced independently with:
#   openssl enc -aes-256-cbc -K <hex(key)> -iv <hex(iv)>
KNOWN_CARD_CIPHERTEXT = "231a749409500219329704dcaa98e30401cac746d66139536524ed839a1b846c"
KNOWN_EXPIRY_CIPHERTEXT = "5b69dcdf4f0ce3843a97c9846a41fd09"


@pytest.fixture
def cipher():
    return FieldCipher("test-encryption-key", "test-encryption-iv")


def test_key_material_derivation():
    key, iv = derive_key_material("test-encryption-key", "test-encryption-iv")
    assert key == b"4d4fe905c5d75d63dc79e661d19b7be8"
    assert iv == b"a6069cadf9e659f4"
    assert len(key) == 32
    assert len(iv) == 16


def test_matches_existing_ciphertext(cipher):
    """Records written by earlier deployments must stay readable."""
    assert cipher.encrypt("4111111111111111") == KNOWN_CARD_CIPHERTEXT
    assert cipher.encrypt("2030/07") == KNOWN_EXPIRY_CIPHERTEXT
    assert cipher.decrypt(KNOWN_CARD_CIPHERTEXT) == "4111111111111111"


def test_encryption_is_deterministic(cipher):
    assert cipher.encrypt("123") == cipher.encrypt("123")
    assert cipher.encrypt("123") != cipher.encrypt("124")


def test_utf8_plaintext(cipher):
    assert cipher.decrypt(cipher.encrypt("año/ñandú")) == "año/ñandú"


def test_different_secrets_give_different_ciphertext(cipher):
    other = FieldCipher("another-key", "test-encryption-iv")
    assert other.encrypt("4111111111111111") != KNOWN_CARD_CIPHERTEXT


@pytest.mark.parametrize(
    "ciphertext",
    [
        "not-hex",
        "abcd",  # not a whole block
        KNOWN_CARD_CIPHERTEXT[:-2] + "00",  # corrupt final block breaks padding
    ],
)
def test_corrupted_ciphertext_raises(cipher, ciphertext):
    with pytest.raises(DecryptionFailedError):
        cipher.decrypt(ciphertext)


def test_wrong_key_cannot_decrypt(cipher):
    other = FieldCipher("another-key", "another-iv")
    with pytest.raises(DecryptionFailedError):
        other.decrypt(KNOWN_CARD_CIPHERTEXT)


def test_missing_secrets_rejected():
    with pytest.raises(ValueError):
        FieldCipher("", "iv")
