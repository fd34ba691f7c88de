from __future__ import annotations

import binascii
import hashlib

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from deckexc.logging import get_logger
from deckexc.service.errors import DecryptionFailedError

logger = get_logger(__name__)

_BLOCK_BITS = algorithms.AES.block_size


def derive_key_material(key_secret: str, iv_secret: str) -> tuple[bytes, bytes]:
    """Derive the AES-256 key and CBC IV from the configured secrets.

    The key is the first 32 hex characters of ``sha256(key_secret)`` taken as
    ASCII bytes, the IV the first 16 hex characters of ``sha256(iv_secret)``.
    Records written by earlier deployments depend on this exact derivation.
    """
    key = hashlib.sha256(key_secret.encode("utf-8")).hexdigest()[:32].encode("ascii")
    iv = hashlib.sha256(iv_secret.encode("utf-8")).hexdigest()[:16].encode("ascii")
    return key, iv


class FieldCipher:
    """Deterministic AES-256-CBC cipher for payment fields.

    Ciphertext is hex encoded. A fixed IV makes equal plaintexts encrypt to
    equal ciphertexts, which the card-number uniqueness constraint relies on.
    """

    def __init__(self, key_secret: str, iv_secret: str) -> None:
        if not key_secret or not iv_secret:
            raise ValueError("field cipher requires both a key secret and an IV secret")
        self._key, self._iv = derive_key_material(key_secret, iv_secret)

    def _cipher(self) -> Cipher:
        return Cipher(algorithms.AES(self._key), modes.CBC(self._iv))

    def encrypt(self, plaintext: str) -> str:
        padder = padding.PKCS7(_BLOCK_BITS).padder()
        padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
        encryptor = self._cipher().encryptor()
        return (encryptor.update(padded) + encryptor.finalize()).hex()

    def decrypt(self, ciphertext: str) -> str:
        try:
            raw = bytes.fromhex(ciphertext)
            decryptor = self._cipher().decryptor()
            padded = decryptor.update(raw) + decryptor.finalize()
            unpadder = padding.PKCS7(_BLOCK_BITS).unpadder()
            plain = unpadder.update(padded) + unpadder.finalize()
            return plain.decode("utf-8")
        except (ValueError, TypeError, binascii.Error, UnicodeDecodeError) as exc:
            logger.error("field_decryption_failed", error_type=type(exc).__name__)
            raise DecryptionFailedError("stored payment data could not be decrypted") from exc
