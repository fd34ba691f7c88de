from __future__ import annotations

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from deckexc.logging import get_logger

logger = get_logger(__name__)


class SecretHasher:
    """Salted one-way hashing for passwords and security answers (argon2id)."""

    algorithm = "argon2id"

    def __init__(self) -> None:
        self._hasher = PasswordHasher(type=Type.ID)

    def hash(self, secret: str) -> str:
        return self._hasher.hash(secret)

    def verify(self, stored_hash: str, secret: str) -> bool:
        """Return True when ``secret`` matches ``stored_hash``.

        Mismatches and unreadable hashes both yield False; argon2 compares
        digests in constant time.
        """
        try:
            return self._hasher.verify(stored_hash, secret)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("stored_hash_unreadable", algorithm=self.algorithm)
            return False
