from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Protocol

from deckexc.config import Settings
from deckexc.logging import get_logger
from deckexc.service.errors import (
    InvalidTokenError,
    NotFoundError,
    TokenExpiredError,
    TokenRevokedError,
)
from deckexc.storage.models import TokenRecord

logger = get_logger(__name__)


class TokenLedger(Protocol):
    def create_token_record(self, user_id: str, jti: str) -> TokenRecord: ...

    def get_token_record(self, user_id: str, jti: str) -> Optional[TokenRecord]: ...

    def delete_token_record(self, user_id: str, jti: str) -> bool: ...


@dataclass
class TokenClaims:
    user_id: str
    jti: str
    expires_at: datetime


class TokenService:
    """Mints HS256 bearer tokens and checks them against the token ledger.

    The ledger is an allow-list: a token is valid only while a record for its
    ``(id, jti)`` pair exists. Logout and ``/auth/remove`` delete the record.
    """

    def __init__(self, store: TokenLedger, settings: Settings) -> None:
        self.store = store
        self.settings = settings

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(self, token: str) -> dict[str, Any]:
        """Verify the signature and return the payload without checking expiry."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidTokenError("malformed token")

        # Pin the algorithm to avoid alg-confusion tokens
        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError("malformed token")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            raise InvalidTokenError("unsupported token algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode("utf-8"), sig_b64.encode("utf-8")):
            raise InvalidTokenError("invalid token signature")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError("malformed token")
        if not isinstance(payload, dict):
            raise InvalidTokenError("malformed token")
        return payload

    def mint(self, user_id: str) -> str:
        """Record a fresh jti in the ledger and return the signed token."""
        jti = str(uuid.uuid4())
        expires_at = self._now() + timedelta(minutes=self.settings.jwt_ttl_minutes)
        self.store.create_token_record(user_id, jti)
        logger.info("token_minted", user_id=user_id, jti=jti)
        return self._encode_jwt(
            {"id": user_id, "jti": jti, "exp": int(expires_at.timestamp())}
        )

    def validate(self, token: str) -> TokenClaims:
        payload = self.decode(token)
        user_id = payload.get("id")
        jti = payload.get("jti")
        exp = payload.get("exp")
        if not isinstance(user_id, str) or not isinstance(jti, str):
            raise InvalidTokenError("token is missing required claims")
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError):
            raise InvalidTokenError("token is missing required claims")

        if exp_ts <= self._now().timestamp():
            # Expired tokens leave the ledger on first sight
            self.store.delete_token_record(user_id, jti)
            logger.info("token_expired", user_id=user_id, jti=jti)
            raise TokenExpiredError("token has expired")
        if not self.store.get_token_record(user_id, jti):
            logger.warning("token_not_in_ledger", user_id=user_id, jti=jti)
            raise TokenRevokedError("token has been revoked")
        return TokenClaims(
            user_id=user_id,
            jti=jti,
            expires_at=datetime.fromtimestamp(exp_ts, tz=timezone.utc),
        )

    def revoke(self, user_id: str, jti: str) -> None:
        """Delete the ledger record; a missing record is reported, not ignored."""
        if not self.store.delete_token_record(user_id, jti):
            raise NotFoundError("token record not found")
        logger.info("token_revoked", user_id=user_id, jti=jti)

    def is_revoked(self, user_id: str, jti: str) -> bool:
        return self.store.get_token_record(user_id, jti) is None

    @staticmethod
    def extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None
