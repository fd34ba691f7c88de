from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(email: str) -> str:
    """Canonical stored form of an email: trimmed and lowercased."""
    return email.strip().lower()


class SecurityQuestion(str, Enum):
    """Security questions a user can pick at registration."""

    COMIDA = "comida"
    CANTANTE = "cantante"
    PAIS = "pais"


DEFAULT_ROLES: List[str] = ["user"]


@dataclass
class User:
    id: str
    email: str
    name: str
    password_hash: str
    security_question: SecurityQuestion
    answer_hash: str
    roles: List[str] = field(default_factory=lambda: list(DEFAULT_ROLES))
    failed_login_attempts: int = 0
    account_locked_until: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(
        cls,
        email: str,
        name: str,
        password_hash: str,
        security_question: SecurityQuestion | str,
        answer_hash: str,
        *,
        roles: Optional[List[str]] = None,
    ) -> "User":
        return cls(
            id=str(uuid.uuid4()),
            email=normalize_email(email),
            name=name,
            password_hash=password_hash,
            security_question=SecurityQuestion(security_question),
            answer_hash=answer_hash,
            roles=list(roles) if roles else list(DEFAULT_ROLES),
        )

    def has_role(self, role: str) -> bool:
        return role in self.roles


@dataclass
class PaymentDetail:
    """Encrypted payment fields; every value holds cipher hex text."""

    id: str
    user_id: str
    card_number: str
    cvc: str
    expiration_date: str
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(
        cls, user_id: str, card_number: str, cvc: str, expiration_date: str
    ) -> "PaymentDetail":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            card_number=card_number,
            cvc=cvc,
            expiration_date=expiration_date,
        )


@dataclass
class TokenRecord:
    """Allow-list entry: a token is accepted only while its record exists."""

    id: str
    user_id: str
    jti: str
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(cls, user_id: str, jti: str) -> "TokenRecord":
        return cls(id=str(uuid.uuid4()), user_id=user_id, jti=jti)
