from __future__ import annotations

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from deckexc.logging import get_logger
from deckexc.storage.errors import ConstraintViolation
from deckexc.storage.models import (
    PaymentDetail,
    SecurityQuestion,
    TokenRecord,
    User,
)

_PAYMENT_FIELDS = frozenset({"card_number", "cvc", "expiration_date"})


class MemoryStore:
    """In-memory credential, payment and token store persisted to a JSON file.

    Suitable for tests and single-process deployments. Every read and write
    goes through one re-entrant lock so login bookkeeping and ledger updates
    are serialized.
    """

    def __init__(self, fs_root: str = "/tmp/deckexc") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.payment_details: Dict[str, PaymentDetail] = {}
        self.tokens: Dict[tuple[str, str], TokenRecord] = {}
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # users
    def create_user(
        self,
        email: str,
        name: str,
        password_hash: str,
        security_question: SecurityQuestion | str,
        answer_hash: str,
        *,
        roles: Optional[List[str]] = None,
    ) -> User:
        user = User.new(
            email,
            name,
            password_hash,
            security_question,
            answer_hash,
            roles=roles,
        )
        with self._data_lock:
            if any(existing.email == user.email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            return sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)[
                :limit
            ]

    def set_login_state(
        self,
        user_id: str,
        failed_attempts: int,
        locked_until: Optional[datetime],
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.failed_login_attempts = failed_attempts
            user.account_locked_until = locked_until
            self._persist_state()
            return user

    def update_credentials(
        self,
        user_id: str,
        *,
        password_hash: Optional[str] = None,
        answer_hash: Optional[str] = None,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if password_hash is not None:
                user.password_hash = password_hash
            if answer_hash is not None:
                user.answer_hash = answer_hash
            self._persist_state()
            return user

    def update_user_roles(self, user_id: str, roles: List[str]) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.roles = list(roles)
            self._persist_state()
            return user

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.users.pop(user_id, None)
            self.payment_details.pop(user_id, None)
            for key in [k for k in self.tokens if k[0] == user_id]:
                self.tokens.pop(key, None)
            self._persist_state()
            return True

    # payment details
    def create_payment_detail(
        self, user_id: str, card_number: str, cvc: str, expiration_date: str
    ) -> PaymentDetail:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"field": "user_id"})
            if user_id in self.payment_details:
                raise ConstraintViolation(
                    "payment detail already exists", {"field": "user_id"}
                )
            self._ensure_card_unique(card_number, user_id)
            detail = PaymentDetail.new(user_id, card_number, cvc, expiration_date)
            self.payment_details[user_id] = detail
            self._persist_state()
            return detail

    def get_payment_detail(self, user_id: str) -> Optional[PaymentDetail]:
        with self._data_lock:
            return self.payment_details.get(user_id)

    def update_payment_detail(self, user_id: str, **fields: str) -> Optional[PaymentDetail]:
        unknown = set(fields) - _PAYMENT_FIELDS
        if unknown:
            raise ValueError(f"unknown payment fields: {sorted(unknown)}")
        with self._data_lock:
            detail = self.payment_details.get(user_id)
            if not detail:
                return None
            if "card_number" in fields:
                self._ensure_card_unique(fields["card_number"], user_id)
            for name, value in fields.items():
                setattr(detail, name, value)
            self._persist_state()
            return detail

    def delete_payment_detail(self, user_id: str) -> bool:
        with self._data_lock:
            removed = self.payment_details.pop(user_id, None)
            if removed:
                self._persist_state()
            return removed is not None

    def _ensure_card_unique(self, card_number: str, owner_id: str) -> None:
        for other in self.payment_details.values():
            if other.card_number == card_number and other.user_id != owner_id:
                raise ConstraintViolation(
                    "card number already registered", {"field": "card_number"}
                )

    # token ledger
    def create_token_record(self, user_id: str, jti: str) -> TokenRecord:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"field": "user_id"})
            record = TokenRecord.new(user_id, jti)
            self.tokens[(user_id, jti)] = record
            self._persist_state()
            return record

    def get_token_record(self, user_id: str, jti: str) -> Optional[TokenRecord]:
        with self._data_lock:
            return self.tokens.get((user_id, jti))

    def delete_token_record(self, user_id: str, jti: str) -> bool:
        with self._data_lock:
            removed = self.tokens.pop((user_id, jti), None)
            if removed:
                self._persist_state()
            return removed is not None

    def delete_user_tokens(self, user_id: str) -> int:
        with self._data_lock:
            keys = [k for k in self.tokens if k[0] == user_id]
            for key in keys:
                self.tokens.pop(key, None)
            if keys:
                self._persist_state()
            return len(keys)

    # persistence
    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "payment_details": [
                self._serialize_payment_detail(p) for p in self.payment_details.values()
            ],
            "tokens": [self._serialize_token(t) for t in self.tokens.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            self.logger.error("persist_state_failed", path=str(path), error=str(exc))
            raise

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.payment_details = {
            p["user_id"]: self._deserialize_payment_detail(p)
            for p in data.get("payment_details", [])
        }
        self.tokens = {}
        for entry in data.get("tokens", []):
            record = self._deserialize_token(entry)
            self.tokens[(record.user_id, record.jti)] = record
        self.logger.info(
            "memory_store_state_loaded",
            users=len(self.users),
            payment_details=len(self.payment_details),
            tokens=len(self.tokens),
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "password_hash": user.password_hash,
            "security_question": user.security_question.value,
            "answer_hash": user.answer_hash,
            "roles": list(user.roles),
            "failed_login_attempts": user.failed_login_attempts,
            "account_locked_until": self._serialize_datetime(user.account_locked_until),
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            name=data.get("name", ""),
            password_hash=data["password_hash"],
            security_question=SecurityQuestion(data["security_question"]),
            answer_hash=data["answer_hash"],
            roles=list(data.get("roles") or ["user"]),
            failed_login_attempts=int(data.get("failed_login_attempts", 0)),
            account_locked_until=self._deserialize_datetime(
                data.get("account_locked_until")
            ),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_payment_detail(self, detail: PaymentDetail) -> dict:
        return {
            "id": detail.id,
            "user_id": detail.user_id,
            "card_number": detail.card_number,
            "cvc": detail.cvc,
            "expiration_date": detail.expiration_date,
            "created_at": self._serialize_datetime(detail.created_at),
        }

    def _deserialize_payment_detail(self, data: dict) -> PaymentDetail:
        return PaymentDetail(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            card_number=data["card_number"],
            cvc=data["cvc"],
            expiration_date=data["expiration_date"],
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_token(self, record: TokenRecord) -> dict:
        return {
            "id": record.id,
            "user_id": record.user_id,
            "jti": record.jti,
            "created_at": self._serialize_datetime(record.created_at),
        }

    def _deserialize_token(self, data: dict) -> TokenRecord:
        return TokenRecord(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            jti=data["jti"],
            created_at=self._deserialize_datetime(data["created_at"]),
        )
