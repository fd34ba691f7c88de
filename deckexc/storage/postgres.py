from __future__ import annotations

import contextlib
from datetime import datetime, timezone
from typing import Any, Iterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from deckexc.logging import get_logger
from deckexc.storage.errors import ConstraintViolation, StoreTimeout
from deckexc.storage.models import (
    PaymentDetail,
    SecurityQuestion,
    TokenRecord,
    User,
)

_PAYMENT_FIELDS = ("card_number", "cvc", "expiration_date")

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS "user" (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password TEXT NOT NULL,
        name TEXT NOT NULL,
        roles TEXT[] NOT NULL DEFAULT ARRAY['user'],
        question TEXT NOT NULL CHECK (question IN ('comida', 'cantante', 'pais')),
        answer TEXT NOT NULL,
        failed_login_attempts INTEGER NOT NULL DEFAULT 0 CHECK (failed_login_attempts >= 0),
        account_locked_until TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS bank_details (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL UNIQUE REFERENCES "user"(id) ON DELETE CASCADE,
        card_number TEXT NOT NULL UNIQUE,
        cvc TEXT NOT NULL,
        expiration_date TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS token_revoke (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES "user"(id) ON DELETE CASCADE,
        jti VARCHAR(36) NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (user_id, jti)
    )
    """,
)


def _unique_field(exc: errors.UniqueViolation) -> str:
    constraint = getattr(exc.diag, "constraint_name", None) or ""
    if "card_number" in constraint:
        return "card_number"
    if "email" in constraint:
        return "email"
    return "user_id"


class PostgresStore:
    """Postgres-backed credential, payment and token store.

    Connections come from a bounded psycopg pool; pool checkout and each SQL
    statement are limited to ``timeout_seconds`` and surface as
    :class:`StoreTimeout` when exceeded.
    """

    def __init__(
        self,
        dsn: str,
        *,
        timeout_seconds: float = 5.0,
        min_size: int = 1,
        max_size: int = 10,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.timeout_seconds = timeout_seconds
        statement_timeout_ms = int(timeout_seconds * 1000)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
            open=True,
        )
        self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except PoolTimeout as exc:
            self.logger.error("db_pool_timeout", timeout=self.timeout_seconds)
            raise StoreTimeout("timed out waiting for a database connection") from exc
        except errors.QueryCanceled as exc:
            self.logger.error("db_statement_timeout", timeout=self.timeout_seconds)
            raise StoreTimeout("database statement timed out") from exc

    def _ensure_schema(self) -> None:
        """Create the auth tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_user(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            name=row["name"],
            password_hash=row["password"],
            security_question=SecurityQuestion(row["question"]),
            answer_hash=row["answer"],
            roles=list(row.get("roles") or ["user"]),
            failed_login_attempts=row.get("failed_login_attempts") or 0,
            account_locked_until=row.get("account_locked_until"),
            created_at=row.get("created_at") or datetime.now(timezone.utc),
        )

    @staticmethod
    def _row_to_payment_detail(row: dict) -> PaymentDetail:
        return PaymentDetail(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            card_number=row["card_number"],
            cvc=row["cvc"],
            expiration_date=row["expiration_date"],
            created_at=row.get("created_at") or datetime.now(timezone.utc),
        )

    @staticmethod
    def _row_to_token(row: dict) -> TokenRecord:
        return TokenRecord(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            jti=row["jti"],
            created_at=row.get("created_at") or datetime.now(timezone.utc),
        )

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
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO "user" (id, email, password, name, roles, question, answer,
                                        failed_login_attempts, account_locked_until, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        user.password_hash,
                        user.name,
                        user.roles,
                        user.security_question.value,
                        user.answer_hash,
                        user.failed_login_attempts,
                        user.account_locked_until,
                        user.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute('SELECT * FROM "user" WHERE id = %s', (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute('SELECT * FROM "user" WHERE email = %s', (email,)).fetchone()
        return self._row_to_user(row) if row else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                'SELECT * FROM "user" ORDER BY created_at DESC LIMIT %s', (limit,)
            ).fetchall()
        return [self._row_to_user(row) for row in rows]

    def set_login_state(
        self,
        user_id: str,
        failed_attempts: int,
        locked_until: Optional[datetime],
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE "user" SET failed_login_attempts = %s, account_locked_until = %s
                WHERE id = %s RETURNING *
                """,
                (failed_attempts, locked_until, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def update_credentials(
        self,
        user_id: str,
        *,
        password_hash: Optional[str] = None,
        answer_hash: Optional[str] = None,
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE "user" SET password = COALESCE(%s, password), answer = COALESCE(%s, answer)
                WHERE id = %s RETURNING *
                """,
                (password_hash, answer_hash, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def update_user_roles(self, user_id: str, roles: List[str]) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                'UPDATE "user" SET roles = %s WHERE id = %s RETURNING *',
                (list(roles), user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def delete_user(self, user_id: str) -> bool:
        # bank_details and token_revoke rows go with the user (ON DELETE CASCADE)
        with self._connect() as conn:
            result = conn.execute('DELETE FROM "user" WHERE id = %s', (user_id,))
            return result.rowcount > 0

    # payment details
    def create_payment_detail(
        self, user_id: str, card_number: str, cvc: str, expiration_date: str
    ) -> PaymentDetail:
        detail = PaymentDetail.new(user_id, card_number, cvc, expiration_date)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO bank_details (id, user_id, card_number, cvc, expiration_date, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        detail.id,
                        detail.user_id,
                        detail.card_number,
                        detail.cvc,
                        detail.expiration_date,
                        detail.created_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            field = _unique_field(exc)
            raise ConstraintViolation(f"{field} already registered", {"field": field})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"field": "user_id"})
        return detail

    def get_payment_detail(self, user_id: str) -> Optional[PaymentDetail]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM bank_details WHERE user_id = %s", (user_id,)
            ).fetchone()
        return self._row_to_payment_detail(row) if row else None

    def update_payment_detail(self, user_id: str, **fields: str) -> Optional[PaymentDetail]:
        unknown = set(fields) - set(_PAYMENT_FIELDS)
        if unknown:
            raise ValueError(f"unknown payment fields: {sorted(unknown)}")
        if not fields:
            return self.get_payment_detail(user_id)
        # Column names come from the fixed whitelist above
        names = [name for name in _PAYMENT_FIELDS if name in fields]
        assignments = ", ".join(f"{name} = %s" for name in names)
        params = [fields[name] for name in names] + [user_id]
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE bank_details SET {assignments} WHERE user_id = %s RETURNING *",
                    params,
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = _unique_field(exc)
            raise ConstraintViolation(f"{field} already registered", {"field": field})
        return self._row_to_payment_detail(row) if row else None

    def delete_payment_detail(self, user_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM bank_details WHERE user_id = %s", (user_id,))
            return result.rowcount > 0

    # token ledger
    def create_token_record(self, user_id: str, jti: str) -> TokenRecord:
        record = TokenRecord.new(user_id, jti)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO token_revoke (id, user_id, jti, created_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (record.id, record.user_id, record.jti, record.created_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"field": "user_id"})
        return record

    def get_token_record(self, user_id: str, jti: str) -> Optional[TokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM token_revoke WHERE user_id = %s AND jti = %s",
                (user_id, jti),
            ).fetchone()
        return self._row_to_token(row) if row else None

    def delete_token_record(self, user_id: str, jti: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM token_revoke WHERE user_id = %s AND jti = %s",
                (user_id, jti),
            )
            return result.rowcount > 0

    def delete_user_tokens(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM token_revoke WHERE user_id = %s", (user_id,))
            return result.rowcount
