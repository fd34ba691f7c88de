from __future__ import annotations

import re
import unicodedata
import uuid
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from deckexc.service.payments import (
    validate_card_number,
    validate_cvc,
    validate_expiration_date,
)
from deckexc.storage.models import SecurityQuestion

_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "duplicate_email",
    "duplicate_card",
    "payment_detail_exists",
    "invalid_answer",
    "invalid_captcha",
    "unauthorized",
    "invalid_credentials",
    "account_locked",
    "token_expired",
    "token_revoked",
    "forbidden",
    "not_found",
    "conflict",
    "decryption_failed",
    "upstream_unavailable",
    "upstream_timeout",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable, machine-readable code."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Response envelope shared by every endpoint."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _check_email_format(value: str) -> str:
    if len(value) > 254:
        raise ValueError("email address too long")
    local, sep, domain = value.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return value


def _normalize_email(value: str) -> str:
    """Registration form: trimmed, lowercased and NFKC-normalized."""
    return _check_email_format(unicodedata.normalize("NFKC", value.strip().lower()))


_UPPERCASE = re.compile(r"[A-Z]")
_LOWERCASE = re.compile(r"[a-z]")
_DIGIT_OR_SYMBOL = re.compile(r"[\d\W_]")


def _validate_password_strength(value: str) -> str:
    """6 to 50 characters with an uppercase letter, a lowercase letter and a digit or symbol."""
    if len(value) < 6:
        raise ValueError("password must be at least 6 characters")
    if len(value) > 50:
        raise ValueError("password must be at most 50 characters")
    if (
        not _UPPERCASE.search(value)
        or not _LOWERCASE.search(value)
        or not _DIGIT_OR_SYMBOL.search(value)
    ):
        raise ValueError(
            "password must contain an uppercase letter, a lowercase letter and a number or symbol"
        )
    return value


def _validate_uuid(value: str) -> str:
    try:
        return str(uuid.UUID(value))
    except (ValueError, AttributeError, TypeError):
        raise ValueError("must be a valid UUID")


class RegisterRequest(BaseModel):
    email: str
    name: str = Field(..., min_length=1, max_length=255)
    password: str
    question: SecurityQuestion
    answer: str = Field(..., min_length=3, max_length=20)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _normalize_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class LoginRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: str
    password: str = Field(..., min_length=1, max_length=128)
    captcha_token: Optional[str] = Field(
        default=None, alias="captchaToken", max_length=4096
    )

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        # Looked up exactly as typed; stored emails are already normalized
        return _check_email_format(value)


class LoginResponse(BaseModel):
    email: str
    token: str


class ResetPasswordRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: str
    answer: str = Field(..., min_length=3, max_length=20)
    new_password: str = Field(..., alias="password")

    @field_validator("email")
    @classmethod
    def _validate_reset_email(cls, value: str) -> str:
        return _check_email_format(value)

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class MessageResponse(BaseModel):
    message: str


class QuestionResponse(BaseModel):
    question: SecurityQuestion


class PaymentDetailRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., alias="userId")
    card_number: str = Field(..., alias="cardNumber")
    cvc: str
    expiration_date: str = Field(..., alias="expirationDate")

    @field_validator("user_id")
    @classmethod
    def _validate_user_id(cls, value: str) -> str:
        return _validate_uuid(value)

    @field_validator("card_number")
    @classmethod
    def _validate_card_number(cls, value: str) -> str:
        return validate_card_number(value)

    @field_validator("cvc")
    @classmethod
    def _validate_cvc(cls, value: str) -> str:
        return validate_cvc(value)

    @field_validator("expiration_date")
    @classmethod
    def _validate_expiration_date(cls, value: str) -> str:
        return validate_expiration_date(value)


class PaymentDetailUpdateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., alias="userId")
    card_number: Optional[str] = Field(default=None, alias="cardNumber")
    cvc: Optional[str] = None
    expiration_date: Optional[str] = Field(default=None, alias="expirationDate")

    @field_validator("user_id")
    @classmethod
    def _validate_user_id(cls, value: str) -> str:
        return _validate_uuid(value)

    @field_validator("card_number")
    @classmethod
    def _validate_card_number(cls, value: Optional[str]) -> Optional[str]:
        return validate_card_number(value) if value is not None else None

    @field_validator("cvc")
    @classmethod
    def _validate_cvc(cls, value: Optional[str]) -> Optional[str]:
        return validate_cvc(value) if value is not None else None

    @field_validator("expiration_date")
    @classmethod
    def _validate_expiration_date(cls, value: Optional[str]) -> Optional[str]:
        return validate_expiration_date(value) if value is not None else None

    @model_validator(mode="after")
    def _require_one_field(self):
        if self.card_number is None and self.cvc is None and self.expiration_date is None:
            raise ValueError("at least one of cardNumber, cvc or expirationDate is required")
        return self


class PaymentDetailResponse(BaseModel):
    """Masked payment view; untouched fields are omitted on update."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    user_id: str = Field(..., serialization_alias="userId")
    card_number: Optional[str] = Field(default=None, serialization_alias="cardNumber")
    cvc: Optional[str] = None
    expiration_date: Optional[str] = Field(default=None, serialization_alias="expirationDate")


class TokenCheckRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., alias="userId")
    jti: str = Field(..., min_length=36, max_length=36)

    @field_validator("user_id")
    @classmethod
    def _validate_user_id(cls, value: str) -> str:
        return _validate_uuid(value)


class TokenCheckResponse(BaseModel):
    is_revoked: bool = Field(..., serialization_alias="isRevoked")


class UserResponse(BaseModel):
    id: str
    email: str
    name: str
    roles: List[str]
    question: SecurityQuestion


class AuthStatusResponse(BaseModel):
    id: str
    email: str
    name: str
    roles: List[str]
    token: str
