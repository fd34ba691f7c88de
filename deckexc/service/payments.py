from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Protocol

from deckexc.logging import get_logger
from deckexc.service.cipher import FieldCipher
from deckexc.service.errors import (
    DuplicateCardError,
    NotFoundError,
    PaymentDetailExistsError,
    ServiceError,
    ValidationError,
)
from deckexc.storage.errors import ConstraintViolation
from deckexc.storage.models import PaymentDetail, User

logger = get_logger(__name__)

CVC_PLACEHOLDER = "***"

_DIGITS_RE = re.compile(r"[0-9]+")
_CARD_NUMBER_RE = re.compile(r"[0-9]{16}")
_CVC_RE = re.compile(r"[1-9][0-9]{2,3}")
_EXPIRATION_RE = re.compile(r"([0-9]{4})/(0[1-9]|1[0-2])")
_MASKABLE_DIGIT_RE = re.compile(r"[0-9](?=[0-9]{4})")


def luhn_valid(number: str) -> bool:
    """Luhn checksum over a string of digits."""
    if not _DIGITS_RE.fullmatch(number):
        return False
    total = 0
    for index, char in enumerate(reversed(number)):
        digit = int(char)
        if index % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit
    return total % 10 == 0


def validate_card_number(value: str) -> str:
    if not _CARD_NUMBER_RE.fullmatch(value):
        raise ValueError("card number must be exactly 16 digits")
    if not luhn_valid(value):
        raise ValueError("card number failed the Luhn check")
    return value


def validate_cvc(value: str) -> str:
    if not _CVC_RE.fullmatch(value):
        raise ValueError("cvc must be 3 or 4 digits and must not start with 0")
    return value


def validate_expiration_date(value: str, now: Optional[datetime] = None) -> str:
    """Accept ``YYYY/MM`` not earlier than the current month."""
    match = _EXPIRATION_RE.fullmatch(value)
    if not match:
        raise ValueError("expiration date must use the YYYY/MM format")
    now = now or datetime.now(timezone.utc)
    year, month = int(match.group(1)), int(match.group(2))
    if (year, month) < (now.year, now.month):
        raise ValueError("expiration date is in the past")
    return value


def mask_card_number(value: str) -> str:
    """Star every digit that still has four digits after it."""
    return _MASKABLE_DIGIT_RE.sub("*", value)


def mask_expiration_date(value: str) -> str:
    """``2030/07`` -> ``**30/**``: only the last two year digits survive."""
    year, _, _month = value.partition("/")
    return f"**{year[-2:]}/**"


class PaymentStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def create_payment_detail(
        self, user_id: str, card_number: str, cvc: str, expiration_date: str
    ) -> PaymentDetail: ...

    def get_payment_detail(self, user_id: str) -> Optional[PaymentDetail]: ...

    def update_payment_detail(self, user_id: str, **fields: str) -> Optional[PaymentDetail]: ...

    def delete_payment_detail(self, user_id: str) -> bool: ...


@dataclass
class PaymentDetailView:
    """Masked payment detail; ``None`` marks a field that was not touched."""

    id: str
    user_id: str
    card_number: Optional[str] = None
    cvc: Optional[str] = None
    expiration_date: Optional[str] = None


class PaymentService:
    """Stores payment fields encrypted at rest and only ever returns masks."""

    def __init__(self, store: PaymentStore, cipher: FieldCipher) -> None:
        self.store = store
        self.cipher = cipher

    def _translate_conflict(self, exc: ConstraintViolation) -> Optional[ServiceError]:
        field = exc.detail.get("field")
        if field == "card_number":
            return DuplicateCardError("card number is already registered")
        if field == "user_id":
            return PaymentDetailExistsError("user already has a payment detail")
        return None

    def create(
        self, user_id: str, card_number: str, cvc: str, expiration_date: str
    ) -> PaymentDetailView:
        if not self.store.get_user(user_id):
            raise NotFoundError("user not found")
        if self.store.get_payment_detail(user_id):
            raise PaymentDetailExistsError("user already has a payment detail")
        try:
            detail = self.store.create_payment_detail(
                user_id,
                self.cipher.encrypt(card_number),
                self.cipher.encrypt(cvc),
                self.cipher.encrypt(expiration_date),
            )
        except ConstraintViolation as exc:
            translated = self._translate_conflict(exc)
            if translated is None:
                raise
            raise translated from exc
        logger.info("payment_detail_created", user_id=user_id)
        return PaymentDetailView(
            id=detail.id,
            user_id=user_id,
            card_number=mask_card_number(card_number),
            cvc=CVC_PLACEHOLDER,
            expiration_date=mask_expiration_date(expiration_date),
        )

    def read(self, user_id: str) -> PaymentDetailView:
        detail = self.store.get_payment_detail(user_id)
        if not detail:
            raise NotFoundError("Payment detail not found")
        return PaymentDetailView(
            id=detail.id,
            user_id=user_id,
            card_number=mask_card_number(self.cipher.decrypt(detail.card_number)),
            cvc=CVC_PLACEHOLDER,
            expiration_date=mask_expiration_date(self.cipher.decrypt(detail.expiration_date)),
        )

    def update(
        self,
        user_id: str,
        *,
        card_number: Optional[str] = None,
        cvc: Optional[str] = None,
        expiration_date: Optional[str] = None,
    ) -> PaymentDetailView:
        """Re-encrypt only the supplied fields; the view echoes just those."""
        supplied = {
            name: value
            for name, value in (
                ("card_number", card_number),
                ("cvc", cvc),
                ("expiration_date", expiration_date),
            )
            if value is not None
        }
        if not supplied:
            raise ValidationError("at least one payment field must be provided")
        if not self.store.get_payment_detail(user_id):
            raise NotFoundError("Payment detail not found")
        encrypted = {name: self.cipher.encrypt(value) for name, value in supplied.items()}
        try:
            updated = self.store.update_payment_detail(user_id, **encrypted)
        except ConstraintViolation as exc:
            translated = self._translate_conflict(exc)
            if translated is None:
                raise
            raise translated from exc
        if not updated:
            raise NotFoundError("Payment detail not found")
        logger.info("payment_detail_updated", user_id=user_id, fields=sorted(supplied))
        view = PaymentDetailView(id=updated.id, user_id=user_id)
        if card_number is not None:
            view.card_number = mask_card_number(card_number)
        if cvc is not None:
            view.cvc = CVC_PLACEHOLDER
        if expiration_date is not None:
            view.expiration_date = mask_expiration_date(expiration_date)
        return view

    def delete(self, user_id: str) -> None:
        if not self.store.delete_payment_detail(user_id):
            raise NotFoundError("Payment detail not found")
        logger.info("payment_detail_deleted", user_id=user_id)
