from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that clients branch on. Callers must match on the class, never on the
    message text.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class DuplicateEmailError(ServiceError):
    """An account with this email already exists (400)."""
    status_code = 400
    error_code = "duplicate_email"


class DuplicateCardError(ServiceError):
    """The card number is already registered to another account (400)."""
    status_code = 400
    error_code = "duplicate_card"


class PaymentDetailExistsError(ServiceError):
    """The user already has a payment detail record (400)."""
    status_code = 400
    error_code = "payment_detail_exists"


class InvalidAnswerError(ServiceError):
    """Security answer did not match (400)."""
    status_code = 400
    error_code = "invalid_answer"


class InvalidCaptchaError(ServiceError):
    """Captcha token missing or rejected by the verifier (400)."""
    status_code = 400
    error_code = "invalid_captcha"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidTokenError(AuthenticationError):
    """Bearer token is malformed or its signature does not verify (401)."""
    pass


class InvalidCredentialsError(ServiceError):
    """Unknown email or wrong password (401)."""
    status_code = 401
    error_code = "invalid_credentials"


class AccountLockedError(ServiceError):
    """Too many failed logins; the account is temporarily locked (401)."""

    status_code = 401
    error_code = "account_locked"

    def __init__(self, remaining_seconds: int, message: Optional[str] = None) -> None:
        self.remaining_seconds = remaining_seconds
        super().__init__(
            message
            or f"Account is temporarily locked. Try again in {remaining_seconds} seconds.",
            detail={"remaining_seconds": remaining_seconds},
        )


class TokenExpiredError(ServiceError):
    """Bearer token is past its expiry (401)."""
    status_code = 401
    error_code = "token_expired"


class TokenRevokedError(ServiceError):
    """Bearer token is no longer in the active token ledger (401)."""
    status_code = 401
    error_code = "token_revoked"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class DecryptionFailedError(ServiceError):
    """Stored ciphertext could not be decrypted (500)."""
    status_code = 500
    error_code = "decryption_failed"


class UpstreamUnavailableError(ServiceError):
    """A collaborator (captcha verifier, database) could not be reached (502)."""
    status_code = 502
    error_code = "upstream_unavailable"


class UpstreamTimeoutError(ServiceError):
    """A collaborator did not answer within the configured bound (504)."""
    status_code = 504
    error_code = "upstream_timeout"


__all__ = [
    "ServiceError",
    "ValidationError",
    "DuplicateEmailError",
    "DuplicateCardError",
    "PaymentDetailExistsError",
    "InvalidAnswerError",
    "InvalidCaptchaError",
    "AuthenticationError",
    "InvalidTokenError",
    "InvalidCredentialsError",
    "AccountLockedError",
    "TokenExpiredError",
    "TokenRevokedError",
    "ForbiddenError",
    "NotFoundError",
    "DecryptionFailedError",
    "UpstreamUnavailableError",
    "UpstreamTimeoutError",
]
