from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from deckexc.config import get_settings, reset_settings_cache
from deckexc.logging import get_logger
from deckexc.service.auth import AuthService
from deckexc.service.captcha import CaptchaVerifier
from deckexc.service.cipher import FieldCipher
from deckexc.service.payments import PaymentService
from deckexc.service.tokens import TokenService
from deckexc.storage.memory import MemoryStore
from deckexc.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a DSN with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        if not self.settings.encryption_key or not self.settings.encryption_iv:
            raise RuntimeError(
                "ENCRYPTION_KEY and ENCRYPTION_IV must be set to store payment details"
            )

        try:
            self.store = (
                MemoryStore(fs_root=self.settings.data_root)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    timeout_seconds=self.settings.upstream_timeout_seconds,
                    min_size=self.settings.db_pool_min_size,
                    max_size=self.settings.db_pool_max_size,
                )
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cipher = FieldCipher(self.settings.encryption_key, self.settings.encryption_iv)
        self.tokens = TokenService(self.store, self.settings)
        self.captcha = (
            CaptchaVerifier(
                self.settings.captcha_secret,
                self.settings.captcha_verify_url,
                timeout=self.settings.upstream_timeout_seconds,
            )
            if self.settings.captcha_secret
            else None
        )
        self.auth = AuthService(
            self.store, self.tokens, self.settings, captcha=self.captcha
        )
        self.payments = PaymentService(self.store, self.cipher)

        logger.info(
            "runtime_initialized",
            store_type="memory" if self.settings.use_memory_store else "postgres",
            captcha_enabled=self.captcha is not None,
            lockout_threshold=self.settings.lockout_threshold,
            lockout_minutes=self.settings.lockout_minutes,
        )

    def close(self) -> None:
        close = getattr(self.store, "close", None)
        if close is not None:
            close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None:
            runtime.close()
        runtime = Runtime()
        return runtime
