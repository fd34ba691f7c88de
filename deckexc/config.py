from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from deckexc.logging import get_logger

logger = get_logger(__name__)

DEFAULT_DATA_ROOT = "/srv/deckexc"
RECAPTCHA_VERIFY_URL = "https://www.google.com/recaptcha/api/siteverify"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth service, read from env and ``.env``."""

    database_url: str = env_field(
        "postgresql://localhost:5432/deckexc_auth", "DATABASE_URL"
    )
    db_pool_min_size: int = env_field(1, "DB_POOL_MIN_SIZE")
    db_pool_max_size: int = env_field(10, "DB_POOL_MAX_SIZE")
    data_root: str = env_field(DEFAULT_DATA_ROOT, "DATA_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets and other deterministic testing behaviors.",
    )
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_ttl_minutes: int = env_field(
        120, "JWT_TTL_MINUTES", description="Lifetime of issued bearer tokens"
    )
    encryption_key: str | None = env_field(
        None, "ENCRYPTION_KEY", description="Secret the payment field cipher key is derived from"
    )
    encryption_iv: str | None = env_field(
        None, "ENCRYPTION_IV", description="Secret the payment field cipher IV is derived from"
    )
    lockout_threshold: int = env_field(
        3,
        "LOCKOUT_THRESHOLD",
        description="Consecutive failed logins that lock an account",
    )
    lockout_minutes: int = env_field(3, "LOCKOUT_MINUTES")
    captcha_secret: str | None = env_field(
        None,
        "CAPTCHA_SECRET",
        description="reCAPTCHA server secret; captcha checks are skipped when unset",
    )
    captcha_verify_url: str = env_field(RECAPTCHA_VERIFY_URL, "CAPTCHA_VERIFY_URL")
    upstream_timeout_seconds: float = env_field(
        5.0,
        "UPSTREAM_TIMEOUT_SECONDS",
        description="Bound for captcha calls, pool checkout and SQL statements",
    )
    cors_allow_origins: list[str] | None = env_field(None, "CORS_ALLOW_ORIGINS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("lockout_threshold")
    @classmethod
    def _validate_lockout_threshold(cls, value: int) -> int:
        if value < 1:
            raise ValueError("LOCKOUT_THRESHOLD must be at least 1")
        return value

    @field_validator("lockout_minutes", "jwt_ttl_minutes")
    @classmethod
    def _validate_positive_minutes(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("durations must be positive")
        return value

    @field_validator("upstream_timeout_seconds")
    @classmethod
    def _validate_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("UPSTREAM_TIMEOUT_SECONDS must be positive")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens stay valid across restarts
        data_root = Path(os.getenv("DATA_ROOT", DEFAULT_DATA_ROOT))
        secret_path = data_root / ".jwt_secret"

        try:
            data_root.mkdir(parents=True, exist_ok=True)
            os.chmod(data_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(data_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make DATA_ROOT writable"
            ) from exc
        return generated


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
