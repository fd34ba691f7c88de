from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Bound by the request middleware and echoed back as X-Request-ID
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Substrings of event keys whose string values never reach the log verbatim
SENSITIVE_KEY_PARTS = frozenset(
    {"password", "secret", "token", "authorization", "email", "answer", "card", "cvc"}
)

_CARD_NUMBER_IN_TEXT = re.compile(r"(?<![0-9])[0-9]{12}([0-9]{4})(?![0-9])")


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind the caller's request id, or a fresh UUID4 when none was sent."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _mask_value(value: str) -> str:
    if len(value) > 4:
        return value[:2] + "***" + value[-2:]
    return "***"


def _redact_sensitive(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credentials and payment data before rendering.

    Values under sensitive keys keep only their first and last two characters.
    Any other string that embeds a 16-digit run keeps just the last four digits
    of it, so a card number quoted in an error message cannot leak.
    """
    for key, value in list(event_dict.items()):
        if not isinstance(value, str):
            continue
        if any(part in key.lower() for part in SENSITIVE_KEY_PARTS):
            event_dict[key] = _mask_value(value)
        elif key != "event":
            event_dict[key] = _CARD_NUMBER_IN_TEXT.sub(r"************\1", value)
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Install the structlog pipeline.

    JSON lines are the default; ``development_mode`` (or ``json_output=False``)
    switches to the coloured console renderer.
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_sensitive,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode or not json_output:
        renderers = [structlog.dev.ConsoleRenderer(colors=True)]
    else:
        renderers = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=shared_processors + renderers,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
