from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Both are reset at the start of every HTTP request by the app middleware.
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
acting_user_var: ContextVar[Optional[str]] = ContextVar("acting_user", default=None)

# values under keys ending in one of these are replaced outright;
# descriptive keys such as ``secret_name`` or ``token_type`` are kept
_SECRET_SUFFIXES = (
    "password",
    "password_hash",
    "secret",
    "token",
    "authorization",
    "cookie",
)


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Start a request context: new correlation id, no acting user yet."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    acting_user_var.set(None)
    return cid


def bind_acting_user(user_id: Optional[str]) -> None:
    """Attach the authenticated caller to every later log line of the request."""
    acting_user_var.set(user_id)


def _add_request_context(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = correlation_id_var.get()
    if cid:
        event_dict["correlation_id"] = cid
    acting_user = acting_user_var.get()
    if acting_user and "user_id" not in event_dict:
        event_dict["user_id"] = acting_user
    return event_dict


def _mask_email(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return "***"
    return f"{local[:1]}***@{domain}"


def _redact_sensitive(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Keep credentials out of the log sink and shorten email addresses."""
    for key, value in list(event_dict.items()):
        lower_key = key.lower()
        if lower_key.endswith(_SECRET_SUFFIXES):
            if value:
                event_dict[key] = "***"
        elif "email" in lower_key and isinstance(value, str):
            event_dict[key] = _mask_email(value)
    return event_dict


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog processors.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output JSON; if False, output human-readable
        development_mode: If True, use pretty console output
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_request_context,
        _redact_sensitive,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


_configure_structlog(
    log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
