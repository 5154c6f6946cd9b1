"""structlog setup for tokenward.

Every event passes through ``_redact_credentials`` before rendering. Values
under credential-like keys are masked outright, emails keep only their first
character and domain, and any JWT-shaped string is replaced wherever it
appears, including inside exception messages logged as ``error=str(exc)``.
"""

from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# header.payload.signature, each base64url; headers always start with "eyJ"
_JWT_PATTERN = re.compile(r"eyJ[A-Za-z0-9_-]*\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]*")
_BEARER_PATTERN = re.compile(r"(?i)\bbearer\s+\S+")
_CREDENTIAL_KEYS = ("password", "secret", "authorization", "token", "cookie")
_EMAIL_KEYS = ("email",)
_JWT_MASK = "<jwt:redacted>"
_CREDENTIAL_MASK = "***"


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind the request's correlation id, generating one when absent."""
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


def mask_email(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return _CREDENTIAL_MASK
    return f"{local[:1]}***@{domain}"


def scrub_tokens(value: str) -> str:
    """Replace bearer credentials and JWT-shaped substrings in free text."""
    value = _BEARER_PATTERN.sub(f"Bearer {_JWT_MASK}", value)
    return _JWT_PATTERN.sub(_JWT_MASK, value)


def _scrub(value: Any) -> Any:
    if isinstance(value, str):
        return scrub_tokens(value)
    if isinstance(value, dict):
        return {k: _redact_value(str(k), v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return type(value)(_scrub(item) for item in value)
    return value


def _redact_value(key: str, value: Any) -> Any:
    lower_key = key.lower()
    if isinstance(value, str) and value:
        if any(part in lower_key for part in _CREDENTIAL_KEYS):
            return _CREDENTIAL_MASK
        if any(part in lower_key for part in _EMAIL_KEYS):
            return mask_email(value)
    return _scrub(value)


def _redact_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key in list(event_dict.keys()):
        if key == "event":
            event_dict[key] = _scrub(event_dict[key])
            continue
        event_dict[key] = _redact_value(key, event_dict[key])
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        # after format_exc_info so rendered tracebacks are scrubbed too
        _redact_credentials,
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        renderer = structlog.dev.ConsoleRenderer(colors=True)
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=shared_processors + [renderer],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


configure_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
