from __future__ import annotations

import hashlib
import logging
import os
import uuid
from typing import Any, Dict, Optional

import structlog

REQUEST_ID_KEY = "correlation_id"

# Substrings of event keys whose string values are masked before rendering
_SENSITIVE_KEY_PARTS = (
    "password",
    "secret",
    "token",
    "authorization",
    "cookie",
    "email",
    "code_verifier",
    "session_id",
)

_TRUTHY = {"1", "true", "yes", "on"}


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in _TRUTHY


def get_correlation_id() -> Optional[str]:
    """Return the request id bound to the current context, if any."""
    return structlog.contextvars.get_contextvars().get(REQUEST_ID_KEY)


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind a request id for every log line emitted in this context.

    Anything bound by a previous request on the same context is dropped
    first. A fresh UUID is generated when the caller has none.
    """
    cid = correlation_id or str(uuid.uuid4())
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(**{REQUEST_ID_KEY: cid})
    return cid


def _mask(value: str) -> str:
    if len(value) <= 4:
        return "***"
    return f"{value[:2]}***{value[-2:]}"


def _redact_sensitive(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key, value in event_dict.items():
        if not isinstance(value, str):
            continue
        lowered = key.lower()
        # digests and fingerprints are safe to log as-is
        if lowered.endswith(("_hash", "_fingerprint")):
            continue
        if any(part in lowered for part in _SENSITIVE_KEY_PARTS):
            event_dict[key] = _mask(value)
    return event_dict


def configure_logging(
    level: str = "INFO", *, json_output: bool = True, dev_mode: bool = False
) -> None:
    """Install the structlog pipeline.

    Args:
        level: minimum level name; unknown names fall back to INFO
        json_output: render one JSON object per line
        dev_mode: coloured console output, overrides ``json_output``
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _redact_sensitive,
        structlog.processors.StackInfoRenderer(),
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=dev_mode))
    else:
        processors.extend(
            [
                structlog.processors.dict_tracebacks,
                structlog.processors.JSONRenderer(sort_keys=True),
            ]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    dev_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def email_fingerprint(email: str) -> str:
    """Stable, non-reversible identifier for an email address in logs."""
    return hashlib.sha256(email.strip().lower().encode()).hexdigest()[:16]


def session_fingerprint(session_id: str) -> str:
    """Session ids are bearer credentials; logs only ever see this digest."""
    return hashlib.sha256(session_id.encode()).hexdigest()[:16]
