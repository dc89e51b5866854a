from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

SERVICE_NAME = "paysentry"

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Field-name fragments whose values never reach the log stream unmasked
_SECRET_FRAGMENTS = ("password", "secret", "credential", "authorization", "hash")
_TOKEN_FRAGMENTS = ("token", "session")
_IDENTIFIER_FRAGMENTS = ("email", "identifier")


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind a request id (or a fresh one) to the current context."""
    cid = correlation_id or uuid.uuid4().hex
    correlation_id_var.set(cid)
    return cid


def mask_token(token: Optional[str]) -> Optional[str]:
    """Shorten an opaque session token for inclusion in logs and audit metadata."""
    if not token:
        return token
    return token[:8] + "..."


def _mask_identifier(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return value[:2] + "***"
    return f"{local[:1]}***@{domain}"


def _tag_request(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    event_dict.setdefault("service", SERVICE_NAME)
    cid = correlation_id_var.get()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _redact(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        if not isinstance(value, str) or key == "event":
            continue
        lowered = key.lower()
        if any(fragment in lowered for fragment in _SECRET_FRAGMENTS):
            event_dict[key] = "[redacted]"
        elif any(fragment in lowered for fragment in _TOKEN_FRAGMENTS):
            event_dict[key] = mask_token(value)
        elif any(fragment in lowered for fragment in _IDENTIFIER_FRAGMENTS):
            event_dict[key] = _mask_identifier(value)
    return event_dict


def configure_logging(level: str = "INFO", *, json_output: bool = True) -> None:
    """Install the structlog pipeline.

    JSON lines in production; a colourised console renderer when
    ``json_output`` is false (LOG_JSON=false) for local development.
    """
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _tag_request,
        _redact,
        structlog.processors.StackInfoRenderer(),
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

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
    json_output=os.getenv("LOG_JSON", "true").lower() in {"1", "true", "yes", "on"},
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
