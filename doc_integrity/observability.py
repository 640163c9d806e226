"""Structured logging with structlog.

Production renders JSON lines, everything else a coloured console. A
redaction processor blanks key material and plaintext before rendering, so
a stray ``log.info(..., private_key_pem=...)`` never reaches the output.

Usage:
    from doc_integrity.observability import configure_logging

    configure_logging(environment="production", level="INFO")

    log = structlog.get_logger(__name__)
    log.info("hash_stored", identity_id=identity_id)
"""

import logging
import uuid
from typing import Any, MutableMapping

import structlog
from structlog.typing import Processor

REDACTED = "[REDACTED]"
SENSITIVE_KEYS = frozenset({
    "private_key",
    "private_key_pem",
    "privatekeypem",
    "plaintext",
    "passkey",
    "password",
    "token",
    "authorization",
    "signer_key",
    "jwt_secret",
})


def redact_secrets(_logger: Any, _method: str, event_dict: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    """Replace values of sensitive keys"""
    for key in list(event_dict.keys()):
        if key.lower() in SENSITIVE_KEYS:
            event_dict[key] = REDACTED
    return event_dict


def configure_logging(environment: str = "development", level: str = "INFO") -> None:
    """Configure structlog once at startup.

    Args:
        environment: 'production' for JSON output, anything else for console.
        level: Log level name, unknown names fall back to INFO.
    """
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if environment == "production":
        final_processor: Processor = structlog.processors.JSONRenderer()
    else:
        final_processor = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=shared_processors + [final_processor],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def bind_request_id(request_id: str = "") -> str:
    """Bind a request id into the contextvars of the current task"""
    request_id = request_id or str(uuid.uuid4())
    structlog.contextvars.bind_contextvars(request_id=request_id)
    return request_id


def clear_request_context() -> None:
    structlog.contextvars.clear_contextvars()
