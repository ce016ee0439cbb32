"""Structured logging for webhook delivery.

Every event goes through structlog with key/value fields. Secrets and
signatures are scrubbed before rendering, whatever the caller passed in.
Output is JSON lines in production and a colored console in development;
both defaults come from ``settings.log_format`` and ``settings.log_level``.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import MutableMapping
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from structlog.typing import Processor

REDACTED = "[redacted]"

# Field names whose values must never reach a log sink
SENSITIVE_KEYS = frozenset(
    {
        "authorization",
        "plaintext",
        "secret",
        "secret_encrypted",
        "signature",
        "signing_key",
        "webhook_signing_key",
    }
)

# Third-party loggers that print full request URLs at INFO/DEBUG
URL_LOGGERS = ("httpx", "httpcore")

_configured = False


def redact_secrets(
    _logger: Any,
    _method_name: str,
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """structlog processor replacing sensitive field values with a marker."""
    for key in SENSITIVE_KEYS.intersection(event_dict):
        if event_dict[key] is not None:
            event_dict[key] = REDACTED
    return event_dict


def _build_processors(json_output: bool) -> list[Processor]:
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        redact_secrets,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if json_output:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))
    return processors


def configure_logging(level: str | None = None, format: str | None = None) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        level: Log level name. Defaults to ``settings.log_level``; unknown
            names fall back to INFO.
        format: "json" or "text". Defaults to ``settings.log_format``.
    """
    global _configured

    if level is None or format is None:
        from kmwebhooks.config import settings

        level = level or settings.log_level
        format = format or settings.log_format

    log_level = logging.getLevelName(level.upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    # stdlib loggers (tenacity, qdrant-client, storage retries) share the stream
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)
    logging.getLogger().setLevel(log_level)
    for name in URL_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    structlog.configure(
        processors=_build_processors(format.lower() == "json"),
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=False,
    )
    _configured = True


def get_logger(name: str | None = None) -> Any:
    """Return a structlog logger, configuring logging on first use."""
    if not _configured:
        configure_logging()
    if name is None:
        return structlog.get_logger()
    return structlog.get_logger(logger_name=name)


def bind_context(**kwargs: object) -> None:
    """Attach fields to every log line emitted from the current task.

    asyncio tasks copy the context they were created in, so a fan-out
    worker can bind its own ``worker`` index without affecting siblings.

    Example:
        ```python
        bind_context(webhook_event="purchase.completed", user_id="user_123")
        logger.info("Dispatching")  # Includes webhook_event and user_id
        ```
    """
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()


logger = get_logger("kmwebhooks")
