"""
Structured Logging with Structlog.

JSON logs carrying the request_id and user_id of the audit being run.
Prompts, drafts and verdicts are user content: log entries only ever
carry a truncated preview of them, and credentials never appear at all.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from consensus_audit.config import settings

REDACTED = "[redacted]"
CREDENTIAL_KEYS = frozenset({"authorization", "credential", "token", "api_key", "password"})
USER_TEXT_KEYS = frozenset({"prompt", "response", "verdict", "librarian_analysis", "content"})


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Add application-level context to all log entries."""
    event_dict["service"] = settings.service_name
    event_dict["version"] = settings.api_version
    return event_dict


def redact_sensitive(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Drop credentials and truncate user-supplied text."""
    limit = settings.log_text_max_chars
    for key, value in event_dict.items():
        if key in CREDENTIAL_KEYS and value is not None:
            event_dict[key] = REDACTED
        elif key in USER_TEXT_KEYS and isinstance(value, str) and len(value) > limit:
            event_dict[key] = f"{value[:limit]}... ({len(value)} chars)"
    return event_dict


def setup_logging() -> None:
    """
    Configure structured logging with structlog.

    Logs are formatted as JSON for machine parsing:
    {
        "event": "drafter_failed",
        "level": "warning",
        "timestamp": "2026-01-08T12:00:00.123456Z",
        "logger": "consensus_audit.services.council",
        "service": "consensus-audit-api",
        "request_id": "5f0c...",
        "user_id": "...",
        ...additional context
    }
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level.upper()),
    )

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_app_context,
        redact_sensitive,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if settings.log_level.upper() == "DEBUG":
        processors.append(structlog.processors.ExceptionRenderer())
    else:
        processors.append(structlog.processors.format_exc_info)

    if settings.log_format == "json":
        processors.append(structlog.processors.JSONRenderer(default=str))
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)  # type: ignore[no-any-return]


def current_request_id() -> str | None:
    """Request id bound by the HTTP middleware, if any."""
    request_id = structlog.contextvars.get_contextvars().get("request_id")
    return str(request_id) if request_id is not None else None


class log_context:
    """
    Context manager binding structured logging context.

    Keys already bound by an outer context are restored on exit rather
    than dropped, so nested contexts may shadow request_id safely.

    Usage:
        with log_context(user_id=str(user.user_id)):
            logger.info("ledger_debited", amount=str(cost))
    """

    def __init__(self, **kwargs: Any) -> None:
        self.context = kwargs
        self._previous: dict[str, Any] = {}

    def __enter__(self) -> None:
        bound = structlog.contextvars.get_contextvars()
        self._previous = {k: bound[k] for k in self.context if k in bound}
        structlog.contextvars.bind_contextvars(**self.context)

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        structlog.contextvars.unbind_contextvars(*self.context.keys())
        if self._previous:
            structlog.contextvars.bind_contextvars(**self._previous)
