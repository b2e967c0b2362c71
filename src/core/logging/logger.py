#!/usr/bin/env python3
"""
Structured Logging Module using structlog

This module provides structured logging for the chat proxy with:
- Thread ID correlation so every log line of one chat request can be joined
- Stage numbering that mirrors the orchestrator pipeline (see constants.Stage)
- JSON formatting for log aggregation, console rendering for development
- Redaction of upstream credentials and contact details

Architectural Decision: structlog for production logging
- Context-aware logging with automatic field injection
- Key/value events instead of interpolated strings
- The metrics/log sink is an external collaborator; emitting never blocks

Author: System Architect
Date: 2025-12-05
"""

import logging
import re
import sys
from contextvars import ContextVar
from datetime import datetime, timezone

import structlog
from structlog.types import EventDict, WrappedLogger

from src.core.config.settings import get_settings

# Context variable for thread ID (one per asyncio task context)
thread_id_ctx: ContextVar[str | None] = ContextVar("thread_id", default=None)

_REDACTIONS = (
    (re.compile(r"\b[\w.-]+@[\w.-]+\.\w+\b"), "[EMAIL]"),
    (re.compile(r"\bBearer\s+[A-Za-z0-9._~+/=-]+", re.IGNORECASE), "Bearer [REDACTED]"),
    (re.compile(r"\b(?:pat|sat)_[A-Za-z0-9]+\b"), "[REDACTED]"),
    (re.compile(r"\b\d{3}[-.]?\d{4}[-.]?\d{4}\b"), "[PHONE]"),
)


def add_thread_id(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Add thread ID to log event from context variable.

    STAGE-L.1: Thread ID injection
    """
    thread_id = thread_id_ctx.get()
    if thread_id and "thread_id" not in event_dict:
        event_dict["thread_id"] = thread_id
    return event_dict


def add_timestamp(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Add ISO timestamp to log event.

    STAGE-L.2: Timestamp injection
    """
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
    return event_dict


def redact_secrets(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Redact credentials and PII from the log message.

    STAGE-L.3: Redaction

    Patterns redacted:
    - Email addresses → [EMAIL]
    - Bearer headers and Coze personal/service tokens (pat_..., sat_...) → [REDACTED]
    - Mobile phone numbers → [PHONE]
    """
    message = event_dict.get("event", "")

    if isinstance(message, str):
        for pattern, replacement in _REDACTIONS:
            message = pattern.sub(replacement, message)
        event_dict["event"] = message

    return event_dict


def add_log_level_name(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Upper-case the level name.

    STAGE-L.4: Log level injection
    """
    if "level" in event_dict:
        event_dict["level"] = event_dict["level"].upper()
    return event_dict


def setup_logging(log_level: str | None = None, log_format: str | None = None) -> None:
    """
    Setup structured logging with structlog.

    STAGE-L: Logging initialization

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Log format ('json' or 'console')
    """
    settings = get_settings()

    log_level = log_level or settings.logging.LOG_LEVEL
    log_format = log_format or settings.logging.LOG_FORMAT

    # Standard library logging backs structlog and tenacity's before_sleep_log
    logging.basicConfig(
        format="%(message)s", stream=sys.stdout, level=getattr(logging, log_level.upper())
    )

    if log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            add_thread_id,
            add_timestamp,
            structlog.stdlib.add_log_level,
            add_log_level_name,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            redact_secrets,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Usage:
        logger = get_logger(__name__)
        logger.info("conversation_resolved", client_id="u-1", stage="2.0")
    """
    return structlog.get_logger(name)


def set_thread_id(thread_id: str) -> None:
    """
    Set thread ID in context for current request.

    STAGE-1.1: Thread ID context initialization
    """
    thread_id_ctx.set(thread_id)


def get_thread_id() -> str | None:
    """Get current thread ID from context."""
    return thread_id_ctx.get()


def clear_thread_id() -> None:
    """
    Clear thread ID from context.

    STAGE-6: Thread ID context cleanup
    """
    thread_id_ctx.set(None)


def log_stage(
    logger: structlog.stdlib.BoundLogger, stage: str, message: str, level: str = "info", **kwargs
) -> None:
    """
    Log a message with stage information.

    Args:
        logger: Logger instance
        stage: Stage identifier (e.g., "2.0", "CB.3")
        message: Log message
        level: Log level (debug, info, warning, error, critical)
        **kwargs: Additional fields to log

    Usage:
        log_stage(logger, "A.2", "Operation queued", queue_length=3)
    """
    log_func = getattr(logger, level.lower())
    log_func(message, stage=stage, **kwargs)
