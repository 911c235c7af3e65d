"""
Structured logging for the identity sync engine.

USAGE:
    from hogflix.logger import logger
    logger.info("identity_identified", distinct_id="max@hogflix.com")

HOW IT WORKS:
    1. Logs are formatted as JSON using structlog
    2. Logs go to stdout through a queue (non-blocking for the event loop)
    3. The current visitor context (distinct_id, identity_state) is injected
    4. Datadog trace IDs are injected when ddtrace is installed

The logger is configured lazily on first use, so importing the engine has
no side effects.
"""

from __future__ import annotations

import atexit
import logging
import os
import sys
import threading
from logging.handlers import QueueHandler, QueueListener
from queue import Queue
from typing import Any

import structlog

from .context import inject_visitor_context

# ddtrace is optional: it only enriches log lines with trace ids
try:
    from ddtrace import tracer
    DDTRACE_AVAILABLE = True
except ImportError:
    tracer = None
    DDTRACE_AVAILABLE = False


LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

_logger_instance: structlog.stdlib.BoundLogger | None = None
_logger_lock = threading.Lock()
_is_configured = False


def add_datadog_trace_context(
    logger_instance: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Add dd.trace_id / dd.span_id when a Datadog tracer is active."""
    if not DDTRACE_AVAILABLE or tracer is None:
        return event_dict

    try:
        trace_context = tracer.get_log_correlation_context()
        if trace_context:
            event_dict.update(trace_context)
    except Exception:
        # trace injection must never break logging
        pass

    return event_dict


def configure_logging(*, level: str | None = None) -> structlog.stdlib.BoundLogger:
    """
    Configure structlog and the stdout queue pipeline.

    Safe to call several times: the first call wins and later calls return
    the same logger.

    Args:
        level: Log level name (default: LOG_LEVEL env var or "INFO")

    Returns:
        A configured structlog logger instance
    """
    global _logger_instance, _is_configured

    if _is_configured and _logger_instance is not None:
        return _logger_instance

    with _logger_lock:
        if _is_configured and _logger_instance is not None:
            return _logger_instance

        level_name = (level or LOG_LEVEL).upper()
        resolved_level = getattr(logging, level_name, logging.INFO)

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(resolved_level)

        # logger.info() -> QueueHandler -> Queue -> QueueListener -> stdout
        log_queue: Queue[logging.LogRecord] = Queue(maxsize=1000)
        queue_listener = QueueListener(
            log_queue,
            console_handler,
            respect_handler_level=True,
        )
        queue_listener.start()
        atexit.register(queue_listener.stop)

        logging.basicConfig(
            level=resolved_level,
            format="%(message)s",
            handlers=[QueueHandler(log_queue)],
        )

        # The PostHog SDK and httpx are chatty at INFO
        logging.getLogger("posthog").setLevel(logging.WARNING)
        logging.getLogger("httpx").setLevel(logging.WARNING)

        structlog.configure(
            processors=[
                structlog.processors.add_log_level,
                structlog.processors.TimeStamper(fmt="iso"),
                inject_visitor_context,
                add_datadog_trace_context,
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.UnicodeDecoder(),
                structlog.processors.EventRenamer("msg"),
                structlog.processors.JSONRenderer(),
            ],
            wrapper_class=structlog.stdlib.BoundLogger,
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=True,
        )

        _is_configured = True
        _logger_instance = structlog.get_logger("hogflix")

        return _logger_instance


class LazyLoggerProxy:
    """
    Proxy that configures logging on first attribute access.

    Importing `logger` stays side-effect free; `configure_logging()` can
    still be called explicitly before the first log line.
    """

    def __getattr__(self, attribute_name: str) -> Any:
        return getattr(configure_logging(), attribute_name)


logger = LazyLoggerProxy()
