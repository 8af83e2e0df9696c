"""
Structured logging setup for the deauthorization service.
Provides JSON-formatted logs with consistent fields for production monitoring.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.stdlib import LoggerFactory


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging with JSON output for production.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """

    structlog.configure(
        processors=[
            # Context bound per task (run_as, job name) comes first
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            _add_service_context,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    # Suppress noisy third-party loggers
    logging.getLogger("psycopg.pool").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def _add_service_context(logger, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Tag every entry with the emitting service."""
    event_dict.setdefault("service", "inactive-user-deauth")
    return event_dict


def get_logger(name: str = None) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)


def bind_run_context(**values: Any) -> None:
    """Bind values to the logging context of the current task."""
    structlog.contextvars.bind_contextvars(**values)


def run_context(**values: Any):
    """
    Context manager scoping values to a run.

    Restores the previous logging context on exit, including values
    re-bound by bind_run_context() inside the block.
    """
    return structlog.contextvars.bound_contextvars(**values)


def log_deauthorization_summary(
    trigger: str,
    authorised_before: int,
    authorised_after: int,
    deauthorised: int,
    dry_run: bool,
    duration_ms: float | None = None,
):
    """Log the before/after/deauthorized summary line with consistent fields."""
    logger = get_logger("deauth.summary")

    log_data = {
        "trigger": trigger,
        "authorised_users_before": authorised_before,
        "authorised_users_after": authorised_after,
        "deauthorised": deauthorised,
        "dry_run": dry_run,
    }

    if duration_ms is not None:
        log_data["duration_ms"] = duration_ms

    logger.info("Deauthorization of inactive users completed", **log_data)
