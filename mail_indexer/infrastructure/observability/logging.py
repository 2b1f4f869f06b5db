"""
Structured logging setup for the mailbox indexer.

Production emits one JSON object per line; development renders the same
events for a terminal. Per-job context (grant, envelope, corr) is bound
through structlog contextvars so every log line emitted while a job runs
carries it without threading loggers through each call.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from structlog.stdlib import LoggerFactory

NOISY_LOGGERS = {
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "openai": logging.WARNING,
    "pinecone": logging.WARNING,
    "pypdf": logging.ERROR,
}


def setup_logging(log_level: str = "INFO", json_logs: bool = True) -> None:
    """
    Configure structlog and stdlib logging.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_logs: JSON lines when True, coloured console output otherwise
    """
    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )

    for name, level in NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(level)


def get_logger(name: str = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


@contextmanager
def job_log_context(**context: Any) -> Iterator[None]:
    """Bind key/values to every log line emitted inside the block."""
    tokens = structlog.contextvars.bind_contextvars(
        **{key: value for key, value in context.items() if value is not None}
    )
    try:
        yield
    finally:
        structlog.contextvars.reset_contextvars(**tokens)


# Metric-style events, one fixed shape per metric so they can be aggregated
def log_page_metric(
    grant_id: str,
    messages: int,
    vectors: int,
    took_ms: float,
    next_cursor: str | None = None,
) -> None:
    """Per-page ingestion throughput."""
    get_logger("ingestion.metrics").info(
        "Ingestion page processed",
        metric="page_processed",
        grant_id=grant_id,
        messages=messages,
        vectors=vectors,
        took_ms=round(took_ms, 1),
        next=next_cursor or "-",
    )


def log_job_outcome(grant_id: str, outcome: str, took_ms: float, envelope_id: str | None = None) -> None:
    """Result of one claimed queue job; failures are logged at warning level."""
    logger = get_logger("ingestion.metrics")

    log_data: dict[str, Any] = {
        "metric": "job_outcome",
        "grant_id": grant_id,
        "outcome": outcome,
        "took_ms": round(took_ms, 1),
    }
    if envelope_id:
        log_data["envelope_id"] = envelope_id

    if outcome in {"completed", "continued", "retry_scheduled"}:
        logger.info("Ingestion job finished", **log_data)
    else:
        logger.warning("Ingestion job finished without success", **log_data)
