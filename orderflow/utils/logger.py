"""
Structured logging for the order lifecycle, built on structlog.

Every record passes through one shared processor chain: context variables
(bound per webhook or sweep pass), level, UTC timestamp, exception
rendering and secret redaction. Only the final renderer differs between
the JSON output used in production and the console output used locally.
"""

import logging
import re
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Optional, TextIO

import structlog


# Gateway keys and webhook signatures must never reach log files
_SECRET_FIELDS = re.compile(r"(secret|api_key|authorization|signature|password|token)", re.IGNORECASE)
REDACTED = "***"


def redact_secrets(logger: Any, method_name: str, event_dict: dict) -> dict:
    """structlog processor masking values of secret-looking keys."""
    for key in list(event_dict):
        if key != "event" and _SECRET_FIELDS.search(key):
            event_dict[key] = REDACTED
    return event_dict


def _processor_chain(log_format: str) -> List[Any]:
    timestamp_format = "iso" if log_format == "json" else "%Y-%m-%d %H:%M:%S"
    if log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    return [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt=timestamp_format, utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        redact_secrets,
        renderer,
    ]


# Daily log file opened by setup_logger, closed by close_log_file
_log_file: Optional[TextIO] = None


def setup_logger(
    log_level: str = "INFO",
    log_dir: Optional[str] = "logs",
    log_format: str = "json",
    service_name: str = "orderflow"
) -> structlog.BoundLogger:
    """
    Configure structlog for the whole process and return a service logger.

    Args:
        log_level: Minimum level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_dir: Directory for daily log files; None writes to stdout
        log_format: "json" for production, "console" for development
        service_name: Bound as ``service`` on the returned logger

    Returns:
        Logger bound to the service name
    """
    global _log_file

    close_log_file()
    if log_dir:
        directory = Path(log_dir)
        directory.mkdir(parents=True, exist_ok=True)
        day = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        _log_file = stream = open(directory / f"{service_name}_{day}.log", "a")
    else:
        stream = sys.stdout

    structlog.configure(
        processors=_processor_chain(log_format),
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream),
        cache_logger_on_first_use=False,
    )

    return structlog.get_logger(service=service_name)


def close_log_file() -> None:
    """Close the file opened by setup_logger; later records go to stdout."""
    global _log_file

    if _log_file is None:
        return
    structlog.configure(logger_factory=structlog.PrintLoggerFactory(file=sys.stdout))
    _log_file.close()
    _log_file = None


def get_logger(name: Optional[str] = None) -> structlog.BoundLogger:
    """Module logger; ``name`` is usually ``__name__``."""
    if name:
        return structlog.get_logger(logger_name=name)
    return structlog.get_logger()


class EventType:
    """Event names for lifecycle, money and system records."""

    # Order lifecycle
    ORDER_CREATED = "ORDER_CREATED"
    ORDER_TRANSITION = "ORDER_TRANSITION"
    ORDER_COMMITTED = "ORDER_COMMITTED"
    ORDER_DECLINED = "ORDER_DECLINED"
    ORDER_EXPIRED = "ORDER_EXPIRED"
    ORDER_COLLECTED = "ORDER_COLLECTED"
    ORDER_DELIVERED = "ORDER_DELIVERED"
    ORDER_CANCELLED = "ORDER_CANCELLED"
    COMMIT_REMINDER_SENT = "COMMIT_REMINDER_SENT"

    # Courier
    SHIPMENT_CREATED = "SHIPMENT_CREATED"
    SHIPMENT_FAILED = "SHIPMENT_FAILED"
    FALLBACK_QUOTE = "FALLBACK_QUOTE"

    # Money movement
    PAYMENT_INITIALIZED = "PAYMENT_INITIALIZED"
    REFUND_ISSUED = "REFUND_ISSUED"
    REFUND_FAILED = "REFUND_FAILED"
    PAYOUT_ISSUED = "PAYOUT_ISSUED"
    PAYOUT_FAILED = "PAYOUT_FAILED"

    # Process
    STARTUP = "STARTUP"
    SHUTDOWN = "SHUTDOWN"
    SWEEP_COMPLETED = "SWEEP_COMPLETED"
    WEBHOOK_RECEIVED = "WEBHOOK_RECEIVED"


def log_order_event(
    logger: structlog.BoundLogger,
    event_type: str,
    order_id: str,
    status: Optional[str] = None,
    **kwargs
) -> None:
    """
    Record something that happened to one order.

    Failure events (``*_FAILED``) are written at warning level so an
    operator filtering on level sees stuck shipments and refunds.

    Args:
        logger: Logger instance
        event_type: One of the EventType names
        order_id: Order the event belongs to
        status: Order status after the event, if it changed
        **kwargs: Extra fields (amounts in minor units, references, ...)
    """
    fields = {"event_type": event_type, "order_id": order_id, **kwargs}
    if status is not None:
        fields["status"] = status

    if event_type.endswith("_FAILED"):
        logger.warning(event_type, **fields)
    else:
        logger.info(event_type, **fields)


def log_system_event(
    logger: structlog.BoundLogger,
    event_type: str,
    message: str,
    **kwargs
) -> None:
    """Record a process-level event (startup, sweep totals, webhooks)."""
    logger.info(message, event_type=event_type, **kwargs)
