"""
Structured JSON Logging Configuration

This module provides structured logging for the order sync pipeline services
(change-list producer, trigger API, fetch consumer, insert consumer).

WHY STRUCTURED LOGGING?
- Per-order outcomes are only observable through logs and dead-letter queues
- JSON logs are machine-readable (e.g., {"correlation_id": "ORD-1", "retry_count": 2})
- One order can be traced across all three stages with its correlation_id
- Log aggregation tools (ELK, CloudWatch) can filter on any extra field

LOGGER HIERARCHY:
- Entry points call setup_logger(name="src", ...) once
- Every module logs through logging.getLogger(__name__) ("src.consumer.fetch_consumer", ...)
- Records propagate to the configured "src" logger and its single handler

EXAMPLE OUTPUT:
{
  "timestamp": "2024-01-01T14:30:00.123Z",
  "level": "INFO",
  "service": "order-fetch-consumer",
  "correlation_id": "ORD-1",
  "message": "Order details published to insert queue",
  "extra": {"worker_id": 3, "line_items": 4}
}
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict


# ==============================================================================
# JSON FORMATTER
# ==============================================================================

class JSONFormatter(logging.Formatter):
    """
    Log formatter that outputs one JSON object per line.

    Fields:
    - timestamp: ISO 8601 format (UTC)
    - level: Log level
    - service: Service name (e.g. "order-insert-consumer")
    - logger: Logger name
    - message: Log message
    - correlation_id: Order number for tracing (if provided)
    - exception: Formatted traceback (if any)
    - extra: Any additional context passed to the logger
    """

    STANDARD_ATTRS = {
        'name', 'msg', 'args', 'created', 'filename', 'funcName',
        'levelname', 'levelno', 'lineno', 'module', 'msecs',
        'message', 'pathname', 'process', 'processName', 'relativeCreated',
        'thread', 'threadName', 'exc_info', 'exc_text', 'stack_info',
        'taskName', 'correlation_id'
    }

    def __init__(
        self,
        service_name: str = "order-sync",
        include_extra: bool = True
    ):
        super().__init__()
        self.service_name = service_name
        self.include_extra = include_extra

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as a single-line JSON string."""
        log_data: Dict[str, Any] = {
            "timestamp": self._format_timestamp(record.created),
            "level": record.levelname,
            "service": self.service_name,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if hasattr(record, 'correlation_id'):
            log_data['correlation_id'] = record.correlation_id

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        if self.include_extra:
            extra_fields = {
                k: v for k, v in record.__dict__.items()
                if k not in self.STANDARD_ATTRS and not k.startswith('_')
            }

            if extra_fields:
                log_data['extra'] = extra_fields

        return json.dumps(log_data, default=str)

    @staticmethod
    def _format_timestamp(created: float) -> str:
        """Format a unix timestamp as ISO 8601 with millisecond precision."""
        dt = datetime.fromtimestamp(created, tz=timezone.utc)
        return dt.strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'


# ==============================================================================
# PLAIN TEXT FORMATTER (for development)
# ==============================================================================

class PlainTextFormatter(logging.Formatter):
    """
    Human-readable log formatter for local development.

    Format: [2024-01-01 14:30:00] INFO [order-fetch-consumer] Processing order ORD-1
    """

    def __init__(self, service_name: str = "order-sync"):
        super().__init__(
            fmt=f'[%(asctime)s] %(levelname)s [{service_name}] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )


# ==============================================================================
# LOGGER SETUP
# ==============================================================================

def setup_logger(
    name: str,
    service_name: str,
    log_level: str = "INFO",
    log_format: str = "json"
) -> logging.Logger:
    """
    Set up a structured logger for one pipeline service.

    Args:
        name: Logger name. Use "src" to capture every pipeline module.
        service_name: Service identifier (e.g. "order-producer")
        log_level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Output format ("json" or "text")

    Returns:
        Configured logging.Logger instance

    Example:
        >>> logger = setup_logger("src", "order-insert-consumer", "INFO", "json")
        >>> logger.info("Consumer started", extra={"batch_size": 10})
    """
    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    # Prevent duplicate handlers if logger already configured
    if logger.handlers:
        return logger

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logger.level)

    if log_format.lower() == "json":
        formatter = JSONFormatter(service_name=service_name)
    else:
        formatter = PlainTextFormatter(service_name=service_name)

    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


# ==============================================================================
# CORRELATION ID ADAPTER
# ==============================================================================

class CorrelationAdapter(logging.LoggerAdapter):
    """
    Logger adapter that adds correlation_id (the order number) to all logs.

    Example:
        >>> order_logger = CorrelationAdapter(logger, {"correlation_id": "ORD-1"})
        >>> order_logger.info("Resolving order details")
    """

    def process(self, msg: str, kwargs: dict) -> tuple:
        extra = dict(kwargs.get('extra') or {})

        if 'correlation_id' in self.extra:
            extra['correlation_id'] = self.extra['correlation_id']

        kwargs['extra'] = extra
        return msg, kwargs
