"""
Structured Logging Configuration Module

Provides JSON-formatted structured logging for ledger and auth operations.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Optional


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging"""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "module": record.name,
            "message": record.getMessage(),
            "correlation_id": getattr(record, 'correlation_id', None),
            "user_id": getattr(record, 'user_id', None),
            "action": getattr(record, 'action', None),
            "resource": getattr(record, 'resource', None),
            "extra": getattr(record, 'extra', None)
        }

        # Remove None values
        log_entry = {k: v for k, v in log_entry.items() if v is not None}

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: str = "INFO", fmt: str = "json",
                  logger_name: str = "bank_ledger") -> logging.Logger:
    """
    Setup logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        fmt: "json" for structured output, "text" for plain lines
        logger_name: Name of the root application logger

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name)

    # Remove existing handlers to avoid duplicates
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler()
    if fmt == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False

    return logger


def get_logger(name: str = "bank_ledger") -> logging.Logger:
    """Get logger instance"""
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, correlation_id: Optional[str] = None,
               extra: Optional[dict] = None, exc_info: bool = False):
    """
    Log an action with structured data.

    Args:
        logger: Logger instance
        level: Log level (info, warning, error, etc.)
        message: Log message
        user_id: ID of the user performing the action
        action: Action being performed
        resource: Resource being acted upon
        correlation_id: Correlation ID for request tracing
        extra: Additional structured data
        exc_info: Attach the exception currently being handled
    """
    fields = {}
    if user_id:
        fields['user_id'] = user_id
    if action:
        fields['action'] = action
    if resource:
        fields['resource'] = resource
    if correlation_id:
        fields['correlation_id'] = correlation_id
    if extra:
        fields['extra'] = extra

    logger.log(getattr(logging, level.upper()), message, extra=fields, exc_info=exc_info)
