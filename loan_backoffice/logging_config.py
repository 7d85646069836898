"""
Structured Logging Configuration Module

JSON log lines for lifecycle procedures. Each procedure log carries which
procedure ran, the step it reached, the entity it acted on and the actor who
asked for it, so a failed settlement or a consistency incident can be traced
back through the store calls that led to it.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Any, Optional

# Record attributes set by log_action, in output order
PROCEDURE_FIELDS = ("procedure", "step", "entity", "actor", "details")


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging"""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in PROCEDURE_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_entry[name] = value

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


def setup_logging(level: str = "INFO", logger_name: str = "loan_backoffice",
                  log_format: str = "json") -> logging.Logger:
    """
    Setup structured logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        logger_name: Name of the logger
        log_format: "json" for structured output, anything else for plain text

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name)

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler()
    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
        ))

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False

    return logger


def log_action(logger: logging.Logger, level: str, message: str,
               procedure: Optional[str] = None, step: Optional[str] = None,
               entity: Optional[str] = None, actor: Optional[str] = None,
               details: Optional[dict] = None):
    """
    Log the outcome of a lifecycle procedure step.

    Args:
        logger: Logger instance
        level: Log level (info, warning, error, etc.)
        message: Log message
        procedure: Procedure being run, e.g. "settle loan"
        step: Step the procedure reached, e.g. "insert settlement receipt"
        entity: Entity acted on as "type:id", see entity_ref
        actor: Back office user who triggered the procedure
        details: Additional structured data (before/after state, counts)
    """
    levelno = getattr(logging, level.upper())
    if not logger.isEnabledFor(levelno):
        return

    logger.log(levelno, message, extra={
        "procedure": procedure,
        "step": step,
        "entity": entity,
        "actor": actor,
        "details": details,
    })


def entity_ref(entity_type: str, entity_id: Any) -> str:
    """Entity reference used in log lines, such as loan:42"""
    return f"{entity_type}:{entity_id}"
