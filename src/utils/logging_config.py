"""
Logging configuration for the time-lapse appliance.
Structured logging with component, method and correlation id on every record.
"""
import logging
import os
import secrets
import sys
from pathlib import Path
from typing import Any, Optional

import structlog
from structlog.processors import CallsiteParameter


def _rename_callsite(logger: Any, method_name: str, event_dict: dict) -> dict:
    """Expose the calling function as ``method`` and drop the raw callsite keys."""
    func_name = event_dict.pop("func_name", None)
    if func_name and "method" not in event_dict:
        event_dict["method"] = func_name
    return event_dict


def setup_logging(log_level: Optional[str] = None, log_file: Optional[str] = None,
                  console: bool = False):
    """Set up structured logging.

    Args:
        log_level: Log level (debug, info, warning, error). If None, reads from LOG_LEVEL env var.
        log_file: Optional path to log file.
        console: Force the human-readable renderer regardless of level.
    """

    # Read from environment variable if not provided
    if log_level is None:
        log_level = os.getenv("LOG_LEVEL", "INFO")

    level = getattr(logging, log_level.upper(), logging.INFO)

    # Configure standard library logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.CallsiteParameterAdder(
            parameters=[CallsiteParameter.FUNC_NAME]
        ),
        _rename_callsite,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        ))
        logging.getLogger().addHandler(file_handler)

    # JSON in production, human-readable in development
    if console or log_level.upper() == "DEBUG":
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )


def new_correlation_id() -> str:
    """Return a short random token (8 bytes, hex) tying log records to one job."""
    return secrets.token_hex(8)
