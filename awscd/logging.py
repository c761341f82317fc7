"""
Structured Logging for awscd

Thin structlog setup over the standard library. Every provider write is
logged as one event carrying the resource kind, name and outcome so a run
log alone shows which dependents were skipped after a failure.
"""

import logging
import sys
import time
from contextlib import contextmanager
from typing import Optional

import structlog

from .config import AgentConfig, get_config


def setup_logging(config: Optional[AgentConfig] = None) -> None:
    """Setup structured logging for awscd."""
    config = config or get_config()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            (
                structlog.processors.JSONRenderer()
                if config.log_format == "json"
                else structlog.dev.ConsoleRenderer(colors=False)
            ),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, config.log_level))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # Operator-facing output goes through rich on stdout; logs stay on stderr.
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger.addHandler(console_handler)

    # botocore is chatty at INFO
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


@contextmanager
def time_operation(logger, operation: str, **context):
    """Log the duration and success of a block."""
    start_time = time.time()
    success = False
    try:
        yield
        success = True
    finally:
        logger.debug(
            "Operation completed",
            operation=operation,
            duration_seconds=round(time.time() - start_time, 3),
            success=success,
            **context,
        )
