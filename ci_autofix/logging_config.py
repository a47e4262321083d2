"""
Logging configuration using structlog.
"""

import logging
import sys
import structlog
from structlog.stdlib import LoggerFactory

# Third-party loggers that are chatty at INFO
NOISY_LOGGERS = ("github", "urllib3", "git")


def configure_logging(debug: bool = False, json_logs: bool = True):
    """
    Configure structured logging.

    Log events go to stderr so the session report on stdout stays readable.

    Args:
        debug: Enable debug logging
        json_logs: Render JSON lines; a console renderer is used otherwise
    """
    log_level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=log_level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.DEBUG if debug else logging.WARNING)

    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = None):
    """Get a configured logger."""
    return structlog.get_logger(name)
