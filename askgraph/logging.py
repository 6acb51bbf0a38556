"""
Logging configuration module for the AskGraph query engine.

Configures structlog with appropriate processors for development.
"""

import logging
import sys

import structlog


def configure_logging(verbose: bool = False) -> None:
    """Configure structlog for the application.

    Uses ConsoleRenderer for readable colored output in development. Output
    goes to stderr, stdout carries the MCP stdio transport.

    Args:
        verbose: Emit debug events (compiled queries, expansion terms)
    """
    level = logging.DEBUG if verbose else logging.INFO
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

