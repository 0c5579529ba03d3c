"""
Logging configuration module for structured logging.

This module configures the library's logging system using structlog.
It provides structured logging capabilities with JSON formatting for production
and human-readable console output for development.

The logging configuration includes:
- Timestamp formatting
- Log level inclusion
- JSON/Console output based on environment
- Context management
- Logger caching
"""

import logging

import structlog


def configure_logging(log_level: str = "INFO", json_logs: bool = False) -> None:
    """
    Configures the logging system.

    This function sets up structlog with:
    1. ISO format timestamps
    2. Log level inclusion
    3. JSON formatting for production (json_logs=True)
    4. Console formatting for development
    5. Dictionary-based context
    6. Standard library logger factory
    7. Bound logger for context management
    8. Logger caching for performance

    Args:
        log_level: Minimum level for the stdlib root logger.
        json_logs: Render JSON instead of the console format.
    """
    logging.basicConfig(format="%(message)s", level=getattr(logging, log_level.upper(), logging.INFO))

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.add_log_level,
        structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer(),
    ]

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
