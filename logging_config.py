# logging_config.py
"""Logging configuration for structlog (console + optional JSON file)."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional

import structlog
from structlog.types import Processor

SERVICE_NAME = "solana-lottery"


def _add_service_context(logger: Any, method_name: str, event_dict: dict) -> dict:
    """Attach logger name and service name to every log event."""
    stdlib_logger = getattr(logger, "_logger", None)
    event_dict["logger"] = getattr(stdlib_logger, "name", None) or getattr(logger, "name", "") or ""
    event_dict["service"] = SERVICE_NAME
    return event_dict


def configure_logging(level: str = "INFO", log_file: Optional[str] = None, json_format: bool = True) -> None:
    """Configure stdlib handlers and the structlog processor chain."""
    log_level = getattr(logging, (level or "INFO").upper(), logging.INFO)

    handlers: list[logging.Handler] = []
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter("%(message)s"))
    handlers.append(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter("%(message)s"))
        handlers.append(file_handler)

    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    processors: list[Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_service_context,
    ]

    # File output is always structured JSON; console follows json_format.
    use_json = bool(log_file) or json_format
    if use_json:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
