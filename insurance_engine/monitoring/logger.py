"""
Structured logging setup for the insurance engine.

structlog with a JSON renderer in production and the console renderer for
local runs. Prices and quantities are Decimals throughout the engine, so a
processor turns them into plain strings before rendering.
"""
import logging
import sys
from contextlib import contextmanager
from decimal import Decimal
from logging.handlers import RotatingFileHandler
from pathlib import Path

import structlog

_MAX_LOG_BYTES = 10 * 1024 * 1024
_LOG_BACKUPS = 5


def _stringify_decimals(logger, method_name, event_dict):
    for key, value in event_dict.items():
        if isinstance(value, Decimal):
            event_dict[key] = str(value)
    return event_dict


def setup_logging(log_level: str = "INFO", log_format: str = "json", log_file: str | None = None) -> None:
    """
    Configure stdlib logging and structlog.

    Args:
        log_level: DEBUG/INFO/WARNING/ERROR/CRITICAL
        log_format: "json" or "text"
        log_file: Extra rotating file output; stdout only when None
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {log_level}")

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    renderer = (
        structlog.processors.JSONRenderer()
        if log_format == "json"
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            _stringify_decimals,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(path, maxBytes=_MAX_LOG_BYTES, backupCount=_LOG_BACKUPS)
        handler.setLevel(level)
        handler.setFormatter(logging.Formatter("%(message)s"))
        logging.root.addHandler(handler)

    get_logger(__name__).info(
        "LOGGING_INITIALIZED", log_level=log_level, log_format=log_format, log_file=log_file
    )


@contextmanager
def contract_context(contract_id: str, **extra):
    """Attach contract_id (and any extra keys) to every log line in the block."""
    with structlog.contextvars.bound_contextvars(contract_id=contract_id, **extra):
        yield


def get_logger(name: str) -> structlog.BoundLogger:
    """Logger for a module; call with __name__."""
    return structlog.get_logger(name)
