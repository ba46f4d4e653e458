"""Logging setup with per-run context for the workflow engine."""

import json
import logging
import sys
import traceback
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Third-party loggers kept at WARNING unless the engine runs at DEBUG
_NOISY_LOGGERS = ("sqlalchemy.engine", "sqlalchemy.pool", "asyncio", "uvicorn.access")

# Each asyncio task works on its own copy, so concurrent runs and nodes never share fields
_run_context: ContextVar[Dict[str, Any]] = ContextVar("autoflow_run_context", default={})


class StructuredFormatter(logging.Formatter):
    """One JSON object per line, including run context fields."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(getattr(record, "run_context", {}))
        entry.update(getattr(record, "extra_fields", {}))

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": traceback.format_exception(*record.exc_info),
            }
        return json.dumps(entry, default=str)


class RunContextFormatter(logging.Formatter):
    """Plain-text formatter that appends ``[execution_id=... node_id=...]`` when a run is active."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = getattr(record, "run_context", {})
        if fields:
            line += " [" + " ".join(f"{key}={value}" for key, value in fields.items()) + "]"
        return line


class RunContextFilter(logging.Filter):
    """Attach the current task's run context to every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.run_context = dict(_run_context.get())
        return True


def _handler(handler: logging.Handler, formatter: logging.Formatter) -> logging.Handler:
    handler.setFormatter(formatter)
    handler.addFilter(RunContextFilter())
    return handler


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    log_format: Optional[str] = None,
    structured: bool = False,
    max_size: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5
) -> logging.Logger:
    """
    Configure the root logger for the engine.

    Args:
        level: Logging level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional file path; rotated at ``max_size`` bytes
        log_format: Format string for plain-text output
        structured: Emit JSON lines instead of plain text
        max_size: Maximum log file size in bytes before rotation
        backup_count: Number of rotated files to keep

    Returns:
        The configured root logger
    """
    level = level.upper()
    if structured:
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = RunContextFormatter(fmt=log_format or DEFAULT_LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level))
    for existing in root_logger.handlers[:]:
        root_logger.removeHandler(existing)

    root_logger.addHandler(_handler(logging.StreamHandler(sys.stdout), formatter))
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        root_logger.addHandler(_handler(
            RotatingFileHandler(log_file, maxBytes=max_size, backupCount=backup_count),
            formatter
        ))

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.DEBUG if level == "DEBUG" else logging.WARNING)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def set_logging_context(**fields) -> None:
    """Add fields to the run context of the current task."""
    _run_context.set({**_run_context.get(), **fields})


def get_logging_context() -> Dict[str, Any]:
    return dict(_run_context.get())


@contextmanager
def logging_context(**fields) -> Iterator[None]:
    """Scope run context fields to a block, restoring the previous context afterwards."""
    token = _run_context.set({**_run_context.get(), **fields})
    try:
        yield
    finally:
        _run_context.reset(token)


class NodeRetryLogger:
    """Records node attempt outcomes with structured fields."""

    def __init__(self, component_name: str):
        self.logger = get_logger(f"autoflow.retry.{component_name}")

    def _log(self, level: int, message: str, **fields) -> None:
        self.logger.log(level, message, extra={"extra_fields": fields})

    def attempt_failed(self, node_id: str, error: Exception, attempt: int, max_attempts: int, delay: float) -> None:
        self._log(
            logging.WARNING,
            f"Node {node_id} attempt {attempt}/{max_attempts} failed, retrying in {delay:.2f}s",
            node_id=node_id, attempt=attempt, max_attempts=max_attempts,
            error_type=type(error).__name__, error_message=str(error)
        )

    def recovered(self, node_id: str, attempts_used: int) -> None:
        self._log(
            logging.INFO,
            f"Node {node_id} succeeded after {attempts_used} attempts",
            node_id=node_id, attempts_used=attempts_used
        )

    def exhausted(self, node_id: str, final_error: Exception, attempts_used: int) -> None:
        self._log(
            logging.ERROR,
            f"Node {node_id} failed after {attempts_used} attempts",
            node_id=node_id, attempts_used=attempts_used,
            error_type=type(final_error).__name__, error_message=str(final_error)
        )
