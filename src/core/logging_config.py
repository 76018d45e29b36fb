"""Logging setup with a per-generation run id.

Each generation (one justification, one study plan, one summary) runs under
its own run id so that interleaved log lines from concurrent topic refills
can be grouped back together.
"""

import logging
import sys
import uuid
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from core.config import get_settings


# Context variable for run ID tracking across async calls
_run_id_var: ContextVar[str | None] = ContextVar("run_id", default=None)


def get_run_id() -> str:
    """Get or create a run ID for the current generation."""
    run_id: str | None = _run_id_var.get()
    if run_id is None or run_id == "":
        new_id = uuid.uuid4().hex[:12]
        _run_id_var.set(new_id)
        return new_id
    return run_id


def set_run_id(run_id: str | None) -> None:
    """Set the run ID for the current context."""
    _run_id_var.set(run_id)


class RunIdFilter(logging.Filter):
    """Attach the current run id to every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.run_id = _run_id_var.get() or "-"
        return True


def setup_logging() -> None:
    """Configure root logging once; JSON in production, plain text otherwise."""
    settings = get_settings()

    log_level = logging.DEBUG if settings.ENVIRONMENT == "development" else logging.INFO
    root_logger = logging.getLogger()

    # Make setup idempotent - avoid duplicate handlers
    if root_logger.handlers:
        return

    formatter: logging.Formatter
    if settings.ENVIRONMENT == "production":
        formatter = JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(run_id)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level"},
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - [%(run_id)s] %(message)s"
        )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    handler.setLevel(log_level)
    handler.addFilter(RunIdFilter())

    root_logger.setLevel(log_level)
    root_logger.addHandler(handler)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    if settings.ENVIRONMENT == "production":
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
