"""JSON structured logging for Vitalis workers.

Controlled via VITALIS_LOG_FORMAT env var: "json" (default) or "text".

Structured fields travel as ``vitalis_*`` attributes on the log record. Fields
that hold for a whole job (job id, job type, user) are bound once with
``job_context`` and attached to every record emitted while the job runs;
per-call fields go through ``log_extra``.
"""

import json
import logging
import sys
import traceback
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

EXTRA_PREFIX = "vitalis_"

_job_fields: ContextVar[dict[str, Any]] = ContextVar("vitalis_job_fields", default={})


def log_extra(**fields: Any) -> dict[str, Any]:
    """``extra=`` mapping with prefixed keys; ``None`` values are dropped."""
    return {f"{EXTRA_PREFIX}{key}": value for key, value in fields.items() if value is not None}


@contextmanager
def job_context(**fields: Any) -> Iterator[None]:
    """Bind fields to every record logged inside the block."""
    token = _job_fields.set({**_job_fields.get(), **log_extra(**fields)})
    try:
        yield
    finally:
        _job_fields.reset(token)


class JSONFormatter(logging.Formatter):
    """Emit log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
        }

        if record.exc_info and record.exc_info[1] is not None:
            log_entry["exception"] = "".join(traceback.format_exception(*record.exc_info))

        # Job-bound fields first; explicit extras on the call win.
        log_entry.update(_job_fields.get())
        for key, value in record.__dict__.items():
            if key.startswith(EXTRA_PREFIX):
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


class TextFormatter(logging.Formatter):
    """Plain lines with job-bound fields appended as key=value pairs."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)s %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = _job_fields.get()
        if not fields:
            return line
        suffix = " ".join(f"{k[len(EXTRA_PREFIX):]}={v}" for k, v in fields.items())
        return f"{line} [{suffix}]"


def setup_logging(log_format: str, level: int = logging.INFO) -> None:
    """Configure root logger with either JSON or plaintext format."""
    root = logging.getLogger()
    root.setLevel(level)

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter() if log_format == "json" else TextFormatter())
    root.addHandler(handler)
