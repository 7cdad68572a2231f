import logging
import json
import os
import sys
from pathlib import Path
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler


# Extra fields copied into structured entries when present on the record
STRUCTURED_FIELDS = (
    "correlation_id", "user_id", "job_id", "chat_id", "task_id", "project_id",
    "short_id", "export_id", "status", "attempt", "progress", "method", "path",
    "duration_ms", "client_ip", "error", "error_type", "backend", "service",
    "circuit_state", "operation", "candidates", "completed", "deleted", "balance",
)


class StructuredFormatter(logging.Formatter):
    """JSON structured log formatter"""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key in STRUCTURED_FIELDS:
            value = getattr(record, key, None)
            if value is not None and value != "":
                entry[key] = value

        if record.levelno >= logging.WARNING:
            entry["source"] = f"{record.filename}:{record.lineno}"

        if record.exc_info and record.exc_info[1]:
            entry["exception"] = {
                "type": type(record.exc_info[1]).__name__,
                "message": str(record.exc_info[1]),
            }

        return json.dumps(entry, default=str)


class SimpleFormatter(logging.Formatter):
    """Human-readable formatter for local development, with job context appended"""

    def __init__(self):
        super().__init__('%(asctime)s - %(levelname)s - %(message)s', datefmt='%H:%M:%S')

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = " ".join(
            f"{key}={getattr(record, key)}"
            for key in ("job_id", "user_id", "status", "error")
            if getattr(record, key, None) not in (None, "")
        )
        return f"{line} [{context}]" if context else line


def _use_json_output() -> bool:
    return bool(os.getenv("RAILWAY_ENVIRONMENT")) or os.getenv("LOG_FORMAT") == "json"


def setup_logger(name: str = "reeru", level: str = "INFO") -> logging.Logger:
    """
    Setup application logger.

    Hosted environments get JSON on stdout for log drain ingestion; local runs
    get readable console output plus a rotating JSON file under ./logs.
    """
    logger = logging.getLogger(name)

    if logger.handlers:
        return logger

    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    is_production = _use_json_output()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(StructuredFormatter() if is_production else SimpleFormatter())
    logger.addHandler(console_handler)

    if not is_production and os.getenv("LOG_TO_FILE", "1") != "0":
        try:
            log_dir = Path("logs")
            log_dir.mkdir(exist_ok=True)
            file_handler = RotatingFileHandler(
                log_dir / "reeru.log",
                maxBytes=10 * 1024 * 1024,  # 10MB
                backupCount=5,
                encoding='utf-8'
            )
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(StructuredFormatter())
            logger.addHandler(file_handler)
        except OSError as e:
            # Read-only filesystem on some hosts
            logger.warning(f"Could not setup file logging: {e}")

    return logger


logger = setup_logger()


def get_logger(name: str = None) -> logging.Logger:
    """Child loggers share the package handlers."""
    if name:
        return logger.getChild(name)
    return logger
