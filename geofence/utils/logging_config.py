"""Logging configuration for geofence-engine."""

import json
import logging
import logging.handlers
import sys
from pathlib import Path

LOG_FILE_NAME = "geofence.log"

# Keys passed via `extra=` that are worth keeping in structured output.
_CONTEXT_FIELDS = ("vehicle_id", "zone_id", "violation_id", "snapshot_version")


class JSONFormatter(logging.Formatter):
    """One JSON object per line, with any known context fields attached."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
        }
        for key in _CONTEXT_FIELDS:
            if hasattr(record, key):
                log_entry[key] = getattr(record, key)
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


def setup_logging(
    log_dir: str = "data/logs",
    level: str = "INFO",
    json_format: bool = False,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
) -> Path:
    """Configure application-wide logging.

    Console output is always plain text. The rotating file gets JSON lines
    when json_format is set, which is what log shippers expect.

    Args:
        log_dir: Directory for log files. Created if it doesn't exist.
        level: Logging level name; unknown names fall back to INFO.
        json_format: If True, use JSONFormatter for the file handler.
        max_bytes: Rotate the log file after this many bytes.
        backup_count: Number of rotated files to keep.

    Returns:
        Path of the active log file.
    """
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    # Clear existing handlers to avoid duplicates on re-init
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    plain_fmt = logging.Formatter(
        "%(asctime)s | %(levelname)-8s | %(threadName)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(plain_fmt)
    root_logger.addHandler(console_handler)

    log_file = log_path / LOG_FILE_NAME
    file_handler = logging.handlers.RotatingFileHandler(
        log_file,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(numeric_level)
    if json_format:
        file_handler.setFormatter(JSONFormatter(datefmt="%Y-%m-%dT%H:%M:%S"))
    else:
        file_handler.setFormatter(plain_fmt)
    root_logger.addHandler(file_handler)

    # Per-request access logs and HTTP client chatter are noise at INFO
    logging.getLogger("werkzeug").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    return log_file
