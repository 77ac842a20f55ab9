"""
Structured JSON logging.

Every log line is one JSON object so the hosting platform's log collector can
index fields such as ``decision``, ``session_id`` or ``tool``. Structured data
is attached through the ``extra`` mechanism:

    logger.info("Code issued", extra={"log_data": {"client_id": "abc"}})

Example output:

    {"timestamp": "2026-10-19 10:30:00,123", "level": "INFO",
     "logger": "social_mcp.codes", "message": "Code issued", "client_id": "abc"}
"""

import json
import logging
import sys


class JSONLogFormatter(logging.Formatter):
    """Formats log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if hasattr(record, "log_data"):
            log_entry.update(record.log_data)
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


def configure_logging(level: str = "info") -> None:
    """Install the JSON formatter on the root logger, writing to stdout."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONLogFormatter())

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        handlers=[handler],
        force=True,
    )


def preview(secret: str | None, length: int = 12) -> str:
    """Truncated form of a credential or challenge, safe to put in logs."""
    if not secret:
        return "none"
    if len(secret) <= length:
        return secret[: max(1, length // 3)] + "..."
    return secret[:length] + "..."
