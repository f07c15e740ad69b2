"""
Logging configuration for workspace-gate.
JSON structured logging for log shippers; human-readable text for local dev.
Retry and access decisions attach an ``event`` dict via ``extra=`` which the
JSON formatter emits as a nested object.
"""

import json
import logging
import logging.handlers
import os
import sys
from datetime import datetime, timezone

_TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class JsonFormatter(logging.Formatter):
    """Structured JSON log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        event = getattr(record, "event", None)
        if isinstance(event, dict):
            log["event"] = event
        if record.exc_info:
            log["exception"] = self.formatException(record.exc_info)
        return json.dumps(log, default=str)


def setup_logging(log_level: str = "INFO", logs_dir: str | None = None, json_logs: bool = False) -> None:
    """Configure root logger with appropriate format and handlers."""
    level = getattr(logging, log_level.upper(), logging.INFO)

    handlers: list[logging.Handler] = []

    # Logs go to stderr so stdout stays free for command output
    console = logging.StreamHandler(sys.stderr)
    console.setLevel(level)
    if json_logs:
        console.setFormatter(JsonFormatter())
    else:
        console.setFormatter(logging.Formatter(fmt=_TEXT_FORMAT, datefmt="%H:%M:%S"))
    handlers.append(console)

    if logs_dir:
        os.makedirs(logs_dir, exist_ok=True)
        # 10MB per file, keep 5 backups = ~50MB total
        file_handler = logging.handlers.RotatingFileHandler(
            os.path.join(logs_dir, "workspace-gate.log"),
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(
            JsonFormatter() if json_logs
            else logging.Formatter(fmt=_TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
        )
        handlers.append(file_handler)

    logging.basicConfig(level=level, handlers=handlers, force=True)

    # Silence noisy third-party loggers
    logging.getLogger("googleapiclient").setLevel(logging.WARNING)
    logging.getLogger("googleapiclient.discovery_cache").setLevel(logging.ERROR)
    logging.getLogger("google.auth").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
