"""
Logging Setup

JSON logs on stdout (one object per line) for the API process, or plain
text when FEEDBACK_LOG_JSON is off.

Usage:
    from feedback_analyzer.logging_config import setup_logging

    setup_logging()
    logging.getLogger(__name__).info("Ticket stored", extra={"ticket_id": "TICKET-1A2B3C4D"})
"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pythonjsonlogger.json import JsonFormatter

from feedback_analyzer import config

LOG_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"

# Loggers that are too chatty at INFO
QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "httpx", "chromadb", "botocore")


class AnalyzerJsonFormatter(JsonFormatter):
    """Adds a UTC timestamp and the session id when the record carries one."""

    def add_fields(
        self,
        log_record: Dict[str, Any],
        record: logging.LogRecord,
        message_dict: Dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
        session_id = getattr(record, "session_id", None)
        if session_id is not None:
            log_record["session_id"] = session_id


def setup_logging(level: Optional[str] = None, json_logs: Optional[bool] = None) -> None:
    """
    Configure the root logger. Safe to call more than once.

    Args:
        level: Logging level name, defaults to FEEDBACK_LOG_LEVEL
        json_logs: JSON output, defaults to FEEDBACK_LOG_JSON
    """
    level = (level or config.LOG_LEVEL).upper()
    json_logs = config.LOG_JSON if json_logs is None else json_logs

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level, logging.INFO))
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    if json_logs:
        handler.setFormatter(AnalyzerJsonFormatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT))
    else:
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    root_logger.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
