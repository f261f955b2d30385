"""
Logging Utilities
=================
JSON structured logging shared by every module.

Each log line is one JSON object. Use `log_event()` to attach an event name
and structured fields that log viewers can filter on.
"""

import json
import logging
from typing import Optional


class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def format(self, record):
        log_data = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }

        # Add extra fields if present
        if hasattr(record, 'event'):
            log_data['event'] = record.event
        if hasattr(record, 'data'):
            log_data['data'] = record.data

        # Add exception info if present
        if record.exc_info:
            log_data['exc'] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


def log_event(logger, level, msg, event=None, **data):
    """Helper to log structured events."""
    extra = {}
    if event:
        extra['event'] = event
    if data:
        extra['data'] = data
    logger.log(level, msg, extra=extra)


def setup_logging(level: str = "INFO", handler: Optional[logging.Handler] = None):
    """Install the JSON handler on the root logger."""
    if handler is None:
        handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        handlers=[handler],
        force=True
    )

    # Reduce noise from libraries
    logging.getLogger('httpx').setLevel(logging.WARNING)
    logging.getLogger('httpcore').setLevel(logging.WARNING)
