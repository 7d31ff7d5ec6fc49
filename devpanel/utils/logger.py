"""Logging configuration"""

import logging
import sys
from typing import Optional, TextIO

DEFAULT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Attributes every LogRecord carries; anything else arrived through ``extra=``.
_RECORD_FIELDS = set(logging.makeLogRecord({}).__dict__) | {"message", "asctime"}


class ExtraFieldsFormatter(logging.Formatter):
    """Formatter that appends ``extra=`` fields as ``key=value`` pairs."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extras = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RECORD_FIELDS and not key.startswith("_")
        }
        if not extras:
            return line
        rendered = " ".join(f"{key}={value}" for key, value in sorted(extras.items()))
        return f"{line} | {rendered}"


def setup_logger(
    name: str,
    level: int = logging.INFO,
    format_string: Optional[str] = None,
    stream: Optional[TextIO] = None,
) -> logging.Logger:
    """
    Attach a structured console handler to ``name``

    Args:
        name: Logger name (``devpanel`` configures the whole package)
        level: Logging level for the logger and its handler
        format_string: Base line format; extra fields are appended to it
        stream: Output stream, stdout by default

    Returns:
        Configured logger
    """
    configured = logging.getLogger(name)
    configured.setLevel(level)

    # Jobs may be invoked repeatedly in one process
    if configured.handlers:
        return configured

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(ExtraFieldsFormatter(format_string or DEFAULT_FORMAT))
    configured.addHandler(handler)
    return configured
