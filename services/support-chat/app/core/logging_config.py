"""
Logging setup with redaction of user contact data
"""
import logging
import re

from app.core.config import settings


class RedactionFilter(logging.Filter):
    """Filter to redact e-mail addresses and phone numbers from log records"""

    patterns = [
        (r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}", "[EMAIL_REDACTED]"),
        (r"(?<![\w-])\+?\d[\d\s/-]{8,}\d(?![\w-])", "[PHONE_REDACTED]"),
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        for pattern, replacement in self.patterns:
            message = re.sub(pattern, replacement, message)
        record.msg = message
        record.args = ()
        return True


def setup_logging(level: str = None) -> None:
    """Configure the root logger once for the service"""
    root = logging.getLogger()
    root.setLevel((level or settings.LOG_LEVEL).upper())

    if any(isinstance(f, RedactionFilter) for h in root.handlers for f in h.filters):
        return

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    ))
    handler.addFilter(RedactionFilter())
    root.addHandler(handler)
