import logging
import re

from flask import g

# Simple patterns for PII detection (Email, Phone)
PII_PATTERNS = [
    r"[\w\.-]+@[\w\.-]+\.\w+",  # Email
    r"\+?\d{2,4}[-\s/]?\(?\d{2,5}\)?[-\s/]?\d{3,4}[-\s]?\d{2,9}",  # Phone
]

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s request_id=%(request_id)s %(message)s"


class PIISafeFormatter(logging.Formatter):
    """
    Formatter that redacts PII-like patterns from log messages.
    Compliance: DSGVO Art. 25 (Datenschutz durch Voreinstellung).
    """

    def format(self, record: logging.LogRecord) -> str:
        original_msg = super().format(record)
        redacted_msg = original_msg
        for pattern in PII_PATTERNS:
            redacted_msg = re.sub(pattern, "[REDACTED_PII]", redacted_msg)
        return redacted_msg


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        try:
            record.request_id = getattr(g, "request_id", "-")
        except RuntimeError:
            record.request_id = "-"
        return True


def setup_secure_logging(level: int = logging.INFO) -> logging.Logger:
    logger = logging.getLogger("handwerkos")
    logger.setLevel(level)

    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(PIISafeFormatter(LOG_FORMAT))
        handler.addFilter(RequestIdFilter())
        logger.addHandler(handler)
    return logger
