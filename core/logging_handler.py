"""
Logging setup: console output, an optional Qt handler for thread-safe GUI
logging, and redaction of credentials from every record.
"""

import logging
import sys
import threading
from typing import Callable, Optional

from PyQt6.QtCore import QObject, pyqtSignal

REDACTED = "***"

_secrets: set = set()
_secrets_lock = threading.Lock()


def register_secret(secret: str):
    """Registers a token or password so it never appears in formatted log output."""
    if secret and len(secret) >= 4:
        with _secrets_lock:
            _secrets.add(secret)


def redact(text: str) -> str:
    with _secrets_lock:
        secrets = sorted(_secrets, key=len, reverse=True)
    for secret in secrets:
        if secret in text:
            text = text.replace(secret, REDACTED)
    return text


class CredentialRedactingFilter(logging.Filter):
    """Replaces registered secrets in the final message of each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        cleaned = redact(message)
        if cleaned != message:
            record.msg = cleaned
            record.args = None
        return True


class QtLogHandler(logging.Handler, QObject):
    """
    Custom logging handler that emits a Qt signal with the log message.
    This allows safe logging from worker threads to the GUI.
    """
    log_updated = pyqtSignal(str)

    def __init__(self, *args, **kwargs):
        logging.Handler.__init__(self, *args, **kwargs)
        QObject.__init__(self)

    def emit(self, record):
        """
        Emit the log message as a formatted string via Qt signal.
        """
        msg = self.format(record)
        self.log_updated.emit(msg)


def setup_logging(log_widget_append_slot: Optional[Callable[[str], None]] = None,
                  level: int = logging.INFO) -> logging.Logger:
    """
    Configures the root logger with a console handler and, when a slot
    is given, the custom Qt handler for GUI display.

    Args:
        log_widget_append_slot: Qt slot (function) to receive log messages
        level: Root logger level

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger()
    logger.setLevel(level)

    # Clear existing handlers to avoid duplicates
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(name)s - %(message)s')
    redacting_filter = CredentialRedactingFilter()

    if log_widget_append_slot is not None:
        qt_handler = QtLogHandler()
        qt_handler.setFormatter(formatter)
        qt_handler.addFilter(redacting_filter)
        qt_handler.log_updated.connect(log_widget_append_slot)
        logger.addHandler(qt_handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(redacting_filter)
    logger.addHandler(console_handler)

    logger.info("✅ Logging system initialized")
    return logger
