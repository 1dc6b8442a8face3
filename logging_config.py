import logging
import sys
from typing import List, Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Third-party loggers that are too chatty at DEBUG
NOISY_LOGGERS = ("uvicorn.access", "websockets", "asyncio")

# Handlers added by setup_logging, removed again on the next call
_installed_handlers: List[logging.Handler] = []


class DevelopmentFormatter(logging.Formatter):
    """Human-readable formatter with level colours when writing to a terminal."""

    COLORS = {
        "DEBUG": "\033[36m",     # Cyan
        "INFO": "\033[32m",      # Green
        "WARNING": "\033[33m",   # Yellow
        "ERROR": "\033[31m",     # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        color = self.COLORS.get(record.levelname)
        if not color:
            return message
        return f"{color}{message}{self.RESET}"


def setup_logging(log_level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Configure the root logger.

    Safe to call more than once: existing handlers installed by a previous
    call are replaced, so the entrypoint and the app module can both call it.
    """
    level = getattr(logging, str(log_level).upper(), logging.INFO)

    root = logging.getLogger()
    while _installed_handlers:
        handler = _installed_handlers.pop()
        root.removeHandler(handler)
        handler.close()

    stream_handler = logging.StreamHandler(sys.stdout)
    if sys.stdout.isatty():
        stream_handler.setFormatter(DevelopmentFormatter(LOG_FORMAT, DATE_FORMAT))
    else:
        stream_handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
    _installed_handlers.append(stream_handler)
    root.addHandler(stream_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
        _installed_handlers.append(file_handler)
        root.addHandler(file_handler)

    root.setLevel(level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.INFO))


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
