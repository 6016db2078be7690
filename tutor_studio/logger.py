from __future__ import annotations

import logging
import sys
from datetime import datetime


class CompactFormatter(logging.Formatter):
    """
    One line per record: time, level, logger name, message (+ traceback when present).
    """

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S.%f")[:-3]
        line = f"[{timestamp}] {record.levelname:8s} {record.name} | {record.getMessage()}"
        if record.exc_info:
            line += f"\n{self.formatException(record.exc_info)}"
        return line


def setup_logging(level: str | int = logging.INFO) -> logging.Logger:
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(CompactFormatter())

    root_logger.setLevel(level)
    root_logger.addHandler(console_handler)

    # Suppress noisy loggers
    for name in ("asyncio", "httpx", "httpcore", "websockets", "google_genai"):
        logging.getLogger(name).setLevel(logging.WARNING)

    return root_logger
