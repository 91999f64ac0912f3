import logging
import sys
import os
from datetime import datetime

import config


class ColoredFormatter(logging.Formatter):
    """Adds ANSI colors per level to console output."""

    cyan = "\x1b[36m"
    green = "\x1b[32m"
    yellow = "\x1b[33m"
    red = "\x1b[31m"
    bold_red = "\x1b[31;1m"
    reset = "\x1b[0m"

    format_str = "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d - %(message)s"

    FORMATS = {
        logging.DEBUG: cyan + format_str + reset,
        logging.INFO: green + format_str + reset,
        logging.WARNING: yellow + format_str + reset,
        logging.ERROR: red + format_str + reset,
        logging.CRITICAL: bold_red + format_str + reset,
    }

    def format(self, record):
        log_fmt = self.FORMATS.get(record.levelno) or self.format_str
        formatter = logging.Formatter(log_fmt, datefmt="%Y-%m-%d %H:%M:%S")
        return formatter.format(record)


def setup_logging(level=logging.INFO, to_file=None, log_dir=None):
    """Setup centralized logging configuration."""
    if to_file is None:
        to_file = config.LOG_TO_FILE
    log_dir = log_dir or config.LOG_DIR

    root_logger = logging.getLogger()

    # Clear existing handlers to prevent duplicate logs
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    root_logger.setLevel(level)

    # Console handler on stderr so uvicorn output interleaves
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(ColoredFormatter())
    root_logger.addHandler(console_handler)

    if to_file:
        if not os.path.exists(log_dir):
            os.makedirs(log_dir)
        file_handler = logging.FileHandler(
            os.path.join(log_dir, f"bugtracker_{datetime.now().strftime('%Y%m%d')}.log")
        )
        file_handler.setFormatter(logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))
        root_logger.addHandler(file_handler)

    for logger_name in ["uvicorn", "uvicorn.error", "uvicorn.access", "main"]:
        l = logging.getLogger(logger_name)
        l.setLevel(level)
        l.propagate = True

    root_logger.info("Logging initialized (console%s).", " + file" if to_file else "")
