"""
Logging setup for the device-register command line tools.
"""

import logging
import sys

from src.device_register.utils.logging_formatter import UTCTimestampFormatter

CONSOLE_FORMAT = "%(message)s"
FILE_FORMAT = "%(levelname)s: %(message)s"


def parse_level(level_config: str) -> int:
    """Turn a level name (pipe-separated lists use the first entry) into a logging level."""
    level_name = (level_config or "INFO").split("|")[0].strip().upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        return logging.INFO
    return level


def setup_logging(config, verbose: bool = False) -> None:
    """
    Configure the root logger from ``config``.

    The console gets bare messages, the way the tools have always printed.
    If a log file is configured it also receives every record with a UTC
    timestamp.
    """
    level = logging.DEBUG if verbose else parse_level(config.get_log_level())

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    root_logger.addHandler(console_handler)

    log_file = config.get_log_file()
    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(level)
        file_handler.setFormatter(UTCTimestampFormatter(FILE_FORMAT))
        root_logger.addHandler(file_handler)

    root_logger.setLevel(level)
