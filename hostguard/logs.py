"""Logging setup: a file log for the audit trail, Rich output when debugging."""

import datetime
import gzip
import logging
import os
import shutil
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

LOGGER_NAME = "hostguard"
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
MAX_LOG_SIZE = 10 * 1024 * 1024  # 10MB

logger = logging.getLogger(LOGGER_NAME)


def rotate_log(log_file: str, max_size: int = MAX_LOG_SIZE) -> Optional[str]:
    """
    Gzip the log file away once it grows beyond ``max_size`` bytes.

    Returns:
        Path of the rotated archive, or None if no rotation happened.
    """
    if not os.path.exists(log_file) or os.path.getsize(log_file) <= max_size:
        return None
    ts = datetime.datetime.now().strftime("%Y%m%d%H%M%S")
    rotated = f"{log_file}.{ts}.gz"
    with open(log_file, "rb") as fin, gzip.open(rotated, "wb") as fout:
        shutil.copyfileobj(fin, fout)
    open(log_file, "w").close()
    return rotated


def setup_logging(
    log_file: Optional[str],
    debug: bool = False,
    console: Optional[Console] = None,
) -> logging.Logger:
    """
    Configure the hostguard logger.

    Args:
        log_file: File receiving every record, or None to skip file logging
        debug: Also echo records to the terminal through RichHandler
        console: Console the RichHandler writes to

    Returns:
        The configured logger
    """
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.DEBUG)
    logger.propagate = False

    if debug:
        rich_handler = RichHandler(
            rich_tracebacks=True, markup=False, console=console, show_path=False
        )
        rich_handler.setLevel(logging.DEBUG)
        logger.addHandler(rich_handler)

    if log_file:
        try:
            os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)
            rotated = rotate_log(log_file)
            file_handler = logging.FileHandler(log_file)
        except OSError as e:
            if console is not None:
                console.print(f"[warning]File logging disabled ({log_file}): {e}[/warning]")
        else:
            file_handler.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT))
            file_handler.setLevel(logging.DEBUG if debug else logging.INFO)
            logger.addHandler(file_handler)
            if rotated:
                logger.info("Rotated log file to %s", rotated)

    if not logger.handlers:
        logger.addHandler(logging.NullHandler())

    logger.debug("Logging initialized: %s", log_file or "no log file")
    return logger
