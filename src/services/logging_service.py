import logging
import os
from logging.handlers import RotatingFileHandler
from datetime import datetime
from typing import Optional, Union

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(log_level: Union[int, str] = logging.INFO, log_dir: Optional[str] = None):
    """
    Configure application-wide logging with console output and, optionally, a rotating log file

    Args:
        log_level: The logging level to use, as a number or a level name
        log_dir: Directory for the log file. No file is written when omitted.
    """
    if isinstance(log_level, str):
        log_level = logging.getLevelName(log_level.upper())
        if not isinstance(log_level, int):
            log_level = logging.INFO

    # Configure root logger
    logger = logging.getLogger()
    logger.setLevel(log_level)

    # Remove existing handlers if any
    if logger.hasHandlers():
        logger.handlers.clear()

    console_handler = logging.StreamHandler()
    console_handler.setLevel(max(log_level, logging.INFO))
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(console_handler)

    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        log_filename = os.path.join(log_dir, f"epic_effort_report_{datetime.now().strftime('%Y%m%d')}.log")

        # The file gets the more verbose output
        file_handler = RotatingFileHandler(
            log_filename,
            maxBytes=10*1024*1024,  # 10 MB
            backupCount=5
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT + ' - [%(filename)s:%(lineno)d]'))
        logger.addHandler(file_handler)

    # requests/urllib3 log every connection at DEBUG
    logging.getLogger("urllib3").setLevel(max(log_level, logging.WARNING))

    return logger
