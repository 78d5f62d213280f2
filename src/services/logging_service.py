import logging
import os
from logging.handlers import RotatingFileHandler
from datetime import datetime
from typing import Optional

DEFAULT_LOG_DIR = os.path.join(os.path.dirname(os.path.dirname(__file__)), 'logs')


def setup_logging(log_level=logging.INFO, log_dir: Optional[str] = None, console_level=logging.INFO):
    """
    Configure application-wide logging with both console and file output

    Args:
        log_level: The logging level for the root logger and the log file
        log_dir: Directory for the log file, defaults to logs/ next to the sources
            (overridable with ADO_ROLLUP_LOG_DIR)
        console_level: Threshold for the console handler
    """
    log_dir = log_dir or os.environ.get("ADO_ROLLUP_LOG_DIR") or DEFAULT_LOG_DIR
    os.makedirs(log_dir, exist_ok=True)

    log_filename = os.path.join(log_dir, f"ado_cost_rollup_{datetime.now().strftime('%Y%m%d')}.log")

    logger = logging.getLogger()
    logger.setLevel(log_level)

    if logger.hasHandlers():
        logger.handlers.clear()

    # Console stays at INFO even when the file gets DEBUG output
    console_handler = logging.StreamHandler()
    console_handler.setLevel(console_level)
    console_format = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    console_handler.setFormatter(console_format)
    logger.addHandler(console_handler)

    file_handler = RotatingFileHandler(
        log_filename,
        maxBytes=10*1024*1024,  # 10 MB
        backupCount=5
    )
    file_handler.setLevel(log_level)
    file_format = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s - [%(filename)s:%(lineno)d]')
    file_handler.setFormatter(file_format)
    logger.addHandler(file_handler)

    return logger
