import logging
import os
from logging.handlers import RotatingFileHandler
from datetime import datetime


def setup_logging(log_level=logging.INFO, log_dir=None):
    """
    Configure application-wide logging with both console and file output

    Args:
        log_level: The logging level to use, as a number or a level name
        log_dir: Directory for log files, defaults to logs/ next to src/
    """
    if isinstance(log_level, str):
        log_level = logging.getLevelName(log_level.upper())
        if not isinstance(log_level, int):
            log_level = logging.INFO

    if log_dir is None:
        log_dir = os.path.join(os.path.dirname(os.path.dirname(os.path.dirname(__file__))), 'logs')
    os.makedirs(log_dir, exist_ok=True)

    log_filename = os.path.join(log_dir, f"hours_dashboard_{datetime.now().strftime('%Y%m%d')}.log")

    logger = logging.getLogger()
    logger.setLevel(log_level)

    if logger.hasHandlers():
        logger.handlers.clear()

    # Console stays at INFO even when the file gets DEBUG
    console_handler = logging.StreamHandler()
    console_handler.setLevel(max(log_level, logging.INFO))
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

    # urllib3 logs every connection at DEBUG
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    return logger
