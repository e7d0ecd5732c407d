import logging
import os
import sys
from logging.handlers import RotatingFileHandler

DEFAULT_LOG_FILE = "voicepilot.log"


def get_logger(name=__name__):
    logger = logging.getLogger(name)

    # Only add handlers if the logger doesn't have them (prevents duplicate logs)
    if not logger.handlers:
        logger.setLevel(logging.DEBUG)
        logger.propagate = False

        common_format = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        # Console shows INFO and above unless overridden
        console_level = os.getenv("VOICEPILOT_LOG_LEVEL", "INFO").upper()
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(getattr(logging, console_level, logging.INFO))
        console_handler.setFormatter(common_format)

        # File keeps everything, rotates at 5MB
        file_handler = RotatingFileHandler(
            os.getenv("VOICEPILOT_LOG_FILE", DEFAULT_LOG_FILE),
            maxBytes=5*1024*1024,
            backupCount=2,
            delay=True,
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(common_format)

        logger.addHandler(console_handler)
        logger.addHandler(file_handler)

    return logger
