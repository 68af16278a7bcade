import logging
from logging.handlers import RotatingFileHandler
import os

from fleetguard.config import LOG_DIR


def get_logger(name, filename):
    logger = logging.getLogger(f"fleetguard.{name}")
    logger.setLevel(logging.INFO)

    # Avoid duplicated handlers
    if logger.handlers:
        return logger

    formatter = logging.Formatter(
        "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
    )

    try:
        os.makedirs(LOG_DIR, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(LOG_DIR, filename),
            maxBytes=5_000_000,
            backupCount=3
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    except OSError:
        # read-only filesystem (CI, containers without /logs): console only
        pass

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    return logger
