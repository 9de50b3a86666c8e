import logging
import sys
from typing import Optional


LOG_FORMAT = "[reviewer] %(levelname)s %(message)s"

EXTERNAL_LOGGERS = ("boto3", "botocore", "s3transfer", "urllib3", "git", "httpx")


def setup_logging(log_level: Optional[str] = None, verbose: bool = False) -> logging.Logger:
    """Send the ``reviewer`` loggers to stderr; stdout is kept for the JSON result."""
    level_name = "DEBUG" if verbose else (log_level or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)

    logger = logging.getLogger("reviewer")
    logger.setLevel(level)
    logger.handlers.clear()
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)

    for name in EXTERNAL_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return logger


def progress(marker: str = ".") -> None:
    sys.stderr.write(marker)
    sys.stderr.flush()
