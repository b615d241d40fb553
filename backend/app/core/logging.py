"""
Logging setup for host applications and scripts.

The library itself only creates module loggers; nothing here runs on import.
"""

import logging
import sys

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
PACKAGE_LOGGER = "app.services.clinical_safety"


def setup_logging(level: str = "INFO") -> None:
    """Send ``app.services.clinical_safety`` records at ``level`` and above to stdout."""
    log_level = getattr(logging, level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(log_level)
    logger.handlers = [handler]
    logger.propagate = False
