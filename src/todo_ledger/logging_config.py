"""
Logging setup for the service process.
"""

import logging

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure the ``todo_ledger`` logger hierarchy with a stream handler.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
    """
    logger = logging.getLogger("todo_ledger")
    logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    if not any(getattr(h, "_todo_ledger", False) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._todo_ledger = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
