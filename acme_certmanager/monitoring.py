"""
Timing helpers for long-running CA exchanges.
"""

import logging
import time
from contextlib import contextmanager

logger = logging.getLogger(__name__)


@contextmanager
def timer(operation_name: str):
    """
    Log how long the enclosed block took, and whether it failed.

    Usage:
        with timer("Order for example.com"):
            ...
    """
    start = time.monotonic()
    logger.debug(f"Starting: {operation_name}")

    try:
        yield
    except Exception:
        logger.warning(f"{operation_name} failed after {time.monotonic() - start:.2f}s")
        raise

    logger.info(f"{operation_name} completed in {time.monotonic() - start:.2f}s")
