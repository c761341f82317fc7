"""Bounded polling for asynchronous provider operations."""

import time
from typing import Callable

from .errors import TimeoutError
from .logging import get_logger

logger = get_logger(__name__)


def poll_until(
    predicate: Callable[[], bool],
    timeout: float,
    interval: float,
    operation: str,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> int:
    """Call *predicate* every *interval* seconds until it returns true.

    Returns the number of polls made.

    Raises:
        TimeoutError: If *timeout* seconds pass without the predicate holding
    """
    deadline = clock() + timeout
    attempts = 0
    while True:
        attempts += 1
        if predicate():
            logger.debug("Settle-wait satisfied", operation=operation, attempts=attempts)
            return attempts
        if clock() >= deadline:
            raise TimeoutError(operation, timeout, attempts=attempts)
        sleep(interval)
