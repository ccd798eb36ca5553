"""
Fault governor — the node's failure budget.

One instance is created by the node and handed to every component that
can fail. Failures increment a shared counter, any success resets it,
and once the counter exceeds the threshold the process terminates.
There is no degraded mode past that point.
"""

from __future__ import annotations

import logging
import os
import threading
from typing import Callable, Optional

logger = logging.getLogger("clustermirror.faults")

DEFAULT_THRESHOLD = 5


def _terminate() -> None:
    logging.shutdown()
    os._exit(1)


class FaultGovernor:
    """Thread-safe failure counter with fatal escalation.

    Args:
        threshold: Failures tolerated before the process is terminated.
            Termination happens when the count goes strictly above it.
        on_fatal: Called once the threshold is breached. Defaults to
            flushing logging and exiting the process with status 1.
    """

    def __init__(
        self,
        threshold: int = DEFAULT_THRESHOLD,
        on_fatal: Optional[Callable[[], None]] = None,
    ):
        self.threshold = threshold
        self._on_fatal = on_fatal or _terminate
        self._lock = threading.Lock()
        self._count = 0

    def record_failure(self, error: BaseException | str) -> int:
        """Count a failure, terminating the process past the threshold.

        Args:
            error: The failure being recorded, used for the log line.

        Returns:
            The counter value after this failure.
        """
        with self._lock:
            self._count += 1
            count = self._count

        logger.error("Failure recorded (%d/%d): %s", count, self.threshold, error)

        if count > self.threshold:
            logger.critical(
                "Failure threshold (%d) exceeded, shutting down", self.threshold
            )
            self._on_fatal()
        return count

    def reset(self) -> None:
        """Reset the counter after a successful operation."""
        with self._lock:
            previous = self._count
            self._count = 0
        if previous:
            logger.info("Failure count reset: %d -> 0", previous)

    def count(self) -> int:
        """Current number of consecutive failures."""
        with self._lock:
            return self._count
