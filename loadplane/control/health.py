"""
Shared health flag for the background loops.

Any loop that dies unexpectedly marks the process unhealthy so an
external health check fails fast; nothing clears the flag except a
restart.
"""

import logging
import threading
from typing import Optional

from .errors import FatalLoopError


logger = logging.getLogger(__name__)


class HealthState:
    """Thread-safe unhealthy flag plus the error that set it."""

    def __init__(self):
        self._lock = threading.Lock()
        self._failure: Optional[FatalLoopError] = None

    @property
    def healthy(self) -> bool:
        with self._lock:
            return self._failure is None

    @property
    def failure(self) -> Optional[FatalLoopError]:
        with self._lock:
            return self._failure

    def fail(self, error: FatalLoopError) -> None:
        with self._lock:
            if self._failure is None:
                self._failure = error
        logger.critical(f"Control plane unhealthy: {error}")
