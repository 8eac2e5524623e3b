"""
Global advisory lock.

Bridges, namespaces, veths and iptables tables are host-global, so all
mutating operations share one exclusive lock. Read-only operations take the
shared side so they never observe a half-applied change.
"""

import fcntl
import logging
import os
from contextlib import contextmanager

logger = logging.getLogger(__name__)


class GlobalLock:
    """flock(2) on a lock file. Each acquisition opens its own descriptor."""

    def __init__(self, path: str):
        self.path = path

    @contextmanager
    def _acquire(self, mode: int):
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(self.path, "a+") as handle:
            fcntl.flock(handle.fileno(), mode)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    @contextmanager
    def exclusive(self):
        logger.debug(f"Acquiring exclusive lock {self.path}")
        with self._acquire(fcntl.LOCK_EX):
            yield

    @contextmanager
    def shared(self):
        logger.debug(f"Acquiring shared lock {self.path}")
        with self._acquire(fcntl.LOCK_SH):
            yield
