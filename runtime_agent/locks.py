"""Process-wide start serialisation.

Docker misbehaves when several ``start`` calls run at once (network
endpoint and mount setup race inside the daemon), so every container
start on this agent goes through a single lock, whichever container it
is. Reconciliations run their engine calls in worker threads, so this is
a ``threading.Lock`` taken inside the worker rather than an
``asyncio.Lock``: it holds across event loops and plain threads alike.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from typing import Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StartLock:
    """Serialises container starts for the whole process."""

    def __init__(self):
        self._lock = threading.Lock()

    @contextmanager
    def hold(self, container_id: str = ""):
        """Hold the start lock for the duration of the block."""
        if not self._lock.acquire(blocking=False):
            started = time.monotonic()
            self._lock.acquire()
            logger.debug(
                f"Waited {time.monotonic() - started:.2f}s for start lock ({container_id[:12]})"
            )
        try:
            yield
        finally:
            self._lock.release()

    def serialize(self, func: Callable[[], T], container_id: str = "") -> T:
        """Run ``func`` while holding the start lock."""
        with self.hold(container_id):
            return func()

    def locked(self) -> bool:
        return self._lock.locked()


# Singleton instance for the agent
_start_lock = StartLock()


def get_start_lock() -> StartLock:
    """Get the process-wide start lock."""
    return _start_lock
