"""
SOS Worker Pool

Fixed-capacity thread pool shared by the front-end startup tasks. Once shut
down it rejects new submissions; tasks already running are left to finish.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable

from sosnode.exceptions import PoolClosedError

logger = logging.getLogger(__name__)

DEFAULT_POOL_SIZE = 3


class WorkerPool:
    """Thin wrapper over ThreadPoolExecutor with an explicit closed state."""

    def __init__(self, capacity: int = DEFAULT_POOL_SIZE):
        if capacity < 1:
            raise ValueError(f"Pool capacity must be at least 1, got {capacity}")

        self.capacity = capacity
        self._executor = ThreadPoolExecutor(max_workers=capacity, thread_name_prefix="sos-frontend")
        self._lock = threading.Lock()
        self._closed = False
        self._submitted = 0

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    @property
    def submitted(self) -> int:
        """Number of tasks accepted so far."""
        with self._lock:
            return self._submitted

    def submit(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        """
        Submit a task.

        Raises:
            PoolClosedError: If the pool has been shut down.
        """
        with self._lock:
            if self._closed:
                raise PoolClosedError(f"Worker pool is shut down, rejected task '{name}'")
            future = self._executor.submit(fn, *args, **kwargs)
            self._submitted += 1

        logger.debug(f"Submitted task '{name}'")
        return future

    def shutdown(self, wait: bool = False) -> bool:
        """
        Stop accepting tasks. Running tasks are not cancelled.

        Returns:
            True if this call closed the pool.
        """
        with self._lock:
            if self._closed:
                return False
            self._closed = True

        self._executor.shutdown(wait=wait)
        logger.info("Worker pool closed to new tasks")
        return True
