import logging
import threading
from collections import defaultdict
from contextlib import contextmanager
from typing import Hashable, Iterator

logger = logging.getLogger(__name__)


class LockRegistry:
    """Process-wide mutual exclusion keyed by entity, e.g. ``("wallet", 7)``."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[Hashable, threading.RLock] = defaultdict(threading.RLock)

    def _lock_for(self, key: Hashable) -> threading.RLock:
        with self._guard:
            return self._locks[key]

    @contextmanager
    def hold(self, *keys: Hashable) -> Iterator[None]:
        # sorted so two callers holding overlapping keys never deadlock
        ordered = sorted(set(keys), key=repr)
        acquired: list[threading.RLock] = []
        try:
            for key in ordered:
                lock = self._lock_for(key)
                if not lock.acquire(blocking=False):
                    logger.debug("waiting for lock %r", key)
                    lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


locks = LockRegistry()
