"""Data structures used by multiple stream caching components."""

from __future__ import annotations

import collections
from concurrent.futures import Future
from contextlib import contextmanager
from dataclasses import dataclass
import threading
from typing import Any, Dict, Iterator


class CancellationToken:
    """
    Cooperative cancellation signal for a single caller.

    Tokens are only checked while a caller is waiting for contents to be fetched.
    Cancelling a token never cancels the fetch itself.
    """

    def __init__(self) -> None:
        """Instantiate a token that hasn't been cancelled yet."""
        self._event = threading.Event()

    def cancel(self) -> None:
        """Signal the caller holding this token to stop waiting."""
        self._event.set()

    @property
    def cancelled(self) -> bool:
        """Return whether the caller should stop waiting."""
        return self._event.is_set()


@dataclass
class CacheEntry:
    """
    Contents that have been admitted to the disk cache.

    Storage points to the temporary file where the contents are stored. The size is
    the realized size of the contents and is used for budget accounting.
    """

    storage: str
    size: int


@dataclass
class InFlightFetch:
    """
    Fetch of contents from the server that is currently running.

    The future is resolved with the contents (or the error) once the fetch has
    completed and may be waited upon by any number of readers.
    """

    future: Future


class LockIndex:
    """
    Collection of mutexes to lock critical sections by arbitrary values.

    Its use case is to lock critical sections based on unpredictable input values, like
    arbitrary file handles. Locks are automatically garbage collected when no longer
    in use (no threads in the critical section and none waiting to enter).
    """

    def __init__(self) -> None:
        """Instantiate a LockIndex."""
        self._global_lock = threading.Lock()

        self._locks: Dict[Any, threading.Lock] = collections.defaultdict(threading.Lock)
        self._lock_users: Dict[Any, int] = collections.defaultdict(int)

    @contextmanager
    def lock(self, key: Any, blocking=True) -> Iterator[bool]:
        """Lock a critical section based on the specified key."""
        # Retrieve lock and increment user count
        with self._global_lock:
            self._lock_users[key] += 1
            lock = self._locks[key]

        acquired = lock.acquire(blocking)

        try:
            yield acquired
        finally:
            if acquired:
                lock.release()

            # Decrement user count and delete lock if there are none left
            with self._global_lock:
                self._lock_users[key] -= 1

                if self._lock_users[key] == 0:
                    del self._lock_users[key]
                    del self._locks[key]

    @property
    def lock_count(self):
        """Return the number of locks currently in use."""
        with self._global_lock:
            return len(self._locks)
