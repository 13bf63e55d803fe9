"""
Concurrency helpers for Cardgate.

KeyedLock gives mutual exclusion per key (card id) rather than a
global lock, so unrelated cards verify independently. retry_transient
wraps store calls in a bounded exponential backoff.
"""

import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, TypeVar

from .errors import StoreUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LockTimeout(Exception):
    """The per-key lock could not be acquired within the allotted time."""


class _Entry:
    __slots__ = ("lock", "refs")

    def __init__(self):
        self.lock = threading.Lock()
        self.refs = 0


class KeyedLock:
    """
    Map of mutexes keyed by string, created on demand and dropped when
    no thread holds or waits on them.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._entries: Dict[str, _Entry] = {}

    @contextmanager
    def hold(self, key: str, timeout: float) -> Iterator[None]:
        """
        Hold the lock for `key`.

        Raises LockTimeout if it cannot be acquired within `timeout` seconds.
        Once acquired, the body always runs to completion before release.
        """
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            entry.refs += 1
        acquired = entry.lock.acquire(timeout=timeout) if timeout > 0 else entry.lock.acquire()
        try:
            if not acquired:
                raise LockTimeout(key)
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            with self._guard:
                entry.refs -= 1
                if entry.refs == 0:
                    del self._entries[key]

    def active_keys(self) -> int:
        with self._guard:
            return len(self._entries)


def retry_transient(
    fn: Callable[[], T],
    attempts: int = 3,
    base_delay: float = 0.05,
    max_delay: float = 1.0,
    operation: str = "store"
) -> T:
    """
    Call fn, retrying sqlite OperationalError (locked/busy database) with
    exponential backoff. Any sqlite error left after the last attempt,
    and any non-transient sqlite error, becomes StoreUnavailable.
    """
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except sqlite3.OperationalError as e:
            if attempt == attempts:
                raise StoreUnavailable(f"{operation} failed after {attempts} attempts: {e}") from e
            delay = min(max_delay, base_delay * (2 ** (attempt - 1)))
            logger.warning("%s transient failure (attempt %d/%d): %s", operation, attempt, attempts, e)
            time.sleep(delay)
        except sqlite3.Error as e:
            raise StoreUnavailable(f"{operation} failed: {e}") from e
    raise StoreUnavailable(operation)
