"""Injectable in-process TTL cache and per-key locks."""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from typing import Callable, Generic, Hashable, Iterator, TypeVar

V = TypeVar("V")

DEFAULT_MAXSIZE = 10_000


class InMemoryTTLCache(Generic[V]):
    """
    Small thread-safe key/value cache with per-entry TTL.

    ``clock`` returns seconds (monotonic by default); tests pass a fake
    clock to control expiry. Expired entries are swept on every write and
    at most ``maxsize`` entries are held; when full, the entry closest to
    expiry is evicted.
    """

    def __init__(
        self, clock: Callable[[], float] = time.monotonic, maxsize: int = DEFAULT_MAXSIZE
    ) -> None:
        if maxsize < 1:
            raise ValueError("maxsize must be positive")
        self._clock = clock
        self._maxsize = maxsize
        self._data: dict[Hashable, tuple[V, float]] = {}
        self._lock = threading.Lock()

    def get(self, key: Hashable) -> V | None:
        with self._lock:
            item = self._data.get(key)
            if item is None:
                return None
            value, expires_at = item
            if self._clock() >= expires_at:
                del self._data[key]
                return None
            return value

    def set(self, key: Hashable, value: V, ttl: float) -> None:
        with self._lock:
            now = self._clock()
            self._sweep(now)
            if key not in self._data and len(self._data) >= self._maxsize:
                oldest = min(self._data, key=lambda k: self._data[k][1])
                del self._data[oldest]
            self._data[key] = (value, now + ttl)

    def _sweep(self, now: float) -> None:
        expired = [k for k, (_, expires_at) in self._data.items() if now >= expires_at]
        for k in expired:
            del self._data[k]

    def delete(self, key: Hashable) -> None:
        with self._lock:
            self._data.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def __len__(self) -> int:
        return len(self._data)


class KeyedLocks:
    """
    One lock per composite key, created on demand.

    Lets concurrent callers that miss the same cache key wait for the first
    caller's fetch instead of issuing duplicate requests.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[Hashable, threading.Lock] = {}
        self._users: dict[Hashable, int] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._users[key] = self._users.get(key, 0) + 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                self._users[key] -= 1
                if self._users[key] == 0:
                    del self._users[key]
                    del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)
