"""Short-lived in-process caches.

Values are stored together with the time they were fetched so callers can
decide between a fresh value, a stale fallback, or a refresh. The clock is
injected, which keeps expiry testable without sleeping.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")

Clock = Callable[[], float]


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    """A cached value and the clock reading at which it was stored."""

    value: T
    fetched_at: float


class TtlCache(Generic[T]):
    """Single-value cache that expires after ``ttl_seconds``.

    Example:
        ```python
        cache: TtlCache[float] = TtlCache(60)
        price = cache.get()
        if price is None:
            price = await fetch_price()
            cache.set(price)
        ```
    """

    def __init__(self, ttl_seconds: float, *, clock: Clock = time.monotonic) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        self._ttl = float(ttl_seconds)
        self._clock = clock
        self._entry: CacheEntry[T] | None = None

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def is_fresh(self) -> bool:
        if self._entry is None:
            return False
        return self._clock() - self._entry.fetched_at < self._ttl

    def get(self) -> T | None:
        """Return the cached value if it has not expired."""
        if self._entry is None or not self.is_fresh():
            return None
        return self._entry.value

    def peek(self) -> CacheEntry[T] | None:
        """Return the entry regardless of age (stale fallback)."""
        return self._entry

    def set(self, value: T) -> CacheEntry[T]:
        self._entry = CacheEntry(value=value, fetched_at=self._clock())
        return self._entry

    def invalidate(self) -> None:
        self._entry = None
