"""Module with a memoizing wrapper for remote state that is expensive to compute."""

import threading
import time
from typing import Callable, Generic, Optional, TypeVar

T = TypeVar("T")


class TtlCache(Generic[T]):
    """
    Value computed by a factory and kept until its time-to-live has elapsed.

    The factory receives the previous value (None the first time), which allows it to
    build upon or reuse it. The time-to-live is derived from the value itself, so
    different values can expire at different rates.

    Recomputation is serialized: threads that access the value while it is being
    refreshed wait for that refresh and receive its result instead of invoking the
    factory again.
    """

    def __init__(
        self,
        factory: Callable[[Optional[T]], T],
        ttl: Callable[[T], float],
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Instantiate a cache that hasn't computed its value yet."""
        self._factory = factory
        self._ttl = ttl
        self._clock = clock

        self._value: Optional[T] = None
        self._computed_at: Optional[float] = None

        self._refresh_lock = threading.Lock()

    def _expired(self) -> bool:
        if self._computed_at is None:
            return True

        return self._clock() - self._computed_at >= self._ttl(self._value)

    @property
    def value(self) -> T:
        """Return the cached value, recomputing it first if it has expired."""
        if not self._expired():
            return self._value

        with self._refresh_lock:
            # Another thread may have refreshed the value while we were waiting
            if self._expired():
                self._value = self._factory(self._value)
                self._computed_at = self._clock()

            return self._value

    def peek(self) -> Optional[T]:
        """Return the cached value if it is still fresh, without ever computing it."""
        with self._refresh_lock:
            return None if self._expired() else self._value

    def expire(self) -> None:
        """Force the value to be recomputed upon its next access."""
        with self._refresh_lock:
            self._computed_at = None
