"""Time-windowed per-dataset result cache with single-flight recomputation."""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass


@dataclass(frozen=True)
class CacheEntry[T]:
    """A complete snapshot and the wall-clock time it was computed at."""

    value: T
    computed_at: float

    def age(self, now: float) -> float:
        return now - self.computed_at


class ResultCache[T]:
    """Holds the last successfully computed snapshot per key.

    Entries are replaced whole, never mutated. Concurrent misses for the same
    key share one in-flight computation; a failed computation leaves the
    previous entry in place.
    """

    def __init__(
        self,
        window_seconds: float,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the cache.

        Args:
            window_seconds: How long an entry is served after it was computed.
            clock: Wall-clock source in seconds.
        """
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self._window_seconds = window_seconds
        self._clock = clock
        self._entries: dict[str, CacheEntry[T]] = {}
        self._inflight: dict[str, asyncio.Task[CacheEntry[T]]] = {}

    @property
    def window_seconds(self) -> float:
        return self._window_seconds

    def get(self, key: str, now: float | None = None) -> CacheEntry[T] | None:
        """Get the entry for a key if it is still fresh.

        Args:
            key: Dataset key.
            now: Current time; defaults to the cache's clock.

        Returns:
            The entry when ``now - computed_at < window_seconds``, else None.
        """
        entry = self._entries.get(key)
        if entry is None:
            return None
        if now is None:
            now = self._clock()
        if entry.age(now) < self._window_seconds:
            return entry
        return None

    def peek(self, key: str) -> CacheEntry[T] | None:
        """Get the latest entry for a key regardless of its age."""
        return self._entries.get(key)

    def put(self, key: str, value: T, computed_at: float | None = None) -> CacheEntry[T]:
        """Replace the entry for a key.

        Args:
            key: Dataset key.
            value: Complete snapshot.
            computed_at: Computation time; defaults to the cache's clock.

        Returns:
            The stored entry.
        """
        entry = CacheEntry(
            value=value,
            computed_at=self._clock() if computed_at is None else computed_at,
        )
        self._entries[key] = entry
        return entry

    def is_computing(self, key: str) -> bool:
        task = self._inflight.get(key)
        return task is not None and not task.done()

    async def get_or_compute(
        self,
        key: str,
        compute: Callable[[], Awaitable[T]],
    ) -> CacheEntry[T]:
        """Serve a fresh entry, or compute one shared by all concurrent callers.

        Args:
            key: Dataset key.
            compute: Coroutine function producing a new snapshot.

        Returns:
            The fresh or newly computed entry.

        Raises:
            Exception: Whatever ``compute`` raised; nothing is stored then.
        """
        entry = self.get(key)
        if entry is not None:
            return entry
        return await self.refresh(key, compute)

    async def refresh(
        self,
        key: str,
        compute: Callable[[], Awaitable[T]],
    ) -> CacheEntry[T]:
        """Recompute an entry regardless of freshness, joining any in-flight run."""
        task = self._inflight.get(key)
        if task is None or task.done():
            task = asyncio.create_task(self._compute(key, compute))
            self._inflight[key] = task
            task.add_done_callback(lambda done: self._forget(key, done))
        # A cancelled waiter must not cancel the computation shared with others
        return await asyncio.shield(task)

    async def _compute(
        self,
        key: str,
        compute: Callable[[], Awaitable[T]],
    ) -> CacheEntry[T]:
        started_at = self._clock()
        value = await compute()
        return self.put(key, value, computed_at=started_at)

    def _forget(self, key: str, task: asyncio.Task[CacheEntry[T]]) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled():
            # Mark the exception retrieved when every waiter went away
            task.exception()
