"""Time-bounded result cache with in-flight request coalescing.

Callers asking for the same key while a scan is running all await the one
shared task. The task itself stores its result and clears the in-flight
marker, so a caller that stops waiting never leaves the key blocked and a
failed scan can be retried immediately.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Hashable

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    value: Any
    stored_at: float


class ScanCache:
    """Cache of expensive scan results.

    Args:
        ttl: Default lifetime in seconds; ``None`` keeps entries until
            :meth:`invalidate` is called.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        ttl: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        name: str = "scan",
    ):
        self.ttl = ttl
        self.name = name
        self._clock = clock
        self._entries: dict[Hashable, _Entry] = {}
        self._inflight: dict[Hashable, asyncio.Task] = {}
        self._generation = 0

    def __contains__(self, key: Hashable) -> bool:
        return self._fresh(key, self.ttl) is not None

    def __len__(self) -> int:
        return len(self._entries)

    def _fresh(self, key: Hashable, ttl: float | None) -> _Entry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if ttl is not None and self._clock() - entry.stored_at >= ttl:
            return None
        return entry

    def get(self, key: Hashable, default: Any = None) -> Any:
        entry = self._fresh(key, self.ttl)
        return default if entry is None else entry.value

    def set(self, key: Hashable, value: Any) -> None:
        self._entries[key] = _Entry(value, self._clock())

    def invalidate(self, key: Hashable | None = None) -> None:
        """Drop one key, or everything when ``key`` is None.

        Scans already running keep their callers but no longer store results.
        """
        self._generation += 1
        if key is None:
            self._entries.clear()
            self._inflight.clear()
        else:
            self._entries.pop(key, None)
            self._inflight.pop(key, None)

    async def get_or_scan(
        self,
        key: Hashable,
        scan: Callable[[], Awaitable[Any]],
        ttl: float | None = None,
    ) -> Any:
        """Return the cached value for ``key`` or run ``scan`` once to produce it."""
        entry = self._fresh(key, self.ttl if ttl is None else ttl)
        if entry is not None:
            return entry.value

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._run(key, scan, self._generation))
            self._inflight[key] = task
        else:
            logger.debug("%s cache: joining in-flight scan for %r", self.name, key)

        return await asyncio.shield(task)

    async def _run(self, key: Hashable, scan: Callable[[], Awaitable[Any]], generation: int) -> Any:
        try:
            value = await scan()
            if generation == self._generation:
                self.set(key, value)
            return value
        finally:
            if self._inflight.get(key) is asyncio.current_task():
                del self._inflight[key]
