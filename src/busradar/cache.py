import time
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Hashable, Optional, Tuple

logger = logging.getLogger(__name__)


class TTLCache:
    """
    Small expiring key/value store owned by a single collaborator.

    get_or_fetch() runs at most one fetch per key at a time; concurrent
    callers for the same key await the same task.
    """

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.clock = clock
        self._store: Dict[Hashable, Tuple[float, Any]] = {}
        self._inflight: Dict[Hashable, "asyncio.Future[Any]"] = {}

    def get(self, key: Hashable) -> Optional[Any]:
        hit = self._store.get(key)
        if hit and self.clock() - hit[0] < self.ttl:
            return hit[1]
        return None

    def peek(self, key: Hashable) -> Optional[Any]:
        """Last stored value for key, expired or not."""
        hit = self._store.get(key)
        return hit[1] if hit else None

    def set(self, key: Hashable, value: Any) -> None:
        self._store[key] = (self.clock(), value)

    def invalidate(self, key: Optional[Hashable] = None) -> None:
        if key is None:
            self._store.clear()
        else:
            self._store.pop(key, None)

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key) is not None

    async def get_or_fetch(
        self,
        key: Hashable,
        fetcher: Callable[[], Awaitable[Any]],
        stale_on_error: bool = False,
    ) -> Any:
        val = self.get(key)
        if val is not None:
            return val

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(fetcher())
            self._inflight[key] = task
        try:
            val = await task
        except Exception as e:
            stale = self.peek(key)
            if stale_on_error and stale is not None:
                logger.warning("refresh of %r failed (%s); serving stale value", key, e)
                return stale
            raise
        finally:
            if self._inflight.get(key) is task:
                del self._inflight[key]

        self.set(key, val)
        return val
