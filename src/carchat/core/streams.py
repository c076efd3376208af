"""Push streams and one-shot signals used to bridge callbacks into asyncio."""

import asyncio
import logging
from typing import Any, AsyncIterator, Generic, List, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

_END = object()


class EventStream(Generic[T]):
    """Async broadcaster with one queue per subscriber.

    Subscribers only see events emitted after they subscribed. ``finish()``
    ends every subscriber's iteration. With ``maxsize`` set, a slow
    subscriber loses its oldest events instead of growing without bound.
    """

    def __init__(self, name: str, maxsize: int = 0):
        self.name = name
        self.maxsize = maxsize
        self._subscribers: List[asyncio.Queue] = []
        self._finished = False

    @property
    def is_finished(self) -> bool:
        return self._finished

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> AsyncIterator[T]:
        """Register a subscriber and return its iterator."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.maxsize)
        if self._finished:
            queue.put_nowait(_END)
        else:
            self._subscribers.append(queue)
        return self._iterate(queue)

    def __aiter__(self) -> AsyncIterator[T]:
        return self.subscribe()

    async def _iterate(self, queue: asyncio.Queue) -> AsyncIterator[T]:
        try:
            while True:
                item = await queue.get()
                if item is _END:
                    return
                yield item
        finally:
            if queue in self._subscribers:
                self._subscribers.remove(queue)

    def emit(self, item: T) -> None:
        """Deliver an item to every current subscriber."""
        if self._finished:
            logger.debug(f"Dropping event on finished stream {self.name}")
            return
        for queue in list(self._subscribers):
            self._put(queue, item)

    def finish(self) -> None:
        """End the stream for all subscribers. Idempotent."""
        if self._finished:
            return
        self._finished = True
        for queue in list(self._subscribers):
            self._put(queue, _END)

    @staticmethod
    def _put(queue: asyncio.Queue, item: Any) -> None:
        try:
            queue.put_nowait(item)
        except asyncio.QueueFull:
            queue.get_nowait()
            queue.put_nowait(item)


class OnceSignal:
    """Awaitable that resolves exactly once.

    Later resolutions are ignored and logged at debug level, so racing
    completion paths (a finish callback, a cancel callback, a watchdog) can
    all call ``resolve`` safely.
    """

    def __init__(self, name: str, loop: Optional[asyncio.AbstractEventLoop] = None):
        self.name = name
        self._loop = loop or asyncio.get_running_loop()
        self._future: asyncio.Future = self._loop.create_future()
        self.resolved_by: Optional[str] = None

    @property
    def is_resolved(self) -> bool:
        return self._future.done()

    def resolve(self, source: str = "unknown", value: Any = None) -> bool:
        """Resolve the signal. Returns False if it was already resolved."""
        if self._future.done():
            logger.debug(
                f"{self.name}: ignoring duplicate resolution from {source} "
                f"(already resolved by {self.resolved_by})"
            )
            return False
        self.resolved_by = source
        self._future.set_result(value)
        return True

    def resolve_threadsafe(self, source: str = "unknown", value: Any = None) -> None:
        """Resolve from a non-loop thread."""
        self._loop.call_soon_threadsafe(self.resolve, source, value)

    async def wait(self, timeout: Optional[float] = None) -> Any:
        """Wait for resolution. A timeout resolves the signal itself."""
        if timeout is None:
            return await asyncio.shield(self._future)
        try:
            return await asyncio.wait_for(asyncio.shield(self._future), timeout)
        except asyncio.TimeoutError:
            self.resolve("watchdog")
            return self._future.result()
