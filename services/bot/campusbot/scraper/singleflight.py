import asyncio
import logging
from typing import Awaitable, Callable, Dict, Hashable, TypeVar

T = TypeVar("T")

logger = logging.getLogger("scraper")


class SingleFlight:
    """
    At most one in-flight call per key.

    The first caller starts a task; later callers with the same key await the
    same task and see the same result or exception. Each caller awaits through
    ``asyncio.shield`` so one caller giving up does not cancel the shared call
    for the others.
    """

    def __init__(self) -> None:
        self._calls: Dict[Hashable, asyncio.Task] = {}

    async def do(self, key: Hashable, fn: Callable[[], Awaitable[T]]) -> T:
        task = self._calls.get(key)
        if task is None:
            task = asyncio.ensure_future(fn())
            self._calls[key] = task
            task.add_done_callback(lambda t, k=key: self._forget(k, t))
        else:
            logger.debug("Joining in-flight request %s", key)
        return await asyncio.shield(task)

    def _forget(self, key: Hashable, task: asyncio.Task) -> None:
        if self._calls.get(key) is task:
            del self._calls[key]
        # Mark the exception retrieved; every waiter has its own reference
        if not task.cancelled():
            task.exception()

    def in_flight(self) -> int:
        return len(self._calls)

    def cancel_all(self) -> None:
        for task in list(self._calls.values()):
            task.cancel()
