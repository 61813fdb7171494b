from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, TypeVar


logger = logging.getLogger(__name__)
T = TypeVar("T")


class PageSerializer:
    """
    Single global permit for operations that navigate or fill the shared browser page.

    Waiters are served in arrival order (asyncio.Lock keeps a FIFO waiter queue and does not let a newcomer
    barge past queued waiters). The permit is released in `finally`, so a failing operation still unblocks the
    next one. Stateless in-context requests do not need it.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._holder = ""

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    @property
    def holder(self) -> str:
        return self._holder

    @asynccontextmanager
    async def exclusive(self, label: str = "") -> AsyncIterator[None]:
        t0 = time.monotonic()
        await self._lock.acquire()
        waited = time.monotonic() - t0
        if waited > 1.0:
            logger.debug("Waited %.2fs for page access (label=%s, previous=%s)", waited, label, self._holder)
        self._holder = label
        try:
            yield
        finally:
            self._holder = ""
            self._lock.release()

    async def run_exclusive(self, fn: Callable[[], Awaitable[T]], label: str = "") -> T:
        async with self.exclusive(label):
            return await fn()
