from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class Clock(ABC):
    """
    Time source used by every polling loop and timed wait.

    Production code uses `SystemClock`; tests pass a virtual clock whose `sleep()` advances time instantly.
    """

    @abstractmethod
    def now(self) -> datetime:
        """Current time, timezone-aware UTC."""

    @abstractmethod
    def monotonic(self) -> float:
        ...

    @abstractmethod
    async def sleep(self, seconds: float) -> None:
        """Wait `seconds`; must be a cancellation point."""

    def epoch_ms(self) -> int:
        # Integer arithmetic: float timestamps can land 1ms short.
        return (self.now() - _EPOCH) // timedelta(milliseconds=1)


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        # asyncio.sleep is a cancellation point, so stopping the owning task interrupts the wait.
        await asyncio.sleep(max(0.0, float(seconds)))
