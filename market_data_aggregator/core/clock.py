"""
Time source for the aggregator.
Rate limiting, cache expiry and freshness checks read time only through a Clock,
so tests can drive it deterministically.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone


class Clock(ABC):
    """Monotonic and wall clock readings plus an awaitable sleep."""

    @abstractmethod
    def monotonic(self) -> float:
        """Seconds from an arbitrary origin; never goes backwards."""
        pass

    @abstractmethod
    def now(self) -> datetime:
        """Timezone-aware UTC wall time."""
        pass

    @abstractmethod
    async def sleep(self, seconds: float) -> None:
        pass


class SystemClock(Clock):
    """Clock backed by the interpreter's clocks and the event loop."""

    def monotonic(self) -> float:
        return time.monotonic()

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)
