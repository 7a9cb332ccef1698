"""
Per-provider request budgets for Market Data Aggregator.
Each provider gets N admissions per fixed window; the window restarts on the
first call after it has elapsed.
"""

import asyncio
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

from ..core.clock import Clock
from ..core.logging_config import create_logger
from ..models import DataProvider

logger = create_logger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of an admission request."""
    admitted: bool
    retry_after: Optional[float] = None


@dataclass
class _ProviderWindow:
    limit: int
    window_length: float
    window_start: float
    used: int = 0
    enabled: bool = True


class RateLimiter:
    """Fixed-window admission control, one window and lock per provider."""

    def __init__(self, clock: Clock):
        self._clock = clock
        self._windows: Dict[DataProvider, _ProviderWindow] = {}
        self._locks: Dict[DataProvider, asyncio.Lock] = {}

    def register(
        self,
        provider: DataProvider,
        limit: int,
        window_length: float,
        enabled: bool = True
    ) -> None:
        """Create the window for a provider. Disabled providers are always denied."""
        self._windows[provider] = _ProviderWindow(
            limit=limit,
            window_length=window_length,
            window_start=self._clock.monotonic(),
            enabled=enabled
        )
        self._locks[provider] = asyncio.Lock()

    @property
    def providers(self) -> Iterable[DataProvider]:
        return self._windows.keys()

    async def try_acquire(self, provider: DataProvider) -> RateLimitDecision:
        """
        Admit one request for the provider if its current window has budget left.

        An admission commits the slot for the window even if the caller later
        abandons the request.
        """
        window = self._windows.get(provider)
        if window is None or not window.enabled:
            return RateLimitDecision(admitted=False)

        async with self._locks[provider]:
            now = self._clock.monotonic()
            if now - window.window_start >= window.window_length:
                window.used = 0
                window.window_start = now

            if window.used < window.limit:
                window.used += 1
                return RateLimitDecision(admitted=True)

            retry_after = window.window_start + window.window_length - now

        logger.debug("Rate limit budget exhausted", extra={
            "provider": provider.value,
            "retry_after": round(retry_after, 3)
        })
        return RateLimitDecision(admitted=False, retry_after=retry_after)

    def status(self, provider: DataProvider) -> Dict[str, object]:
        """Snapshot of a provider's window, without consuming budget."""
        window = self._windows[provider]
        now = self._clock.monotonic()
        elapsed = now - window.window_start
        if elapsed >= window.window_length:
            used, reset_in = 0, 0.0
        else:
            used, reset_in = window.used, window.window_length - elapsed
        return {
            "enabled": window.enabled,
            "requests": used,
            "limit": window.limit,
            "available": window.enabled and used < window.limit,
            "reset_in": round(reset_in, 3)
        }
