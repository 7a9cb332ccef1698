"""
Subscription hub for Market Data Aggregator.
Maps symbols to delivery handles and pushes normalized quotes to them.
"""

import asyncio
import inspect
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Union

from ..core.clock import Clock, SystemClock
from ..core.logging_config import create_logger
from ..models import Quote

logger = create_logger(__name__)

# A handle is any callable taking a Quote; coroutine functions are awaited
DeliveryHandle = Callable[[Quote], Union[None, Awaitable[None]]]


@dataclass(frozen=True)
class Subscription:
    """One handle subscribed to one symbol."""
    symbol: str
    handle: DeliveryHandle = field(compare=False)
    created_at: Optional[datetime] = field(default=None, compare=False)


class SubscriptionHub:
    """
    Owns the symbol -> subscribers mapping.

    Mutations replace the per-symbol mapping instead of editing it, so a publish
    iterates a stable snapshot. Publishes for one symbol are serialized, which
    keeps delivery in publish order per symbol.

    ``enqueue`` hands a quote to a per-symbol worker task and returns at once,
    so producers never wait on slow subscribers.
    """

    def __init__(self, clock: Optional[Clock] = None, delivery_timeout: Optional[float] = 10.0):
        self.clock = clock or SystemClock()
        self.delivery_timeout = delivery_timeout
        self._subscriptions: Dict[str, Dict[Any, Subscription]] = {}
        self._publish_locks: Dict[str, asyncio.Lock] = {}
        self._pending: Dict[str, Deque[Quote]] = {}
        self._workers: Dict[str, asyncio.Task] = {}

    def subscribe(self, symbol: str, handle: DeliveryHandle) -> Subscription:
        symbol = symbol.strip().upper()
        current = self._subscriptions.get(symbol, {})
        existing = current.get(handle)
        if existing is not None:
            return existing

        subscription = Subscription(symbol=symbol, handle=handle, created_at=self.clock.now())
        updated = dict(current)
        updated[handle] = subscription
        self._subscriptions[symbol] = updated

        logger.info("Subscriber added", extra={
            "symbol": symbol,
            "subscribers": len(updated)
        })
        return subscription

    def unsubscribe(self, symbol: str, handle: DeliveryHandle) -> bool:
        symbol = symbol.strip().upper()
        current = self._subscriptions.get(symbol)
        if not current or handle not in current:
            return False

        updated = {key: sub for key, sub in current.items() if key != handle}
        if updated:
            self._subscriptions[symbol] = updated
        else:
            del self._subscriptions[symbol]
            lock = self._publish_locks.get(symbol)
            # A held lock still orders an in-progress publish and its waiters
            if lock is not None and not lock.locked():
                del self._publish_locks[symbol]

        logger.info("Subscriber removed", extra={
            "symbol": symbol,
            "subscribers": len(updated)
        })
        return True

    def unsubscribe_all(self, handle: DeliveryHandle) -> int:
        """Remove a handle from every symbol. Returns the number of subscriptions removed."""
        symbols = [symbol for symbol, subs in self._subscriptions.items() if handle in subs]
        for symbol in symbols:
            self.unsubscribe(symbol, handle)
        return len(symbols)

    def active_symbols(self) -> List[str]:
        return list(self._subscriptions)

    def subscribers(self, symbol: str) -> List[Subscription]:
        return list(self._subscriptions.get(symbol.strip().upper(), {}).values())

    def enqueue(self, symbol: str, quote: Quote) -> bool:
        """
        Queue a quote for background delivery to the symbol's subscribers.

        Returns False when nobody is subscribed and the quote was dropped.
        """
        symbol = symbol.strip().upper()
        if symbol not in self._subscriptions:
            return False

        self._pending.setdefault(symbol, deque()).append(quote)
        worker = self._workers.get(symbol)
        if worker is None or worker.done():
            self._workers[symbol] = asyncio.create_task(self._drain_symbol(symbol))
        return True

    async def _drain_symbol(self, symbol: str) -> None:
        pending = self._pending[symbol]
        try:
            while pending:
                await self.publish(symbol, pending.popleft())
        finally:
            if self._workers.get(symbol) is asyncio.current_task():
                del self._workers[symbol]
            if not pending and self._pending.get(symbol) is pending:
                del self._pending[symbol]

    async def drain(self) -> None:
        """Wait until every queued quote has been delivered."""
        while True:
            workers = [worker for worker in self._workers.values() if not worker.done()]
            if not workers:
                return
            await asyncio.gather(*workers, return_exceptions=True)

    async def close(self) -> None:
        """Cancel delivery workers and drop undelivered quotes."""
        workers = list(self._workers.values())
        for worker in workers:
            worker.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)
        self._workers.clear()
        self._pending.clear()

    async def publish(self, symbol: str, quote: Quote) -> int:
        """
        Deliver a quote to every subscriber of the symbol concurrently.

        A failing handle is logged and does not affect its peers.

        Returns:
            Number of successful deliveries
        """
        symbol = symbol.strip().upper()
        if symbol not in self._subscriptions:
            return 0

        lock = self._publish_locks.setdefault(symbol, asyncio.Lock())
        async with lock:
            snapshot = list(self._subscriptions.get(symbol, {}).values())
            if not snapshot:
                return 0

            results = await asyncio.gather(
                *(self._deliver(subscription, quote) for subscription in snapshot),
                return_exceptions=True
            )

        delivered = 0
        for subscription, result in zip(snapshot, results):
            if isinstance(result, BaseException):
                logger.warning("Delivery to subscriber failed", extra={
                    "symbol": symbol,
                    "error": repr(result)
                })
            else:
                delivered += 1
        return delivered

    async def _deliver(self, subscription: Subscription, quote: Quote) -> None:
        outcome = subscription.handle(quote)
        if inspect.isawaitable(outcome):
            if self.delivery_timeout is not None:
                await asyncio.wait_for(outcome, timeout=self.delivery_timeout)
            else:
                await outcome

    def stats(self) -> Dict[str, int]:
        return {
            "active": len(self._subscriptions),
            "total_subscribers": sum(len(subs) for subs in self._subscriptions.values()),
            "pending_deliveries": sum(len(queue) for queue in self._pending.values())
        }
