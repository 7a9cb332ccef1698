"""
In-memory quote history for Market Data Aggregator.
Keeps a bounded ring of normalized quotes per symbol, newest last, and derives
windowed reads and OHLCV buckets from it.
"""

from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Deque, Dict, List, Optional, Tuple

from ..core.clock import Clock
from ..core.logging_config import create_logger
from ..models import OHLCV, Quote

logger = create_logger(__name__)

PERIODS: Dict[str, Optional[timedelta]] = {
    "1h": timedelta(hours=1),
    "1d": timedelta(days=1),
    "1w": timedelta(weeks=1),
    "1m": timedelta(days=30),
    "all": None,
}

BUCKETS: Dict[str, int] = {
    "1m": 60,
    "5m": 5 * 60,
    "15m": 15 * 60,
    "1h": 60 * 60,
    "1d": 24 * 60 * 60,
}

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class HistoryRing:
    """Bounded FIFO of quotes for one symbol."""

    def __init__(self, maxlen: int):
        self._quotes: Deque[Quote] = deque(maxlen=maxlen)
        # Bumped on every append so derived series can detect staleness
        self.version = 0

    def __len__(self) -> int:
        return len(self._quotes)

    @property
    def last(self) -> Optional[Quote]:
        return self._quotes[-1] if self._quotes else None

    def append(self, quote: Quote) -> bool:
        last = self.last
        if last is not None and quote.fetched_at.wall < last.fetched_at.wall:
            return False
        self._quotes.append(quote)
        self.version += 1
        return True

    def snapshot(self) -> Tuple[Quote, ...]:
        return tuple(self._quotes)


def bucket_start(moment: datetime, bucket_seconds: int) -> datetime:
    """Floor a UTC time to the start of its bucket."""
    elapsed = int((moment - EPOCH).total_seconds())
    return EPOCH + timedelta(seconds=elapsed - elapsed % bucket_seconds)


def aggregate_bucket(start: datetime, quotes: List[Quote]) -> OHLCV:
    """Collapse the quotes of one bucket, oldest first, into an OHLCV point."""
    first = quotes[0].price
    last = quotes[-1].price
    highs = [q.price for q in quotes] + [q.high for q in quotes if q.high is not None]
    lows = [q.price for q in quotes] + [q.low for q in quotes if q.low is not None]
    change = last - first
    return OHLCV(
        timestamp=start,
        open=first,
        high=max(highs),
        low=min(lows),
        close=last,
        volume=sum(q.volume for q in quotes),
        change=round(change, 4),
        change_percent=round(change / first * 100, 2) if first else 0.0,
        data_points=len(quotes)
    )


class HistoryStore:
    """Per-symbol history rings, created on first write and kept for the process lifetime."""

    def __init__(self, clock: Clock, max_length: int = 1000):
        self._clock = clock
        self.max_length = max_length
        self._rings: Dict[str, HistoryRing] = {}

    def append(self, quote: Quote) -> bool:
        """
        Append a normalized quote.

        Returns:
            False if the quote is older than the newest stored one and was dropped
        """
        ring = self._rings.get(quote.symbol)
        if ring is None:
            ring = self._rings[quote.symbol] = HistoryRing(self.max_length)

        appended = ring.append(quote)
        if not appended:
            logger.debug("Dropped out-of-order history point", extra={"symbol": quote.symbol})
        return appended

    def version(self, symbol: str) -> int:
        ring = self._rings.get(symbol)
        return ring.version if ring else 0

    def range(self, symbol: str, period: str = "1d", limit: Optional[int] = None) -> List[Quote]:
        """
        Quotes of the symbol ingested within the period, oldest first.

        Raises:
            ValueError: Unknown period
        """
        if period not in PERIODS:
            raise ValueError(f"period must be one of: {', '.join(PERIODS)}")

        ring = self._rings.get(symbol)
        if ring is None:
            return []

        quotes = ring.snapshot()
        window = PERIODS[period]
        if window is not None:
            since = self._clock.now() - window
            quotes = tuple(q for q in quotes if q.fetched_at.wall >= since)

        if limit is not None:
            quotes = quotes[-limit:] if limit > 0 else ()
        return list(quotes)

    def bucketize(self, symbol: str, period: str = "1d", bucket: str = "1h") -> List[OHLCV]:
        """
        Aggregate the period's quotes into OHLCV buckets, oldest bucket first.

        Raises:
            ValueError: Unknown period or bucket
        """
        if bucket not in BUCKETS:
            raise ValueError(f"bucket must be one of: {', '.join(BUCKETS)}")

        bucket_seconds = BUCKETS[bucket]
        grouped: Dict[datetime, List[Quote]] = {}
        for quote in self.range(symbol, period):
            start = bucket_start(quote.fetched_at.wall, bucket_seconds)
            grouped.setdefault(start, []).append(quote)

        return [aggregate_bucket(start, quotes) for start, quotes in grouped.items()]

    def stats(self) -> Dict[str, int]:
        return {
            "symbols": len(self._rings),
            "total_data_points": sum(len(ring) for ring in self._rings.values())
        }
