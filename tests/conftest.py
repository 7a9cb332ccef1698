"""Shared pytest fixtures for market-data-aggregator."""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Union

import httpx
import pytest

from market_data_aggregator.core.clock import Clock
from market_data_aggregator.core.config import Settings, load_settings
from market_data_aggregator.models import DataProvider, FetchedAt, Quote
from market_data_aggregator.services.data_aggregator import MarketDataAggregator
from market_data_aggregator.services.http_fetcher import (
    FetchConnectionError, FetchError, FetchResponse, NonOKStatusError
)

T0 = datetime(2024, 6, 3, 14, 30, 0, tzinfo=timezone.utc)

ALPHA_VANTAGE = "alphavantage.co"
FINNHUB = "finnhub.io"
POLYGON = "polygon.io"


class FakeClock(Clock):
    """Deterministic clock; sleep advances time instead of waiting."""

    def __init__(self, wall: datetime = T0, monotonic: float = 1000.0):
        self._wall = wall
        self._monotonic = monotonic
        self.sleeps: List[float] = []

    def monotonic(self) -> float:
        return self._monotonic

    def now(self) -> datetime:
        return self._wall

    def advance(self, seconds: float) -> None:
        self._monotonic += seconds
        self._wall += timedelta(seconds=seconds)

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)
        await asyncio.sleep(0)


Handler = Union[str, FetchError, Callable[[str], str]]


class StubFetcher:
    """
    Fetcher double routing by URL fragment; the longest matching fragment wins.

    A route is a body string, a callable building the body from the URL, or a
    FetchError to raise. Set `gate` to hold every fetch until the event is set.
    """

    def __init__(self):
        self.routes: Dict[str, tuple] = {}
        self.calls: List[str] = []
        self.gate: Optional[asyncio.Event] = None

    def add(self, fragment: str, handler: Handler, status: int = 200) -> None:
        self.routes[fragment] = (status, handler)

    def calls_to(self, fragment: str) -> List[str]:
        return [url for url in self.calls if fragment in url]

    async def fetch(self, url: str, timeout: Optional[float] = None) -> FetchResponse:
        self.calls.append(url)
        if self.gate is not None:
            await self.gate.wait()

        matches = [fragment for fragment in self.routes if fragment in url]
        if not matches:
            raise FetchConnectionError("No route configured", url)

        status, handler = self.routes[max(matches, key=len)]
        if isinstance(handler, FetchError):
            raise handler
        body = handler(url) if callable(handler) else handler
        if not 200 <= status < 300:
            raise NonOKStatusError(f"Upstream returned HTTP {status}", url, status, body)
        return FetchResponse(status=status, body=body)


def query_param(url: str, name: str) -> Optional[str]:
    return httpx.URL(url).params.get(name)


def alpha_vantage_quote_body(
    price: float = 230.0,
    change: float = 1.2,
    change_percent: float = 0.52,
    volume: int = 50_000_000,
    open_price: float = 229.0,
    high: float = 231.0,
    low: float = 228.5,
    previous_close: float = 228.8,
    symbol: str = "AAPL"
) -> str:
    return json.dumps({
        "Global Quote": {
            "01. symbol": symbol,
            "02. open": f"{open_price:.4f}",
            "03. high": f"{high:.4f}",
            "04. low": f"{low:.4f}",
            "05. price": f"{price:.4f}",
            "06. volume": str(volume),
            "07. latest trading day": "2024-06-03",
            "08. previous close": f"{previous_close:.4f}",
            "09. change": f"{change:.4f}",
            "10. change percent": f"{change_percent:.4f}%",
        }
    })


def finnhub_quote_body(c: float = 101.5, d: float = 0.25, dp: float = 0.25, v: int = 1200, t: Optional[int] = None) -> str:
    payload = {"c": c, "d": d, "dp": dp, "v": v, "h": 0, "l": 0, "o": 0, "pc": 0}
    if t is not None:
        payload["t"] = t
    return json.dumps(payload)


def polygon_bar_body(o: float = 100.0, h: float = 104.0, l: float = 99.0, c: float = 103.0, v: int = 5000) -> str:
    return json.dumps({
        "ticker": "AAPL",
        "status": "OK",
        "resultsCount": 1,
        "results": [{"T": "AAPL", "o": o, "h": h, "l": l, "c": c, "v": v, "t": 1717372800000}],
    })


def make_quote(
    symbol: str = "AAPL",
    price: float = 230.0,
    clock: Optional[FakeClock] = None,
    source: DataProvider = DataProvider.ALPHA_VANTAGE,
    **kwargs
) -> Quote:
    clock = clock or FakeClock()
    return Quote(
        symbol=symbol,
        price=price,
        source=source,
        fetched_at=FetchedAt(monotonic=clock.monotonic(), wall=clock.now()),
        **kwargs
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fetcher() -> StubFetcher:
    return StubFetcher()


@pytest.fixture
def settings() -> Settings:
    return load_settings({
        "alpha_vantage_api_key": "av-test-key",
        "finnhub_api_key": "fh-test-key",
        "polygon_api_key": "pg-test-key",
        "log_format": "text",
    })


@pytest.fixture
def aggregator(settings: Settings, fetcher: StubFetcher, clock: FakeClock) -> MarketDataAggregator:
    return MarketDataAggregator(settings, fetcher, clock)
