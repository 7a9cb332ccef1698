"""
Data aggregator service for Market Data Aggregator.
Orchestrates cache lookups, single-flight admission, the provider cascade and
the ingestion path into the cache, the history store and the subscription hub.
Also runs the background poll and cleanup loops.
"""

import asyncio
import re
from datetime import datetime
from typing import (
    Any, Awaitable, Callable, Dict, Hashable, Iterable, List, Optional, Sequence, Tuple, Union
)

from ..core.clock import Clock, SystemClock
from ..core.config import Settings
from ..core.logging_config import create_logger
from ..models import (
    OHLCV, BatchResult, CompanyProfile, DataProvider, Failure, FailureKind, FetchedAt,
    MarketOverview, MarketStatus, ParseResult, ProviderFailure, ProviderFailureKind, Quote,
    QuoteResult, SectorPerformance
)
from ..providers.alpha_vantage_provider import ALPHA_VANTAGE_URL, AlphaVantageAdapter
from ..providers.base import BaseQuoteAdapter, ProviderDescriptor
from ..providers.finnhub_provider import FINNHUB_QUOTE_URL, FinnhubAdapter
from ..providers.polygon_provider import POLYGON_PREV_URL, PolygonAdapter
from .cache import CacheLayer, CacheService
from .history import BUCKETS, PERIODS, HistoryStore
from .http_fetcher import FetchError, HttpFetcher, NonOKStatusError
from .normalizer import QuoteNormalizer
from .rate_limiter import RateLimiter
from .subscriptions import DeliveryHandle, Subscription, SubscriptionHub

logger = create_logger(__name__)

SYMBOL_PATTERN = re.compile(r"^\^?[A-Z0-9][A-Z0-9.\-=/:]*$")
MAX_SYMBOL_LENGTH = 20

INDICES_CACHE_KEY = "indices"
SECTORS_CACHE_KEY = "sectors"

POPULAR_SYMBOLS = [
    'AAPL', 'GOOGL', 'MSFT', 'AMZN', 'TSLA', 'META', 'NVDA', 'NFLX',
    'JPM', 'JNJ', 'PG', 'UNH', 'HD', 'MA', 'V', 'PYPL'
]

ADAPTER_CLASSES = {
    DataProvider.ALPHA_VANTAGE: (AlphaVantageAdapter, ALPHA_VANTAGE_URL),
    DataProvider.FINNHUB: (FinnhubAdapter, FINNHUB_QUOTE_URL),
    DataProvider.POLYGON: (PolygonAdapter, POLYGON_PREV_URL),
}


def create_adapters(settings: Settings) -> List[BaseQuoteAdapter]:
    """Build one adapter per provider, ranked by the configured cascade order."""
    priority = settings.get_provider_priority()
    ranked = priority + [provider for provider in DataProvider if provider not in priority]

    adapters = []
    for rank, provider in enumerate(ranked):
        adapter_class, endpoint = ADAPTER_CLASSES[provider]
        descriptor = ProviderDescriptor(
            tag=provider,
            rate_limit=settings.get_rate_limit(provider),
            window_seconds=settings.rate_limit_window_seconds,
            priority=rank,
            endpoint_template=endpoint,
            api_key=settings.get_api_key(provider)
        )
        adapters.append(adapter_class(descriptor))
    return adapters


def derive_market_status(indices: Iterable[Quote]) -> MarketStatus:
    """Majority sign of the indices' percent change."""
    changes = [quote.change_percent for quote in indices]
    positive = sum(1 for change in changes if change > 0)
    negative = sum(1 for change in changes if change < 0)

    if positive > negative:
        return MarketStatus.BULLISH
    if negative > positive:
        return MarketStatus.BEARISH
    return MarketStatus.MIXED


class MarketDataAggregator:
    """Single entry point for quotes, market data, history and subscriptions."""

    def __init__(
        self,
        settings: Settings,
        fetcher: HttpFetcher,
        clock: Optional[Clock] = None,
        adapters: Optional[Sequence[BaseQuoteAdapter]] = None,
        cache: Optional[CacheService] = None,
        history: Optional[HistoryStore] = None,
        hub: Optional[SubscriptionHub] = None
    ):
        self.settings = settings
        self.clock = clock or SystemClock()
        self._fetcher = fetcher
        self._cache = cache or CacheService.from_settings(self.clock, settings)
        self.history = history or HistoryStore(self.clock, settings.history_max_length)
        self.hub = hub or SubscriptionHub(self.clock)
        self._normalizer = QuoteNormalizer(self.clock, settings.freshness_window_seconds)

        adapters = list(adapters) if adapters is not None else create_adapters(settings)
        self._adapters: Dict[DataProvider, BaseQuoteAdapter] = {
            adapter.provider: adapter for adapter in adapters
        }
        cascade_order = settings.get_provider_priority()
        self._cascade: List[BaseQuoteAdapter] = sorted(
            (adapter for adapter in adapters if adapter.provider in cascade_order),
            key=lambda adapter: adapter.descriptor.priority
        )

        self._rate_limiter = RateLimiter(self.clock)
        for adapter in adapters:
            descriptor = adapter.descriptor
            self._rate_limiter.register(
                descriptor.tag,
                limit=descriptor.rate_limit,
                window_length=descriptor.window_seconds,
                enabled=descriptor.enabled
            )
            if not descriptor.enabled:
                logger.warning("Provider disabled: no API key configured", extra={
                    "provider": descriptor.tag.value
                })

        self._in_flight: Dict[Hashable, asyncio.Future] = {}
        self._running_tasks: List[asyncio.Task] = []
        self._shutdown_event = asyncio.Event()
        self._last_quote_poll: Optional[datetime] = None
        self._last_index_poll: Optional[datetime] = None
        self._last_cache_cleanup: Optional[datetime] = None

    @property
    def cache(self) -> CacheService:
        return self._cache

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._rate_limiter

    # Public operations

    async def get_quote(self, symbol: str, timeout: Optional[float] = None) -> QuoteResult:
        """
        Get a quote, from cache when fresh, otherwise through the provider cascade.

        Args:
            symbol: Ticker, case-insensitive
            timeout: Deadline in seconds, defaults to operation_deadline

        Returns:
            Quote, or Failure (unavailable, not_found, invalid_request, cancelled)
        """
        canonical = self._canonical_symbol(symbol)
        if isinstance(canonical, Failure):
            return canonical
        return await self._with_deadline(self._get_quote(canonical), timeout, canonical)

    async def get_batch(
        self,
        symbols: Sequence[str],
        timeout: Optional[float] = None
    ) -> Union[BatchResult, Failure]:
        """
        Get quotes for up to batch_limit symbols concurrently.

        Each entry fails independently; only an empty or oversized request
        fails as a whole.
        """
        if not symbols:
            return Failure(kind=FailureKind.INVALID_REQUEST, reason="At least one symbol is required")
        if len(symbols) > self.settings.batch_limit:
            return Failure(
                kind=FailureKind.INVALID_REQUEST,
                reason=f"Maximum {self.settings.batch_limit} symbols allowed per request"
            )

        results: BatchResult = {}
        pending: List[str] = []
        for symbol in symbols:
            canonical = self._canonical_symbol(symbol)
            if isinstance(canonical, Failure):
                results[str(symbol)] = canonical
            elif canonical not in pending:
                pending.append(canonical)

        quotes = await self._bounded_gather(
            [
                lambda s=symbol: self._with_deadline(self._get_quote(s), timeout, s)
                for symbol in pending
            ],
            self.settings.batch_concurrency
        )
        results.update(zip(pending, quotes))

        logger.info("Batch quotes completed", extra={
            "requested": len(symbols),
            "successful": sum(1 for result in results.values() if isinstance(result, Quote))
        })
        return results

    async def get_indices(self, timeout: Optional[float] = None) -> Union[Dict[str, Quote], Failure]:
        """Get quotes for the configured index symbols, spaced to avoid bursts."""
        return await self._with_deadline(self._get_indices(), timeout, None)

    async def get_company(
        self,
        symbol: str,
        timeout: Optional[float] = None
    ) -> Union[CompanyProfile, Failure]:
        """Get a company profile from provider A."""
        canonical = self._canonical_symbol(symbol)
        if isinstance(canonical, Failure):
            return canonical
        return await self._with_deadline(self._get_company(canonical), timeout, canonical)

    async def get_sector_performance(
        self,
        timeout: Optional[float] = None
    ) -> Union[List[SectorPerformance], Failure]:
        """Get real-time sector performance from provider A."""
        return await self._with_deadline(self._get_sectors(), timeout, None)

    async def get_overview(self, timeout: Optional[float] = None) -> MarketOverview:
        """Indices and sectors fetched together, plus the derived market status."""
        indices, sectors = await asyncio.gather(
            self.get_indices(timeout),
            self.get_sector_performance(timeout)
        )
        if isinstance(indices, Failure):
            logger.warning("Overview built without indices", extra={"error": indices.reason})
            indices = {}
        if isinstance(sectors, Failure):
            logger.warning("Overview built without sectors", extra={"error": sectors.reason})
            sectors = []

        return MarketOverview(
            indices=indices,
            sectors=sectors,
            status=derive_market_status(indices.values()),
            total_indices=len(indices),
            total_sectors=len(sectors),
            timestamp=self.clock.now()
        )

    def get_history(
        self,
        symbol: str,
        period: str = "1d",
        limit: Optional[int] = None
    ) -> Union[List[Quote], Failure]:
        """Stored quotes for the symbol within the period, oldest first."""
        canonical = self._canonical_symbol(symbol)
        if isinstance(canonical, Failure):
            return canonical
        if period not in PERIODS:
            return Failure(
                kind=FailureKind.INVALID_REQUEST,
                reason=f"period must be one of: {', '.join(PERIODS)}",
                symbol=canonical
            )
        return self.history.range(canonical, period, limit)

    def get_aggregated(
        self,
        symbol: str,
        period: str = "1d",
        bucket: str = "1h"
    ) -> Union[List[OHLCV], Failure]:
        """OHLCV buckets for the symbol, cached per (symbol, period, bucket)."""
        canonical = self._canonical_symbol(symbol)
        if isinstance(canonical, Failure):
            return canonical
        if period not in PERIODS or bucket not in BUCKETS:
            return Failure(
                kind=FailureKind.INVALID_REQUEST,
                reason=(
                    f"period must be one of: {', '.join(PERIODS)}; "
                    f"bucket must be one of: {', '.join(BUCKETS)}"
                ),
                symbol=canonical
            )

        key = (canonical, period, bucket)
        version = self.history.version(canonical)
        cached = self._cache.get(CacheLayer.AGGREGATED, key)
        if cached is not None and cached[0] == version:
            return list(cached[1])

        points = self.history.bucketize(canonical, period, bucket)
        self._cache.put(CacheLayer.AGGREGATED, key, (version, tuple(points)))
        return points

    def search(self, query: str, limit: int = 10) -> Union[List[str], Failure]:
        """Match a query against the popular symbol list."""
        if not query or len(query.strip()) < 2:
            return Failure(
                kind=FailureKind.INVALID_REQUEST,
                reason="Please provide a search term (minimum 2 characters)"
            )
        needle = query.strip().upper()
        return [symbol for symbol in POPULAR_SYMBOLS if needle in symbol][:max(limit, 0)]

    def validate_quote(self, quote: Quote) -> Dict[str, Any]:
        """Run the normalizer over a caller-supplied quote and report violations."""
        return self._normalizer.validate(quote)

    def subscribe(self, symbol: str, handle: DeliveryHandle) -> Union[Subscription, Failure]:
        canonical = self._canonical_symbol(symbol)
        if isinstance(canonical, Failure):
            return canonical
        return self.hub.subscribe(canonical, handle)

    def unsubscribe(self, symbol: str, handle: DeliveryHandle) -> bool:
        canonical = self._canonical_symbol(symbol)
        if isinstance(canonical, Failure):
            return False
        return self.hub.unsubscribe(canonical, handle)

    def cleanup_cache(self) -> int:
        """Idle hook: sweep expired cache entries."""
        removed = self._cache.cleanup()
        self._last_cache_cleanup = self.clock.now()
        return removed

    def get_service_status(self) -> Dict[str, Any]:
        """Rate limit, cache, history and subscription state."""
        return {
            "providers": {
                provider.value: self._rate_limiter.status(provider)
                for provider in self._rate_limiter.providers
            },
            "cascade": [adapter.provider.value for adapter in self._cascade],
            "cache": self._cache.stats(),
            "history": self.history.stats(),
            "subscriptions": self.hub.stats(),
            "in_flight": len(self._in_flight),
            "background_tasks_running": self.are_background_tasks_running(),
            "last_updates": self.get_last_update_times(),
            "timestamp": self.clock.now()
        }

    # Single-flight and deadlines

    async def _with_deadline(self, operation: Awaitable[Any], timeout: Optional[float], symbol: Optional[str]):
        deadline = timeout if timeout is not None else self.settings.operation_deadline
        try:
            return await asyncio.wait_for(operation, timeout=deadline)
        except asyncio.TimeoutError:
            logger.warning("Operation deadline exceeded", extra={
                "symbol": symbol,
                "deadline": deadline
            })
            return Failure(
                kind=FailureKind.CANCELLED,
                reason=f"Deadline of {deadline}s exceeded",
                symbol=symbol
            )

    async def _single_flight(self, key: Hashable, operation: Callable[[], Awaitable[Any]]) -> Any:
        """
        Run operation once per key; concurrent callers await the same future.

        There is no await between the lookup and the install, so the check and
        the registration are atomic on the event loop.
        """
        existing = self._in_flight.get(key)
        if existing is not None:
            # Shielded so a waiter's own deadline does not cancel the shared result
            return await asyncio.shield(existing)

        future = asyncio.get_running_loop().create_future()
        self._in_flight[key] = future
        try:
            result = await operation()
        except asyncio.CancelledError:
            if not future.done():
                future.set_result(Failure(
                    kind=FailureKind.CANCELLED,
                    reason="Request was cancelled before completion",
                    symbol=key[1] if isinstance(key, tuple) else None
                ))
            raise
        except Exception as e:
            if not future.done():
                future.set_exception(e)
                # Mark retrieved; waiters, if any, still see the exception
                future.exception()
            raise
        else:
            future.set_result(result)
            return result
        finally:
            if self._in_flight.get(key) is future:
                del self._in_flight[key]

    async def _bounded_gather(self, operations: List[Callable[[], Awaitable[Any]]], limit: int) -> List[Any]:
        if not operations:
            return []
        semaphore = asyncio.Semaphore(max(1, min(limit, len(operations))))

        async def run(operation):
            async with semaphore:
                return await operation()

        return await asyncio.gather(*(run(operation) for operation in operations))

    # Quotes

    async def _get_quote(self, symbol: str) -> QuoteResult:
        cached = self._cache.get(CacheLayer.QUOTE, symbol)
        if cached is not None:
            logger.debug("Cache hit for quote", extra={"symbol": symbol})
            return cached

        result = await self._single_flight((CacheLayer.QUOTE, symbol), lambda: self._cascade_quote(symbol))
        return result

    async def _cascade_quote(self, symbol: str) -> QuoteResult:
        attempted: List[DataProvider] = []
        reasons: List[str] = []

        for adapter in self._cascade:
            provider = adapter.provider
            decision = await self._rate_limiter.try_acquire(provider)
            if not decision.admitted:
                reasons.append(
                    f"{provider.value}: rate limited" if adapter.descriptor.enabled
                    else f"{provider.value}: disabled"
                )
                continue

            attempted.append(provider)
            outcome = await self._attempt_quote(adapter, symbol)

            if isinstance(outcome, Quote):
                self._ingest(outcome)
                logger.info("Quote fetched", extra={
                    "symbol": symbol,
                    "provider": provider.value,
                    "price": outcome.price
                })
                return outcome

            if outcome.kind == ProviderFailureKind.SYMBOL_UNKNOWN:
                logger.info("Symbol unknown to provider", extra={
                    "symbol": symbol,
                    "provider": provider.value
                })
                return Failure(
                    kind=FailureKind.NOT_FOUND,
                    reason=outcome.reason,
                    symbol=symbol,
                    providers_attempted=attempted
                )

            logger.warning("Provider failed, trying next provider", extra={
                "symbol": symbol,
                "provider": provider.value,
                "failure": outcome.kind.value,
                "error": outcome.reason
            })
            reasons.append(f"{provider.value}: {outcome.reason}")

        logger.warning("All providers failed", extra={
            "symbol": symbol,
            "attempted": [provider.value for provider in attempted]
        })
        return Failure(
            kind=FailureKind.UNAVAILABLE,
            reason="All providers failed or were rate-limited (" + "; ".join(reasons) + ")",
            symbol=symbol,
            providers_attempted=attempted
        )

    async def _fetch(self, provider: DataProvider, url: str) -> Union[Tuple[int, str], ProviderFailure]:
        try:
            response = await self._fetcher.fetch(url, timeout=self.settings.request_timeout)
        except NonOKStatusError as e:
            return e.status, e.body
        except FetchError as e:
            return ProviderFailure(
                kind=ProviderFailureKind.TRANSIENT,
                reason=f"{type(e).__name__}: {e.message}",
                provider=provider
            )
        return response.status, response.body

    async def _attempt_quote(self, adapter: BaseQuoteAdapter, symbol: str) -> ParseResult:
        fetched = await self._fetch(adapter.provider, adapter.build_request(symbol))
        if isinstance(fetched, ProviderFailure):
            return fetched

        status, body = fetched
        fetched_at = FetchedAt(monotonic=self.clock.monotonic(), wall=self.clock.now())
        parsed = adapter.parse(body, status, symbol, fetched_at)
        if isinstance(parsed, ProviderFailure):
            return parsed
        return self._normalizer.normalize(parsed, same_session=adapter.same_session)

    def _ingest(self, quote: Quote) -> None:
        """Cache and record a freshly normalized quote, then queue it for subscribers."""
        self._cache.put(CacheLayer.QUOTE, quote.symbol, quote, version=quote.fetched_at.monotonic)
        if self.history.append(quote):
            self.hub.enqueue(quote.symbol, quote)

    # Indices, company, sectors

    async def _get_indices(self) -> Union[Dict[str, Quote], Failure]:
        cached = self._cache.get(CacheLayer.INDEX, INDICES_CACHE_KEY)
        if cached is not None:
            return dict(cached)

        results = await self._fetch_index_quotes(self.settings.get_index_symbols_list())
        if not results:
            return Failure(kind=FailureKind.UNAVAILABLE, reason="No index quotes available")

        self._cache.put(CacheLayer.INDEX, INDICES_CACHE_KEY, dict(results))
        return results

    async def _fetch_index_quotes(self, symbols: List[str]) -> Dict[str, Quote]:
        results: Dict[str, Quote] = {}
        for position, symbol in enumerate(symbols):
            if position:
                await self.clock.sleep(self.settings.index_request_spacing)

            result = await self._get_quote(symbol)
            if isinstance(result, Quote):
                results[symbol] = result
            else:
                logger.warning("Failed to get index", extra={
                    "symbol": symbol,
                    "error": result.reason
                })
        return results

    def _provider_a(self) -> Optional[AlphaVantageAdapter]:
        adapter = self._adapters.get(DataProvider.ALPHA_VANTAGE)
        return adapter if isinstance(adapter, AlphaVantageAdapter) else None

    async def _get_company(self, symbol: str) -> Union[CompanyProfile, Failure]:
        cached = self._cache.get(CacheLayer.COMPANY, symbol)
        if cached is not None:
            return cached
        return await self._single_flight((CacheLayer.COMPANY, symbol), lambda: self._fetch_company(symbol))

    async def _fetch_company(self, symbol: str) -> Union[CompanyProfile, Failure]:
        adapter = self._provider_a()
        unavailable = self._admission_failure(adapter, symbol)
        if unavailable is not None:
            return unavailable
        if not (await self._rate_limiter.try_acquire(adapter.provider)).admitted:
            return self._unavailable(adapter.provider, "rate limited", symbol, attempted=False)

        fetched = await self._fetch(adapter.provider, adapter.build_company_request(symbol))
        parsed = fetched if isinstance(fetched, ProviderFailure) else adapter.parse_company(
            fetched[1], fetched[0], symbol, self.clock.now()
        )

        if isinstance(parsed, ProviderFailure):
            if parsed.kind == ProviderFailureKind.SYMBOL_UNKNOWN:
                return Failure(
                    kind=FailureKind.NOT_FOUND,
                    reason=f"Company information not found: {parsed.reason}",
                    symbol=symbol,
                    providers_attempted=[adapter.provider]
                )
            logger.warning("Failed to get company info", extra={
                "symbol": symbol,
                "provider": adapter.provider.value,
                "error": parsed.reason
            })
            return self._unavailable(adapter.provider, parsed.reason, symbol)

        self._cache.put(CacheLayer.COMPANY, symbol, parsed)
        return parsed

    async def _get_sectors(self) -> Union[List[SectorPerformance], Failure]:
        cached = self._cache.get(CacheLayer.MARKET, SECTORS_CACHE_KEY)
        if cached is not None:
            return list(cached)
        return await self._single_flight((CacheLayer.MARKET, SECTORS_CACHE_KEY), self._fetch_sectors)

    async def _fetch_sectors(self) -> Union[List[SectorPerformance], Failure]:
        adapter = self._provider_a()
        unavailable = self._admission_failure(adapter, None)
        if unavailable is not None:
            return unavailable
        if not (await self._rate_limiter.try_acquire(adapter.provider)).admitted:
            return self._unavailable(adapter.provider, "rate limited", None, attempted=False)

        fetched = await self._fetch(adapter.provider, adapter.build_sector_request())
        parsed = fetched if isinstance(fetched, ProviderFailure) else adapter.parse_sectors(
            fetched[1], fetched[0]
        )

        if isinstance(parsed, ProviderFailure):
            logger.warning("Failed to get sector performance", extra={
                "provider": adapter.provider.value,
                "error": parsed.reason
            })
            return self._unavailable(adapter.provider, parsed.reason, None)

        self._cache.put(CacheLayer.MARKET, SECTORS_CACHE_KEY, tuple(parsed))
        return parsed

    def _admission_failure(self, adapter: Optional[BaseQuoteAdapter], symbol: Optional[str]) -> Optional[Failure]:
        if adapter is None:
            return Failure(
                kind=FailureKind.UNAVAILABLE,
                reason="alpha_vantage adapter is not configured",
                symbol=symbol
            )
        if not adapter.descriptor.enabled:
            return self._unavailable(adapter.provider, "disabled", symbol, attempted=False)
        return None

    @staticmethod
    def _unavailable(
        provider: DataProvider,
        reason: str,
        symbol: Optional[str],
        attempted: bool = True
    ) -> Failure:
        return Failure(
            kind=FailureKind.UNAVAILABLE,
            reason=f"{provider.value}: {reason}",
            symbol=symbol,
            providers_attempted=[provider] if attempted else []
        )

    def _canonical_symbol(self, symbol: Any) -> Union[str, Failure]:
        if not isinstance(symbol, str) or not symbol.strip():
            return Failure(kind=FailureKind.INVALID_REQUEST, reason="Symbol cannot be empty")

        canonical = symbol.strip().upper()
        if len(canonical) > MAX_SYMBOL_LENGTH or not SYMBOL_PATTERN.match(canonical):
            return Failure(
                kind=FailureKind.INVALID_REQUEST,
                reason=f"Invalid symbol: {symbol!r}",
                symbol=canonical[:MAX_SYMBOL_LENGTH]
            )
        return canonical

    # Background tasks

    async def start_background_tasks(self) -> None:
        """Start the quote poller, the index poller and the cache cleanup loop."""
        logger.info("Starting background tasks")
        self._shutdown_event.clear()

        self._running_tasks.append(asyncio.create_task(
            self._run_loop("quote_poll", self.settings.quote_poll_interval, self.poll_quotes_once)
        ))
        self._running_tasks.append(asyncio.create_task(
            self._run_loop("index_poll", self.settings.index_poll_interval, self.poll_indices_once)
        ))
        self._running_tasks.append(asyncio.create_task(
            self._run_loop("cache_cleanup", self.settings.cache_cleanup_interval, self._cleanup_once)
        ))

        logger.info("Background tasks started", extra={
            "tasks": len(self._running_tasks)
        })

    async def shutdown(self) -> None:
        """Stop background tasks."""
        logger.info("Shutting down data aggregator service")

        self._shutdown_event.set()

        for task in self._running_tasks:
            if not task.done():
                task.cancel()

        if self._running_tasks:
            await asyncio.gather(*self._running_tasks, return_exceptions=True)
        self._running_tasks.clear()
        await self.hub.close()

        logger.info("Data aggregator service shutdown complete")

    async def _run_loop(self, name: str, interval: float, job: Callable[[], Awaitable[Any]]) -> None:
        logger.info("Starting background loop", extra={
            "loop": name,
            "interval": interval
        })

        while not self._shutdown_event.is_set():
            try:
                await job()
            except Exception as e:
                logger.error("Error in background loop", extra={
                    "loop": name,
                    "error": str(e)
                })

            # Wait for next cycle
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                continue

    async def poll_quotes_once(self) -> int:
        """Refresh every subscribed non-index symbol. Returns the number of quotes obtained."""
        index_symbols = set(self.settings.get_index_symbols_list())
        symbols = [symbol for symbol in self.hub.active_symbols() if symbol not in index_symbols]
        if not symbols:
            return 0

        results = await self._bounded_gather(
            [
                lambda s=symbol: self._with_deadline(self._get_quote(s), None, s)
                for symbol in symbols
            ],
            self.settings.batch_concurrency
        )
        self._last_quote_poll = self.clock.now()

        received = sum(1 for result in results if isinstance(result, Quote))
        logger.info("Quote poll completed", extra={
            "symbols_requested": len(symbols),
            "quotes_received": received
        })
        return received

    async def poll_indices_once(self) -> int:
        """Refresh subscribed index symbols. Returns the number of quotes obtained."""
        active = set(self.hub.active_symbols())
        symbols = [symbol for symbol in self.settings.get_index_symbols_list() if symbol in active]
        if not symbols:
            return 0

        results = await self._fetch_index_quotes(symbols)
        self._last_index_poll = self.clock.now()
        logger.info("Index poll completed", extra={
            "symbols_requested": len(symbols),
            "quotes_received": len(results)
        })
        return len(results)

    async def _cleanup_once(self) -> int:
        return self.cleanup_cache()

    def get_last_update_times(self) -> Dict[str, Optional[datetime]]:
        """Get timestamps of last completed background cycles."""
        return {
            'quote_poll': self._last_quote_poll,
            'index_poll': self._last_index_poll,
            'cache_cleanup': self._last_cache_cleanup
        }

    def are_background_tasks_running(self) -> bool:
        """Check if background tasks are running."""
        if not self._running_tasks:
            return False
        return any(not task.done() for task in self._running_tasks)
