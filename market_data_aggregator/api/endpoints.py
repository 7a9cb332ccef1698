"""
FastAPI endpoints for Market Data Aggregator Service.
Binds the aggregator operations to REST paths and a streaming channel.
"""

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from fastapi.requests import HTTPConnection
from pydantic import ValidationError

from ..core.logging_config import create_logger
from ..models import (
    CompanyProfile, Failure, FailureKind, FetchedAt, MarketOverview, Quote
)
from ..services.data_aggregator import MarketDataAggregator
from .schemas import (
    AggregatedHistoryResponse, BatchQuoteRequest, BatchQuoteResponse, CacheCleanupResponse,
    HealthResponse, HistoryResponse, IndicesResponse, QuoteValidationRequest,
    QuoteValidationResponse, SearchResponse, SectorListResponse, StreamMessage
)

logger = create_logger(__name__)

# Create API router
router = APIRouter()

FAILURE_STATUS_CODES = {
    FailureKind.UNAVAILABLE: 503,
    FailureKind.NOT_FOUND: 404,
    FailureKind.INVALID_REQUEST: 400,
    FailureKind.CANCELLED: 504,
}


class AggregatorFailure(Exception):
    """Carries a Failure out of a route; rendered by the application's handler."""

    def __init__(self, failure: Failure):
        self.failure = failure
        self.status_code = FAILURE_STATUS_CODES[failure.kind]
        super().__init__(failure.reason)


def get_aggregator(connection: HTTPConnection) -> MarketDataAggregator:
    return connection.app.state.aggregator


def unwrap(result):
    """Return a successful result, raising AggregatorFailure for a Failure."""
    if isinstance(result, Failure):
        raise AggregatorFailure(result)
    return result


@router.get("/health", response_model=HealthResponse)
async def health_check(connection: HTTPConnection, aggregator: MarketDataAggregator = Depends(get_aggregator)):
    """
    Health check endpoint.
    Healthy when at least one provider has credentials configured.
    """
    status = aggregator.get_service_status()
    providers_enabled = {
        provider: details["enabled"] for provider, details in status["providers"].items()
    }
    last_updates = [update for update in status["last_updates"].values() if update is not None]

    started_at: datetime = connection.app.state.started_at
    return HealthResponse(
        status="healthy" if any(providers_enabled.values()) else "unhealthy",
        version=aggregator.settings.app_version,
        uptime_seconds=(datetime.now(timezone.utc) - started_at).total_seconds(),
        providers_enabled=providers_enabled,
        background_tasks_running=status["background_tasks_running"],
        last_data_update=max(last_updates) if last_updates else None
    )


@router.get("/v1/status")
async def get_service_status(aggregator: MarketDataAggregator = Depends(get_aggregator)):
    """Rate limit, cache, history and subscription state."""
    return aggregator.get_service_status()


@router.get("/v1/quotes/{symbol}", response_model=Quote)
async def get_quote(symbol: str, aggregator: MarketDataAggregator = Depends(get_aggregator)):
    """
    Get a quote for a single symbol.

    Args:
        symbol: Symbol to get quote for (e.g., "AAPL", "^GSPC")

    Returns:
        Quote for the requested symbol
    """
    logger.info("Single quote request received", extra={"symbol": symbol})
    return unwrap(await aggregator.get_quote(symbol))


@router.post("/v1/quotes/batch", response_model=BatchQuoteResponse)
async def get_batch_quotes(
    request: BatchQuoteRequest,
    aggregator: MarketDataAggregator = Depends(get_aggregator)
):
    """
    Get quotes for several symbols at once.

    Symbols that fail are reported under errors; the request itself fails
    only when it is empty or exceeds the batch limit.
    """
    logger.info("Batch quote request received", extra={
        "symbols": request.symbols,
        "count": len(request.symbols)
    })
    results = unwrap(await aggregator.get_batch(request.symbols))

    quotes = {symbol: result for symbol, result in results.items() if isinstance(result, Quote)}
    errors = {symbol: result for symbol, result in results.items() if isinstance(result, Failure)}
    return BatchQuoteResponse(
        quotes=quotes,
        errors=errors,
        total=len(results),
        successful=len(quotes)
    )


@router.get("/v1/indices", response_model=IndicesResponse)
async def get_indices(aggregator: MarketDataAggregator = Depends(get_aggregator)):
    """Get quotes for the tracked market indices."""
    indices = unwrap(await aggregator.get_indices())
    return IndicesResponse(indices=indices, total=len(indices))


@router.get("/v1/sectors", response_model=SectorListResponse)
async def get_sectors(aggregator: MarketDataAggregator = Depends(get_aggregator)):
    """Get real-time sector performance."""
    sectors = unwrap(await aggregator.get_sector_performance())
    return SectorListResponse(sectors=sectors, total=len(sectors))


@router.get("/v1/overview", response_model=MarketOverview)
async def get_overview(aggregator: MarketDataAggregator = Depends(get_aggregator)):
    """Get indices, sectors and the derived market status."""
    return await aggregator.get_overview()


@router.get("/v1/company/{symbol}", response_model=CompanyProfile)
async def get_company(symbol: str, aggregator: MarketDataAggregator = Depends(get_aggregator)):
    """Get company profile and fundamentals."""
    return unwrap(await aggregator.get_company(symbol))


@router.get("/v1/search", response_model=SearchResponse)
async def search_symbols(
    q: str = Query(..., description="Search term, at least 2 characters"),
    limit: int = Query(10, ge=1, le=50),
    aggregator: MarketDataAggregator = Depends(get_aggregator)
):
    """Search the popular symbol list."""
    results = unwrap(aggregator.search(q, limit))
    return SearchResponse(query=q, results=results, total=len(results))


@router.get("/v1/history/{symbol}", response_model=HistoryResponse)
async def get_history(
    symbol: str,
    period: str = Query("1d", description="One of 1h, 1d, 1w, 1m, all"),
    limit: Optional[int] = Query(None, ge=1),
    aggregator: MarketDataAggregator = Depends(get_aggregator)
):
    """Get stored quotes for a symbol within a period, oldest first."""
    data = unwrap(aggregator.get_history(symbol, period, limit))
    return HistoryResponse(symbol=symbol.strip().upper(), period=period, data=data, total=len(data))


@router.get("/v1/history/{symbol}/aggregated", response_model=AggregatedHistoryResponse)
async def get_aggregated_history(
    symbol: str,
    period: str = Query("1d", description="One of 1h, 1d, 1w, 1m, all"),
    bucket: str = Query("1h", description="One of 1m, 5m, 15m, 1h, 1d"),
    aggregator: MarketDataAggregator = Depends(get_aggregator)
):
    """Get OHLCV buckets built from stored quotes."""
    data = unwrap(aggregator.get_aggregated(symbol, period, bucket))
    return AggregatedHistoryResponse(
        symbol=symbol.strip().upper(),
        period=period,
        bucket=bucket,
        data=data,
        total=len(data)
    )


@router.post("/v1/validate", response_model=QuoteValidationResponse)
async def validate_quote(
    request: QuoteValidationRequest,
    aggregator: MarketDataAggregator = Depends(get_aggregator)
):
    """Run a caller-supplied record through quote validation."""
    clock = aggregator.clock
    quote = Quote(
        **request.model_dump(exclude_none=True),
        fetched_at=FetchedAt(monotonic=clock.monotonic(), wall=clock.now())
    )
    return QuoteValidationResponse(**aggregator.validate_quote(quote))


@router.post("/v1/cache/cleanup", response_model=CacheCleanupResponse)
async def cleanup_cache(aggregator: MarketDataAggregator = Depends(get_aggregator)):
    """Remove expired cache entries."""
    removed = aggregator.cleanup_cache()
    logger.info("Manual cache cleanup", extra={"removed": removed})
    return CacheCleanupResponse(removed=removed)


@router.websocket("/v1/stream")
async def stream_quotes(websocket: WebSocket, aggregator: MarketDataAggregator = Depends(get_aggregator)):
    """
    Push quotes for subscribed symbols.

    Client messages: {"action": "subscribe" | "unsubscribe", "symbol": "AAPL"}.
    """
    await websocket.accept()

    async def deliver(quote: Quote) -> None:
        await websocket.send_json({"type": "quote", "data": quote.model_dump(mode="json")})

    logger.info("Stream connection opened", extra={
        "client_ip": websocket.client.host if websocket.client else None
    })

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = StreamMessage.model_validate_json(raw)
            except ValidationError as e:
                await websocket.send_json({
                    "type": "error",
                    "error": "Invalid message",
                    "details": e.errors(include_url=False, include_context=False)
                })
                continue

            if message.action == "subscribe":
                result = aggregator.subscribe(message.symbol, deliver)
                if isinstance(result, Failure):
                    await websocket.send_json({"type": "error", "error": result.reason})
                else:
                    await websocket.send_json({"type": "subscribed", "symbol": result.symbol})
            else:
                aggregator.unsubscribe(message.symbol, deliver)
                await websocket.send_json({"type": "unsubscribed", "symbol": message.symbol.strip().upper()})

    except WebSocketDisconnect:
        logger.info("Stream connection closed")
    finally:
        aggregator.hub.unsubscribe_all(deliver)
