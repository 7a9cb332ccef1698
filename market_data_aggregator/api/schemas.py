"""
Pydantic schemas for Market Data Aggregator Service.
Request and response envelopes around the canonical models.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from ..models import OHLCV, DataProvider, Failure, Quote, SectorPerformance


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class BatchQuoteRequest(BaseModel):
    """Model for batch quote request body."""
    symbols: List[str] = Field(..., min_length=1, description="List of symbols to quote")

    @field_validator('symbols')
    @classmethod
    def validate_symbols(cls, v: List[str]) -> List[str]:
        """Validate and normalize symbols."""
        normalized = [symbol.strip().upper() for symbol in v if symbol and symbol.strip()]

        if not normalized:
            raise ValueError("At least one valid symbol is required")

        # Remove duplicates while preserving order
        return list(dict.fromkeys(normalized))


class BatchQuoteResponse(BaseModel):
    """Model for batch quote response."""
    quotes: Dict[str, Quote] = Field(default_factory=dict, description="Quotes keyed by symbol")
    errors: Dict[str, Failure] = Field(default_factory=dict, description="Failures keyed by symbol")
    total: int = Field(..., description="Number of symbols requested")
    successful: int = Field(..., description="Number of quotes returned")
    timestamp: datetime = Field(default_factory=utc_now, description="Response timestamp")


class IndicesResponse(BaseModel):
    """Model for market indices response."""
    indices: Dict[str, Quote] = Field(..., description="Index quotes keyed by index symbol")
    total: int = Field(..., description="Number of indices returned")
    timestamp: datetime = Field(default_factory=utc_now, description="Response timestamp")


class SectorListResponse(BaseModel):
    """Model for sector performance response."""
    sectors: List[SectorPerformance] = Field(..., description="Sector performance")
    total: int = Field(..., description="Number of sectors returned")
    timestamp: datetime = Field(default_factory=utc_now, description="Response timestamp")


class SearchResponse(BaseModel):
    """Model for symbol search response."""
    query: str
    results: List[str]
    total: int


class HistoryResponse(BaseModel):
    """Model for stored quote history."""
    symbol: str
    period: str
    data: List[Quote]
    total: int


class AggregatedHistoryResponse(BaseModel):
    """Model for bucketed OHLCV history."""
    symbol: str
    period: str
    bucket: str
    data: List[OHLCV]
    total: int


class QuoteValidationRequest(BaseModel):
    """Caller-supplied quote record to run through validation."""
    symbol: str = Field(..., min_length=1, max_length=20)
    price: float
    change: Optional[float] = None
    change_percent: Optional[float] = None
    volume: int = 0
    open: Optional[float] = None
    high: Optional[float] = None
    low: Optional[float] = None
    previous_close: Optional[float] = None
    source: DataProvider = DataProvider.ALPHA_VANTAGE
    timestamp: Optional[datetime] = None


class QuoteValidationResponse(BaseModel):
    """Validation outcome with the normalized record when valid."""
    is_valid: bool
    errors: List[str] = Field(default_factory=list)
    data: Optional[Quote] = None


class CacheCleanupResponse(BaseModel):
    removed: int
    timestamp: datetime = Field(default_factory=utc_now)


class HealthResponse(BaseModel):
    """Model for health check response."""
    status: Literal["healthy", "unhealthy"] = Field(..., description="Service status")
    timestamp: datetime = Field(default_factory=utc_now, description="Health check timestamp")
    version: str = Field(..., description="Service version")
    uptime_seconds: float = Field(..., description="Service uptime in seconds")
    providers_enabled: Dict[str, bool] = Field(default_factory=dict, description="Providers with credentials")
    background_tasks_running: bool = Field(..., description="Background tasks status")
    last_data_update: Optional[datetime] = Field(None, description="Last completed poll")


class ErrorResponse(BaseModel):
    """Model for error responses."""
    error: str = Field(..., description="Error message")
    error_code: str = Field(..., description="Error code")
    timestamp: datetime = Field(default_factory=utc_now, description="Error timestamp")
    details: Optional[Dict[str, Any]] = Field(None, description="Additional error details")


class StreamMessage(BaseModel):
    """Client message on the streaming channel."""
    action: Literal["subscribe", "unsubscribe"]
    symbol: str = Field(..., min_length=1, max_length=20)
