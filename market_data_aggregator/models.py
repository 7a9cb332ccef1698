"""
Canonical market data models for the Market Data Aggregator.
Defines the records shared by the adapters, the aggregator core and the transport.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class DataProvider(str, Enum):
    """Supported upstream quote providers."""
    ALPHA_VANTAGE = "alpha_vantage"
    FINNHUB = "finnhub"
    POLYGON = "polygon"


class FailureKind(str, Enum):
    """Failure categories surfaced to callers."""
    UNAVAILABLE = "unavailable"
    NOT_FOUND = "not_found"
    INVALID_REQUEST = "invalid_request"
    CANCELLED = "cancelled"


class ProviderFailureKind(str, Enum):
    """Failure categories consumed by the provider cascade."""
    TRANSIENT = "transient"
    RATE_LIMITED = "rate_limited"
    MALFORMED_RESPONSE = "malformed_response"
    SYMBOL_UNKNOWN = "symbol_unknown"
    INVALID_QUOTE = "invalid_quote"


class MarketStatus(str, Enum):
    """Aggregate direction of the tracked indices."""
    BULLISH = "bullish"
    BEARISH = "bearish"
    MIXED = "mixed"


class FetchedAt(BaseModel):
    """Ingestion stamp: monotonic seconds plus UTC wall time."""
    model_config = ConfigDict(frozen=True)

    monotonic: float = Field(..., description="Monotonic clock reading at ingestion")
    wall: datetime = Field(..., description="Wall clock time at ingestion (UTC)")


class Quote(BaseModel):
    """Canonical quote record produced by the adapters and the normalizer."""
    model_config = ConfigDict(frozen=True)

    symbol: str = Field(..., max_length=20, description="Uppercase ticker")
    price: float = Field(..., description="Last price")
    change: float = Field(0.0, description="Absolute price change")
    change_percent: float = Field(0.0, description="Percentage price change")
    volume: int = Field(0, description="Trading volume")
    open: Optional[float] = Field(None, description="Session open")
    high: Optional[float] = Field(None, description="Session high")
    low: Optional[float] = Field(None, description="Session low")
    previous_close: Optional[float] = Field(None, description="Previous session close")
    source: DataProvider = Field(..., description="Provider that produced the quote")
    timestamp: Optional[datetime] = Field(None, description="Upstream quote time")
    timestamp_synthesized: bool = Field(False, description="Whether timestamp was replaced with ingestion time")
    fetched_at: FetchedAt = Field(..., description="Ingestion stamp")

    @field_validator('symbol')
    @classmethod
    def validate_symbol(cls, v: str) -> str:
        """Validate and normalize symbol."""
        if not v or not v.strip():
            raise ValueError("Symbol cannot be empty")
        return v.strip().upper()


class ProviderFailure(BaseModel):
    """Typed failure reported by an adapter or by the fetch step of the cascade."""
    model_config = ConfigDict(frozen=True)

    kind: ProviderFailureKind
    reason: str
    provider: DataProvider


class Failure(BaseModel):
    """Failure returned from a public aggregator operation."""
    model_config = ConfigDict(frozen=True)

    kind: FailureKind
    reason: str
    symbol: Optional[str] = None
    providers_attempted: List[DataProvider] = Field(default_factory=list)


class CompanyProfile(BaseModel):
    """Company fundamentals from the overview endpoint of provider A."""
    symbol: str
    name: Optional[str] = None
    description: Optional[str] = None
    sector: Optional[str] = None
    industry: Optional[str] = None
    market_cap: Optional[float] = None
    pe_ratio: Optional[float] = None
    dividend_yield: Optional[float] = None
    eps: Optional[float] = None
    beta: Optional[float] = None
    source: DataProvider = DataProvider.ALPHA_VANTAGE
    fetched_at: datetime


class SectorPerformance(BaseModel):
    """Real-time performance of one market sector, in percent."""
    sector: str
    performance: float


class MarketOverview(BaseModel):
    """Indices, sectors and the derived market status."""
    indices: Dict[str, Quote] = Field(default_factory=dict)
    sectors: List[SectorPerformance] = Field(default_factory=list)
    status: MarketStatus
    total_indices: int
    total_sectors: int
    timestamp: datetime


class OHLCV(BaseModel):
    """One time bucket of aggregated history."""
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: int
    change: float
    change_percent: float
    data_points: int


# Type aliases for convenience
QuoteResult = Union[Quote, Failure]
BatchResult = Dict[str, QuoteResult]
ParseResult = Union[Quote, ProviderFailure]
