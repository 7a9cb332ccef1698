"""
Quote normalization and validation for Market Data Aggregator.
Every adapter-produced quote passes through here before it reaches the cache,
the history store or subscribers.
"""

import math
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from ..core.clock import Clock
from ..core.logging_config import create_logger
from ..models import ProviderFailure, ProviderFailureKind, Quote

logger = create_logger(__name__)

PRICE_PRECISION = 4
PERCENT_PRECISION = 2

CHANGE_PERCENT_MIN = -100.0
# Upper bound is wider than the lower one to admit post-halt spikes
CHANGE_PERCENT_MAX = 1000.0
VOLUME_MAX = 10 ** 12


class InvalidQuoteError(ValueError):
    """Collects every violation found in one quote."""

    def __init__(self, errors: List[str]):
        self.errors = errors
        super().__init__(", ".join(errors))


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class QuoteNormalizer:
    """Coerces precision, enforces ranges and stamps timestamps."""

    def __init__(self, clock: Clock, freshness_window: float = 300.0):
        self._clock = clock
        self.freshness_window = freshness_window

    def normalize(self, quote: Quote, same_session: bool = True) -> Union[Quote, ProviderFailure]:
        """
        Normalize a quote.

        Args:
            quote: Quote as produced by an adapter
            same_session: Whether open/high/low/price must be range-consistent

        Returns:
            Normalized Quote, or a ProviderFailure of kind invalid_quote
        """
        try:
            return self.normalize_or_raise(quote, same_session=same_session)
        except InvalidQuoteError as e:
            logger.warning("Quote rejected by validation", extra={
                "symbol": quote.symbol,
                "provider": quote.source.value,
                "errors": e.errors
            })
            return ProviderFailure(
                kind=ProviderFailureKind.INVALID_QUOTE,
                reason=f"Quote validation failed: {e}",
                provider=quote.source
            )

    def normalize_or_raise(self, quote: Quote, same_session: bool = True) -> Quote:
        """Like normalize, but raises InvalidQuoteError listing every violation."""
        errors: List[str] = []
        now = self._clock.now()

        price = self._price(quote.price, "price", errors)
        if price is not None and price < 0:
            errors.append("price must be non-negative")

        change = self._finite(quote.change, "change", errors)
        change = round(change, PRICE_PRECISION) if change is not None else 0.0

        change_percent = self._finite(quote.change_percent, "change_percent", errors)
        if change_percent is not None:
            change_percent = round(change_percent, PERCENT_PRECISION)
            if not CHANGE_PERCENT_MIN <= change_percent <= CHANGE_PERCENT_MAX:
                errors.append(
                    f"change_percent must be between {CHANGE_PERCENT_MIN:g}% and {CHANGE_PERCENT_MAX:g}%"
                )
        else:
            change_percent = 0.0

        volume = max(0, int(quote.volume or 0))
        if volume > VOLUME_MAX:
            errors.append(f"volume must not exceed {VOLUME_MAX}")

        optional_prices: Dict[str, Optional[float]] = {}
        for field in ("open", "high", "low", "previous_close"):
            value = getattr(quote, field)
            if value is None:
                optional_prices[field] = None
                continue
            value = self._price(value, field, errors)
            if value is not None and value < 0:
                errors.append(f"{field} must be non-negative")
            optional_prices[field] = value

        open_price = optional_prices["open"]
        high = optional_prices["high"]
        low = optional_prices["low"]
        if same_session and price is not None and None not in (open_price, high, low):
            if not low <= min(open_price, price) <= max(open_price, price) <= high:
                errors.append("open/price must lie within the session low/high range")

        fetched_wall = _as_utc(quote.fetched_at.wall)
        if abs((now - fetched_wall).total_seconds()) > self.freshness_window:
            errors.append("fetched_at is outside the freshness window")

        if errors:
            raise InvalidQuoteError(errors)

        timestamp = quote.timestamp
        synthesized = quote.timestamp_synthesized
        if timestamp is None or abs((now - _as_utc(timestamp)).total_seconds()) > self.freshness_window:
            timestamp = now
            synthesized = True
        else:
            timestamp = _as_utc(timestamp)

        return quote.model_copy(update={
            "price": price,
            "change": change,
            "change_percent": change_percent,
            "volume": volume,
            "open": open_price,
            "high": high,
            "low": low,
            "previous_close": optional_prices["previous_close"],
            "timestamp": timestamp,
            "timestamp_synthesized": synthesized,
        })

    def validate(self, quote: Quote) -> Dict[str, Any]:
        """Report whether a quote passes validation, without raising."""
        try:
            normalized = self.normalize_or_raise(quote)
        except InvalidQuoteError as e:
            return {"is_valid": False, "errors": e.errors, "data": None}
        return {"is_valid": True, "errors": [], "data": normalized}

    @staticmethod
    def _finite(value: Any, field: str, errors: List[str]) -> Optional[float]:
        if value is None:
            return None
        try:
            number = float(value)
        except (TypeError, ValueError):
            errors.append(f"{field} is not numeric")
            return None
        if not math.isfinite(number):
            errors.append(f"{field} must be finite")
            return None
        return number

    def _price(self, value: Any, field: str, errors: List[str]) -> Optional[float]:
        number = self._finite(value, field, errors)
        if number is None:
            return None
        return round(number, PRICE_PRECISION)
