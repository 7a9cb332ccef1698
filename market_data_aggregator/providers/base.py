"""
Abstract base class for quote provider adapters in Market Data Aggregator.
Adapters turn a symbol into a request URL and an upstream body into a canonical
Quote or a typed ProviderFailure. They never perform I/O.
"""

import json
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

import httpx

from ..models import (
    DataProvider, FetchedAt, ParseResult, ProviderFailure, ProviderFailureKind, Quote
)


@dataclass(frozen=True)
class ProviderDescriptor:
    """Static description of one upstream provider."""
    tag: DataProvider
    rate_limit: int
    window_seconds: float
    priority: int
    endpoint_template: str
    api_key: Optional[str] = None

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)


class MalformedPayload(ValueError):
    """Raised inside adapters while decoding a body; converted to a ProviderFailure."""
    pass


class BaseQuoteAdapter(ABC):
    """Abstract base class for quote provider adapters."""

    # Whether open/high/low/price come from one session and must be range-consistent
    same_session: bool = True

    def __init__(self, descriptor: ProviderDescriptor):
        self.descriptor = descriptor

    @property
    def provider(self) -> DataProvider:
        return self.descriptor.tag

    @abstractmethod
    def build_request(self, symbol: str) -> str:
        """
        Build the provider URL for a quote request.

        Args:
            symbol: Canonical uppercase symbol

        Returns:
            Fully qualified URL including credentials
        """
        pass

    @abstractmethod
    def parse(self, body: str, status: int, symbol: str, fetched_at: FetchedAt) -> ParseResult:
        """
        Parse an upstream body into a canonical Quote.

        Args:
            body: Raw response body
            status: HTTP status code of the response
            symbol: Canonical symbol that was requested
            fetched_at: Ingestion stamp to attach to the quote

        Returns:
            Quote on success, ProviderFailure otherwise
        """
        pass

    def _normalize_symbol(self, symbol: str) -> str:
        """
        Normalize symbol for this provider.
        Different providers may use different symbol formats.
        """
        return symbol.upper().strip()

    def _build_url(self, path_symbol: Optional[str] = None, **params: Any) -> str:
        template = self.descriptor.endpoint_template
        base = template.format(symbol=path_symbol) if path_symbol is not None else template
        return str(httpx.URL(base, params=params))

    def _failure(self, kind: ProviderFailureKind, reason: str) -> ProviderFailure:
        return ProviderFailure(kind=kind, reason=reason, provider=self.provider)

    def _classify_status(self, status: int) -> Optional[ProviderFailure]:
        """Map an HTTP status to a failure, or None when the body should be parsed."""
        if 200 <= status < 300:
            return None
        if status == 429:
            return self._failure(ProviderFailureKind.RATE_LIMITED, f"{self.provider.value} returned HTTP 429")
        if status >= 500:
            return self._failure(ProviderFailureKind.TRANSIENT, f"{self.provider.value} returned HTTP {status}")
        if status in (401, 403):
            return self._failure(
                ProviderFailureKind.MALFORMED_RESPONSE,
                f"{self.provider.value} rejected credentials (HTTP {status})"
            )
        return self._failure(ProviderFailureKind.MALFORMED_RESPONSE, f"{self.provider.value} returned HTTP {status}")

    def _decode_json(self, body: str) -> Dict[str, Any]:
        try:
            data = json.loads(body)
        except (TypeError, ValueError) as e:
            raise MalformedPayload(f"Invalid JSON response from {self.provider.value}: {e}") from e
        if not isinstance(data, dict):
            raise MalformedPayload(f"Expected a JSON object from {self.provider.value}")
        return data

    @staticmethod
    def _to_float(value: Any, field: str, required: bool = False) -> Optional[float]:
        """Parse an upstream number, which may arrive as a string or carry a % suffix."""
        if value is None or value == "":
            if required:
                raise MalformedPayload(f"Missing field: {field}")
            return None
        if isinstance(value, str):
            value = value.replace('%', '').strip()
        try:
            number = float(value)
        except (TypeError, ValueError) as e:
            raise MalformedPayload(f"Field {field} is not numeric: {value!r}") from e
        return number

    @staticmethod
    def _to_int(value: Any, field: str) -> int:
        if value is None or value == "":
            return 0
        try:
            number = float(value)
        except (TypeError, ValueError) as e:
            raise MalformedPayload(f"Field {field} is not numeric: {value!r}") from e
        if not math.isfinite(number):
            raise MalformedPayload(f"Field {field} is not finite")
        return int(number)

    def _create_quote(
        self,
        symbol: str,
        price: float,
        fetched_at: FetchedAt,
        timestamp: Optional[datetime] = None,
        **kwargs
    ) -> Quote:
        """Create a canonical Quote tagged with this provider."""
        return Quote(
            symbol=symbol,
            price=price,
            change=kwargs.get('change') or 0.0,
            change_percent=kwargs.get('change_percent') or 0.0,
            volume=kwargs.get('volume') or 0,
            open=kwargs.get('open'),
            high=kwargs.get('high'),
            low=kwargs.get('low'),
            previous_close=kwargs.get('previous_close'),
            source=self.provider,
            timestamp=timestamp,
            fetched_at=fetched_at
        )
