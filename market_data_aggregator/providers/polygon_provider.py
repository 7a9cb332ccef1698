"""
Polygon.io adapter.
Uses the previous-day aggregate endpoint, so the quote describes the last
completed session rather than live trading.
"""

from datetime import datetime, timezone
from typing import Dict
from urllib.parse import quote as url_quote

from .base import BaseQuoteAdapter, MalformedPayload
from ..models import FetchedAt, ParseResult, ProviderFailureKind

POLYGON_PREV_URL = "https://api.polygon.io/v2/aggs/ticker/{symbol}/prev"

# Polygon names indices with an "I:" prefix
INDEX_SYMBOLS: Dict[str, str] = {
    '^GSPC': 'I:SPX',
    '^DJI': 'I:DJI',
    '^IXIC': 'I:COMP',
}


class PolygonAdapter(BaseQuoteAdapter):
    """Polygon.io adapter for previous-day aggregates."""

    def _normalize_symbol(self, symbol: str) -> str:
        symbol = symbol.upper().strip()
        return INDEX_SYMBOLS.get(symbol, symbol)

    def build_request(self, symbol: str) -> str:
        return self._build_url(
            path_symbol=url_quote(self._normalize_symbol(symbol), safe=':'),
            adjusted="true",
            apiKey=self.descriptor.api_key or ""
        )

    def parse(self, body: str, status: int, symbol: str, fetched_at: FetchedAt) -> ParseResult:
        failure = self._classify_status(status)
        if failure:
            return failure

        try:
            data = self._decode_json(body)

            if data.get('status') == 'ERROR':
                message = str(data.get('error') or data.get('message') or 'unknown error')
                kind = (
                    ProviderFailureKind.RATE_LIMITED
                    if "exceeded" in message.lower()
                    else ProviderFailureKind.MALFORMED_RESPONSE
                )
                return self._failure(kind, f"polygon error: {message}")

            results = data.get('results')
            if results is None and 'resultsCount' not in data:
                return self._failure(ProviderFailureKind.MALFORMED_RESPONSE, "Missing 'results'")
            if not results:
                return self._failure(ProviderFailureKind.SYMBOL_UNKNOWN, f"No aggregate for {symbol}")

            bar = results[0]
            if not isinstance(bar, dict):
                return self._failure(ProviderFailureKind.MALFORMED_RESPONSE, "Aggregate is not an object")

            close = self._to_float(bar.get('c'), 'c', required=True)
            open_price = self._to_float(bar.get('o'), 'o', required=True)
            change = close - open_price
            change_percent = (change / open_price * 100) if open_price else 0.0

            # Only the bar's own fields are exposed; previous close is not reported here
            return self._create_quote(
                symbol=symbol,
                price=close,
                fetched_at=fetched_at,
                timestamp=self._parse_timestamp(bar.get('t')),
                change=change,
                change_percent=change_percent,
                volume=self._to_int(bar.get('v'), 'v'),
                open=open_price,
                high=self._to_float(bar.get('h'), 'h'),
                low=self._to_float(bar.get('l'), 'l')
            )
        except MalformedPayload as e:
            return self._failure(ProviderFailureKind.MALFORMED_RESPONSE, str(e))

    @staticmethod
    def _parse_timestamp(value):
        if value is None:
            return None
        try:
            return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
        except (TypeError, ValueError, OverflowError, OSError) as e:
            raise MalformedPayload(f"Invalid timestamp: {value!r}") from e
