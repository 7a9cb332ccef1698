"""
Finnhub adapter.
Parses the /quote endpoint: c (current), d (change), dp (percent change),
h/l/o (session range), pc (previous close), t (unix seconds).
"""

from datetime import datetime, timezone
from typing import Optional

from .base import BaseQuoteAdapter, MalformedPayload
from ..models import FetchedAt, ParseResult, ProviderFailureKind

FINNHUB_QUOTE_URL = "https://finnhub.io/api/v1/quote"


class FinnhubAdapter(BaseQuoteAdapter):
    """Finnhub adapter for real-time stock quotes."""

    def build_request(self, symbol: str) -> str:
        return self._build_url(
            symbol=self._normalize_symbol(symbol),
            token=self.descriptor.api_key or ""
        )

    def parse(self, body: str, status: int, symbol: str, fetched_at: FetchedAt) -> ParseResult:
        failure = self._classify_status(status)
        if failure:
            return failure

        try:
            data = self._decode_json(body)

            if "error" in data:
                message = str(data["error"])
                kind = (
                    ProviderFailureKind.RATE_LIMITED
                    if "limit" in message.lower()
                    else ProviderFailureKind.MALFORMED_RESPONSE
                )
                return self._failure(kind, f"finnhub error: {message}")

            if 'c' not in data:
                return self._failure(ProviderFailureKind.MALFORMED_RESPONSE, "Missing current price 'c'")

            current_price = self._to_float(data.get('c'), 'c', required=True)
            # Unserved tickers, indices on the free tier included, come back zero-filled
            if current_price == 0 and data.get('d') is None:
                return self._failure(ProviderFailureKind.MALFORMED_RESPONSE, f"No data for {symbol}")

            return self._create_quote(
                symbol=symbol,
                price=current_price,
                fetched_at=fetched_at,
                timestamp=self._parse_timestamp(data.get('t')),
                change=self._to_float(data.get('d'), 'd'),
                change_percent=self._to_float(data.get('dp'), 'dp'),
                volume=self._to_int(data.get('v'), 'v'),
                open=self._nonzero(self._to_float(data.get('o'), 'o')),
                high=self._nonzero(self._to_float(data.get('h'), 'h')),
                low=self._nonzero(self._to_float(data.get('l'), 'l')),
                previous_close=self._nonzero(self._to_float(data.get('pc'), 'pc'))
            )
        except MalformedPayload as e:
            return self._failure(ProviderFailureKind.MALFORMED_RESPONSE, str(e))

    @staticmethod
    def _nonzero(value: Optional[float]) -> Optional[float]:
        # Finnhub reports missing session fields as 0
        return value if value else None

    @staticmethod
    def _parse_timestamp(value) -> Optional[datetime]:
        if not value:
            return None
        try:
            return datetime.fromtimestamp(int(value), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError, OSError) as e:
            raise MalformedPayload(f"Invalid timestamp: {value!r}") from e
