"""
Alpha Vantage adapter.
Builds GLOBAL_QUOTE, OVERVIEW and SECTOR requests and parses their responses.
"""

from datetime import datetime
from typing import List, Optional, Union

from .base import BaseQuoteAdapter, MalformedPayload
from ..models import (
    CompanyProfile, FetchedAt, ParseResult, ProviderFailure, ProviderFailureKind,
    SectorPerformance
)

ALPHA_VANTAGE_URL = "https://www.alphavantage.co/query"

# Alpha Vantage answers HTTP 200 and puts its own throttling notice in one of these keys
RATE_LIMIT_KEYS = ("Note", "Information")

SECTOR_RANK_KEY = "Rank A: Real-Time Performance"


class AlphaVantageAdapter(BaseQuoteAdapter):
    """Alpha Vantage adapter for stock quotes, company overviews and sectors."""

    def build_request(self, symbol: str) -> str:
        return self._build_url(
            function="GLOBAL_QUOTE",
            symbol=self._normalize_symbol(symbol),
            apikey=self.descriptor.api_key or ""
        )

    def build_company_request(self, symbol: str) -> str:
        return self._build_url(
            function="OVERVIEW",
            symbol=self._normalize_symbol(symbol),
            apikey=self.descriptor.api_key or ""
        )

    def build_sector_request(self) -> str:
        return self._build_url(function="SECTOR", apikey=self.descriptor.api_key or "")

    def _check_envelope(self, data: dict) -> Optional[ProviderFailure]:
        for key in RATE_LIMIT_KEYS:
            if key in data:
                return self._failure(
                    ProviderFailureKind.RATE_LIMITED,
                    f"alpha_vantage rate limit: {data[key]}"
                )
        if "Error Message" in data:
            return self._failure(ProviderFailureKind.SYMBOL_UNKNOWN, str(data["Error Message"]))
        return None

    def parse(self, body: str, status: int, symbol: str, fetched_at: FetchedAt) -> ParseResult:
        failure = self._classify_status(status)
        if failure:
            return failure

        try:
            data = self._decode_json(body)
            failure = self._check_envelope(data)
            if failure:
                return failure

            if "Global Quote" not in data:
                return self._failure(ProviderFailureKind.MALFORMED_RESPONSE, "Missing 'Global Quote' object")

            global_quote = data["Global Quote"]
            if not isinstance(global_quote, dict):
                return self._failure(ProviderFailureKind.MALFORMED_RESPONSE, "'Global Quote' is not an object")
            if not global_quote:
                # Tickers this provider does not serve, indices included, come back empty
                return self._failure(ProviderFailureKind.MALFORMED_RESPONSE, f"Empty quote for {symbol}")

            return self._create_quote(
                symbol=symbol,
                price=self._to_float(global_quote.get('05. price'), 'price', required=True),
                fetched_at=fetched_at,
                timestamp=None,
                change=self._to_float(global_quote.get('09. change'), 'change'),
                change_percent=self._to_float(global_quote.get('10. change percent'), 'change_percent'),
                volume=self._to_int(global_quote.get('06. volume'), 'volume'),
                open=self._to_float(global_quote.get('02. open'), 'open'),
                high=self._to_float(global_quote.get('03. high'), 'high'),
                low=self._to_float(global_quote.get('04. low'), 'low'),
                previous_close=self._to_float(global_quote.get('08. previous close'), 'previous_close')
            )
        except MalformedPayload as e:
            return self._failure(ProviderFailureKind.MALFORMED_RESPONSE, str(e))

    def parse_company(
        self,
        body: str,
        status: int,
        symbol: str,
        now: datetime
    ) -> Union[CompanyProfile, ProviderFailure]:
        """Parse an OVERVIEW response into a CompanyProfile."""
        failure = self._classify_status(status)
        if failure:
            return failure

        try:
            data = self._decode_json(body)
            failure = self._check_envelope(data)
            if failure:
                return failure

            if not data.get("Symbol"):
                return self._failure(ProviderFailureKind.SYMBOL_UNKNOWN, f"No company overview for {symbol}")

            return CompanyProfile(
                symbol=str(data["Symbol"]).upper(),
                name=data.get("Name"),
                description=data.get("Description"),
                sector=data.get("Sector"),
                industry=data.get("Industry"),
                market_cap=self._optional_metric(data.get("MarketCapitalization")),
                pe_ratio=self._optional_metric(data.get("PERatio")),
                dividend_yield=self._optional_metric(data.get("DividendYield")),
                eps=self._optional_metric(data.get("EPS")),
                beta=self._optional_metric(data.get("Beta")),
                source=self.provider,
                fetched_at=now
            )
        except MalformedPayload as e:
            return self._failure(ProviderFailureKind.MALFORMED_RESPONSE, str(e))

    def parse_sectors(self, body: str, status: int) -> Union[List[SectorPerformance], ProviderFailure]:
        """Parse a SECTOR response into real-time sector performance."""
        failure = self._classify_status(status)
        if failure:
            return failure

        try:
            data = self._decode_json(body)
            failure = self._check_envelope(data)
            if failure:
                return failure

            sectors = data.get(SECTOR_RANK_KEY)
            if not isinstance(sectors, dict) or not sectors:
                return self._failure(ProviderFailureKind.MALFORMED_RESPONSE, f"Missing '{SECTOR_RANK_KEY}'")

            return [
                SectorPerformance(
                    sector=sector,
                    performance=self._to_float(performance, sector, required=True)
                )
                for sector, performance in sectors.items()
            ]
        except MalformedPayload as e:
            return self._failure(ProviderFailureKind.MALFORMED_RESPONSE, str(e))

    @staticmethod
    def _optional_metric(value) -> Optional[float]:
        # Overview uses "None" and "-" for missing metrics
        if value in (None, "", "None", "-"):
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None