"""
Outbound HTTP for Market Data Aggregator.
Performs single GET attempts with a hard total timeout and classifies failures.
Retries are the cascade's job, never the fetcher's.
"""

import asyncio
import ssl
from dataclasses import dataclass
from typing import Dict, Optional

import httpx

from ..core.logging_config import create_logger

logger = create_logger(__name__)


@dataclass(frozen=True)
class FetchResponse:
    """Status code and decoded body of a successful GET."""
    status: int
    body: str


class FetchError(Exception):
    """Base exception for fetch failures."""

    def __init__(self, message: str, url: str):
        self.message = message
        self.url = url
        super().__init__(self.message)


class FetchTimeoutError(FetchError):
    """The attempt or the total deadline elapsed."""
    pass


class FetchConnectionError(FetchError):
    """The connection could not be established or was dropped."""
    pass


class TLSFailureError(FetchConnectionError):
    """The TLS handshake or certificate verification failed."""
    pass


class FetchProtocolError(FetchError):
    """The request failed after connecting, e.g. a redirect loop or an undecodable body."""
    pass


class NonOKStatusError(FetchError):
    """Upstream answered with a non-2xx status; the body is kept for the adapter."""

    def __init__(self, message: str, url: str, status: int, body: str):
        super().__init__(message, url)
        self.status = status
        self.body = body


def _is_tls_failure(exc: BaseException) -> bool:
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        if isinstance(current, ssl.SSLError):
            return True
        seen.add(id(current))
        current = current.__cause__ or current.__context__
    return "SSL" in str(exc) or "CERTIFICATE" in str(exc).upper()


class HttpFetcher:
    """Thin wrapper around a shared httpx.AsyncClient."""

    def __init__(
        self,
        total_timeout: float = 10.0,
        attempt_timeout: float = 8.0,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.total_timeout = total_timeout
        self.attempt_timeout = attempt_timeout
        self._client = client
        self._owns_client = client is None

    async def __aenter__(self):
        """Async context manager entry."""
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.disconnect()

    async def connect(self) -> None:
        """Initialize HTTP client connection."""
        if self._client is None:
            timeout = httpx.Timeout(self.attempt_timeout, connect=min(5.0, self.attempt_timeout))
            limits = httpx.Limits(max_keepalive_connections=10, max_connections=20)

            self._client = httpx.AsyncClient(
                timeout=timeout,
                limits=limits,
                headers=self._get_default_headers(),
                follow_redirects=True
            )
            self._owns_client = True
            logger.debug("HTTP client created")

    async def disconnect(self) -> None:
        """Close HTTP client connection."""
        if self._client and self._owns_client:
            await self._client.aclose()
            self._client = None
            logger.debug("HTTP client closed")

    def _get_default_headers(self) -> Dict[str, str]:
        """Get default HTTP headers for requests."""
        return {
            'User-Agent': 'Market-Data-Aggregator/1.0.0',
            'Accept': 'application/json',
            'Accept-Encoding': 'gzip, deflate'
        }

    async def fetch(self, url: str, timeout: Optional[float] = None) -> FetchResponse:
        """
        Perform one GET request.

        Args:
            url: Fully built request URL
            timeout: Hard total timeout in seconds, defaults to the fetcher's

        Returns:
            FetchResponse for 2xx answers

        Raises:
            FetchTimeoutError: Attempt or total deadline elapsed
            TLSFailureError: TLS negotiation failed
            FetchConnectionError: Connection could not be used
            FetchProtocolError: Any other request failure reported by httpx
            NonOKStatusError: Upstream answered with a non-2xx status
        """
        if self._client is None:
            await self.connect()

        total = timeout if timeout is not None else self.total_timeout

        try:
            response = await asyncio.wait_for(
                self._client.get(url, timeout=min(self.attempt_timeout, total)),
                timeout=total
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise FetchTimeoutError(f"Request timed out after {total}s", url) from e
        except httpx.TransportError as e:
            if _is_tls_failure(e):
                raise TLSFailureError(f"TLS failure: {e}", url) from e
            raise FetchConnectionError(f"Connection error: {e}", url) from e
        except httpx.RequestError as e:
            raise FetchProtocolError(f"Request failed: {type(e).__name__}: {e}", url) from e

        logger.debug("Received upstream response", extra={
            "status_code": response.status_code,
            "response_size": len(response.content)
        })

        if not response.is_success:
            raise NonOKStatusError(
                f"Upstream returned HTTP {response.status_code}",
                url,
                response.status_code,
                response.text
            )

        return FetchResponse(status=response.status_code, body=response.text)
