"""
In-memory layered cache for Market Data Aggregator.
Entries carry an absolute monotonic expiry; expired entries are dropped lazily on
access and eagerly by the cleanup pass.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Hashable, Optional

from ..core.clock import Clock
from ..core.config import Settings
from ..core.logging_config import create_logger

logger = create_logger(__name__)


class CacheLayer(str, Enum):
    """Cache layers, each with its own default TTL."""
    QUOTE = "quote"
    MARKET = "market"
    COMPANY = "company"
    INDEX = "index"
    AGGREGATED = "aggregated"


DEFAULT_TTLS: Dict[CacheLayer, float] = {
    CacheLayer.QUOTE: 60.0,
    CacheLayer.MARKET: 300.0,
    CacheLayer.COMPANY: 86400.0,
    CacheLayer.INDEX: 300.0,
    CacheLayer.AGGREGATED: 600.0,
}


@dataclass(frozen=True)
class CacheEntry:
    payload: Any
    expires_at: float
    version: Optional[float] = None


class CacheService:
    """TTL'd mapping from (layer, key) to payload."""

    def __init__(self, clock: Clock, ttls: Optional[Dict[CacheLayer, float]] = None):
        self._clock = clock
        self._ttls = dict(DEFAULT_TTLS)
        if ttls:
            self._ttls.update(ttls)
        self._layers: Dict[CacheLayer, Dict[Hashable, CacheEntry]] = {
            layer: {} for layer in CacheLayer
        }

    @classmethod
    def from_settings(cls, clock: Clock, settings: Settings) -> "CacheService":
        return cls(clock, ttls={
            CacheLayer.QUOTE: settings.quote_cache_ttl,
            CacheLayer.MARKET: settings.market_cache_ttl,
            CacheLayer.COMPANY: settings.company_cache_ttl,
            CacheLayer.INDEX: settings.index_cache_ttl,
            CacheLayer.AGGREGATED: settings.aggregated_cache_ttl,
        })

    def ttl(self, layer: CacheLayer) -> float:
        return self._ttls[layer]

    def get(self, layer: CacheLayer, key: Hashable) -> Optional[Any]:
        """Return the payload for key, or None on a miss or an expired entry."""
        entries = self._layers[layer]
        entry = entries.get(key)
        if entry is None:
            return None

        if self._clock.monotonic() >= entry.expires_at:
            # Only drop the entry we inspected, a concurrent put may have replaced it
            if entries.get(key) is entry:
                del entries[key]
            return None

        return entry.payload

    def put(
        self,
        layer: CacheLayer,
        key: Hashable,
        payload: Any,
        ttl: Optional[float] = None,
        version: Optional[float] = None
    ) -> bool:
        """
        Store payload under key.

        Args:
            layer: Cache layer
            key: Key within the layer
            payload: Value to cache
            ttl: Seconds to live, defaults to the layer TTL
            version: Monotonic freshness of the payload; a put older than a live entry is discarded

        Returns:
            True if stored, False if discarded
        """
        entries = self._layers[layer]
        now = self._clock.monotonic()
        current = entries.get(key)

        if (
            current is not None
            and version is not None
            and current.version is not None
            and now < current.expires_at
            and current.version > version
        ):
            logger.debug("Discarded cache write older than live entry", extra={
                "layer": layer.value,
                "key": str(key)
            })
            return False

        expires_at = now + (ttl if ttl is not None else self._ttls[layer])
        entries[key] = CacheEntry(payload=payload, expires_at=expires_at, version=version)
        return True

    def delete(self, layer: CacheLayer, key: Hashable) -> None:
        self._layers[layer].pop(key, None)

    def cleanup(self) -> int:
        """Remove all expired entries. Returns the number removed."""
        now = self._clock.monotonic()
        removed = 0

        for layer, entries in self._layers.items():
            expired = [key for key, entry in entries.items() if now >= entry.expires_at]
            for key in expired:
                del entries[key]
            removed += len(expired)

        logger.debug("Cache cleanup completed", extra={"removed": removed})
        return removed

    def stats(self) -> Dict[str, Dict[str, Any]]:
        """Size and keys per layer."""
        return {
            layer.value: {
                "size": len(entries),
                "ttl": self._ttls[layer],
                "keys": [str(key) for key in entries]
            }
            for layer, entries in self._layers.items()
        }
