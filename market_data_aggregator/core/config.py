"""
Configuration management for Market Data Aggregator Service.
Uses pydantic-settings for environment variable management.
"""

from functools import lru_cache
from typing import Any, Dict, List, Mapping, Optional

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..models import DataProvider


class ConfigurationError(Exception):
    """Raised when settings cannot be built from the supplied configuration."""


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="forbid",
    )

    # Application metadata
    app_name: str = Field(default="Market Data Aggregator")
    app_version: str = Field(default="1.0.0")
    debug: bool = Field(default=False)
    server_host: str = Field(default="0.0.0.0")
    server_port: int = Field(default=8000)

    # API keys for data providers; a missing key disables the provider
    alpha_vantage_api_key: Optional[str] = Field(default=None)
    finnhub_api_key: Optional[str] = Field(default=None)
    polygon_api_key: Optional[str] = Field(default=None)

    # Rate limiting (requests per window)
    alpha_vantage_rate_limit: int = Field(default=5, ge=0)
    finnhub_rate_limit: int = Field(default=60, ge=0)
    polygon_rate_limit: int = Field(default=5, ge=0)
    rate_limit_window_seconds: float = Field(default=60.0, gt=0)

    # Cascade order, comma separated provider names
    provider_priority: str = Field(default="alpha_vantage,finnhub,polygon")

    # Cache TTL settings (in seconds)
    quote_cache_ttl: float = Field(default=60.0, gt=0)
    market_cache_ttl: float = Field(default=300.0, gt=0)
    company_cache_ttl: float = Field(default=86400.0, gt=0)
    index_cache_ttl: float = Field(default=300.0, gt=0)
    aggregated_cache_ttl: float = Field(default=600.0, gt=0)

    # History and normalization
    history_max_length: int = Field(default=1000, gt=0)
    freshness_window_seconds: float = Field(default=300.0, gt=0)

    # Outbound requests
    request_timeout: float = Field(default=10.0, gt=0)
    request_attempt_timeout: float = Field(default=8.0, gt=0)
    operation_deadline: float = Field(default=15.0, gt=0)

    # Batch requests
    batch_limit: int = Field(default=10, gt=0)
    batch_concurrency: int = Field(default=4, gt=0)

    # Market indices
    index_symbols: str = Field(default="^GSPC,^DJI,^IXIC")
    index_request_spacing: float = Field(default=0.2, ge=0)

    # Background task intervals (in seconds)
    quote_poll_interval: float = Field(default=30.0, gt=0)
    index_poll_interval: float = Field(default=60.0, gt=0)
    cache_cleanup_interval: float = Field(default=60.0, gt=0)

    # Logging configuration
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")

    @field_validator('provider_priority')
    @classmethod
    def validate_provider_priority(cls, v: str) -> str:
        """Validate that provider_priority names known, distinct providers."""
        names = [name.strip().lower() for name in v.split(',') if name.strip()]
        if not names:
            raise ValueError("provider_priority cannot be empty")
        known = {provider.value for provider in DataProvider}
        unknown = [name for name in names if name not in known]
        if unknown:
            raise ValueError(f"Unknown providers in provider_priority: {', '.join(unknown)}")
        if len(set(names)) != len(names):
            raise ValueError("provider_priority contains duplicates")
        return ",".join(names)

    @field_validator('index_symbols')
    @classmethod
    def validate_index_symbols(cls, v: str) -> str:
        """Validate that index_symbols is a comma-separated string."""
        if not v or not v.strip():
            raise ValueError("index_symbols cannot be empty")
        return v.strip()

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = {'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'}
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of: {', '.join(sorted(valid_levels))}")
        return v.upper()

    @field_validator('log_format')
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Validate log format."""
        valid_formats = {'json', 'text'}
        if v.lower() not in valid_formats:
            raise ValueError(f"log_format must be one of: {', '.join(sorted(valid_formats))}")
        return v.lower()

    def get_provider_priority(self) -> List[DataProvider]:
        """Get the cascade order as provider enums."""
        return [DataProvider(name) for name in self.provider_priority.split(',')]

    def get_index_symbols_list(self) -> List[str]:
        """Get index symbols as a list."""
        return [symbol.strip().upper() for symbol in self.index_symbols.split(',') if symbol.strip()]

    def get_api_key(self, provider: DataProvider) -> Optional[str]:
        """Get the credential for a provider, or None when it is not configured."""
        key = getattr(self, f"{provider.value}_api_key")
        return key or None

    def get_rate_limit(self, provider: DataProvider) -> int:
        """Get the request budget per window for a provider."""
        return getattr(self, f"{provider.value}_rate_limit")


def load_settings(values: Optional[Mapping[str, Any]] = None) -> Settings:
    """
    Build settings from an explicit mapping layered over the environment.

    Raises:
        ConfigurationError: On unknown keys or invalid values
    """
    overrides: Dict[str, Any] = dict(values or {})
    try:
        return Settings(**overrides)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e


@lru_cache()
def get_settings() -> Settings:
    """Settings for the process entry point, read once."""
    return load_settings()
