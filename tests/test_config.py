"""Tests for market_data_aggregator.core.config."""

import pytest

from market_data_aggregator.core.config import ConfigurationError, Settings, load_settings
from market_data_aggregator.models import DataProvider


class TestDefaults:
    def test_defaults(self):
        settings = Settings(_env_file=None)

        assert settings.alpha_vantage_rate_limit == 5
        assert settings.finnhub_rate_limit == 60
        assert settings.polygon_rate_limit == 5
        assert settings.quote_cache_ttl == 60
        assert settings.company_cache_ttl == 86400
        assert settings.history_max_length == 1000
        assert settings.batch_limit == 10
        assert settings.index_request_spacing == 0.2
        assert settings.get_provider_priority() == [
            DataProvider.ALPHA_VANTAGE, DataProvider.FINNHUB, DataProvider.POLYGON
        ]
        assert settings.get_index_symbols_list() == ["^GSPC", "^DJI", "^IXIC"]


class TestLoadSettings:
    def test_unknown_key_is_rejected(self):
        with pytest.raises(ConfigurationError):
            load_settings({"redis_url": "redis://localhost"})

    @pytest.mark.parametrize(
        "priority",
        ["", "alpha_vantage,yahoo", "finnhub,finnhub"],
    )
    def test_invalid_priority_is_rejected(self, priority):
        with pytest.raises(ConfigurationError):
            load_settings({"provider_priority": priority})

    def test_priority_is_normalized(self):
        settings = load_settings({"provider_priority": " Polygon , finnhub "})

        assert settings.get_provider_priority() == [DataProvider.POLYGON, DataProvider.FINNHUB]

    def test_missing_credentials_disable_provider(self):
        settings = load_settings({"finnhub_api_key": "fh", "polygon_api_key": ""})

        assert settings.get_api_key(DataProvider.FINNHUB) == "fh"
        assert settings.get_api_key(DataProvider.POLYGON) is None

    def test_rate_limit_override(self):
        settings = load_settings({"polygon_rate_limit": 100})

        assert settings.get_rate_limit(DataProvider.POLYGON) == 100

    @pytest.mark.parametrize(
        "values",
        [{"log_level": "verbose"}, {"log_format": "xml"}, {"batch_limit": 0}, {"quote_cache_ttl": -1}],
    )
    def test_invalid_values_are_rejected(self, values):
        with pytest.raises(ConfigurationError):
            load_settings(values)

    def test_log_settings_are_normalized(self):
        settings = load_settings({"log_level": "debug", "log_format": "TEXT"})

        assert settings.log_level == "DEBUG"
        assert settings.log_format == "text"


def test_settings_read_environment(monkeypatch):
    monkeypatch.setenv("FINNHUB_API_KEY", "from-env")
    monkeypatch.setenv("BATCH_LIMIT", "5")

    settings = load_settings()

    assert settings.finnhub_api_key == "from-env"
    assert settings.batch_limit == 5
