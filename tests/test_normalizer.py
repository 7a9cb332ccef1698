"""Tests for market_data_aggregator.services.normalizer."""

from datetime import timedelta

import pytest

from conftest import FakeClock, make_quote
from market_data_aggregator.models import ProviderFailure, ProviderFailureKind
from market_data_aggregator.services.normalizer import InvalidQuoteError, QuoteNormalizer


@pytest.fixture
def normalizer(clock: FakeClock) -> QuoteNormalizer:
    return QuoteNormalizer(clock, freshness_window=300)


class TestCoercion:
    def test_rounds_prices_and_percent(self, normalizer, clock):
        quote = make_quote(
            price=123.456789, clock=clock, change=1.234567, change_percent=0.5249,
            open=123.11111, high=124.99999, low=122.00004, previous_close=122.22224
        )

        result = normalizer.normalize(quote)

        assert result.price == 123.4568
        assert result.change == 1.2346
        assert result.change_percent == 0.52
        assert result.open == 123.1111
        assert result.high == 125.0
        assert result.low == 122.0
        assert result.previous_close == 122.2222

    def test_negative_volume_is_clamped(self, normalizer, clock):
        result = normalizer.normalize(make_quote(clock=clock, volume=-10))

        assert result.volume == 0

    def test_is_idempotent(self, normalizer, clock):
        quote = make_quote(
            price=99.123456, clock=clock, change=-0.987654, change_percent=-0.9951,
            volume=1200, open=100.0, high=100.5, low=98.9
        )

        once = normalizer.normalize(quote)
        twice = normalizer.normalize(once)

        assert twice == once


class TestTimestamps:
    def test_missing_timestamp_is_synthesized(self, normalizer, clock):
        result = normalizer.normalize(make_quote(clock=clock))

        assert result.timestamp == clock.now()
        assert result.timestamp_synthesized is True

    def test_fresh_upstream_timestamp_is_kept(self, normalizer, clock):
        upstream = clock.now() - timedelta(seconds=30)

        result = normalizer.normalize(make_quote(clock=clock, timestamp=upstream))

        assert result.timestamp == upstream
        assert result.timestamp_synthesized is False

    def test_stale_upstream_timestamp_is_synthesized(self, normalizer, clock):
        upstream = clock.now() - timedelta(days=1)

        result = normalizer.normalize(make_quote(clock=clock, timestamp=upstream))

        assert result.timestamp == clock.now()
        assert result.timestamp_synthesized is True

    def test_stale_ingestion_is_rejected(self, normalizer, clock):
        quote = make_quote(clock=clock)
        clock.advance(301)

        result = normalizer.normalize(quote)

        assert isinstance(result, ProviderFailure)
        assert result.kind == ProviderFailureKind.INVALID_QUOTE


class TestRejection:
    @pytest.mark.parametrize(
        "overrides",
        [
            {"price": float("nan")},
            {"price": float("inf")},
            {"price": -1.0},
            {"change_percent": 1000.01},
            {"change_percent": -100.5},
            {"volume": 10 ** 12 + 1},
            {"high": -3.0},
        ],
    )
    def test_invalid_records_fail(self, normalizer, clock, overrides):
        values = {"price": 100.0, **overrides}

        result = normalizer.normalize(make_quote(clock=clock, **values))

        assert isinstance(result, ProviderFailure)
        assert result.kind == ProviderFailureKind.INVALID_QUOTE

    def test_bounds_are_inclusive(self, normalizer, clock):
        result = normalizer.normalize(make_quote(clock=clock, change_percent=1000.0, volume=10 ** 12))

        assert result.change_percent == 1000.0
        assert result.volume == 10 ** 12

    def test_inconsistent_session_range(self, normalizer, clock):
        quote = make_quote(price=105.0, clock=clock, open=100.0, high=104.0, low=99.0)

        assert isinstance(normalizer.normalize(quote), ProviderFailure)
        assert normalizer.normalize(quote, same_session=False).price == 105.0

    def test_normalize_or_raise_lists_every_violation(self, normalizer, clock):
        quote = make_quote(price=-1.0, clock=clock, change_percent=5000.0)

        with pytest.raises(InvalidQuoteError) as exc_info:
            normalizer.normalize_or_raise(quote)

        assert len(exc_info.value.errors) == 2


class TestValidate:
    def test_valid_record(self, normalizer, clock):
        report = normalizer.validate(make_quote(clock=clock))

        assert report["is_valid"] is True
        assert report["errors"] == []
        assert report["data"].timestamp_synthesized is True

    def test_invalid_record(self, normalizer, clock):
        report = normalizer.validate(make_quote(price=-1.0, clock=clock))

        assert report["is_valid"] is False
        assert report["errors"] == ["price must be non-negative"]
        assert report["data"] is None
