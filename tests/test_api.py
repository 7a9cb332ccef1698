"""Tests for the FastAPI transport (market_data_aggregator.main, api.endpoints)."""

import json

import pytest
from fastapi.testclient import TestClient

from conftest import (
    ALPHA_VANTAGE, FINNHUB, POLYGON, alpha_vantage_quote_body, query_param
)
from market_data_aggregator.main import create_app


@pytest.fixture
def client(settings, aggregator):
    app = create_app(settings, aggregator, run_background_tasks=False)
    with TestClient(app) as c:
        yield c


class TestHealthEndpoint:
    def test_health(self, client):
        resp = client.get("/health")

        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "healthy"
        assert data["providers_enabled"] == {"alpha_vantage": True, "finnhub": True, "polygon": True}
        assert data["background_tasks_running"] is False

    def test_status(self, client):
        resp = client.get("/v1/status")

        assert resp.status_code == 200
        assert resp.json()["providers"]["finnhub"]["limit"] == 60

    def test_unknown_route(self, client):
        resp = client.get("/v1/nothing")

        assert resp.status_code == 404
        assert resp.json()["error_code"] == "NOT_FOUND"


class TestQuoteEndpoints:
    def test_get_quote(self, client, fetcher):
        fetcher.add(ALPHA_VANTAGE, alpha_vantage_quote_body())

        resp = client.get("/v1/quotes/aapl")

        assert resp.status_code == 200
        data = resp.json()
        assert data["symbol"] == "AAPL"
        assert data["price"] == 230.0
        assert data["source"] == "alpha_vantage"
        assert data["timestamp_synthesized"] is True

    def test_unknown_symbol_is_404(self, client, fetcher):
        fetcher.add(ALPHA_VANTAGE, json.dumps({"Error Message": "Invalid API call"}))

        resp = client.get("/v1/quotes/NOPE")

        assert resp.status_code == 404
        body = resp.json()
        assert body["error_code"] == "NOT_FOUND"
        assert body["details"]["symbol"] == "NOPE"

    def test_unavailable_is_503(self, client, fetcher):
        fetcher.add(ALPHA_VANTAGE, "broken")
        fetcher.add(FINNHUB, "broken")
        fetcher.add(POLYGON, "broken")

        resp = client.get("/v1/quotes/AAPL")

        assert resp.status_code == 503
        body = resp.json()
        assert body["error_code"] == "UNAVAILABLE"
        assert body["details"]["providers_attempted"] == ["alpha_vantage", "finnhub", "polygon"]

    def test_invalid_symbol_is_400(self, client):
        resp = client.get("/v1/quotes/" + "A" * 21)

        assert resp.status_code == 400
        assert resp.json()["error_code"] == "INVALID_REQUEST"

    def test_batch(self, client, fetcher):
        fetcher.add(ALPHA_VANTAGE, lambda url: (
            json.dumps({"Error Message": "Invalid API call"}) if query_param(url, "symbol") == "NOPE"
            else alpha_vantage_quote_body()
        ))

        resp = client.post("/v1/quotes/batch", json={"symbols": ["aapl", "MSFT", "AAPL", "nope"]})

        assert resp.status_code == 200
        data = resp.json()
        assert set(data["quotes"]) == {"AAPL", "MSFT"}
        assert data["errors"]["NOPE"]["kind"] == "not_found"
        assert data["total"] == 3
        assert data["successful"] == 2

    def test_batch_over_limit_is_400(self, client, fetcher):
        resp = client.post("/v1/quotes/batch", json={"symbols": [f"S{i}" for i in range(11)]})

        assert resp.status_code == 400
        assert fetcher.calls == []

    def test_empty_batch_is_rejected(self, client):
        resp = client.post("/v1/quotes/batch", json={"symbols": []})

        assert resp.status_code == 422


class TestMarketEndpoints:
    @pytest.fixture(autouse=True)
    def routes(self, fetcher):
        changes = {"^GSPC": 0.3, "^DJI": -0.1, "^IXIC": 1.2}

        def route(url):
            function = query_param(url, "function")
            if function == "SECTOR":
                return json.dumps({"Rank A: Real-Time Performance": {"Energy": "-0.40%"}})
            if function == "OVERVIEW":
                return json.dumps({"Symbol": "AAPL", "Name": "Apple Inc", "PERatio": "31.5"})
            symbol = query_param(url, "symbol")
            return alpha_vantage_quote_body(
                price=100.0, open_price=100.0, low=99.0, high=101.0,
                change_percent=changes.get(symbol, 0.0), symbol=symbol
            )

        fetcher.add(ALPHA_VANTAGE, route)

    def test_indices(self, client):
        resp = client.get("/v1/indices")

        assert resp.status_code == 200
        assert resp.json()["total"] == 3

    def test_sectors(self, client):
        resp = client.get("/v1/sectors")

        assert resp.json()["sectors"] == [{"sector": "Energy", "performance": -0.4}]

    def test_overview(self, client):
        resp = client.get("/v1/overview")

        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "bullish"
        assert data["total_indices"] == 3
        assert data["total_sectors"] == 1

    def test_company(self, client):
        resp = client.get("/v1/company/AAPL")

        assert resp.status_code == 200
        assert resp.json()["pe_ratio"] == 31.5


class TestHistoryEndpoints:
    def test_history_and_aggregation(self, client, fetcher):
        fetcher.add(ALPHA_VANTAGE, alpha_vantage_quote_body())
        client.get("/v1/quotes/AAPL")

        history = client.get("/v1/history/aapl", params={"period": "1h"}).json()
        aggregated = client.get("/v1/history/AAPL/aggregated", params={"period": "1d", "bucket": "1m"}).json()

        assert history["total"] == 1
        assert history["data"][0]["price"] == 230.0
        assert aggregated["total"] == 1
        assert aggregated["data"][0]["close"] == 230.0

    def test_unknown_period_is_400(self, client):
        resp = client.get("/v1/history/AAPL", params={"period": "2y"})

        assert resp.status_code == 400


class TestUtilityEndpoints:
    def test_search(self, client):
        resp = client.get("/v1/search", params={"q": "aa"})

        assert resp.json()["results"] == ["AAPL"]

    def test_short_search_is_400(self, client):
        assert client.get("/v1/search", params={"q": "a"}).status_code == 400

    def test_validate(self, client):
        valid = client.post("/v1/validate", json={"symbol": "aapl", "price": 230.123456}).json()
        invalid = client.post("/v1/validate", json={"symbol": "AAPL", "price": -1}).json()

        assert valid["is_valid"] is True
        assert valid["data"]["price"] == 230.1235
        assert invalid["is_valid"] is False
        assert invalid["errors"] == ["price must be non-negative"]

    def test_cache_cleanup(self, client, fetcher, clock):
        fetcher.add(ALPHA_VANTAGE, alpha_vantage_quote_body())
        client.get("/v1/quotes/AAPL")
        clock.advance(61)

        resp = client.post("/v1/cache/cleanup")

        assert resp.json()["removed"] == 1


class TestStream:
    def test_subscribe_receives_ingested_quotes(self, client, fetcher, aggregator):
        fetcher.add(ALPHA_VANTAGE, alpha_vantage_quote_body())

        with client.websocket_connect("/v1/stream") as ws:
            ws.send_json({"action": "subscribe", "symbol": "aapl"})
            assert ws.receive_json() == {"type": "subscribed", "symbol": "AAPL"}

            client.get("/v1/quotes/AAPL")
            message = ws.receive_json()
            assert message["type"] == "quote"
            assert message["data"]["symbol"] == "AAPL"

            ws.send_json({"action": "unsubscribe", "symbol": "AAPL"})
            assert ws.receive_json() == {"type": "unsubscribed", "symbol": "AAPL"}
            assert aggregator.hub.active_symbols() == []

    def test_invalid_message(self, client):
        with client.websocket_connect("/v1/stream") as ws:
            ws.send_text("not json")
            assert ws.receive_json()["type"] == "error"

            ws.send_json({"action": "subscribe", "symbol": "BAD SYMBOL"})
            assert ws.receive_json()["type"] == "error"
