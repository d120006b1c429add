import httpx
import pytest

import market_data
from fx import RateService
from market_data import CACHED, COST_BASIS, LIVE, QuoteProvider, crypto_id


class _Response:
    def __init__(self, payload, status_code=200):
        self._payload = payload
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            request = httpx.Request("GET", "https://example.invalid")
            raise httpx.HTTPStatusError("error", request=request, response=httpx.Response(self.status_code, request=request))

    def json(self):
        return self._payload


def _route(monkeypatch, handler):
    calls = []

    def fake_get(url, params=None, headers=None, timeout=None):
        calls.append({"url": url, "params": params, "timeout": timeout})
        result = handler(url, params or {})
        return result if isinstance(result, _Response) else _Response(result)

    monkeypatch.setattr(market_data.httpx, "get", fake_get)
    return calls


def _yahoo(price, change=None):
    meta = {"regularMarketPrice": price}
    if change is not None:
        meta["regularMarketChangePercent"] = change
    return {"chart": {"result": [{"meta": meta}]}}


class _Clock:
    def __init__(self, t=1_000_000.0):
        self.t = t

    def __call__(self):
        return self.t


@pytest.mark.parametrize("symbol,expected", [
    ("BTC", "bitcoin"),
    ("btcusdt", "bitcoin"),
    ("ETH-USD", None),
    ("SOLUSD", "solana"),
    ("USD", None),
])
def test_crypto_id(symbol, expected):
    assert crypto_id(symbol) == expected


def test_crypto_price_from_coingecko(monkeypatch):
    calls = _route(monkeypatch, lambda url, params: {"bitcoin": {"usd": 65000.0}})

    price = QuoteProvider(timeout_s=2.5).get_price("BTC", "Crypto")

    assert price == 65000.0
    assert calls[0]["params"]["ids"] == "bitcoin"
    assert calls[0]["timeout"] == 2.5


def test_stock_falls_through_to_finnhub(monkeypatch):
    def handler(url, params):
        if "yahoo" in url:
            return _Response({}, status_code=500)
        return {"c": 187.5}

    calls = _route(monkeypatch, handler)

    price = QuoteProvider(finnhub_api_key="k").get_price("aapl", "Stock")

    assert price == 187.5
    assert "finnhub" in calls[-1]["url"]
    assert calls[-1]["params"]["symbol"] == "AAPL"


def test_timeouts_make_the_lookup_fail(monkeypatch):
    def handler(url, params):
        raise httpx.ReadTimeout("slow upstream")

    _route(monkeypatch, handler)

    assert QuoteProvider(finnhub_api_key="k").get_price("AAPL", "Stock") is None


def test_daily_change_from_yahoo_meta(monkeypatch):
    _route(monkeypatch, lambda url, params: _Response(_yahoo(100.0, change=-1.25)))
    assert QuoteProvider().get_daily_change_percent("AAPL") == -1.25


def test_resolve_live_price_converts_inr(monkeypatch):
    _route(monkeypatch, lambda url, params: _Response(_yahoo(865.0)))

    quote = QuoteProvider(rates=RateService({"INR": 86.5})).resolve_usd_price("INFY.NS", "Stock", fallback=1.0)

    assert quote.source == LIVE
    assert quote.live is True
    assert quote.currency == "INR"
    assert quote.native_price == 865.0
    assert quote.price == pytest.approx(10.0)


def test_resolve_prefers_last_known_then_cost_basis(monkeypatch):
    clock = _Clock()
    provider = QuoteProvider(clock=clock, max_stale_seconds=60)
    provider.remember("AAPL", 190.0)
    _route(monkeypatch, lambda url, params: _Response({}, status_code=503))

    quote = provider.resolve_usd_price("AAPL", "Stock", fallback=150.0)
    assert (quote.source, quote.live, quote.price) == (CACHED, False, 190.0)

    clock.t += 61
    quote = provider.resolve_usd_price("AAPL", "Stock", fallback=150.0)
    assert (quote.source, quote.live, quote.price) == (COST_BASIS, False, 150.0)
