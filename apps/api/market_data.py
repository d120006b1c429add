"""
Live quote lookups for held positions.

Chain per asset type:
- Crypto: CoinGecko simple price
- Stock / ETF: Yahoo chart meta, then Finnhub (needs key), then yfinance (opt-in)

Every outbound call is bounded by a timeout. A failed lookup is `None`;
`resolve_usd_price` then falls back to the last known price and finally to
the caller's stored cost basis, flagging the result as not live.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional
from urllib.parse import quote_plus

import httpx
import yfinance as yf

from fx import RateService, native_currency_for_symbol


logger = logging.getLogger(__name__)

LIVE = "LIVE"
CACHED = "CACHED"
COST_BASIS = "COST_BASIS"

CRYPTO_IDS = {
    "BTC": "bitcoin",
    "ETH": "ethereum",
    "SOL": "solana",
    "DOGE": "dogecoin",
    "ADA": "cardano",
    "USDT": "tether",
    "BNB": "binancecoin",
    "XRP": "ripple",
}

_YAHOO_HEADERS = {"User-Agent": "Mozilla/5.0"}


@dataclass
class PriceQuote:
    price: float  # USD
    live: bool
    source: str
    native_price: Optional[float] = None
    currency: str = "USD"


def _positive(value: Any) -> Optional[float]:
    try:
        v = float(value)
    except (TypeError, ValueError):
        return None
    return v if v > 0 else None


def crypto_id(symbol: str) -> Optional[str]:
    s = (symbol or "").strip().upper()
    for suffix in ("USDT", "USD"):
        if s.endswith(suffix) and s != suffix:
            s = s[: -len(suffix)]
            break
    return CRYPTO_IDS.get(s)


class QuoteProvider:
    def __init__(
        self,
        rates: Optional[RateService] = None,
        timeout_s: float = 4.0,
        finnhub_api_key: str = "",
        enable_yfinance: bool = False,
        max_stale_seconds: int = 60 * 60 * 24,
        clock: Callable[[], float] = time.time,
    ):
        self.rates = rates or RateService()
        self.timeout_s = timeout_s
        self.finnhub_api_key = finnhub_api_key
        self.enable_yfinance = enable_yfinance
        self.max_stale_seconds = max_stale_seconds
        self.clock = clock
        self._last_prices: Dict[str, Dict[str, Any]] = {}  # SYMBOL -> {"price": usd, "ts": float}
        self._lock = threading.Lock()

    # ----------------------------
    # HTTP
    # ----------------------------
    def _get_json(self, url: str, params: Optional[Dict[str, Any]] = None, headers: Optional[Dict[str, str]] = None) -> Optional[Dict[str, Any]]:
        try:
            r = httpx.get(url, params=params, headers=headers, timeout=self.timeout_s)
            r.raise_for_status()
            return r.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Quote request failed for %s: %s", url, e)
            return None

    # ----------------------------
    # Providers
    # ----------------------------
    def _coingecko_price(self, symbol: str) -> Optional[float]:
        coin = crypto_id(symbol)
        if not coin:
            return None
        data = self._get_json(
            "https://api.coingecko.com/api/v3/simple/price",
            params={"ids": coin, "vs_currencies": "usd"},
        )
        return _positive(((data or {}).get(coin) or {}).get("usd"))

    def _yahoo_meta(self, symbol: str) -> Dict[str, Any]:
        data = self._get_json(
            f"https://query1.finance.yahoo.com/v8/finance/chart/{quote_plus(symbol)}",
            params={"interval": "1d"},
            headers=_YAHOO_HEADERS,
        )
        try:
            result = ((data or {}).get("chart") or {}).get("result") or [None]
            return (result[0] or {}).get("meta") or {}
        except (AttributeError, IndexError, TypeError):
            return {}

    def _yahoo_price(self, symbol: str) -> Optional[float]:
        return _positive(self._yahoo_meta(symbol).get("regularMarketPrice"))

    def _finnhub_price(self, symbol: str) -> Optional[float]:
        if not self.finnhub_api_key:
            return None
        data = self._get_json(
            "https://finnhub.io/api/v1/quote",
            params={"symbol": symbol, "token": self.finnhub_api_key},
        )
        return _positive((data or {}).get("c"))

    def _yfinance_price(self, symbol: str) -> Optional[float]:
        if not self.enable_yfinance:
            return None
        try:
            df = yf.download(
                tickers=symbol,
                period="2d",
                interval="1d",
                auto_adjust=True,
                progress=False,
                threads=False,
                timeout=self.timeout_s,
            )
        except Exception as e:
            logger.warning("yfinance lookup failed for %s: %s", symbol, e)
            return None
        if df is None or df.empty or "Close" not in df.columns:
            return None
        close = df["Close"].squeeze()
        if hasattr(close, "dropna"):
            close = close.dropna()
            if close.empty:
                return None
            return _positive(close.iloc[-1])
        return _positive(close)

    # ----------------------------
    # Public API
    # ----------------------------
    def get_price(self, symbol: str, asset_type: str) -> Optional[float]:
        """Latest price in the listing's native currency, or None."""
        s = (symbol or "").strip().upper()
        if not s:
            return None
        kind = str(getattr(asset_type, "value", asset_type) or "Stock")

        if kind == "Crypto":
            price = self._coingecko_price(s)
            if price:
                return price

        if kind in ("Stock", "ETF"):
            for fetch in (self._yahoo_price, self._finnhub_price, self._yfinance_price):
                price = fetch(s)
                if price:
                    return price

        logger.warning("All quote providers failed for %s (%s)", s, kind)
        return None

    def get_daily_change_percent(self, symbol: str) -> float:
        meta = self._yahoo_meta((symbol or "").strip().upper())
        try:
            return float(meta.get("regularMarketChangePercent") or 0.0)
        except (TypeError, ValueError):
            return 0.0

    def remember(self, symbol: str, usd_price: float) -> None:
        with self._lock:
            self._last_prices[symbol.upper()] = {"price": float(usd_price), "ts": self.clock()}

    def last_known(self, symbol: str) -> Optional[float]:
        with self._lock:
            item = self._last_prices.get(symbol.upper())
        if not item:
            return None
        if self.clock() - item["ts"] > self.max_stale_seconds:
            return None
        return item["price"]

    def resolve_usd_price(self, symbol: str, asset_type: str, fallback: float) -> PriceQuote:
        s = (symbol or "").strip().upper()
        native = self.get_price(s, asset_type)
        if native:
            usd = self.rates.quote_to_usd(s, native)
            self.remember(s, usd)
            return PriceQuote(price=usd, live=True, source=LIVE, native_price=native, currency=native_currency_for_symbol(s))

        cached = self.last_known(s)
        if cached:
            logger.warning("%s: live quote unavailable, using last known price $%.2f", s, cached)
            return PriceQuote(price=cached, live=False, source=CACHED)

        logger.warning("%s: live quote unavailable, using stored price $%.2f", s, fallback)
        return PriceQuote(price=float(fallback), live=False, source=COST_BASIS)
