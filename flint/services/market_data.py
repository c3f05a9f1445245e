# flint/services/market_data.py
"""
Best-effort quotes.

A ``MarketDataService`` holds a short-lived per-symbol cache and an ordered
list of providers. On a cache miss it walks the providers in order and keeps
the first quote it gets. Provider failures are logged and skipped. ``None`` is
the only "unavailable" signal callers ever see.

Concurrent misses for one symbol each walk the whole chain; there is no
in-flight de-duplication.

``CandleService`` walks its own provider list the same way for chart history,
uncached.
"""
from __future__ import annotations

import asyncio
import datetime as dt
import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

import httpx
from cachetools import TTLCache
from pydantic import BaseModel

from flint.errors import ProviderError
from flint.services.mappers import to_float

logger = logging.getLogger(__name__)


class Quote(BaseModel):
    symbol: str
    price: float
    change: float | None = None
    changePct: float | None = None
    volume: int | None = None
    marketCap: float | None = None
    companyName: str | None = None
    source: str


class QuoteProvider(Protocol):
    name: str

    async def fetch(self, symbol: str, credentials: Optional[Dict[str, str]] = None) -> Optional[Quote]: ...


def normalize_symbol(symbol: str | None) -> str:
    return (symbol or "").strip().upper()


# ---------------- providers ----------------

class SnapTradeQuoteProvider:
    """Authenticated broker quote through one of the user's SnapTrade accounts (the first unless ``accountId`` is given)."""

    name = "snaptrade"

    def __init__(self, snaptrade):
        self.snaptrade = snaptrade

    async def fetch(self, symbol: str, credentials: Optional[Dict[str, str]] = None) -> Optional[Quote]:
        if not credentials:
            return None
        # the SDK is synchronous
        account_id = credentials.get("accountId")
        if not account_id:
            accounts = await asyncio.to_thread(
                self.snaptrade.list_accounts, credentials["userId"], credentials["userSecret"]
            )
            if not accounts:
                return None
            account_id = accounts[0]["id"]
        quotes = await asyncio.to_thread(
            self.snaptrade.get_quotes,
            credentials["userId"],
            credentials["userSecret"],
            account_id,
            [symbol],
        )
        if not quotes:
            return None
        q = quotes[0]
        price = to_float(q.get("last_trade_price")) or to_float(q.get("bid_price")) or to_float(q.get("ask_price"))
        if not price:
            return None
        return Quote(symbol=symbol, price=price, source=self.name)


class _HttpQuoteProvider:
    name = "http"

    def __init__(self, http: httpx.AsyncClient):
        self.http = http

    async def _get_json(self, url: str, *, params: Dict[str, Any] | None = None, headers: Dict[str, str] | None = None) -> Any:
        resp = await self.http.get(url, params=params, headers=headers)
        if resp.status_code >= 400:
            raise ProviderError(
                f"{self.name} returned {resp.status_code}",
                provider=self.name,
                upstream_status=resp.status_code,
            )
        return resp.json()


class PolygonQuoteProvider(_HttpQuoteProvider):
    """Delayed aggregator: previous session's aggregate bar."""

    name = "polygon"

    def __init__(self, http: httpx.AsyncClient, api_key: str, base_url: str = "https://api.polygon.io"):
        super().__init__(http)
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")

    async def fetch(self, symbol: str, credentials: Optional[Dict[str, str]] = None) -> Optional[Quote]:
        data = await self._get_json(
            f"{self.base_url}/v2/aggs/ticker/{symbol}/prev",
            params={"adjusted": "true", "apiKey": self.api_key},
        )
        results = data.get("results") or []
        if not results:
            return None
        bar = results[0]
        close, open_ = to_float(bar.get("c")), to_float(bar.get("o"))
        if not close:
            return None
        change = close - open_ if open_ else None
        return Quote(
            symbol=symbol,
            price=close,
            change=round(change, 4) if change is not None else None,
            changePct=round(change / open_ * 100, 2) if change is not None else None,
            volume=int(bar.get("v") or 0),
            source=self.name,
        )


class AlpacaQuoteProvider(_HttpQuoteProvider):
    """Secondary broker market-data API (snapshot endpoint)."""

    name = "alpaca"

    def __init__(self, http: httpx.AsyncClient, key_id: str, secret: str, base_url: str = "https://data.alpaca.markets"):
        super().__init__(http)
        self.headers = {"APCA-API-KEY-ID": key_id, "APCA-API-SECRET-KEY": secret}
        self.base_url = base_url.rstrip("/")

    async def fetch(self, symbol: str, credentials: Optional[Dict[str, str]] = None) -> Optional[Quote]:
        data = await self._get_json(f"{self.base_url}/v2/stocks/{symbol}/snapshot", headers=self.headers)
        latest = (data.get("latestTrade") or {}).get("p")
        daily = data.get("dailyBar") or {}
        prev_close = to_float((data.get("prevDailyBar") or {}).get("c"))
        price = to_float(latest) or to_float(daily.get("c"))
        if not price:
            return None
        change = price - prev_close if prev_close else None
        return Quote(
            symbol=symbol,
            price=price,
            change=round(change, 4) if change is not None else None,
            changePct=round(change / prev_close * 100, 2) if change is not None else None,
            volume=int(daily.get("v") or 0),
            source=self.name,
        )


class AlphaVantageQuoteProvider(_HttpQuoteProvider):
    """GLOBAL_QUOTE; the free tier answers throttled calls with a 200 and a "Note"."""

    name = "alpha_vantage"

    def __init__(self, http: httpx.AsyncClient, api_key: str, base_url: str = "https://www.alphavantage.co"):
        super().__init__(http)
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")

    async def fetch(self, symbol: str, credentials: Optional[Dict[str, str]] = None) -> Optional[Quote]:
        data = await self._get_json(
            f"{self.base_url}/query",
            params={"function": "GLOBAL_QUOTE", "symbol": symbol, "apikey": self.api_key},
        )
        if "Note" in data or "Information" in data:
            logger.warning("Alpha Vantage throttled request for %s", symbol)
            return None
        quote = data.get("Global Quote") or {}
        price = to_float(quote.get("05. price"))
        if not price:
            return None
        pct = (quote.get("10. change percent") or "").rstrip("%")
        return Quote(
            symbol=symbol,
            price=price,
            change=to_float(quote.get("09. change")),
            changePct=to_float(pct),
            volume=int(to_float(quote.get("06. volume")) or 0),
            source=self.name,
        )


# Last resort so common tickers still render when every network source is down.
STATIC_QUOTES: Dict[str, Dict[str, Any]] = {
    "AAPL": {"price": 224.50, "changePct": 1.50, "companyName": "Apple Inc."},
    "GOOGL": {"price": 193.15, "changePct": 0.80, "companyName": "Alphabet Inc."},
    "TSLA": {"price": 322.00, "changePct": 2.85, "companyName": "Tesla, Inc."},
    "MSFT": {"price": 385.20, "changePct": 0.50, "companyName": "Microsoft Corporation"},
    "AMZN": {"price": 186.75, "changePct": 1.10, "companyName": "Amazon.com, Inc."},
    "NVDA": {"price": 875.30, "changePct": 3.20, "companyName": "NVIDIA Corporation"},
    "META": {"price": 521.80, "changePct": -0.40, "companyName": "Meta Platforms, Inc."},
    "SPY": {"price": 580.25, "changePct": 0.30, "companyName": "SPDR S&P 500 ETF Trust"},
}


class StaticQuoteProvider:
    name = "static"

    def __init__(self, table: Dict[str, Dict[str, Any]] | None = None):
        self.table = STATIC_QUOTES if table is None else table

    async def fetch(self, symbol: str, credentials: Optional[Dict[str, str]] = None) -> Optional[Quote]:
        row = self.table.get(symbol)
        if not row:
            return None
        price, pct = row["price"], row.get("changePct")
        change = round(price * pct / (100 + pct), 2) if pct is not None else None
        return Quote(
            symbol=symbol,
            price=price,
            change=change,
            changePct=pct,
            companyName=row.get("companyName"),
            source=self.name,
        )


# ---------------- service ----------------

class MarketDataService:
    def __init__(
        self,
        providers: Sequence[QuoteProvider],
        *,
        ttl_seconds: float = 5.0,
        maxsize: int = 1024,
        timer: Callable[[], float] = time.monotonic,
    ):
        self.providers: List[QuoteProvider] = list(providers)
        self.ttl_seconds = ttl_seconds
        self._cache: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl_seconds, timer=timer)

    async def get_market_data(self, symbol: str, credentials: Optional[Dict[str, str]] = None) -> Optional[Quote]:
        sym = normalize_symbol(symbol)
        if not sym:
            return None

        cached = self._cache.get(sym)
        if cached is not None:
            return cached

        for provider in self.providers:
            try:
                quote = await provider.fetch(sym, credentials)
            except Exception as e:
                logger.warning("Quote provider %s failed for %s: %s: %s", provider.name, sym, type(e).__name__, e)
                continue
            if quote is not None:
                self._cache[sym] = quote
                return quote
            logger.debug("Quote provider %s had nothing for %s", provider.name, sym)

        logger.info("No quote available for %s from %d providers", sym, len(self.providers))
        return None

    async def get_bulk_market_data(
        self, symbols: Iterable[str], credentials: Optional[Dict[str, str]] = None
    ) -> Dict[str, Optional[Quote]]:
        unique = list(dict.fromkeys(s for s in (normalize_symbol(x) for x in symbols) if s))
        quotes = await asyncio.gather(*(self.get_market_data(s, credentials) for s in unique))
        return dict(zip(unique, quotes))

    def clear_cache(self) -> None:
        self._cache.clear()

    def cache_stats(self) -> Dict[str, Any]:
        # TTLCache drops expired entries lazily; expire() makes the count honest
        self._cache.expire()
        return {"size": len(self._cache), "keys": list(self._cache.keys()), "ttlSeconds": self.ttl_seconds}


def build_market_data_service(settings, http: httpx.AsyncClient, snaptrade=None) -> MarketDataService:
    """Providers in the order named by settings; unconfigured ones are left out."""
    factories: Dict[str, Callable[[], Optional[QuoteProvider]]] = {
        "snaptrade": lambda: SnapTradeQuoteProvider(snaptrade) if snaptrade is not None and settings.snaptrade_configured else None,
        "polygon": lambda: PolygonQuoteProvider(http, settings.polygon_api_key, settings.polygon_api_url) if settings.polygon_api_key else None,
        "alpaca": lambda: (
            AlpacaQuoteProvider(http, settings.alpaca_api_key_id, settings.alpaca_api_secret, settings.alpaca_data_url)
            if settings.alpaca_api_key_id and settings.alpaca_api_secret else None
        ),
        "alpha_vantage": lambda: (
            AlphaVantageQuoteProvider(http, settings.alpha_vantage_api_key, settings.alpha_vantage_api_url)
            if settings.alpha_vantage_api_key else None
        ),
        "static": lambda: StaticQuoteProvider(),
    }

    providers: List[QuoteProvider] = []
    for name in settings.market_data_provider_list:
        if name not in factories:
            raise ValueError(f"Unknown market data provider: {name}")
        provider = factories[name]()
        if provider is None:
            logger.info("Market data provider %s not configured; skipping", name)
            continue
        providers.append(provider)

    logger.info("Market data providers: %s", [p.name for p in providers])
    return MarketDataService(providers, ttl_seconds=settings.market_data_ttl_seconds)


# ---------------- historical candles ----------------

class Candle(BaseModel):
    time: int  # unix seconds, bar open
    open: float
    high: float
    low: float
    close: float
    volume: int | None = None


# timeframe -> (bar size, bar unit, days of history)
CANDLE_TIMEFRAMES: Dict[str, Tuple[int, str, int]] = {
    "1D": (5, "minute", 1),
    "1W": (1, "hour", 7),
    "1M": (1, "day", 30),
    "3M": (1, "day", 90),
    "6M": (1, "day", 180),
    "1Y": (1, "day", 365),
    "5Y": (1, "week", 1825),
}
DEFAULT_CANDLE_TIMEFRAME = "1D"
MAX_CANDLES = 1500


class CandleProvider(Protocol):
    name: str

    async def fetch_candles(
        self, symbol: str, multiplier: int, unit: str, start: dt.datetime, end: dt.datetime, limit: int
    ) -> Optional[List[Candle]]: ...


class PolygonCandleProvider(_HttpQuoteProvider):
    """Range aggregates: /v2/aggs/ticker/{sym}/range/{multiplier}/{unit}/{from}/{to}."""

    name = "polygon"

    def __init__(self, http: httpx.AsyncClient, api_key: str, base_url: str = "https://api.polygon.io"):
        super().__init__(http)
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")

    async def fetch_candles(self, symbol, multiplier, unit, start, end, limit):
        # millisecond bounds so intraday ranges are not widened to whole days
        frm, to = int(start.timestamp() * 1000), int(end.timestamp() * 1000)
        data = await self._get_json(
            f"{self.base_url}/v2/aggs/ticker/{symbol}/range/{multiplier}/{unit}/{frm}/{to}",
            params={"adjusted": "true", "sort": "asc", "limit": limit, "apiKey": self.api_key},
        )
        results = data.get("results") or []
        if not results:
            return None
        return [
            Candle(
                time=int(bar["t"]) // 1000,
                open=to_float(bar.get("o")),
                high=to_float(bar.get("h")),
                low=to_float(bar.get("l")),
                close=to_float(bar.get("c")),
                volume=int(bar.get("v") or 0),
            )
            for bar in results
            if bar.get("t") is not None and bar.get("c") is not None
        ] or None


_ALPACA_UNITS = {"minute": "Min", "hour": "Hour", "day": "Day", "week": "Week"}


class AlpacaCandleProvider(_HttpQuoteProvider):
    name = "alpaca"

    def __init__(self, http: httpx.AsyncClient, key_id: str, secret: str, base_url: str = "https://data.alpaca.markets"):
        super().__init__(http)
        self.headers = {"APCA-API-KEY-ID": key_id, "APCA-API-SECRET-KEY": secret}
        self.base_url = base_url.rstrip("/")

    async def fetch_candles(self, symbol, multiplier, unit, start, end, limit):
        data = await self._get_json(
            f"{self.base_url}/v2/stocks/{symbol}/bars",
            params={
                "timeframe": f"{multiplier}{_ALPACA_UNITS[unit]}",
                "start": start.strftime("%Y-%m-%dT%H:%M:%SZ"),
                "end": end.strftime("%Y-%m-%dT%H:%M:%SZ"),
                "limit": limit,
                "adjustment": "all",
            },
            headers=self.headers,
        )
        bars = data.get("bars") or []
        candles = []
        for bar in bars:
            if not bar.get("t") or bar.get("c") is None:
                continue
            opened = dt.datetime.fromisoformat(bar["t"].replace("Z", "+00:00"))
            candles.append(Candle(
                time=int(opened.timestamp()),
                open=to_float(bar.get("o")),
                high=to_float(bar.get("h")),
                low=to_float(bar.get("l")),
                close=to_float(bar.get("c")),
                volume=int(bar.get("v") or 0),
            ))
        return candles or None


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class CandleService:
    """
    OHLCV history for charts. Providers are tried in order like quotes, but
    nothing is cached and there is no static fallback: no data means ``None``.
    """

    def __init__(self, providers: Sequence[CandleProvider], *, clock: Callable[[], dt.datetime] = _utcnow):
        self.providers: List[CandleProvider] = list(providers)
        self.clock = clock

    async def get_candles(self, symbol: str, timeframe: str | None = None, limit: int = 500) -> Optional[Dict[str, Any]]:
        sym = normalize_symbol(symbol)
        if not sym:
            return None
        tf = (timeframe or "").upper()
        if tf not in CANDLE_TIMEFRAMES:
            tf = DEFAULT_CANDLE_TIMEFRAME
        multiplier, unit, days = CANDLE_TIMEFRAMES[tf]
        limit = max(1, min(int(limit), MAX_CANDLES))
        end = self.clock()
        start = end - dt.timedelta(days=days)

        for provider in self.providers:
            try:
                candles = await provider.fetch_candles(sym, multiplier, unit, start, end, limit)
            except Exception as e:
                logger.warning("Candle provider %s failed for %s: %s: %s", provider.name, sym, type(e).__name__, e)
                continue
            if candles:
                return {
                    "symbol": sym,
                    "timeframe": tf,
                    "candles": [c.model_dump() for c in candles[-limit:]],
                    "source": provider.name,
                }

        logger.info("No candles for %s %s from %d providers", sym, tf, len(self.providers))
        return None


def build_candle_service(settings, http: httpx.AsyncClient) -> CandleService:
    providers: List[CandleProvider] = []
    if settings.polygon_api_key:
        providers.append(PolygonCandleProvider(http, settings.polygon_api_key, settings.polygon_api_url))
    if settings.alpaca_api_key_id and settings.alpaca_api_secret:
        providers.append(AlpacaCandleProvider(
            http, settings.alpaca_api_key_id, settings.alpaca_api_secret, settings.alpaca_data_url
        ))
    logger.info("Candle providers: %s", [p.name for p in providers])
    return CandleService(providers)
