"""
quant-arena Core: Market Data

Market snapshot types and the market-data collaborator.

A ``MarketSnapshot`` is immutable for the lifetime of a cycle. Price history
for indicator tools is fetched on demand; a missing or short history is an
analysis problem (``InsufficientDataError`` downstream), never a crash.
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional

import requests
from requests import exceptions as requests_exceptions

from core.exceptions import CriticalDataUnavailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MarketQuote:
    symbol: str
    price: float
    change_24h_pct: float


@dataclass(frozen=True)
class MarketSnapshot:
    """Immutable symbol -> quote mapping taken at ``taken_at``."""

    quotes: Mapping[str, MarketQuote]
    taken_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        object.__setattr__(self, "quotes", MappingProxyType(dict(self.quotes)))

    @classmethod
    def from_prices(cls, prices: Mapping[str, float], changes: Optional[Mapping[str, float]] = None,
                    taken_at: Optional[datetime] = None) -> "MarketSnapshot":
        changes = changes or {}
        quotes = {
            symbol: MarketQuote(symbol=symbol, price=float(price), change_24h_pct=float(changes.get(symbol, 0.0)))
            for symbol, price in prices.items()
        }
        if taken_at is None:
            return cls(quotes=quotes)
        return cls(quotes=quotes, taken_at=taken_at)

    def price(self, symbol: str) -> Optional[float]:
        quote = self.quotes.get(symbol)
        return quote.price if quote else None

    def symbols(self) -> List[str]:
        return list(self.quotes.keys())

    def restrict(self, symbols: Optional[Iterable[str]]) -> "MarketSnapshot":
        """Snapshot limited to ``symbols`` (all symbols when None/empty)."""
        if not symbols:
            return self
        wanted = set(symbols)
        return MarketSnapshot(
            quotes={s: q for s, q in self.quotes.items() if s in wanted},
            taken_at=self.taken_at,
        )

    def is_empty(self) -> bool:
        return not self.quotes


class MarketDataProvider(ABC):
    """Source of market snapshots and price history."""

    @abstractmethod
    def get_snapshot(self) -> MarketSnapshot:
        """Return the current snapshot or raise ``CriticalDataUnavailable``."""

    @abstractmethod
    def get_price_history(self, symbol: str, limit: int) -> List[float]:
        """Return up to ``limit`` closes, oldest first (may be shorter or empty)."""


class StaticMarketData(MarketDataProvider):
    """In-memory provider for paper replay and tests."""

    def __init__(
        self,
        prices: Optional[Dict[str, float]] = None,
        changes: Optional[Dict[str, float]] = None,
        history: Optional[Dict[str, List[float]]] = None,
    ):
        self.prices: Dict[str, float] = dict(prices or {})
        self.changes: Dict[str, float] = dict(changes or {})
        self.history: Dict[str, List[float]] = {k: list(v) for k, v in (history or {}).items()}

    def set_price(self, symbol: str, price: float, change_24h_pct: Optional[float] = None) -> None:
        self.prices[symbol] = float(price)
        if change_24h_pct is not None:
            self.changes[symbol] = float(change_24h_pct)

    def get_snapshot(self) -> MarketSnapshot:
        if not self.prices:
            raise CriticalDataUnavailable("static_market_data")
        return MarketSnapshot.from_prices(self.prices, self.changes)

    def get_price_history(self, symbol: str, limit: int) -> List[float]:
        return list(self.history.get(symbol, []))[-limit:]


class BinanceFuturesMarketData(MarketDataProvider):
    """USD-M futures public REST endpoints (24h tickers + klines)."""

    DEFAULT_BASE_URL = "https://fapi.binance.com"

    def __init__(
        self,
        symbols: Optional[Iterable[str]] = None,
        base_url: Optional[str] = None,
        history_interval: str = "1h",
        timeout_seconds: float = 5.0,
        session: Optional[requests.Session] = None,
    ):
        self.symbols = set(symbols or [])
        self.base_url = (base_url or self.DEFAULT_BASE_URL).rstrip("/")
        self.history_interval = history_interval
        self.timeout_seconds = timeout_seconds
        self._session = session or requests.Session()

    def _get(self, path: str, params: Optional[Dict] = None):
        url = f"{self.base_url}{path}"
        start = time.perf_counter()
        try:
            response = self._session.get(url, params=params, timeout=self.timeout_seconds)
            response.raise_for_status()
            return response.json()
        except (requests_exceptions.RequestException, ValueError) as exc:
            elapsed = (time.perf_counter() - start) * 1000
            logger.warning(f"Market data request {path} failed after {elapsed:.1f}ms: {exc}")
            raise CriticalDataUnavailable(f"GET {path}", exc) from exc

    def get_snapshot(self) -> MarketSnapshot:
        payload = self._get("/fapi/v1/ticker/24hr")
        if not isinstance(payload, list):
            raise CriticalDataUnavailable("ticker/24hr: unexpected payload")

        quotes: Dict[str, MarketQuote] = {}
        for row in payload:
            symbol = row.get("symbol")
            if not symbol or (self.symbols and symbol not in self.symbols):
                continue
            try:
                quotes[symbol] = MarketQuote(
                    symbol=symbol,
                    price=float(row["lastPrice"]),
                    change_24h_pct=float(row.get("priceChangePercent", 0.0)),
                )
            except (KeyError, TypeError, ValueError):
                logger.debug(f"Skipping malformed ticker row for {symbol}")
                continue

        if not quotes:
            raise CriticalDataUnavailable("ticker/24hr: no usable quotes")
        return MarketSnapshot(quotes=quotes)

    def get_price_history(self, symbol: str, limit: int) -> List[float]:
        try:
            rows = self._get(
                "/fapi/v1/klines",
                params={"symbol": symbol, "interval": self.history_interval, "limit": int(limit)},
            )
        except CriticalDataUnavailable:
            # Stale/unavailable history degrades to "analysis unavailable"
            return []
        closes = []
        for row in rows or []:
            try:
                closes.append(float(row[4]))
            except (IndexError, TypeError, ValueError):
                continue
        return closes


def create_market_data_provider(config: Optional[Dict] = None, symbols: Optional[Iterable[str]] = None) -> MarketDataProvider:
    """Factory keyed on ``market_data.provider`` in app.yaml."""
    config = config or {}
    provider = str(config.get("provider", "binance_futures")).lower()

    if provider == "binance_futures":
        return BinanceFuturesMarketData(
            symbols=symbols,
            base_url=config.get("base_url"),
            history_interval=config.get("history_interval", "1h"),
            timeout_seconds=float(config.get("timeout_seconds", 5.0)),
        )
    if provider == "static":
        return StaticMarketData(
            prices=config.get("prices"),
            changes=config.get("changes"),
            history=config.get("history"),
        )
    raise ValueError(f"Unknown market data provider: {provider}. Use 'binance_futures' or 'static'")
