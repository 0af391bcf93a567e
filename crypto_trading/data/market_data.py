"""
Market Data Module
==================
Price bars and the market data provider contract.

Providers return chronologically ordered bars. Partial data is allowed:
a provider may return fewer bars than requested, and the analysis layer
decides whether that is enough.
"""

import pandas as pd
import numpy as np
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple
import logging
import threading
import time
import zlib

from ..errors import ProviderError

logger = logging.getLogger(__name__)


TIMEFRAME_MINUTES = {
    '1m': 1,
    '5m': 5,
    '15m': 15,
    '30m': 30,
    '1h': 60,
    '4h': 240,
    '1d': 1440,
}


def base_symbol(pair: str) -> str:
    """'BTC/USDT' -> 'BTC'. Plain symbols pass through."""
    return pair.split('/')[0].upper()


@dataclass(frozen=True)
class Bar:
    """One OHLCV sample. Immutable once produced."""
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float

    def to_dict(self) -> dict:
        return {
            'timestamp': self.timestamp,
            'open': self.open,
            'high': self.high,
            'low': self.low,
            'close': self.close,
            'volume': self.volume
        }


def bars_to_frame(bars: Sequence[Bar]) -> pd.DataFrame:
    """Bars as a timestamp-indexed OHLCV DataFrame."""
    df = pd.DataFrame([b.to_dict() for b in bars])
    if df.empty:
        return pd.DataFrame(columns=['open', 'high', 'low', 'close', 'volume'])
    return df.set_index('timestamp')


def frame_to_bars(df: pd.DataFrame) -> List[Bar]:
    """Timestamp-indexed OHLCV DataFrame (any column case) back to bars."""
    cols = {c.lower(): c for c in df.columns}
    bars = []
    for ts, row in df.iterrows():
        bars.append(Bar(
            timestamp=pd.Timestamp(ts).to_pydatetime(),
            open=float(row[cols['open']]),
            high=float(row[cols['high']]),
            low=float(row[cols['low']]),
            close=float(row[cols['close']]),
            volume=float(row[cols['volume']])
        ))
    return bars


class MarketDataProvider(ABC):
    """Abstract market data collaborator."""

    @abstractmethod
    def get_history(self, symbol: str, timeframe: str, limit: int = 200) -> List[Bar]:
        """Return up to `limit` most recent bars, oldest first."""
        pass

    @abstractmethod
    def get_rate(self, pair: str) -> float:
        """Current price for a pair such as 'BTC/USDT'."""
        pass


class MockMarketDataProvider(MarketDataProvider):
    """
    Synthetic data for paper trading and tests.

    History is a seeded random walk, so the same (symbol, timeframe)
    always yields the same bars. Tests can script exact bars and prices.
    """

    def __init__(self, volatility: float = 0.01, seed: int = 42, drift: float = 0.0005):
        self.volatility = volatility
        self.seed = seed
        self.drift = drift
        self.base_prices = {
            'BTC': 65000,
            'ETH': 3200,
            'SOL': 150,
            'BNB': 580,
            'XRP': 0.6
        }
        self._scripted_history: Dict[Tuple[str, str], List[Bar]] = {}
        self._scripted_prices: Dict[str, float] = {}
        self._lock = threading.Lock()

    def set_history(self, symbol: str, timeframe: str, bars: Sequence[Bar]):
        """Pin the bars returned for (symbol, timeframe)."""
        with self._lock:
            self._scripted_history[(base_symbol(symbol), timeframe)] = list(bars)

    def set_price(self, pair: str, price: float):
        """Pin the current rate for a symbol."""
        with self._lock:
            self._scripted_prices[base_symbol(pair)] = price

    def get_history(self, symbol: str, timeframe: str, limit: int = 200) -> List[Bar]:
        key = (base_symbol(symbol), timeframe)
        with self._lock:
            scripted = self._scripted_history.get(key)
        if scripted is not None:
            return scripted[-limit:]
        return self._random_walk(key[0], timeframe, limit)

    def get_rate(self, pair: str) -> float:
        symbol = base_symbol(pair)
        with self._lock:
            price = self._scripted_prices.get(symbol)
        if price is not None:
            return price
        bars = self.get_history(symbol, '1h', 50)
        if not bars:
            raise ProviderError(f"No price for {pair}")
        return bars[-1].close

    def _random_walk(self, symbol: str, timeframe: str, limit: int) -> List[Bar]:
        """Generate synthetic OHLCV bars ending now."""
        minutes = TIMEFRAME_MINUTES.get(timeframe)
        if minutes is None:
            raise ProviderError(f"Unsupported timeframe: {timeframe}")

        rng = np.random.RandomState((self.seed + zlib.crc32(f"{symbol}:{timeframe}".encode())) % (2 ** 32))
        base_price = self.base_prices.get(symbol, 100)

        returns = rng.normal(self.drift, self.volatility, limit)
        closes = base_price * np.cumprod(1 + returns)
        step = timedelta(minutes=minutes)
        start = datetime.now().replace(second=0, microsecond=0) - step * limit

        bars = []
        prev_close = base_price
        for i, close in enumerate(closes):
            bar_vol = self.volatility * close
            open_price = prev_close
            high = max(open_price, close) + abs(rng.normal(0, bar_vol / 2))
            low = min(open_price, close) - abs(rng.normal(0, bar_vol / 2))
            volume = max(rng.normal(1000, 200), 50)
            bars.append(Bar(
                timestamp=start + step * (i + 1),
                open=round(float(open_price), 6),
                high=round(float(high), 6),
                low=round(float(low), 6),
                close=round(float(close), 6),
                volume=round(float(volume), 3)
            ))
            prev_close = close
        return bars


class YFinanceMarketDataProvider(MarketDataProvider):
    """Yahoo Finance crypto quotes (BTC -> BTC-USD)."""

    # yfinance interval and the lookback period it allows for it
    INTERVALS = {
        '15m': ('15m', '60d', None),
        '1h': ('60m', '730d', None),
        '4h': ('60m', '730d', '4h'),
        '1d': ('1d', '5y', None),
    }

    def __init__(self, quote_currency: str = "USD"):
        import yfinance as yf
        self.yf = yf
        self.quote_currency = quote_currency

    def _convert_symbol(self, symbol: str) -> str:
        """Convert a trading symbol to a Yahoo Finance ticker."""
        return f"{base_symbol(symbol)}-{self.quote_currency}"

    def get_history(self, symbol: str, timeframe: str, limit: int = 200) -> List[Bar]:
        if timeframe not in self.INTERVALS:
            raise ProviderError(f"Unsupported timeframe for yfinance: {timeframe}")
        interval, period, resample_rule = self.INTERVALS[timeframe]
        ticker = self._convert_symbol(symbol)

        try:
            df = self.yf.Ticker(ticker).history(period=period, interval=interval)
        except Exception as e:
            raise ProviderError(f"yfinance history failed for {ticker}: {e}") from e

        if df is None or df.empty:
            raise ProviderError(f"No data returned for {ticker}")

        df = df[['Open', 'High', 'Low', 'Close', 'Volume']]
        if resample_rule:
            df = df.resample(resample_rule).agg({
                'Open': 'first',
                'High': 'max',
                'Low': 'min',
                'Close': 'last',
                'Volume': 'sum'
            }).dropna()

        return frame_to_bars(df.tail(limit))

    def get_rate(self, pair: str) -> float:
        ticker = self._convert_symbol(pair)
        try:
            df = self.yf.Ticker(ticker).history(period='1d', interval='1m')
        except Exception as e:
            raise ProviderError(f"yfinance quote failed for {ticker}: {e}") from e
        if df is None or df.empty:
            raise ProviderError(f"No quote for {ticker}")
        return float(df['Close'].iloc[-1])


class CachedMarketDataProvider(MarketDataProvider):
    """TTL cache in front of another provider."""

    def __init__(self, provider: MarketDataProvider, ttl_seconds: float = 60.0,
                 rate_ttl_seconds: float = 5.0, clock=time.monotonic):
        self.provider = provider
        self.ttl_seconds = ttl_seconds
        self.rate_ttl_seconds = rate_ttl_seconds
        self._clock = clock
        self._history: Dict[Tuple[str, str, int], Tuple[float, List[Bar]]] = {}
        self._rates: Dict[str, Tuple[float, float]] = {}
        self._lock = threading.Lock()

    def get_history(self, symbol: str, timeframe: str, limit: int = 200) -> List[Bar]:
        key = (symbol, timeframe, limit)
        now = self._clock()
        with self._lock:
            cached = self._history.get(key)
        if cached and now - cached[0] < self.ttl_seconds:
            logger.debug(f"Cache hit for {symbol} {timeframe}")
            return cached[1]

        bars = self.provider.get_history(symbol, timeframe, limit)
        with self._lock:
            self._history[key] = (now, bars)
        return bars

    def get_rate(self, pair: str) -> float:
        now = self._clock()
        with self._lock:
            cached = self._rates.get(pair)
        if cached and now - cached[0] < self.rate_ttl_seconds:
            return cached[1]

        rate = self.provider.get_rate(pair)
        with self._lock:
            self._rates[pair] = (now, rate)
        return rate

    def clear(self):
        """Clear all cached data."""
        with self._lock:
            self._history.clear()
            self._rates.clear()
