"""
Feature Engineering Module
==========================
Turns a window of price bars into one immutable bundle of technical features.

Every indicator is computed from the same arrays, built once per window,
so no two indicators can disagree about which bars they saw.
"""

import pandas as pd
import numpy as np
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional, Sequence, Tuple
import logging

from ..data.market_data import Bar
from ..data.sentiment import MarketContext
from ..errors import InsufficientDataError

logger = logging.getLogger(__name__)

MIN_BARS = 50


class Direction(Enum):
    """Trend / score direction."""
    BULLISH = "BULLISH"
    BEARISH = "BEARISH"
    NEUTRAL = "NEUTRAL"


@dataclass(frozen=True)
class MACDValues:
    value: float
    signal: float
    histogram: float


@dataclass(frozen=True)
class BollingerBands:
    upper: float
    middle: float
    lower: float

    @property
    def width(self) -> float:
        return self.upper - self.lower

    def position(self, price: float) -> float:
        """Where price sits in the band: 0 at lower, 1 at upper. 0.5 for a flat band."""
        if self.width <= 0:
            return 0.5
        return (price - self.lower) / self.width


@dataclass(frozen=True)
class StochasticValues:
    k: float
    d: float


@dataclass(frozen=True)
class FeatureBundle:
    """Read-only feature snapshot for one (symbol, timeframe, window)."""
    price: float
    trend: Direction
    higher_highs: bool
    higher_lows: bool
    lower_highs: bool
    lower_lows: bool

    rsi: float
    macd: MACDValues
    sma20: float
    sma50: float
    ema12: float
    ema26: float
    bollinger: BollingerBands
    atr: float
    adx: float
    stochastic: StochasticValues
    roc: float

    volume: float
    avg_volume: float
    volume_ratio: float

    support: float
    resistance: float

    context: Optional[MarketContext] = None

    def with_context(self, context: Optional[MarketContext]) -> 'FeatureBundle':
        return replace(self, context=context)


class TechnicalIndicators:
    """Technical analysis indicators over numpy arrays. Each returns the latest value."""

    @staticmethod
    def sma(values: np.ndarray, period: int) -> float:
        """Simple Moving Average; the last value when the series is short."""
        if len(values) < period:
            return float(values[-1])
        return float(pd.Series(values, dtype=float).rolling(window=period).mean().iloc[-1])

    @staticmethod
    def ema_series(values: np.ndarray, period: int) -> np.ndarray:
        """
        EMA of every prefix of `values`, seeded with the SMA of the first
        `period` values. Prefixes shorter than `period` take their last value.
        """
        prices = pd.Series(values, dtype=float)
        if len(prices) < period:
            return prices.to_numpy()
        seeded = prices.iloc[period - 1:].copy()
        seeded.iloc[0] = prices.iloc[:period].mean()
        ema = seeded.ewm(span=period, adjust=False).mean()
        return pd.concat([prices.iloc[:period - 1], ema]).to_numpy()

    @staticmethod
    def ema(values: np.ndarray, period: int) -> float:
        """Exponential Moving Average."""
        return float(TechnicalIndicators.ema_series(values, period)[-1])

    @staticmethod
    def rsi(closes: np.ndarray, period: int = 14) -> float:
        """Relative Strength Index with Wilder smoothing."""
        if len(closes) < period + 1:
            return 50.0

        delta = pd.Series(closes, dtype=float).diff().iloc[1:]
        gain = delta.where(delta > 0, 0.0)
        loss = -delta.where(delta < 0, 0.0)

        def wilder(series: pd.Series) -> float:
            seeded = series.iloc[period - 1:].copy()
            seeded.iloc[0] = series.iloc[:period].mean()
            return float(seeded.ewm(alpha=1 / period, adjust=False).mean().iloc[-1])

        avg_gain = wilder(gain)
        avg_loss = wilder(loss)
        if avg_loss == 0:
            return 100.0
        rs = avg_gain / avg_loss
        return float(100 - (100 / (1 + rs)))

    @staticmethod
    def macd(closes: np.ndarray, fast: int = 12, slow: int = 26, signal: int = 9) -> MACDValues:
        """Moving Average Convergence Divergence."""
        fast_series = TechnicalIndicators.ema_series(closes, fast)
        slow_series = TechnicalIndicators.ema_series(closes, slow)
        macd_line = float(fast_series[-1] - slow_series[-1])

        # MACD of every prefix from `slow` bars onward
        macd_values = (fast_series - slow_series)[slow - 1:]
        signal_line = TechnicalIndicators.ema(macd_values, signal) if len(macd_values) else macd_line

        return MACDValues(value=macd_line, signal=signal_line, histogram=macd_line - signal_line)

    @staticmethod
    def bollinger_bands(closes: np.ndarray, period: int = 20, std_dev: float = 2.0) -> BollingerBands:
        """Bollinger Bands using population standard deviation."""
        window = pd.Series(closes, dtype=float).tail(period)
        middle = float(window.mean())
        std = float(window.std(ddof=0))
        return BollingerBands(upper=middle + std * std_dev, middle=middle, lower=middle - std * std_dev)

    @staticmethod
    def true_range(high: np.ndarray, low: np.ndarray, close: np.ndarray) -> np.ndarray:
        prev_close = close[:-1]
        return np.maximum.reduce([
            high[1:] - low[1:],
            np.abs(high[1:] - prev_close),
            np.abs(low[1:] - prev_close)
        ])

    @staticmethod
    def atr(high: np.ndarray, low: np.ndarray, close: np.ndarray, period: int = 14) -> float:
        """Average True Range: mean of the last `period` true ranges."""
        if len(close) < period + 1:
            return 0.0
        return float(TechnicalIndicators.true_range(high, low, close)[-period:].mean())

    @staticmethod
    def adx(high: np.ndarray, low: np.ndarray, close: np.ndarray, period: int = 14) -> float:
        """Directional index from simple `period`-bar averages of +DM, -DM and TR."""
        if len(close) < period + 1:
            return 0.0

        high_diff = np.diff(high)
        low_diff = -np.diff(low)
        plus_dm = np.where((high_diff > low_diff) & (high_diff > 0), high_diff, 0.0)
        minus_dm = np.where((low_diff > high_diff) & (low_diff > 0), low_diff, 0.0)
        tr = TechnicalIndicators.true_range(high, low, close)

        smoothed_tr = tr[-period:].mean()
        if smoothed_tr == 0:
            return 0.0
        plus_di = plus_dm[-period:].mean() / smoothed_tr * 100
        minus_di = minus_dm[-period:].mean() / smoothed_tr * 100
        if plus_di + minus_di == 0:
            return 0.0
        return float(abs(plus_di - minus_di) / (plus_di + minus_di) * 100)

    @staticmethod
    def stochastic(high: np.ndarray, low: np.ndarray, close: np.ndarray,
                   k_period: int = 14, d_period: int = 3) -> StochasticValues:
        """Stochastic Oscillator; %D is the mean of the last `d_period` %K values."""
        if len(close) < k_period:
            return StochasticValues(k=50.0, d=50.0)

        highest_high = pd.Series(high).rolling(window=k_period).max()
        lowest_low = pd.Series(low).rolling(window=k_period).min()
        span = highest_high - lowest_low
        stoch_k = (100 * (pd.Series(close) - lowest_low) / span.where(span != 0)).fillna(50.0)
        stoch_k = stoch_k.iloc[k_period - 1:]

        return StochasticValues(k=float(stoch_k.iloc[-1]), d=float(stoch_k.iloc[-d_period:].mean()))

    @staticmethod
    def roc(closes: np.ndarray, period: int = 12) -> float:
        """Rate of change in percent."""
        if len(closes) < period + 1:
            return 0.0
        past = closes[-1 - period]
        if past == 0:
            return 0.0
        return float((closes[-1] - past) / past * 100)


class PriceStructure:
    """Swing points and market structure."""

    @staticmethod
    def peaks(values: np.ndarray) -> np.ndarray:
        """Strict local maxima, in order."""
        if len(values) < 3:
            return np.array([])
        mid = values[1:-1]
        return mid[(mid > values[:-2]) & (mid > values[2:])]

    @staticmethod
    def valleys(values: np.ndarray) -> np.ndarray:
        """Strict local minima, in order."""
        if len(values) < 3:
            return np.array([])
        mid = values[1:-1]
        return mid[(mid < values[:-2]) & (mid < values[2:])]

    @staticmethod
    def _rising(points: np.ndarray) -> bool:
        recent = points[-3:]
        return len(recent) >= 2 and recent[-1] > recent[0]

    @staticmethod
    def _falling(points: np.ndarray) -> bool:
        recent = points[-3:]
        return len(recent) >= 2 and recent[-1] < recent[0]

    @classmethod
    def higher_highs(cls, values: np.ndarray) -> bool:
        return cls._rising(cls.peaks(values))

    @classmethod
    def higher_lows(cls, values: np.ndarray) -> bool:
        return cls._rising(cls.valleys(values))

    @classmethod
    def lower_highs(cls, values: np.ndarray) -> bool:
        return cls._falling(cls.peaks(values))

    @classmethod
    def lower_lows(cls, values: np.ndarray) -> bool:
        return cls._falling(cls.valleys(values))

    @classmethod
    def support(cls, lows: np.ndarray, lookback: int = 20) -> float:
        recent = lows[-lookback:]
        valleys = cls.valleys(recent)
        return float(valleys.min() if len(valleys) else recent.min())

    @classmethod
    def resistance(cls, highs: np.ndarray, lookback: int = 20) -> float:
        recent = highs[-lookback:]
        peaks = cls.peaks(recent)
        return float(peaks.max() if len(peaks) else recent.max())


class FeatureExtractor:
    """
    Feature extractor for the scoring engines.

    The window must hold at least 50 bars; shorter windows raise
    InsufficientDataError rather than produce a low-quality bundle.
    """

    def __init__(self, min_bars: int = MIN_BARS):
        self.min_bars = min_bars
        self.indicators = TechnicalIndicators()
        self.structure = PriceStructure()

    def extract(self, bars: Sequence[Bar], context: Optional[MarketContext] = None,
                label: str = "") -> FeatureBundle:
        if len(bars) < self.min_bars:
            raise InsufficientDataError(self.min_bars, len(bars), label)

        closes = np.array([b.close for b in bars], dtype=float)
        highs = np.array([b.high for b in bars], dtype=float)
        lows = np.array([b.low for b in bars], dtype=float)
        volumes = np.array([b.volume for b in bars], dtype=float)

        ti = self.indicators
        sma20 = ti.sma(closes, 20)
        sma50 = ti.sma(closes, 50)
        avg_volume = float(volumes[-20:].mean())

        return FeatureBundle(
            price=float(closes[-1]),
            trend=self.detect_trend(closes, sma20, sma50),
            higher_highs=self.structure.higher_highs(highs),
            higher_lows=self.structure.higher_lows(lows),
            lower_highs=self.structure.lower_highs(highs),
            lower_lows=self.structure.lower_lows(lows),
            rsi=ti.rsi(closes, 14),
            macd=ti.macd(closes),
            sma20=sma20,
            sma50=sma50,
            ema12=ti.ema(closes, 12),
            ema26=ti.ema(closes, 26),
            bollinger=ti.bollinger_bands(closes, 20, 2.0),
            atr=ti.atr(highs, lows, closes, 14),
            adx=ti.adx(highs, lows, closes, 14),
            stochastic=ti.stochastic(highs, lows, closes, 14, 3),
            roc=ti.roc(closes, 12),
            volume=float(volumes[-1]),
            avg_volume=avg_volume,
            volume_ratio=float(volumes[-1] / avg_volume) if avg_volume > 0 else 1.0,
            support=self.structure.support(lows),
            resistance=self.structure.resistance(highs),
            context=context
        )

    def detect_trend(self, closes: np.ndarray, sma20: float, sma50: float) -> Direction:
        """BULLISH with at least 4 of 5 bullish criteria, BEARISH with at most 1."""
        price = closes[-1]
        recent = closes[-10:]
        bullish_count = sum([
            price > sma20,
            price > sma50,
            sma20 > sma50,
            self.structure.higher_highs(recent),
            self.structure.higher_lows(recent)
        ])

        if bullish_count >= 4:
            return Direction.BULLISH
        if bullish_count <= 1:
            return Direction.BEARISH
        return Direction.NEUTRAL
