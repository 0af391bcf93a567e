import math
from dataclasses import replace
from datetime import datetime, timedelta

import pytest

from crypto_trading.data.market_data import Bar
from crypto_trading.features.feature_engine import FeatureExtractor


START = datetime(2024, 1, 1)


def make_bars(closes, volume=1000.0, spread=0.005, step=timedelta(hours=1), volumes=None):
    """OHLCV bars from a close series. Each open sits 30% of the way from the previous close."""
    bars = []
    prev = closes[0]
    for i, close in enumerate(closes):
        open_price = prev + (close - prev) * 0.3
        bars.append(Bar(
            timestamp=START + step * i,
            open=open_price,
            high=max(open_price, close) * (1 + spread),
            low=min(open_price, close) * (1 - spread),
            close=close,
            volume=volumes[i] if volumes is not None else volume
        ))
        prev = close
    return bars


def zigzag(n, start, slope, amplitude=1.5):
    """Linear drift with a 4-bar swing, so swing highs and lows follow the drift."""
    offsets = (0.0, amplitude, 0.0, -amplitude)
    return [start + slope * i + offsets[i % 4] for i in range(n)]


def trending_up(n=120, start=100.0):
    return make_bars(zigzag(n, start, 0.5))


def trending_down(n=120, start=200.0):
    return make_bars(zigzag(n, start, -0.5))


def flat(n=120, price=100.0):
    return make_bars([price] * n, spread=0.0)


class FakeClock:
    """Controllable datetime source."""

    def __init__(self, now=datetime(2024, 6, 1, 12, 0)):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FakeTimer:
    """Controllable float time source (seconds)."""

    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def up_bars():
    return trending_up()


@pytest.fixture
def down_bars():
    return trending_down()


@pytest.fixture
def flat_bars():
    return flat()


@pytest.fixture
def bundle(up_bars):
    """A real feature bundle; tests adjust fields with dataclasses.replace."""
    return FeatureExtractor().extract(up_bars)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def timer():
    return FakeTimer()


def bars_by_timeframe(bars, timeframes=("15m", "1h", "4h")):
    return {tf: bars for tf in timeframes}


def with_features(bundle, **changes):
    return replace(bundle, **changes)


def approx_equal(a, b, tol=1e-9):
    return math.isclose(a, b, rel_tol=tol, abs_tol=tol)
