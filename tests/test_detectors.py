import math

import pytest

from crypto_trading.alpha.detectors import (
    DetectorCategory,
    DetectorId,
    DetectorRegistry,
    detect_bollinger,
    detect_market_structure,
    detect_news,
    detect_rsi,
    detect_sentiment,
    detect_whales
)
from crypto_trading.config import DetectorWeights
from crypto_trading.data.sentiment import MarketContext
from crypto_trading.errors import ConfigurationError
from crypto_trading.features.feature_engine import BollingerBands

from conftest import with_features


def test_registry_catalogue():
    registry = DetectorRegistry()
    assert len(registry.all()) == 14
    counts = {c: len(registry.by_category(c)) for c in DetectorCategory}
    assert counts == {
        DetectorCategory.CORE: 7,
        DetectorCategory.SMC: 2,
        DetectorCategory.PATTERNS: 1,
        DetectorCategory.SENTIMENT: 3,
        DetectorCategory.ML: 1,
    }
    assert registry.get(DetectorId.MA_CROSS).name == "MA Cross"
    assert registry.total_weight() == pytest.approx(sum(vars(DetectorWeights()).values()))


def test_weights_come_from_config():
    registry = DetectorRegistry(DetectorWeights(rsi=0.5, whales=-0.1))
    assert registry.get(DetectorId.RSI).weight == 0.5
    assert registry.get(DetectorId.WHALES).weight == -0.1


def test_invalid_weights_rejected():
    with pytest.raises(ConfigurationError):
        DetectorRegistry(DetectorWeights(rsi=float('nan')))
    with pytest.raises(ConfigurationError):
        DetectorRegistry(DetectorWeights(**{k: 0.0 for k in vars(DetectorWeights())}))


def test_evaluate_scores_are_clamped(bundle):
    registry = DetectorRegistry(overrides={DetectorId.RSI: lambda f: 5.0, DetectorId.MACD: lambda f: -3.0})
    results = {r.name: r for r in registry.evaluate(bundle)}
    assert results["RSI"].score == 1.0
    assert results["MACD"].score == -1.0
    assert all(-1.0 <= r.score <= 1.0 for r in results.values())


def test_failing_detector_degrades_to_zero(bundle):
    def broken(features):
        raise RuntimeError("boom")

    registry = DetectorRegistry(overrides={
        DetectorId.ADX: broken,
        DetectorId.ROC: lambda f: float('nan')
    })
    results = {r.name: r for r in registry.evaluate(bundle)}
    assert len(results) == 14
    assert results["ADX"].score == 0.0
    assert results["ROC"].score == 0.0
    assert math.isfinite(sum(r.score for r in results.values()))


def test_rsi_detector_direction(bundle):
    assert detect_rsi(with_features(bundle, rsi=20.0)) > 0
    assert detect_rsi(with_features(bundle, rsi=80.0)) < 0
    assert detect_rsi(with_features(bundle, rsi=50.0)) == 0.0


def test_bollinger_uses_close_price(bundle):
    bands = BollingerBands(upper=110.0, middle=100.0, lower=90.0)
    assert detect_bollinger(with_features(bundle, bollinger=bands, price=91.0)) == 0.8
    assert detect_bollinger(with_features(bundle, bollinger=bands, price=109.0)) == -0.8
    assert detect_bollinger(with_features(bundle, bollinger=bands, price=100.0)) == 0.0


def test_market_structure(bundle):
    up = with_features(bundle, higher_highs=True, higher_lows=True, lower_highs=False, lower_lows=False)
    down = with_features(bundle, higher_highs=False, higher_lows=False, lower_highs=True, lower_lows=True)
    mixed = with_features(bundle, higher_highs=True, higher_lows=False, lower_highs=False, lower_lows=True)
    assert detect_market_structure(up) == 0.8
    assert detect_market_structure(down) == -0.8
    assert detect_market_structure(mixed) == 0.0


def test_context_overrides_sentiment_proxies(bundle):
    context = MarketContext(sentiment=0.5, news=-0.4, whale_activity=0.2)
    f = bundle.with_context(context)
    assert detect_sentiment(f) == 0.5
    assert detect_news(f) == -0.4
    assert detect_whales(f) == 0.2


def test_sentiment_proxy_without_context(bundle):
    quiet = with_features(bundle, volume_ratio=1.0, context=None)
    assert detect_news(quiet) == 0.0
    assert detect_whales(quiet) == 0.0
    assert -1.0 <= detect_sentiment(quiet) <= 1.0
