from datetime import datetime

import pytest

from crypto_trading.alpha.advanced_engine import (
    AdvancedSignalEngine,
    LayerScores,
    is_doji,
    is_engulfing,
    is_hammer
)
from crypto_trading.alpha.signals import SignalType
from crypto_trading.config import AdvancedEngineConfig
from crypto_trading.data.market_data import Bar
from crypto_trading.errors import InsufficientDataError
from crypto_trading.features.feature_engine import Direction

from conftest import trending_up, with_features


@pytest.fixture
def bullish(bundle):
    return with_features(
        bundle,
        higher_highs=True, higher_lows=True, lower_highs=False, lower_lows=False,
        trend=Direction.BULLISH, adx=30.0, rsi=50.0, atr=2.0, volume_ratio=1.0
    )


def engine_with(timer, multiples=(3.2, 4.5, 6.0)):
    return AdvancedSignalEngine(AdvancedEngineConfig(target_multiples=multiples), clock=timer)


def bar(o, h, l, c):
    return Bar(timestamp=datetime(2024, 1, 1), open=o, high=h, low=l, close=c, volume=1000.0)


# ========== GATES ==========

def test_score_below_threshold_is_rejected(bullish, timer):
    layers = LayerScores(25, 20, 17, 10, 2)
    assert layers.total == 74
    assert engine_with(timer).evaluate("BTC", bullish, layers) is None


def test_poor_risk_reward_is_rejected(bullish, timer):
    layers = LayerScores(25, 20, 17, 10, 4)
    engine = engine_with(timer, multiples=(2.5, 4.0, 5.0))
    assert engine.evaluate("BTC", bullish, layers) is None
    assert engine.get_cooldown_remaining("BTC") == 0.0


def test_qualified_setup_emits_signal(bullish, timer):
    layers = LayerScores(28, 22, 17, 15, 8)
    signal = engine_with(timer).evaluate("BTC", bullish, layers)

    assert signal is not None
    assert signal.type == SignalType.BUY
    assert signal.total_score == 90
    assert signal.risk_reward == pytest.approx(3.2)
    assert signal.signal.entry_price == bullish.price
    assert signal.signal.stop_loss == pytest.approx(bullish.price - 2.4)
    assert signal.take_profits[0] == pytest.approx(bullish.price + 2.4 * 3.2)
    assert signal.signal.target_price == signal.take_profits[0]
    assert signal.confidence == pytest.approx(0.9)
    assert signal.signal.source == "advanced"
    assert signal.signal.id.startswith("adv-BTC-")
    assert signal.signal.metadata['total_score'] == 90
    assert "Trend alignment (17/20)" in signal.signal.reasoning


def test_exact_three_to_one_passes(bullish, timer):
    layers = LayerScores(28, 22, 17, 15, 8)
    assert engine_with(timer, multiples=(3.0, 4.5, 6.0)).evaluate("BTC", bullish, layers) is not None


def test_disagreeing_layers_hold(bullish, timer):
    flat_trend = with_features(bullish, trend=Direction.NEUTRAL)
    layers = LayerScores(28, 22, 17, 15, 8)
    # Only the price action vote remains
    assert engine_with(timer).evaluate("BTC", flat_trend, layers) is None


def test_cooldown_blocks_then_expires(bullish, timer):
    engine = engine_with(timer)
    layers = LayerScores(28, 22, 17, 15, 8)

    assert engine.evaluate("BTC", bullish, layers) is not None
    assert engine.evaluate("BTC", bullish, layers) is None
    assert engine.get_cooldown_remaining("BTC") == pytest.approx(4 * 3600)
    assert "BTC" in engine.active_cooldowns()

    # Other symbols are unaffected
    assert engine.evaluate("ETH", bullish, layers) is not None

    timer.advance(4 * 3600 + 1)
    assert engine.active_cooldowns() == {}
    assert engine.evaluate("BTC", bullish, layers) is not None


def test_clear_cooldown(bullish, timer):
    engine = engine_with(timer)
    layers = LayerScores(28, 22, 17, 15, 8)
    engine.evaluate("BTC", bullish, layers)
    engine.clear_cooldown("BTC")
    assert engine.get_cooldown_remaining("BTC") == 0.0
    assert engine.evaluate("BTC", bullish, layers) is not None


def test_generate_signal_skips_symbol_in_cooldown(bullish, timer, up_bars):
    engine = engine_with(timer)
    engine.evaluate("BTC", bullish, LayerScores(28, 22, 17, 15, 8))
    # Returns before extracting, so even a short window is fine
    assert engine.generate_signal("BTC", up_bars[:10]) is None


def test_generate_signal_rejects_short_window(timer):
    with pytest.raises(InsufficientDataError):
        engine_with(timer).generate_signal("BTC", trending_up(30))


def test_generate_signal_on_flat_bars(timer, flat_bars):
    # A flat window scores well under 75: no swings, no ATR, no volume surge
    engine = engine_with(timer)
    features = engine.extractor.extract(flat_bars)
    assert engine.score_layers(features, flat_bars).total < 75

    assert engine.generate_signal("BTC", flat_bars) is None
    assert engine.get_cooldown_remaining("BTC") == 0.0


# ========== LAYERS ==========

def test_trend_layer(bullish):
    assert AdvancedSignalEngine.score_trend(with_features(bullish, adx=45.0)) == 20
    assert AdvancedSignalEngine.score_trend(with_features(bullish, adx=30.0)) == 17
    assert AdvancedSignalEngine.score_trend(with_features(bullish, trend=Direction.NEUTRAL, adx=10.0)) == 5


def test_volume_layer(bullish):
    assert AdvancedSignalEngine.score_volume(with_features(bullish, volume_ratio=2.5)) == 15
    assert AdvancedSignalEngine.score_volume(with_features(bullish, volume_ratio=1.3)) == 10
    assert AdvancedSignalEngine.score_volume(with_features(bullish, volume_ratio=0.7)) == 4


def test_layers_respect_caps(bullish, up_bars):
    layers = AdvancedSignalEngine().score_layers(bullish, up_bars)
    assert 0 <= layers.price_action <= 30
    assert 0 <= layers.indicators <= 25
    assert 0 <= layers.trend <= 20
    assert 0 <= layers.volume <= 15
    assert 0 <= layers.risk_quality <= 10
    assert layers.to_dict()['total'] == layers.total


def test_confidence(bullish):
    plain = with_features(bullish, adx=10.0, volume_ratio=1.0)
    assert AdvancedSignalEngine.calculate_confidence(80, plain) == pytest.approx(0.8)

    boosted = with_features(bullish, adx=35.0, volume_ratio=2.0)
    assert AdvancedSignalEngine.calculate_confidence(80, boosted) == pytest.approx(0.8 * 1.1 * 1.05)
    assert AdvancedSignalEngine.calculate_confidence(98, boosted) == 1.0


# ========== CANDLES ==========

def test_engulfing():
    assert is_engulfing([bar(101.0, 101.2, 99.8, 100.0), bar(99.5, 102.2, 99.4, 102.0)])
    assert not is_engulfing([bar(100.0, 101.2, 99.8, 101.0), bar(101.0, 102.2, 99.4, 102.0)])
    assert not is_engulfing([bar(99.5, 102.2, 99.4, 102.0)])


def test_hammer_and_doji():
    assert is_hammer([bar(100.0, 100.6, 98.0, 100.5)])
    assert not is_doji([bar(100.0, 100.6, 98.0, 100.5)])
    assert is_doji([bar(100.0, 101.0, 99.0, 100.05)])
    assert not is_hammer([])
