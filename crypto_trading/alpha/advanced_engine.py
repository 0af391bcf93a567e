"""
Advanced Signal Engine
======================
Single-timeframe, five-layer point scoring with strict gates.

Layers (max points):
    1. Price action      30
    2. Indicators        25
    3. Trend strength    20
    4. Volume            15
    5. Risk quality      10

A signal needs at least 75 points, two of three directional layer votes
and a TP1 risk-reward of at least 3:1. Emitting a signal puts the symbol
into a 4 hour cooldown.

Core principle: "Few signals, each one well qualified"
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Tuple
import logging
import threading
import time

from ..config import AdvancedEngineConfig
from ..data.market_data import Bar
from ..features.feature_engine import Direction, FeatureBundle, FeatureExtractor
from .signals import Signal, SignalType, signal_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LayerScores:
    price_action: int
    indicators: int
    trend: int
    volume: int
    risk_quality: int

    @property
    def total(self) -> int:
        return self.price_action + self.indicators + self.trend + self.volume + self.risk_quality

    def to_dict(self) -> dict:
        return {
            'price_action': self.price_action,
            'indicators': self.indicators,
            'trend': self.trend,
            'volume': self.volume,
            'risk_quality': self.risk_quality,
            'total': self.total
        }


@dataclass
class AdvancedSignal:
    """Signal plus the layer breakdown that produced it."""
    signal: Signal
    layers: LayerScores
    take_profits: Tuple[float, float, float]
    risk_reward: float
    timeframe: str = "1h"
    contributing_factors: List[str] = field(default_factory=list)

    @property
    def type(self) -> SignalType:
        return self.signal.type

    @property
    def confidence(self) -> float:
        return self.signal.confidence

    @property
    def total_score(self) -> int:
        return self.layers.total

    def to_dict(self) -> dict:
        return {
            **self.signal.to_dict(),
            'take_profits': list(self.take_profits),
            'risk_reward': self.risk_reward,
            'timeframe': self.timeframe,
            'contributing_factors': list(self.contributing_factors),
            'score': self.layers.to_dict()
        }


# ========== CANDLE PATTERNS ==========

def is_engulfing(bars: Sequence[Bar]) -> bool:
    """Opposite-colour candle whose body is over 1.5x the previous body."""
    if len(bars) < 2:
        return False
    prev, curr = bars[-2], bars[-1]
    prev_body = abs(prev.close - prev.open)
    curr_body = abs(curr.close - curr.open)
    if curr_body <= prev_body * 1.5:
        return False
    bullish = prev.close < prev.open and curr.close > curr.open
    bearish = prev.close > prev.open and curr.close < curr.open
    return bullish or bearish


def is_hammer(bars: Sequence[Bar]) -> bool:
    if not bars:
        return False
    bar = bars[-1]
    body = abs(bar.close - bar.open)
    lower_wick = min(bar.open, bar.close) - bar.low
    upper_wick = bar.high - max(bar.open, bar.close)
    return lower_wick > body * 2 and upper_wick < body * 0.5


def is_doji(bars: Sequence[Bar]) -> bool:
    if not bars:
        return False
    bar = bars[-1]
    return abs(bar.close - bar.open) < (bar.high - bar.low) * 0.1


class AdvancedSignalEngine:
    """
    Five-layer scoring engine with per-symbol cooldown.

    The cooldown table is the only mutable state and is guarded by a lock,
    so the engine can be called from several worker threads.
    """

    def __init__(self, config: Optional[AdvancedEngineConfig] = None,
                 clock: Callable[[], float] = time.time):
        self.config = config or AdvancedEngineConfig()
        self.config.validate()
        self.extractor = FeatureExtractor()
        self._clock = clock
        self._cooldowns: Dict[str, float] = {}
        self._lock = threading.Lock()

    def apply_config(self, config: AdvancedEngineConfig):
        config.validate()
        self.config = config

    # ========== GENERATION ==========

    def generate_signal(self, symbol: str, bars: Sequence[Bar],
                        config: Optional[AdvancedEngineConfig] = None) -> Optional[AdvancedSignal]:
        """
        Score the latest bars and return a signal if every gate passes.

        Raises InsufficientDataError for windows under 50 bars.
        """
        config = config or self.config
        if self.get_cooldown_remaining(symbol) > 0:
            logger.debug(f"{symbol}: advanced engine in cooldown")
            return None

        features = self.extractor.extract(bars, label=f"{symbol} {config.timeframe}")
        layers = self.score_layers(features, bars)
        return self.evaluate(symbol, features, layers, config)

    def evaluate(self, symbol: str, features: FeatureBundle, layers: LayerScores,
                 config: Optional[AdvancedEngineConfig] = None) -> Optional[AdvancedSignal]:
        """Apply the gates, in order: cooldown, total score, direction, risk-reward."""
        config = config or self.config

        if self.get_cooldown_remaining(symbol) > 0:
            return None

        if layers.total < config.min_total_score:
            logger.debug(f"{symbol}: advanced score {layers.total} below {config.min_total_score}")
            return None

        direction = self.determine_direction(features, layers)
        if direction == SignalType.HOLD:
            logger.debug(f"{symbol}: advanced layers disagree on direction")
            return None

        price = features.price
        stop_loss, take_profits, risk_reward = self.calculate_entry_plan(price, features.atr, direction, config)
        # Tolerance so an exact 3R target is not lost to float rounding
        if risk_reward < config.min_risk_reward - 1e-9:
            logger.debug(f"{symbol}: risk-reward {risk_reward:.2f} below {config.min_risk_reward}")
            return None

        with self._lock:
            now = self._clock()
            if self._cooldowns.get(symbol, 0) > now:
                return None
            self._cooldowns[symbol] = now + config.cooldown_hours * 3600

        timestamp = datetime.now()
        signal = Signal(
            id=signal_id("adv", symbol, timestamp),
            symbol=symbol,
            type=direction,
            entry_price=price,
            target_price=take_profits[0],
            stop_loss=stop_loss,
            confidence=self.calculate_confidence(layers.total, features),
            reasoning=self.build_reasoning(layers, features),
            timestamp=timestamp,
            source="advanced",
            metadata={'total_score': layers.total}
        )
        logger.info(f"Advanced signal {direction.value} {symbol}: score {layers.total}, R:R {risk_reward:.2f}")

        return AdvancedSignal(
            signal=signal,
            layers=layers,
            take_profits=take_profits,
            risk_reward=risk_reward,
            timeframe=config.timeframe,
            contributing_factors=self.contributing_factors(features)
        )

    # ========== LAYERS ==========

    def score_layers(self, features: FeatureBundle, bars: Sequence[Bar]) -> LayerScores:
        return LayerScores(
            price_action=self.score_price_action(features, bars),
            indicators=self.score_indicators(features),
            trend=self.score_trend(features),
            volume=self.score_volume(features),
            risk_quality=self.score_risk_quality(features)
        )

    @staticmethod
    def score_price_action(f: FeatureBundle, bars: Sequence[Bar]) -> int:
        score = 0

        if (f.higher_highs and f.higher_lows) or (f.lower_highs and f.lower_lows):
            score += 15
        elif f.higher_highs or f.higher_lows or f.lower_highs or f.lower_lows:
            score += 8
        else:
            score += 3

        recent = bars[-3:]
        if is_engulfing(recent):
            score += 10
        elif is_hammer(recent):
            score += 8
        elif is_doji(recent):
            score += 5

        if f.price > 0:
            nearest = min(abs(f.price - f.support), abs(f.price - f.resistance)) / f.price
            if nearest < 0.02:
                score += 5
            elif nearest < 0.05:
                score += 3

        return min(30, score)

    @staticmethod
    def score_indicators(f: FeatureBundle) -> int:
        score = 0

        if f.rsi < 30 or f.rsi > 70:
            score += 7
        elif f.rsi < 40 or f.rsi > 60:
            score += 4

        macd_strength = abs(f.macd.histogram)
        if macd_strength > 5:
            score += 7
        elif macd_strength > 2:
            score += 4

        if (f.price > f.sma20 > f.sma50) or (f.price < f.sma20 < f.sma50):
            score += 6
        elif f.price > f.sma20 or f.sma20 > f.sma50:
            score += 3

        position = f.bollinger.position(f.price)
        if position < 0.1 or position > 0.9:
            score += 5
        elif position < 0.2 or position > 0.8:
            score += 3

        return min(25, score)

    @staticmethod
    def score_trend(f: FeatureBundle) -> int:
        score = 10 if f.trend != Direction.NEUTRAL else 5

        if f.adx > 40:
            score += 10
        elif f.adx > 25:
            score += 7
        elif f.adx > 20:
            score += 4

        return min(20, score)

    @staticmethod
    def score_volume(f: FeatureBundle) -> int:
        score = 0

        if f.volume_ratio > 2.0:
            score += 10
        elif f.volume_ratio > 1.5:
            score += 7
        elif f.volume_ratio > 1.2:
            score += 5
        elif f.volume_ratio < 0.8:
            score += 2

        # Consistency
        score += 5 if f.volume_ratio > 1.0 else 2

        return min(15, score)

    @staticmethod
    def score_risk_quality(f: FeatureBundle) -> int:
        score = 0
        if f.atr > 0:
            score += 5

        if f.price > 0:
            to_support = abs(f.price - f.support) / f.price
            to_resistance = abs(f.price - f.resistance) / f.price
            if to_support > 0:
                potential = to_resistance / to_support
                if potential > 3:
                    score += 5
                elif potential > 2:
                    score += 3

        return min(10, score)

    # ========== DIRECTION / PLAN ==========

    @staticmethod
    def determine_direction(f: FeatureBundle, layers: LayerScores) -> SignalType:
        """Two of three directional layers must agree."""
        votes = []

        if f.higher_highs and f.higher_lows and layers.price_action > 20:
            votes.append(SignalType.BUY)
        elif f.lower_highs and f.lower_lows and layers.price_action > 20:
            votes.append(SignalType.SELL)

        if f.rsi < 35 and f.macd.histogram > 0 and layers.indicators > 15:
            votes.append(SignalType.BUY)
        elif f.rsi > 65 and f.macd.histogram < 0 and layers.indicators > 15:
            votes.append(SignalType.SELL)

        if f.adx > 25 and layers.trend > 12:
            if f.trend == Direction.BULLISH:
                votes.append(SignalType.BUY)
            elif f.trend == Direction.BEARISH:
                votes.append(SignalType.SELL)

        if votes.count(SignalType.BUY) >= 2:
            return SignalType.BUY
        if votes.count(SignalType.SELL) >= 2:
            return SignalType.SELL
        return SignalType.HOLD

    def calculate_entry_plan(self, price: float, atr: float, direction: SignalType,
                             config: Optional[AdvancedEngineConfig] = None
                             ) -> Tuple[float, Tuple[float, float, float], float]:
        """Returns (stop_loss, take_profits, TP1 risk-reward)."""
        config = config or self.config
        sign = direction.sign
        stop_loss = price - sign * atr * config.atr_stop_multiplier
        risk = abs(price - stop_loss)
        take_profits = tuple(price + sign * risk * m for m in config.target_multiples)

        risk_reward = abs(take_profits[0] - price) / risk if risk > 0 else 0.0
        return stop_loss, take_profits, risk_reward

    @staticmethod
    def calculate_confidence(total_score: float, f: FeatureBundle) -> float:
        confidence = min(1.0, total_score / 100)
        if f.adx > 30:
            confidence *= 1.1
        if f.volume_ratio > 1.5:
            confidence *= 1.05
        return min(1.0, confidence)

    @staticmethod
    def build_reasoning(layers: LayerScores, f: FeatureBundle) -> str:
        reasons = []
        if layers.price_action >= 20:
            reasons.append(f"Strong price action ({layers.price_action}/30)")
        if layers.indicators >= 15:
            reasons.append(f"Favorable indicators ({layers.indicators}/25)")
        if layers.trend >= 12:
            reasons.append(f"Trend alignment ({layers.trend}/20)")
        if layers.volume >= 10:
            reasons.append(f"High volume confirmation ({layers.volume}/15)")
        if layers.risk_quality >= 7:
            reasons.append(f"Good risk-reward setup ({layers.risk_quality}/10)")
        if f.trend != Direction.NEUTRAL:
            reasons.append(f"{f.trend.value} trend")
        if f.adx > 25:
            reasons.append(f"Strong trend (ADX: {f.adx:.1f})")
        return ", ".join(reasons)

    @staticmethod
    def contributing_factors(f: FeatureBundle) -> List[str]:
        factors = []
        if f.rsi < 30 or f.rsi > 70:
            factors.append("RSI extremes")
        if abs(f.macd.histogram) > 3:
            factors.append("Strong MACD signal")
        if f.adx > 30:
            factors.append("High ADX trend strength")
        if f.volume_ratio > 1.5:
            factors.append("Volume surge")
        if f.trend != Direction.NEUTRAL:
            factors.append(f"{f.trend.value} trend")
        return factors

    # ========== COOLDOWN ==========

    def get_cooldown_remaining(self, symbol: str) -> float:
        """Seconds of cooldown left for a symbol, 0 if none."""
        with self._lock:
            until = self._cooldowns.get(symbol)
        if until is None:
            return 0.0
        return max(0.0, until - self._clock())

    def clear_cooldown(self, symbol: str):
        with self._lock:
            self._cooldowns.pop(symbol, None)

    def active_cooldowns(self) -> Dict[str, float]:
        """Symbol -> seconds remaining, for symbols still in cooldown."""
        now = self._clock()
        with self._lock:
            return {s: until - now for s, until in self._cooldowns.items() if until > now}
