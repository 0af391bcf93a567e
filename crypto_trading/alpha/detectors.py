"""
Detector Registry
=================
Weighted catalogue of scoring functions.

Each detector maps a FeatureBundle to a signed score in [-1, +1] and
belongs to one of five categories. The catalogue is a closed enum; the
only thing configuration controls is each detector's weight.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple
import logging
import math

from ..config import DetectorWeights
from ..errors import ConfigurationError, DetectorEvaluationError
from ..features.feature_engine import Direction, FeatureBundle

logger = logging.getLogger(__name__)


def clamp(value: float, low: float = -1.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


class DetectorCategory(Enum):
    CORE = "CORE"
    SMC = "SMC"
    PATTERNS = "PATTERNS"
    SENTIMENT = "SENTIMENT"
    ML = "ML"


class DetectorId(Enum):
    """Closed set of detectors. The value is the display name."""
    RSI = "RSI"
    MACD = "MACD"
    MA_CROSS = "MA Cross"
    BOLLINGER = "Bollinger Bands"
    VOLUME = "Volume"
    ADX = "ADX"
    ROC = "ROC"
    MARKET_STRUCTURE = "Market Structure"
    SUPPORT_RESISTANCE = "Support/Resistance"
    REVERSAL = "Reversal Patterns"
    SENTIMENT = "Market Sentiment"
    NEWS = "News Sentiment"
    WHALES = "Whale Activity"
    ML_PREDICTION = "ML Prediction"


ScoringFn = Callable[[FeatureBundle], float]


@dataclass(frozen=True)
class DetectorDefinition:
    id: DetectorId
    category: DetectorCategory
    weight: float
    fn: ScoringFn
    description: str

    @property
    def name(self) -> str:
        return self.id.value


@dataclass(frozen=True)
class DetectorResult:
    """One detector's clamped output for one timeframe."""
    name: str
    category: DetectorCategory
    weight: float
    score: float
    description: str = ""

    def to_dict(self) -> dict:
        return {
            'name': self.name,
            'category': self.category.value,
            'weight': self.weight,
            'score': self.score
        }


# ========== CORE DETECTORS ==========

def detect_rsi(f: FeatureBundle) -> float:
    """Oversold is bullish, overbought is bearish, linear in between."""
    if f.rsi < 30:
        return 1 - f.rsi / 30
    if f.rsi > 70:
        return -(f.rsi - 70) / 30
    return (f.rsi - 50) / 20


def detect_macd(f: FeatureBundle) -> float:
    score = clamp(f.macd.histogram / 10)
    if f.macd.value > f.macd.signal and f.macd.histogram > 0:
        score = max(score, 0.5)
    if f.macd.value < f.macd.signal and f.macd.histogram < 0:
        score = min(score, -0.5)
    return clamp(score)


def detect_ma_cross(f: FeatureBundle) -> float:
    sma_gap = (f.sma20 - f.sma50) / f.sma50
    ema_gap = (f.ema12 - f.ema26) / f.ema26
    return clamp(clamp(sma_gap * 10, -0.5, 0.5) + clamp(ema_gap * 10, -0.5, 0.5))


def detect_bollinger(f: FeatureBundle) -> float:
    position = f.bollinger.position(f.price)
    if position < 0.2:
        return 0.8
    if position > 0.8:
        return -0.8
    return (position - 0.5) * 2


def _trend_sign(f: FeatureBundle) -> int:
    if f.trend == Direction.BULLISH:
        return 1
    if f.trend == Direction.BEARISH:
        return -1
    return 0


def detect_volume(f: FeatureBundle) -> float:
    """High volume confirms the prevailing trend."""
    if f.volume_ratio > 1.5:
        return 0.7 * _trend_sign(f)
    if f.volume_ratio < 0.5:
        return 0.0
    return (f.volume_ratio - 1) * 0.5


def detect_adx(f: FeatureBundle) -> float:
    if f.adx < 20:
        return 0.0
    if f.adx > 40 and f.trend != Direction.NEUTRAL:
        return 0.8 * _trend_sign(f)
    strength = (f.adx - 20) / 20
    return strength * 0.6 * _trend_sign(f)


def detect_roc(f: FeatureBundle) -> float:
    if f.roc > 5:
        return 0.8
    if f.roc < -5:
        return -0.8
    return clamp(f.roc / 5)


# ========== SMART MONEY CONCEPTS ==========

def detect_market_structure(f: FeatureBundle) -> float:
    if f.higher_highs and f.higher_lows:
        return 0.8
    if f.lower_highs and f.lower_lows:
        return -0.8
    if (f.higher_highs and f.lower_lows) or (f.lower_highs and f.higher_lows):
        return 0.0
    if f.higher_highs or f.higher_lows:
        return 0.4
    if f.lower_highs or f.lower_lows:
        return -0.4
    return 0.0


def detect_support_resistance(f: FeatureBundle) -> float:
    """Bullish near support, bearish near resistance."""
    if (f.price - f.support) / f.support < 0.02:
        return 0.7
    if (f.resistance - f.price) / f.price < 0.02:
        return -0.7
    span = f.resistance - f.support
    if span <= 0:
        return 0.0
    position = (f.price - f.support) / span
    return (0.5 - position) * 1.5


# ========== PATTERNS ==========

def detect_reversal(f: FeatureBundle) -> float:
    score = 0.0

    position = f.bollinger.position(f.price)
    if position < 0.1:
        score += 0.3
    elif position > 0.9:
        score -= 0.3

    if f.rsi < 30:
        score += 0.3 * (1 - f.rsi / 30)
    elif f.rsi > 70:
        score -= 0.3 * ((f.rsi - 70) / 30)

    k, d = f.stochastic.k, f.stochastic.d
    if k < 20 and k > d:
        score += 0.2
    elif k > 80 and k < d:
        score -= 0.2

    hist, value = f.macd.histogram, f.macd.value
    if hist > 0 and hist > value * 0.1:
        score += 0.2
    elif hist < 0 and abs(hist) > abs(value) * 0.1:
        score -= 0.2

    return clamp(score)


# ========== SENTIMENT ==========
# With a market context attached, the provider's values win; otherwise a
# price-derived proxy stands in.

def detect_sentiment(f: FeatureBundle) -> float:
    if f.context is not None:
        return f.context.sentiment

    indicators = [
        0.8 if f.rsi > 70 else -0.8 if f.rsi < 30 else (f.rsi - 50) / 25,
        0.7 if f.stochastic.k > 80 else -0.7 if f.stochastic.k < 20 else 0.0,
        0.6 * _trend_sign(f)
    ]
    # Contrarian: crowd euphoria is bearish
    return -(sum(indicators) / len(indicators)) * 0.8


def detect_news(f: FeatureBundle) -> float:
    if f.context is not None:
        return f.context.news

    if f.volume_ratio > 2.0:
        if f.trend == Direction.BULLISH and f.rsi < 70:
            return 0.6
        if f.trend == Direction.BEARISH and f.rsi > 30:
            return -0.6
    return 0.0


def detect_whales(f: FeatureBundle) -> float:
    if f.context is not None:
        return f.context.whale_activity

    if f.volume_ratio > 2.5 and abs(f.roc) > 3:
        return 0.5 if f.roc > 0 else -0.5
    return 0.0


# ========== ML ==========

ML_FEATURE_WEIGHTS = (0.2, 0.15, 0.1, 0.25, 0.15, 0.1, 0.05)


def detect_ml(f: FeatureBundle) -> float:
    """Squashed linear model over normalized indicator votes."""
    votes = (
        -0.3 if f.rsi > 70 else 0.3 if f.rsi < 30 else (50 - f.rsi) / 50,
        f.macd.histogram / 10,
        f.roc / 10,
        0.4 * _trend_sign(f),
        (0.3 if f.trend == Direction.BULLISH else -0.3) if f.adx > 25 else 0.0,
        0.2 if f.bollinger.middle > f.sma50 else -0.2,
        0.2 if f.volume_ratio > 1.2 else -0.1
    )
    raw = sum(v * w for v, w in zip(votes, ML_FEATURE_WEIGHTS))
    return clamp(math.tanh(raw))


# id -> (weights field, category, scoring fn, description)
CATALOGUE: Dict[DetectorId, Tuple[str, DetectorCategory, ScoringFn, str]] = {
    DetectorId.RSI: ('rsi', DetectorCategory.CORE, detect_rsi,
                     'Relative Strength Index - oversold/overbought detection'),
    DetectorId.MACD: ('macd', DetectorCategory.CORE, detect_macd,
                      'Moving Average Convergence Divergence - momentum'),
    DetectorId.MA_CROSS: ('ma_cross', DetectorCategory.CORE, detect_ma_cross,
                          'Moving Average Crossover - trend identification'),
    DetectorId.BOLLINGER: ('bollinger', DetectorCategory.CORE, detect_bollinger,
                           'Bollinger Bands - volatility and band position'),
    DetectorId.VOLUME: ('volume', DetectorCategory.CORE, detect_volume,
                        'Volume analysis - trend confirmation'),
    DetectorId.ADX: ('adx', DetectorCategory.CORE, detect_adx,
                     'Average Directional Index - trend strength'),
    DetectorId.ROC: ('roc', DetectorCategory.CORE, detect_roc,
                     'Rate of Change - momentum measurement'),
    DetectorId.MARKET_STRUCTURE: ('market_structure', DetectorCategory.SMC, detect_market_structure,
                                  'Market structure - swing highs and lows'),
    DetectorId.SUPPORT_RESISTANCE: ('support_resistance', DetectorCategory.SMC, detect_support_resistance,
                                    'Key price levels - support and resistance zones'),
    DetectorId.REVERSAL: ('reversal', DetectorCategory.PATTERNS, detect_reversal,
                          'Reversal pattern detection'),
    DetectorId.SENTIMENT: ('sentiment', DetectorCategory.SENTIMENT, detect_sentiment,
                           'Market sentiment - Fear & Greed'),
    DetectorId.NEWS: ('news', DetectorCategory.SENTIMENT, detect_news,
                      'News sentiment - market events'),
    DetectorId.WHALES: ('whales', DetectorCategory.SENTIMENT, detect_whales,
                        'Whale activity - large transactions'),
    DetectorId.ML_PREDICTION: ('ml_prediction', DetectorCategory.ML, detect_ml,
                               'ML prediction - learned indicator blend'),
}


class DetectorRegistry:
    """
    Detectors bound to validated weights.

    Built once per weight snapshot. A reload builds a new registry rather
    than mutating this one, so a cycle that holds a registry keeps
    consistent weights throughout.
    """

    def __init__(self, weights: Optional[DetectorWeights] = None,
                 overrides: Optional[Dict[DetectorId, ScoringFn]] = None):
        self.weights = weights or DetectorWeights()
        self.weights.validate()

        overrides = overrides or {}
        unknown = set(overrides) - set(DetectorId)
        if unknown:
            raise ConfigurationError(f"Unknown detector override: {unknown}")

        self._detectors: Tuple[DetectorDefinition, ...] = tuple(
            DetectorDefinition(
                id=detector_id,
                category=category,
                weight=float(getattr(self.weights, weight_field)),
                fn=overrides.get(detector_id, fn),
                description=description
            )
            for detector_id, (weight_field, category, fn, description) in CATALOGUE.items()
        )

    def all(self) -> List[DetectorDefinition]:
        return list(self._detectors)

    def by_category(self, category: DetectorCategory) -> List[DetectorDefinition]:
        return [d for d in self._detectors if d.category == category]

    def get(self, detector_id: DetectorId) -> DetectorDefinition:
        for d in self._detectors:
            if d.id == detector_id:
                return d
        raise KeyError(detector_id)

    def total_weight(self) -> float:
        return sum(d.weight for d in self._detectors)

    def evaluate(self, features: FeatureBundle, label: str = "") -> List[DetectorResult]:
        """Run every detector. A failing detector scores 0; the rest still run."""
        results = []
        for detector in self._detectors:
            try:
                score = float(detector.fn(features))
                if not math.isfinite(score):
                    raise ValueError(f"non-finite score {score}")
            except Exception as e:
                error = DetectorEvaluationError(detector.name, e)
                logger.warning(f"{error}{' on ' + label if label else ''}; using neutral score")
                score = 0.0

            results.append(DetectorResult(
                name=detector.name,
                category=detector.category,
                weight=detector.weight,
                score=clamp(score),
                description=detector.description
            ))
        return results
