"""
Strategy Engine
===============
Multi-timeframe scoring: every timeframe is scored independently, the
timeframes vote, a confluence score weighs the vote by category, context
can veto, and an ATR-based entry plan is attached.

Core principle: "A signal needs agreement across timeframes and categories"
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple
import logging
import math

from ..config import DetectorWeights, StrategyConfig
from ..data.market_data import Bar
from ..data.sentiment import MarketContext, SentimentProvider
from ..features.feature_engine import Direction, FeatureBundle, FeatureExtractor
from .detectors import DetectorCategory, DetectorRegistry, DetectorResult
from .score_aggregator import ScoreAggregator
from .signals import EntryPlan, SignalType, TrailingStopConfig

logger = logging.getLogger(__name__)

TECH_CATEGORIES = (DetectorCategory.CORE, DetectorCategory.SMC, DetectorCategory.PATTERNS)


@dataclass(frozen=True)
class TimeframeResult:
    """Scores for one timeframe."""
    timeframe: str
    detectors: Tuple[DetectorResult, ...]
    normalized: float
    score: float
    direction: Direction
    category_scores: Dict[DetectorCategory, float] = field(default_factory=dict)
    composite: float = 0.0

    @classmethod
    def from_score(cls, timeframe: str, score: float,
                   detectors: Sequence[DetectorResult] = ()) -> 'TimeframeResult':
        """Result for a given scaled score; direction follows the signed equivalent."""
        normalized = score * 2 - 1
        return cls(
            timeframe=timeframe,
            detectors=tuple(detectors),
            normalized=normalized,
            score=score,
            direction=ScoreAggregator.classify(normalized)
        )

    def to_dict(self) -> dict:
        return {
            'timeframe': self.timeframe,
            'score': self.score,
            'normalized': self.normalized,
            'direction': self.direction.value,
            'composite': self.composite,
            'category_scores': {c.value: s for c, s in self.category_scores.items()},
            'detectors': [d.to_dict() for d in self.detectors]
        }


@dataclass(frozen=True)
class MTFDecision:
    direction: Direction
    action: SignalType
    score: float  # mean timeframe score


@dataclass(frozen=True)
class ConfluenceScore:
    agreement: float
    ai: float
    tech: float
    context: float
    score: float
    passed: bool

    def to_dict(self) -> dict:
        return {
            'agreement': self.agreement,
            'ai': self.ai,
            'tech': self.tech,
            'context': self.context,
            'score': self.score,
            'passed': self.passed
        }


@dataclass
class StrategyOutput:
    """Full multi-timeframe analysis for one symbol."""
    symbol: str
    results: List[TimeframeResult]
    direction: Direction
    final_score: float
    action: SignalType
    rationale: str
    confluence: ConfluenceScore
    entry_plan: EntryPlan
    context: MarketContext
    entry_price: float
    vetoed: bool = False
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            'symbol': self.symbol,
            'results': [r.to_dict() for r in self.results],
            'direction': self.direction.value,
            'final_score': self.final_score,
            'action': self.action.value,
            'rationale': self.rationale,
            'confluence': self.confluence.to_dict(),
            'entry_plan': self.entry_plan.to_dict(),
            'context': self.context.to_dict(),
            'entry_price': self.entry_price,
            'vetoed': self.vetoed,
            'timestamp': self.timestamp.isoformat()
        }


def _mean_remapped(scores: List[float]) -> float:
    """Mean of [-1, 1] scores remapped to [0, 1]; 0.5 when empty."""
    if not scores:
        return 0.5
    return (sum(scores) / len(scores) + 1) / 2


class StrategyEngine:
    """
    Multi-timeframe strategy engine.

    Configuration and detector registry are held as one pair and replaced
    together, so each analyze() call works against a single snapshot.
    """

    def __init__(self, config: Optional[StrategyConfig] = None,
                 weights: Optional[DetectorWeights] = None,
                 sentiment: Optional[SentimentProvider] = None,
                 registry: Optional[DetectorRegistry] = None):
        config = config or StrategyConfig()
        config.validate()
        self._state: Tuple[StrategyConfig, DetectorRegistry] = (config, registry or DetectorRegistry(weights))
        self.sentiment = sentiment
        self.extractor = FeatureExtractor()
        self.aggregator = ScoreAggregator()

    @property
    def config(self) -> StrategyConfig:
        return self._state[0]

    @property
    def registry(self) -> DetectorRegistry:
        return self._state[1]

    def snapshot(self) -> Tuple[StrategyConfig, DetectorRegistry]:
        """The (config, registry) pair in effect right now."""
        return self._state

    def apply_config(self, config: StrategyConfig, weights: DetectorWeights):
        """Swap in new thresholds and weights. Validation happens before the swap."""
        config.validate()
        self._state = (config, DetectorRegistry(weights))
        logger.info("Strategy engine configuration updated")

    # ========== ANALYSIS ==========

    def analyze(self, symbol: str, bars_by_timeframe: Dict[str, Sequence[Bar]],
                context: Optional[MarketContext] = None,
                state: Optional[Tuple[StrategyConfig, DetectorRegistry]] = None) -> StrategyOutput:
        """
        Analyze all configured timeframes for a symbol.

        Raises InsufficientDataError if any timeframe has fewer than 50 bars.
        """
        config, registry = state or self._state

        detector_context = context if context is not None else self.get_market_context(symbol)
        gate_context = detector_context or MarketContext.neutral()

        results = []
        entry_features: Optional[FeatureBundle] = None
        for timeframe in config.timeframes:
            result, features = self.analyze_timeframe(
                symbol, timeframe, bars_by_timeframe.get(timeframe, []), registry, detector_context)
            results.append(result)
            if timeframe == config.entry_timeframe:
                entry_features = features

        decision = self.make_mtf_decision(results, config)
        confluence = self.calculate_confluence(results, decision.direction, config)
        action, vetoed = self.apply_context_gating(decision.action, gate_context, confluence, config)

        price = entry_features.price
        entry_plan = self.build_entry_plan(price, entry_features.atr, action, gate_context, config)

        output = StrategyOutput(
            symbol=symbol,
            results=results,
            direction=decision.direction,
            final_score=decision.score,
            action=action,
            rationale=self.build_rationale(decision, action, confluence, results, gate_context, vetoed),
            confluence=confluence,
            entry_plan=entry_plan,
            context=gate_context,
            entry_price=price,
            vetoed=vetoed
        )
        logger.debug(f"{symbol}: {output.rationale}")
        return output

    def analyze_timeframe(self, symbol: str, timeframe: str, bars: Sequence[Bar],
                          registry: Optional[DetectorRegistry] = None,
                          context: Optional[MarketContext] = None) -> Tuple[TimeframeResult, FeatureBundle]:
        registry = registry or self.registry
        features = self.extractor.extract(bars, context=context, label=f"{symbol} {timeframe}")
        detectors = registry.evaluate(features, label=f"{symbol} {timeframe}")
        aggregate = self.aggregator.aggregate(detectors)

        result = TimeframeResult(
            timeframe=timeframe,
            detectors=tuple(detectors),
            normalized=aggregate.normalized,
            score=aggregate.scaled,
            direction=aggregate.direction,
            category_scores=aggregate.category_scores,
            composite=aggregate.composite
        )
        return result, features

    def get_market_context(self, symbol: str) -> Optional[MarketContext]:
        """Context from the sentiment provider, or None when unavailable."""
        if self.sentiment is None:
            return None
        try:
            return self.sentiment.get_market_context(symbol.split('/')[0])
        except Exception as e:
            logger.error(f"Market context fetch failed for {symbol}, using neutral: {e}")
            return None

    # ========== DECISION ==========

    @staticmethod
    def make_mtf_decision(results: List[TimeframeResult],
                          config: Optional[StrategyConfig] = None) -> MTFDecision:
        """Majority vote across timeframes, confirmed by score strength."""
        config = config or StrategyConfig()

        bullish_votes = sum(1 for r in results if r.direction == Direction.BULLISH)
        bearish_votes = sum(1 for r in results if r.direction == Direction.BEARISH)
        if bullish_votes > bearish_votes:
            direction = Direction.BULLISH
        elif bearish_votes > bullish_votes:
            direction = Direction.BEARISH
        else:
            direction = Direction.NEUTRAL

        action = SignalType.HOLD
        if direction == Direction.BULLISH:
            strong = any(r.score >= config.strong_buy_score for r in results)
            majority = sum(1 for r in results if r.score >= config.majority_buy_score) >= 2
            if strong or majority:
                action = SignalType.BUY
        elif direction == Direction.BEARISH:
            strong = any(r.score <= config.strong_sell_score for r in results)
            majority = sum(1 for r in results if r.score <= config.majority_sell_score) >= 2
            if strong or majority:
                action = SignalType.SELL

        avg_score = sum(r.score for r in results) / len(results) if results else 0.5
        return MTFDecision(direction=direction, action=action, score=avg_score)

    @staticmethod
    def calculate_confluence(results: List[TimeframeResult], direction: Direction,
                             config: Optional[StrategyConfig] = None) -> ConfluenceScore:
        """agreement * (ai * 0.5 + tech * 0.35 + context * 0.15)"""
        config = config or StrategyConfig()
        agreement = sum(1 for r in results if r.direction == direction) / len(results) if results else 0.0

        ai_scores, tech_scores, context_scores = [], [], []
        for result in results:
            for d in result.detectors:
                if d.category == DetectorCategory.ML:
                    ai_scores.append(d.score)
                elif d.category in TECH_CATEGORIES:
                    tech_scores.append(d.score)
                elif d.category == DetectorCategory.SENTIMENT:
                    context_scores.append(d.score)

        ai = _mean_remapped(ai_scores)
        tech = _mean_remapped(tech_scores)
        context = _mean_remapped(context_scores)
        score = agreement * (ai * 0.5 + tech * 0.35 + context * 0.15)

        return ConfluenceScore(
            agreement=agreement,
            ai=ai,
            tech=tech,
            context=context,
            score=score,
            passed=score >= config.confluence_threshold
        )

    @staticmethod
    def apply_context_gating(action: SignalType, context: MarketContext, confluence: ConfluenceScore,
                             config: Optional[StrategyConfig] = None) -> Tuple[SignalType, bool]:
        """Returns (gated action, whether the bad-news veto fired)."""
        config = config or StrategyConfig()
        if context.news < config.bad_news_threshold and context.sentiment < config.bad_sentiment_threshold:
            return SignalType.HOLD, True
        if not confluence.passed:
            return SignalType.HOLD, False
        return action, False

    # ========== ENTRY PLAN ==========

    def build_entry_plan(self, price: float, atr: float, action: SignalType, context: MarketContext,
                         config: Optional[StrategyConfig] = None) -> EntryPlan:
        config = config or self.config
        if action == SignalType.HOLD:
            return EntryPlan.flat(price, config.ladder)

        sign = action.sign
        stop_loss = price - sign * atr * config.atr_stop_multiplier
        risk = abs(price - stop_loss)
        targets = tuple(price + sign * risk * m for m in config.target_multiples)

        return EntryPlan(
            stop_loss=stop_loss,
            targets=targets,
            ladder=config.ladder,
            trailing=TrailingStopConfig(enabled=True, start_at="TP1",
                                        distance=atr * config.trailing_distance_atr),
            leverage=self.calculate_leverage(price, stop_loss, context, config)
        )

    @staticmethod
    def calculate_leverage(price: float, stop_loss: float, context: MarketContext,
                           config: Optional[StrategyConfig] = None) -> float:
        config = config or StrategyConfig()
        sl_fraction = abs(price - stop_loss) / price if price > 0 else 0.0

        if sl_fraction > 0:
            leverage = min(config.max_leverage, max(config.min_leverage, config.account_risk / sl_fraction))
        else:
            leverage = config.max_leverage

        leverage *= 1 - config.liquidation_buffer
        if (context.sentiment < config.adverse_context_threshold
                or context.news < config.adverse_context_threshold):
            leverage *= config.adverse_leverage_factor

        # Half-up rounding to one decimal
        return math.floor(leverage * 10 + 0.5) / 10

    # ========== RATIONALE ==========

    def build_rationale(self, decision: MTFDecision, action: SignalType, confluence: ConfluenceScore,
                        results: List[TimeframeResult], context: MarketContext, vetoed: bool) -> str:
        parts = [f"{action.value} signal with {decision.score * 100:.0f}% score"]

        aligned = sum(1 for r in results if r.direction == decision.direction)
        parts.append(f"{aligned}/{len(results)} timeframes aligned {decision.direction.value}")

        strength = "Strong" if confluence.passed else "Weak"
        parts.append(f"{strength} confluence ({confluence.score * 100:.0f}%)")

        if vetoed:
            parts.append(f"Bad news hold (news {context.news:+.2f}, sentiment {context.sentiment:+.2f})")

        strongest = self.aggregator.strongest_detector([d for r in results for d in r.detectors])
        if strongest:
            parts.append(f"Led by {strongest.name}")

        return ". ".join(parts)
