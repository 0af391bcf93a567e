"""
Score Aggregator
================
Reduces detector outputs to per-category weighted averages, one signed
aggregate and a directional label.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from ..features.feature_engine import Direction
from .detectors import DetectorCategory, DetectorResult

# Core technicals dominate; ML is a small tie-breaker
CATEGORY_BLEND: Dict[DetectorCategory, float] = {
    DetectorCategory.CORE: 0.40,
    DetectorCategory.SMC: 0.25,
    DetectorCategory.PATTERNS: 0.20,
    DetectorCategory.SENTIMENT: 0.10,
    DetectorCategory.ML: 0.05,
}

DIRECTION_THRESHOLD = 0.05


@dataclass(frozen=True)
class AggregateScore:
    normalized: float  # signed weighted average over all detectors, [-1, 1]
    scaled: float  # (normalized + 1) / 2, [0, 1]
    direction: Direction
    category_scores: Dict[DetectorCategory, float]
    composite: float  # fixed category blend


@dataclass(frozen=True)
class Consensus:
    bullish: int
    bearish: int
    neutral: int


class ScoreAggregator:
    """Weighted aggregation of detector results."""

    @staticmethod
    def weighted_average(results: Iterable[DetectorResult]) -> float:
        """sum(score * weight) / sum(|weight|); 0 when there is no weight."""
        signed_sum = 0.0
        weight_sum = 0.0
        for r in results:
            signed_sum += r.score * r.weight
            weight_sum += abs(r.weight)
        return signed_sum / weight_sum if weight_sum > 0 else 0.0

    def category_scores(self, results: List[DetectorResult]) -> Dict[DetectorCategory, float]:
        """Score per category. Every category is present; empty ones score 0."""
        return {
            category: self.weighted_average(r for r in results if r.category == category)
            for category in DetectorCategory
        }

    @staticmethod
    def blend(category_scores: Dict[DetectorCategory, float]) -> float:
        return sum(category_scores.get(category, 0.0) * share
                   for category, share in CATEGORY_BLEND.items())

    @staticmethod
    def classify(score: float) -> Direction:
        if score > DIRECTION_THRESHOLD:
            return Direction.BULLISH
        if score < -DIRECTION_THRESHOLD:
            return Direction.BEARISH
        return Direction.NEUTRAL

    def aggregate(self, results: List[DetectorResult]) -> AggregateScore:
        normalized = self.weighted_average(results)
        categories = self.category_scores(results)
        return AggregateScore(
            normalized=normalized,
            scaled=(normalized + 1) / 2,
            direction=self.classify(normalized),
            category_scores=categories,
            composite=self.blend(categories)
        )

    @staticmethod
    def strongest_detector(results: List[DetectorResult]) -> Optional[DetectorResult]:
        """Detector with the largest |score * weight|; the first wins ties."""
        if not results:
            return None
        strongest = results[0]
        for r in results[1:]:
            if abs(r.score * r.weight) > abs(strongest.score * strongest.weight):
                strongest = r
        return strongest

    @staticmethod
    def consensus(results: List[DetectorResult]) -> Consensus:
        bullish = sum(1 for r in results if r.score > 0.1)
        bearish = sum(1 for r in results if r.score < -0.1)
        return Consensus(bullish=bullish, bearish=bearish, neutral=len(results) - bullish - bearish)
