"""
Alpha Module
============
"""
from .signals import Signal, SignalType, EntryPlan, TrailingStopConfig, signal_id
from .detectors import (
    DetectorCategory,
    DetectorDefinition,
    DetectorId,
    DetectorRegistry,
    DetectorResult
)
from .score_aggregator import AggregateScore, Consensus, ScoreAggregator, CATEGORY_BLEND
from .strategy_engine import (
    ConfluenceScore,
    MTFDecision,
    StrategyEngine,
    StrategyOutput,
    TimeframeResult
)
from .advanced_engine import AdvancedSignal, AdvancedSignalEngine, LayerScores
from .signal_aggregator import CombinedSignal, SignalAggregator

__all__ = [
    'Signal',
    'SignalType',
    'EntryPlan',
    'TrailingStopConfig',
    'signal_id',
    'DetectorCategory',
    'DetectorDefinition',
    'DetectorId',
    'DetectorRegistry',
    'DetectorResult',
    'AggregateScore',
    'Consensus',
    'ScoreAggregator',
    'CATEGORY_BLEND',
    'ConfluenceScore',
    'MTFDecision',
    'StrategyEngine',
    'StrategyOutput',
    'TimeframeResult',
    'AdvancedSignal',
    'AdvancedSignalEngine',
    'LayerScores',
    'CombinedSignal',
    'SignalAggregator'
]
