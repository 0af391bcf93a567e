"""
Feature Engineering Module
==========================
"""
from .feature_engine import (
    FeatureExtractor,
    FeatureBundle,
    TechnicalIndicators,
    PriceStructure,
    Direction,
    MACDValues,
    BollingerBands,
    StochasticValues,
    MIN_BARS
)

__all__ = [
    'FeatureExtractor',
    'FeatureBundle',
    'TechnicalIndicators',
    'PriceStructure',
    'Direction',
    'MACDValues',
    'BollingerBands',
    'StochasticValues',
    'MIN_BARS'
]
