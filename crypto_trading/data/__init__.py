"""
Data Module
===========
"""
from .market_data import (
    Bar,
    MarketDataProvider,
    MockMarketDataProvider,
    YFinanceMarketDataProvider,
    CachedMarketDataProvider,
    TIMEFRAME_MINUTES,
    base_symbol,
    bars_to_frame,
    frame_to_bars
)
from .sentiment import (
    MarketContext,
    SentimentProvider,
    StaticSentimentProvider,
    FearGreedSentimentProvider
)

__all__ = [
    'Bar',
    'MarketDataProvider',
    'MockMarketDataProvider',
    'YFinanceMarketDataProvider',
    'CachedMarketDataProvider',
    'TIMEFRAME_MINUTES',
    'base_symbol',
    'bars_to_frame',
    'frame_to_bars',
    'MarketContext',
    'SentimentProvider',
    'StaticSentimentProvider',
    'FearGreedSentimentProvider'
]
