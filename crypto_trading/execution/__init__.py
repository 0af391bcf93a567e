"""
Execution Module
================
"""
from .broker import (
    TradingProvider,
    PaperTradingProvider,
    OrderRecord,
    OrderType,
    OrderSide,
    OrderStatus
)
from .auto_trader import AutoTradeExecutionEngine, EngineState

__all__ = [
    'TradingProvider',
    'PaperTradingProvider',
    'OrderRecord',
    'OrderType',
    'OrderSide',
    'OrderStatus',
    'AutoTradeExecutionEngine',
    'EngineState'
]
