"""
Crypto Trading Engine
=====================
Multi-timeframe signal scoring and risk-gated auto-trading.

Pipeline:
    DATA → FEATURES → DETECTORS → STRATEGY / ADVANCED → AGGREGATOR
         → RISK → EXECUTION → MONITORING
"""

__version__ = "1.0.0"

from .config import SystemConfig, ConfigManager
from .errors import TradingEngineError
from .orchestrator import TradingSystem

__all__ = [
    'SystemConfig',
    'ConfigManager',
    'TradingEngineError',
    'TradingSystem',
    '__version__'
]
