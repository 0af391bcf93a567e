"""
Risk Manager Module
===================
"""
from .risk_manager import (
    RiskManager,
    RiskDecision,
    CooldownStatus,
    Position,
    PositionSizer,
    TradeResult,
    TradeStatus
)

__all__ = [
    'RiskManager',
    'RiskDecision',
    'CooldownStatus',
    'Position',
    'PositionSizer',
    'TradeResult',
    'TradeStatus'
]
