"""
Signal Types
============
Trading actions, entry plans and the signal record consumed by execution.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Tuple


class SignalType(Enum):
    """Trading action."""
    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"

    @property
    def sign(self) -> int:
        return {SignalType.BUY: 1, SignalType.SELL: -1}.get(self, 0)


@dataclass(frozen=True)
class TrailingStopConfig:
    enabled: bool = False
    start_at: str = "TP1"
    distance: float = 0.0


@dataclass(frozen=True)
class EntryPlan:
    """Stop, laddered targets and leverage for one signal."""
    stop_loss: float
    targets: Tuple[float, float, float]
    ladder: Tuple[float, float, float] = (0.40, 0.35, 0.25)
    trailing: TrailingStopConfig = field(default_factory=TrailingStopConfig)
    leverage: float = 1.0
    mode: str = "ATR"

    @classmethod
    def flat(cls, price: float, ladder: Tuple[float, float, float] = (0.40, 0.35, 0.25)) -> 'EntryPlan':
        """No-trade plan: every level at the current price."""
        return cls(stop_loss=price, targets=(price, price, price), ladder=ladder)

    def to_dict(self) -> dict:
        return {
            'mode': self.mode,
            'stop_loss': self.stop_loss,
            'targets': list(self.targets),
            'ladder': list(self.ladder),
            'trailing': {
                'enabled': self.trailing.enabled,
                'start_at': self.trailing.start_at,
                'distance': self.trailing.distance
            },
            'leverage': self.leverage
        }


@dataclass
class Signal:
    """A tradeable signal. Confidence is always in [0, 1]."""
    id: str
    symbol: str
    type: SignalType
    entry_price: float
    target_price: float
    stop_loss: float
    confidence: float
    reasoning: str
    timestamp: datetime = field(default_factory=datetime.now)
    source: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def risk_reward(self) -> float:
        risk = abs(self.entry_price - self.stop_loss)
        return abs(self.target_price - self.entry_price) / risk if risk > 0 else 0.0

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'symbol': self.symbol,
            'type': self.type.value,
            'entry_price': self.entry_price,
            'target_price': self.target_price,
            'stop_loss': self.stop_loss,
            'confidence': self.confidence,
            'reasoning': self.reasoning,
            'timestamp': self.timestamp.isoformat(),
            'source': self.source,
            **self.metadata
        }


def signal_id(prefix: str, symbol: str, timestamp: datetime) -> str:
    return f"{prefix}-{symbol}-{int(timestamp.timestamp() * 1000)}"
