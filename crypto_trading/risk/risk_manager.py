"""
Risk Manager Module
===================
Per-symbol cooldowns, loss streaks, open-position limits, daily loss
limit and drawdown tracking.

Core principle: "No emotional overrides once live"
Risk rules are enforced algorithmically. A denial is a value with a
reason, never an exception.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple
import logging
import threading

from ..alpha.signals import SignalType
from ..config import RiskConfig

logger = logging.getLogger(__name__)

PNL_EPSILON = 1e-9


class TradeStatus(Enum):
    WIN = "WIN"
    LOSS = "LOSS"
    BREAKEVEN = "BREAKEVEN"

    @classmethod
    def from_pnl(cls, pnl: float, epsilon: float = PNL_EPSILON) -> 'TradeStatus':
        if pnl > epsilon:
            return cls.WIN
        if pnl < -epsilon:
            return cls.LOSS
        return cls.BREAKEVEN


@dataclass
class Position:
    """An open position tracked by the risk manager and the auto-trader."""
    id: str
    symbol: str
    side: SignalType
    entry_price: float
    amount: float
    stop_loss: float
    take_profits: Tuple[float, ...]
    leverage: float = 1.0
    pnl: float = 0.0
    opened_at: datetime = field(default_factory=datetime.now)
    signal_id: str = ""

    # Trailing high-water marks
    highest_price: Optional[float] = None
    lowest_price: Optional[float] = None
    trailing_active: bool = False

    def __post_init__(self):
        if self.highest_price is None:
            self.highest_price = self.entry_price
        if self.lowest_price is None:
            self.lowest_price = self.entry_price

    @property
    def take_profit(self) -> float:
        return self.take_profits[0] if self.take_profits else 0.0

    @property
    def notional(self) -> float:
        return self.amount * self.entry_price * self.leverage

    def unrealized_pnl(self, price: float) -> float:
        return (price - self.entry_price) * self.amount * self.side.sign

    def profit_percent(self, price: float) -> float:
        if self.entry_price <= 0:
            return 0.0
        return (price - self.entry_price) / self.entry_price * 100 * self.side.sign

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'symbol': self.symbol,
            'side': self.side.value,
            'entry_price': self.entry_price,
            'amount': self.amount,
            'leverage': self.leverage,
            'stop_loss': self.stop_loss,
            'take_profits': list(self.take_profits),
            'pnl': self.pnl,
            'opened_at': self.opened_at.isoformat(),
            'signal_id': self.signal_id,
            'trailing_active': self.trailing_active
        }


@dataclass(frozen=True)
class TradeResult:
    """Outcome of one closed position."""
    signal_id: str
    symbol: str
    side: SignalType
    entry_price: float
    exit_price: float
    amount: float
    pnl: float
    duration: timedelta
    status: TradeStatus
    exit_reason: str = ""
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            'signal_id': self.signal_id,
            'symbol': self.symbol,
            'side': self.side.value,
            'entry_price': self.entry_price,
            'exit_price': self.exit_price,
            'amount': self.amount,
            'pnl': self.pnl,
            'duration_seconds': self.duration.total_seconds(),
            'status': self.status.value,
            'exit_reason': self.exit_reason,
            'timestamp': self.timestamp.isoformat()
        }


@dataclass(frozen=True)
class RiskDecision:
    allowed: bool
    reason: str = ""

    def __bool__(self) -> bool:
        return self.allowed


@dataclass(frozen=True)
class CooldownStatus:
    active: bool
    remaining: timedelta = timedelta(0)


class PositionSizer:
    """Position sizing algorithms."""

    @staticmethod
    def fixed_fractional(balance: float, risk_pct: float, entry_price: float,
                         stop_loss_price: float) -> float:
        """
        Fixed fractional sizing in base units.

        Risk `risk_pct` percent of balance between entry and stop:
        (balance * risk% / 100) / stop_fraction / entry.
        """
        if entry_price <= 0 or balance <= 0:
            return 0.0

        sl_fraction = abs(entry_price - stop_loss_price) / entry_price
        if sl_fraction == 0:
            return 0.0

        risk_amount = balance * risk_pct / 100
        return max(risk_amount / sl_fraction / entry_price, 0.0)


class RiskManager:
    """
    Trade admission and risk bookkeeping.

    Responsibilities:
    - Per-symbol cooldowns after losing streaks
    - Open position limit
    - Daily realized loss limit
    - Position sizing and leverage clamping
    - Drawdown of cumulative realized P&L

    All state is guarded by one re-entrant lock.
    """

    def __init__(self, config: Optional[RiskConfig] = None, clock: Callable[[], datetime] = datetime.now):
        self.config = config or RiskConfig()
        self.config.validate()
        self._clock = clock
        self._lock = threading.RLock()

        self._cooldowns: Dict[str, datetime] = {}
        self._consecutive_losses: Dict[str, int] = {}
        self._positions: List[Position] = []
        self._history: List[TradeResult] = []

        self._cumulative_pnl = 0.0
        self._peak_pnl = 0.0
        self._max_drawdown = 0.0

    def update_config(self, config):
        config.validate()
        with self._lock:
            self.config = config
        logger.info("Risk configuration updated")

    # ========== ADMISSION ==========

    def can_trade(self, symbol: str) -> RiskDecision:
        with self._lock:
            now = self._clock()

            until = self._cooldowns.get(symbol)
            if until is not None and now < until:
                remaining = -(-(until - now).total_seconds() // 60)
                return RiskDecision(False, f"Cooldown active for {int(remaining)} more minutes")

            if len(self._positions) >= self.config.max_open_positions:
                return RiskDecision(False, f"Max open positions ({self.config.max_open_positions}) reached")

            daily_pnl = self._daily_pnl(now)
            if daily_pnl <= -self.config.max_daily_loss:
                return RiskDecision(False, f"Daily loss limit reached: ${daily_pnl:.2f}")

            losses = self._consecutive_losses.get(symbol, 0)
            if losses >= self.config.max_consecutive_losses:
                return RiskDecision(False, f"{losses} consecutive losses - cooldown triggered")

            return RiskDecision(True)

    # ========== COOLDOWNS ==========

    def activate_cooldown(self, symbol: str, bars: Optional[int] = None,
                          bar_duration: Optional[timedelta] = None):
        bars = bars if bars is not None else self.config.cooldown_bars
        if bar_duration is None:
            bar_duration = timedelta(minutes=self.config.bar_duration_minutes)

        with self._lock:
            until = self._clock() + bar_duration * bars
            self._cooldowns[symbol] = until
        logger.warning(f"Cooldown activated for {symbol} until {until:%Y-%m-%d %H:%M:%S}")

    def clear_cooldown(self, symbol: str):
        with self._lock:
            self._cooldowns.pop(symbol, None)
        logger.info(f"Cooldown cleared for {symbol}")

    def get_cooldown_status(self, symbol: str) -> CooldownStatus:
        with self._lock:
            until = self._cooldowns.get(symbol)
            if until is None:
                return CooldownStatus(active=False)
            remaining = until - self._clock()
        if remaining.total_seconds() <= 0:
            return CooldownStatus(active=False)
        return CooldownStatus(active=True, remaining=remaining)

    def purge_expired_cooldowns(self) -> int:
        """Drop elapsed cooldowns; returns how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [s for s, until in self._cooldowns.items() if until <= now]
            for symbol in expired:
                del self._cooldowns[symbol]
        if expired:
            logger.debug(f"Expired cooldowns purged: {expired}")
        return len(expired)

    def consecutive_losses(self, symbol: str) -> int:
        with self._lock:
            return self._consecutive_losses.get(symbol, 0)

    # ========== TRADES ==========

    def record_trade(self, result: TradeResult):
        with self._lock:
            self._history.append(result)
            symbol = result.symbol

            if result.status == TradeStatus.LOSS:
                streak = self._consecutive_losses.get(symbol, 0) + 1
                self._consecutive_losses[symbol] = streak
                if streak >= self.config.cooldown_after_losses:
                    self.activate_cooldown(symbol)
            else:
                self._consecutive_losses[symbol] = 0
                self._cooldowns.pop(symbol, None)

            self._cumulative_pnl += result.pnl
            self._peak_pnl = max(self._peak_pnl, self._cumulative_pnl)
            self._max_drawdown = max(self._max_drawdown, self._peak_pnl - self._cumulative_pnl)

        logger.info(f"Trade recorded: {result.status.value} - {result.symbol} - P&L: ${result.pnl:.2f}")

    def trade_history(self, limit: Optional[int] = None) -> List[TradeResult]:
        """Newest first."""
        with self._lock:
            history = sorted(self._history, key=lambda t: t.timestamp, reverse=True)
        return history[:limit] if limit is not None else history

    def _daily_pnl(self, now: datetime) -> float:
        today = now.date()
        return sum(t.pnl for t in self._history if t.timestamp.date() == today)

    def daily_pnl(self) -> float:
        with self._lock:
            return self._daily_pnl(self._clock())

    def current_drawdown(self) -> float:
        """Largest peak-to-trough fall of cumulative realized P&L this session."""
        with self._lock:
            return self._max_drawdown

    def current_drawdown_from_peak(self) -> float:
        with self._lock:
            return self._peak_pnl - self._cumulative_pnl

    # ========== SIZING ==========

    def calculate_position_size(self, balance: float, entry_price: float, stop_loss: float,
                                risk_pct: Optional[float] = None) -> float:
        risk_pct = risk_pct if risk_pct is not None else self.config.max_risk_per_trade
        size = PositionSizer.fixed_fractional(balance, risk_pct, entry_price, stop_loss)
        return min(size, self.config.max_position_size)

    def validate_leverage(self, leverage: float) -> float:
        return max(self.config.min_leverage, min(self.config.max_leverage, leverage))

    # ========== POSITIONS ==========

    def add_position(self, position: Position) -> bool:
        with self._lock:
            if len(self._positions) >= self.config.max_open_positions:
                logger.warning(f"Position for {position.symbol} rejected: "
                               f"max open positions ({self.config.max_open_positions}) reached")
                return False
            self._positions.append(position)
        logger.info(f"Position added: {position.symbol} {position.side.value}")
        return True

    def remove_position(self, position_id: str) -> Optional[Position]:
        with self._lock:
            for i, position in enumerate(self._positions):
                if position.id == position_id:
                    del self._positions[i]
                    logger.info(f"Position removed: {position.symbol} {position.side.value}")
                    return position
        return None

    def update_position(self, position_id: str, **changes) -> Optional[Position]:
        """
        Apply field changes to an open position.

        A stop_loss change that moves the stop against the position is
        refused and the position is left untouched. Returns the updated
        position, or None if it is unknown or the change was refused.
        """
        with self._lock:
            for i, position in enumerate(self._positions):
                if position.id != position_id:
                    continue
                new_stop = changes.get('stop_loss')
                if new_stop is not None and (new_stop - position.stop_loss) * position.side.sign < 0:
                    logger.warning(f"Refusing to loosen stop on {position.symbol}: "
                                   f"{position.stop_loss:.4f} -> {new_stop:.4f}")
                    return None
                updated = replace(position, **changes)
                self._positions[i] = updated
                return updated
        return None

    def open_positions(self) -> List[Position]:
        with self._lock:
            return list(self._positions)

    def open_positions_for(self, symbol: str) -> List[Position]:
        with self._lock:
            return [p for p in self._positions if p.symbol == symbol]

    def total_exposure(self) -> float:
        with self._lock:
            return sum(p.notional for p in self._positions)

    # ========== REPORTING ==========

    def stats(self) -> dict:
        with self._lock:
            return {
                'open_positions': len(self._positions),
                'total_exposure': self.total_exposure(),
                'daily_pnl': self._daily_pnl(self._clock()),
                'current_drawdown': self._max_drawdown,
                'drawdown_from_peak': self._peak_pnl - self._cumulative_pnl,
                **self.performance(),
                'active_cooldowns': sum(1 for until in self._cooldowns.values() if until > self._clock())
            }

    def performance(self) -> dict:
        """Closed-trade totals: count, win rate in percent, total and average P&L."""
        with self._lock:
            history = list(self._history)
        total = len(history)
        wins = sum(1 for t in history if t.status == TradeStatus.WIN)
        total_pnl = sum(t.pnl for t in history)
        return {
            'total_trades': total,
            'winning_trades': wins,
            'win_rate': wins / total * 100 if total else 0.0,
            'total_pnl': total_pnl,
            'average_pnl': total_pnl / total if total else 0.0
        }

    def reset(self):
        """Administrative reset of all risk state."""
        with self._lock:
            self._cooldowns.clear()
            self._consecutive_losses.clear()
            self._positions.clear()
            self._history.clear()
            self._cumulative_pnl = 0.0
            self._peak_pnl = 0.0
            self._max_drawdown = 0.0
        logger.info("Risk state reset")
