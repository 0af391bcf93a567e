"""
Auto-Trade Execution Engine
===========================
Periodic loops that turn combined signals into positions and manage them
until exit.

Loops:
    signal cycle   every `cycle_seconds`        -> run_cycle()
    monitor        every `monitor_seconds`      -> monitor_positions()
    housekeeping   every `housekeeping_seconds` -> expired cooldowns, config reload

Every attempted-but-failed order is published as an `error` event with
the stage, symbol and reason.
"""

from dataclasses import asdict
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple
import logging
import threading

from ..alpha.signals import Signal, SignalType
from ..config import AutoTradeConfig
from ..errors import ConfigurationError, EngineStateError, OrderRejectedError, ProviderError
from ..monitoring.events import EngineEvent, EventBus, EventType, PeriodicTask, call_with_timeout
from ..risk.risk_manager import Position, TradeResult, TradeStatus
from .broker import OrderSide, OrderType, TradingProvider

logger = logging.getLogger(__name__)


class EngineState(Enum):
    STOPPED = "stopped"
    RUNNING = "running"


class AutoTradeExecutionEngine:
    """
    Signal-driven auto-trader.

    Responsibilities:
    - Periodic signal evaluation per configured symbol
    - Order placement sized by the risk manager
    - Stop, take-profit and trailing stop management
    - Feeding closed trades back into the risk manager
    """

    def __init__(self, aggregator, risk_manager, market_data, trading: TradingProvider,
                 config: Optional[AutoTradeConfig] = None, events: Optional[EventBus] = None,
                 config_manager=None, clock: Callable[[], datetime] = datetime.now):
        self.aggregator = aggregator
        self.risk_manager = risk_manager
        self.market_data = market_data
        self.trading = trading
        self.config = config or AutoTradeConfig()
        self.config.validate()
        self.events = events or EventBus()
        self.config_manager = config_manager
        self._clock = clock

        self.state = EngineState.STOPPED
        self._state_lock = threading.RLock()
        self._order_lock = threading.RLock()
        self._tasks: List[PeriodicTask] = []

        self._positions: Dict[str, Position] = {}
        self._last_trade_at: Dict[str, datetime] = {}
        self.last_cycle_at: Optional[datetime] = None
        self.cycle_count = 0
        self.error_count = 0

    # ========== LIFECYCLE ==========

    @property
    def is_running(self) -> bool:
        return self.state == EngineState.RUNNING

    def start(self):
        with self._state_lock:
            if self.state == EngineState.RUNNING:
                raise EngineStateError("Auto-trade engine is already running")

            config = self.config
            self._tasks = [
                PeriodicTask("signal-cycle", config.cycle_seconds, self.run_cycle),
                PeriodicTask("position-monitor", config.monitor_seconds, self.monitor_positions),
                PeriodicTask("housekeeping", config.housekeeping_seconds, self.housekeeping)
            ]
            for task in self._tasks:
                task.start()
            self.state = EngineState.RUNNING

        logger.info(f"Auto-trade engine started for {', '.join(config.symbols)}")
        self.events.publish(EventType.STARTED, {'config': asdict(config)})

    def stop(self):
        """Stop all loops and wait for any in-flight order. A second call does nothing."""
        with self._state_lock:
            if self.state == EngineState.STOPPED:
                return
            self.state = EngineState.STOPPED
            tasks, self._tasks = self._tasks, []

        timeout = self.config.shutdown_timeout_seconds
        try:
            for task in tasks:
                try:
                    task.stop(timeout=timeout)
                except Exception as e:
                    logger.error(f"Failed to stop {task.name}: {e}")

            if self._order_lock.acquire(timeout=timeout):
                self._order_lock.release()
            else:
                logger.warning(f"In-flight order did not complete within {timeout}s")
        finally:
            logger.info("Auto-trade engine stopped")
            self.events.publish(EventType.STOPPED, {'open_positions': len(self._positions)})

    def subscribe(self, callback: Callable[[EngineEvent], None]) -> Callable[[], None]:
        return self.events.subscribe(callback)

    def update_config(self, config: AutoTradeConfig):
        config.validate()
        with self._state_lock:
            self.config = config
            intervals = (config.cycle_seconds, config.monitor_seconds, config.housekeeping_seconds)
            for task, interval in zip(self._tasks, intervals):
                task.interval = interval
        logger.info("Auto-trade configuration updated")
        self.events.publish(EventType.CONFIG_UPDATED, {'config': asdict(config)})

    # ========== SIGNAL CYCLE ==========

    def run_cycle(self) -> List[Position]:
        """One decision pass over every configured symbol. Returns positions opened."""
        config = self.config
        self.monitor_positions()
        self.last_cycle_at = self._clock()
        self.cycle_count += 1

        if not config.enabled:
            logger.debug("Auto-trading disabled; skipping signal evaluation")
            return []

        opened = []
        for symbol in config.symbols:
            if len(self._positions) >= config.max_positions:
                logger.debug(f"Max positions ({config.max_positions}) open; cycle ends")
                break
            try:
                position = self._evaluate_symbol(symbol, config)
                if position is not None:
                    opened.append(position)
            except Exception as e:
                self.error_count += 1
                logger.error(f"Signal cycle error for {symbol}: {e}")
                self._publish_error("signal", symbol, str(e))
        return opened

    def _evaluate_symbol(self, symbol: str, config: AutoTradeConfig) -> Optional[Position]:
        if self._in_cooldown(symbol, config):
            logger.debug(f"{symbol}: engine cooldown active")
            return None
        if symbol in self._positions:
            return None

        decision = self.risk_manager.can_trade(symbol)
        if not decision.allowed:
            logger.info(f"{symbol}: {decision.reason}")
            return None

        bars = call_with_timeout(self.aggregator.fetch_bars, symbol, timeout=config.provider_timeout_seconds)
        combined = self.aggregator.generate_combined_signal(symbol, bars)
        signal = combined.signal
        if signal is None:
            return None

        if signal.confidence * 100 < config.min_confidence:
            logger.info(f"{symbol}: {signal.type.value} confidence {signal.confidence * 100:.0f}% "
                        f"below {config.min_confidence:.0f}%")
            return None

        return self.execute_signal(signal)

    def _in_cooldown(self, symbol: str, config: AutoTradeConfig) -> bool:
        with self._state_lock:
            last = self._last_trade_at.get(symbol)
        if last is None:
            return False
        return (self._clock() - last).total_seconds() < config.cooldown_minutes * 60

    # ========== EXECUTION ==========

    def execute_signal(self, signal: Signal) -> Optional[Position]:
        """Open a position for a signal. Provider failures become error events."""
        if signal.type == SignalType.HOLD:
            return None

        config = self.config
        symbol = signal.symbol
        timeout = config.provider_timeout_seconds

        with self._order_lock:
            try:
                price = self._get_price(symbol, config, fallback=signal.entry_price)
                balance = call_with_timeout(self.trading.get_available_balance, config.quote_asset,
                                            timeout=timeout)
                stop_loss, take_profit = self.calculate_levels(signal, price, config)
                amount = self.risk_manager.calculate_position_size(
                    balance, price, stop_loss, config.risk_per_trade)
                if amount <= 0:
                    raise OrderRejectedError(f"Position size for {symbol} is zero")

                side = OrderSide.BUY if signal.type == SignalType.BUY else OrderSide.SELL
                order = call_with_timeout(self.trading.place_order, symbol, side, OrderType.MARKET,
                                          price, amount, timeout=timeout)
            except ProviderError as e:
                self.error_count += 1
                logger.error(f"Order failed for {symbol}: {e}")
                self._publish_error("open", symbol, str(e))
                return None

            position = Position(
                id=order.order_id,
                symbol=symbol,
                side=signal.type,
                entry_price=order.price,
                amount=order.amount,
                stop_loss=stop_loss,
                take_profits=(take_profit,),
                leverage=self.risk_manager.validate_leverage(signal.metadata.get('leverage', 1.0)),
                opened_at=self._clock(),
                signal_id=signal.id
            )

            if not self.risk_manager.add_position(position):
                # Risk limits moved while the order was in flight; flatten again
                self.trading.close_position(symbol)
                self._publish_error("open", symbol, "Position rejected by risk manager")
                return None

            with self._state_lock:
                self._positions[symbol] = position
                self._last_trade_at[symbol] = position.opened_at

        logger.info(f"Trade opened: {signal.type.value} {symbol} {position.amount:.6f} @ {position.entry_price:.2f} "
                    f"(SL {stop_loss:.2f}, TP {take_profit:.2f})")
        self.events.publish(EventType.TRADE_OPENED, {
            'position': position.to_dict(),
            'signal_id': signal.id,
            'confidence': signal.confidence,
            'source': signal.source
        })
        return position

    @staticmethod
    def calculate_levels(signal: Signal, price: float, config: AutoTradeConfig) -> Tuple[float, float]:
        """Returns (stop_loss, take_profit)."""
        if config.use_signal_levels and signal.stop_loss > 0 and signal.target_price > 0:
            return signal.stop_loss, signal.target_price
        sign = signal.type.sign
        stop_loss = price * (1 - sign * config.stop_loss_percent / 100)
        take_profit = price * (1 + sign * config.take_profit_percent / 100)
        return stop_loss, take_profit

    def _get_price(self, symbol: str, config: AutoTradeConfig, fallback: Optional[float] = None) -> float:
        pair = f"{symbol}/{config.quote_asset}"
        try:
            return call_with_timeout(self.market_data.get_rate, pair, timeout=config.provider_timeout_seconds)
        except ProviderError as e:
            if fallback is None:
                raise
            logger.warning(f"Rate unavailable for {pair}, using signal entry: {e}")
            return fallback

    # ========== POSITION MANAGEMENT ==========

    def monitor_positions(self) -> List[TradeResult]:
        """Check every tracked position against its stop, target and trailing stop."""
        config = self.config
        with self._state_lock:
            positions = list(self._positions.values())

        closed = []
        for position in positions:
            try:
                price = self._get_price(position.symbol, config)
            except Exception as e:
                self.error_count += 1
                logger.error(f"Price check failed for {position.symbol}: {e}")
                self._publish_error("monitor", position.symbol, str(e))
                continue

            result = self.check_position(position, price, config)
            if result is not None:
                closed.append(result)
        return closed

    def check_position(self, position: Position, price: float,
                       config: Optional[AutoTradeConfig] = None) -> Optional[TradeResult]:
        config = config or self.config
        sign = position.side.sign

        if (price - position.stop_loss) * sign <= 0:
            reason = "trailing_stop" if position.trailing_active else "stop_loss"
            return self.close_position(position, reason, price)

        if (price - position.take_profit) * sign >= 0:
            return self.close_position(position, "take_profit", price)

        changes = {
            'pnl': position.unrealized_pnl(price),
            'highest_price': max(position.highest_price, price),
            'lowest_price': min(position.lowest_price, price)
        }

        if position.profit_percent(price) >= config.trailing_trigger_percent:
            extreme = changes['highest_price'] if sign > 0 else changes['lowest_price']
            trail = extreme * (1 - sign * config.trailing_distance_percent / 100)
            if (trail - position.stop_loss) * sign > 0:
                changes['stop_loss'] = trail
                changes['trailing_active'] = True
                logger.info(f"Trailing stop for {position.symbol} moved to {trail:.2f}")

        updated = self.risk_manager.update_position(position.id, **changes)
        if updated is not None:
            with self._state_lock:
                if position.symbol in self._positions:
                    self._positions[position.symbol] = updated
        return None

    def close_position(self, position: Position, reason: str, price: float) -> Optional[TradeResult]:
        config = self.config
        symbol = position.symbol

        with self._order_lock:
            with self._state_lock:
                if symbol not in self._positions:
                    return None
            try:
                record = call_with_timeout(self.trading.close_position, symbol,
                                           timeout=config.provider_timeout_seconds)
            except ProviderError as e:
                self.error_count += 1
                logger.error(f"Close failed for {symbol}: {e}")
                self._publish_error("close", symbol, str(e))
                return None

            if record is None:
                logger.warning(f"Provider did not close {symbol}; position still tracked")
                return None

            now = self._clock()
            exit_price = record.exit_price if record.exit_price is not None else price
            pnl = (exit_price - position.entry_price) * position.amount * position.side.sign
            result = TradeResult(
                signal_id=position.signal_id,
                symbol=symbol,
                side=position.side,
                entry_price=position.entry_price,
                exit_price=exit_price,
                amount=position.amount,
                pnl=pnl,
                duration=now - position.opened_at,
                status=TradeStatus.from_pnl(pnl),
                exit_reason=reason,
                timestamp=now
            )

            self.risk_manager.record_trade(result)
            self.risk_manager.remove_position(position.id)
            with self._state_lock:
                self._positions.pop(symbol, None)
                self._last_trade_at[symbol] = now

        logger.info(f"Position closed: {symbol} | {reason} | P&L: {pnl:.2f} {config.quote_asset}")
        self.events.publish(EventType.TRADE_CLOSED, result.to_dict())
        return result

    def open_positions(self) -> List[Position]:
        with self._state_lock:
            return list(self._positions.values())

    # ========== HOUSEKEEPING ==========

    def housekeeping(self):
        self.risk_manager.purge_expired_cooldowns()
        if self.config_manager is None:
            return
        try:
            if self.config_manager.reload_if_changed():
                logger.info("Configuration reloaded")
        except ConfigurationError as e:
            self.error_count += 1
            logger.error(f"Configuration reload rejected, keeping previous: {e}")
            self._publish_error("config", "", str(e))

    def _publish_error(self, stage: str, symbol: str, reason: str):
        self.events.publish(EventType.ERROR, {'stage': stage, 'symbol': symbol, 'reason': reason})

    # ========== STATUS ==========

    def get_status(self) -> dict:
        config = self.config
        return {
            'state': self.state.value,
            'enabled': config.enabled,
            'symbols': list(config.symbols),
            'min_confidence': config.min_confidence,
            'max_positions': config.max_positions,
            'open_positions': [p.to_dict() for p in self.open_positions()],
            'cycle_count': self.cycle_count,
            'last_cycle_at': self.last_cycle_at.isoformat() if self.last_cycle_at else None,
            'error_count': self.error_count,
            'performance': self.risk_manager.performance(),
            'risk': self.risk_manager.stats()
        }
