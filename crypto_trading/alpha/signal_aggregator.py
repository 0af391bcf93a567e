"""
Signal Aggregator
=================
Risk check first, then both engines in parallel, then one decision.

Resolution order:
    (a) both engines agree          -> advanced signal, boosted confidence
    (b) engines disagree            -> whichever is more confident
    (c) advanced only, score >= 85  -> advanced signal
    (d) strategy only, conf >= 0.70 -> strategy signal
    (e) otherwise                   -> no signal
"""

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple
import logging

from ..config import AdvancedEngineConfig, AggregatorConfig, StrategyConfig
from ..data.market_data import Bar, MarketDataProvider
from .advanced_engine import AdvancedSignal, AdvancedSignalEngine
from .detectors import DetectorRegistry
from .signals import Signal, SignalType, signal_id
from .strategy_engine import StrategyEngine, StrategyOutput

logger = logging.getLogger(__name__)

Snapshot = Tuple[AggregatorConfig, int, Tuple[StrategyConfig, DetectorRegistry], AdvancedEngineConfig]


@dataclass
class CombinedSignal:
    signal: Optional[Signal]
    advanced: Optional[AdvancedSignal]
    strategy: Optional[StrategyOutput]
    blocked_reason: str = ""

    def to_dict(self) -> dict:
        return {
            'signal': self.signal.to_dict() if self.signal else None,
            'advanced': self.advanced.to_dict() if self.advanced else None,
            'strategy': self.strategy.to_dict() if self.strategy else None,
            'blocked_reason': self.blocked_reason
        }


class SignalAggregator:
    """
    Combines the strategy and advanced engines behind the risk manager.

    Each cycle reads one (aggregator config, history limit, strategy state,
    advanced config) snapshot, so a reload never mixes old and new sections.
    """

    def __init__(self, strategy: StrategyEngine, advanced: AdvancedSignalEngine, risk_manager,
                 market_data: Optional[MarketDataProvider] = None,
                 config: Optional[AggregatorConfig] = None, history_limit: int = 200):
        self.strategy = strategy
        self.advanced = advanced
        self.risk_manager = risk_manager
        self.market_data = market_data
        config = config or AggregatorConfig()
        config.validate()
        self._state: Snapshot = (config, history_limit, strategy.snapshot(), advanced.config)
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="signal-engine")

    @property
    def config(self) -> AggregatorConfig:
        return self._state[0]

    @property
    def history_limit(self) -> int:
        return self._state[1]

    def apply_config(self, system_config):
        """Push a new SystemConfig snapshot into both engines, then swap the cycle snapshot."""
        system_config.validate()
        self.strategy.apply_config(system_config.strategy, system_config.weights)
        self.advanced.apply_config(system_config.advanced)
        self._state = (system_config.aggregator, system_config.data.history_limit,
                       self.strategy.snapshot(), system_config.advanced)

    def shutdown(self):
        self._executor.shutdown(wait=True)

    # ========== DATA ==========

    def fetch_bars(self, symbol: str) -> Dict[str, List[Bar]]:
        if self.market_data is None:
            raise ValueError("No market data provider configured and no bars supplied")
        _, history_limit, (strategy_config, _), advanced_config = self._state
        timeframes = set(strategy_config.timeframes) | {advanced_config.timeframe}
        return {tf: self.market_data.get_history(symbol, tf, history_limit) for tf in timeframes}

    # ========== COMBINATION ==========

    def generate_combined_signal(self, symbol: str,
                                 bars_by_timeframe: Optional[Dict[str, Sequence[Bar]]] = None) -> CombinedSignal:
        if bars_by_timeframe is None:
            bars_by_timeframe = self.fetch_bars(symbol)
        config, _, strategy_state, advanced_config = self._state

        decision = self.risk_manager.can_trade(symbol)
        if not decision.allowed:
            logger.warning(f"Trade blocked for {symbol}: {decision.reason}")
            strategy_output = self._run_strategy(symbol, bars_by_timeframe, strategy_state)
            return CombinedSignal(signal=None, advanced=None, strategy=strategy_output,
                                  blocked_reason=decision.reason)

        advanced_bars = bars_by_timeframe.get(advanced_config.timeframe, [])
        advanced_future = self._executor.submit(self.advanced.generate_signal, symbol, advanced_bars,
                                                advanced_config)
        strategy_future = self._executor.submit(self.strategy.analyze, symbol, bars_by_timeframe,
                                                None, strategy_state)

        advanced = self._join(advanced_future, "advanced", symbol, config.engine_timeout_seconds)
        strategy_output = self._join(strategy_future, "strategy", symbol, config.engine_timeout_seconds)

        signal = self.resolve(symbol, advanced, strategy_output, config)
        return CombinedSignal(signal=signal, advanced=advanced, strategy=strategy_output)

    def _run_strategy(self, symbol: str, bars_by_timeframe, state) -> Optional[StrategyOutput]:
        try:
            return self.strategy.analyze(symbol, bars_by_timeframe, state=state)
        except Exception as e:
            logger.error(f"Strategy analysis failed for {symbol}: {e}")
            return None

    @staticmethod
    def _join(future, engine: str, symbol: str, timeout: float):
        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            logger.error(f"{engine} engine timed out for {symbol} after {timeout}s")
            future.cancel()
        except Exception as e:
            logger.error(f"{engine} engine failed for {symbol}: {e}")
        return None

    def resolve(self, symbol: str, advanced: Optional[AdvancedSignal], strategy: Optional[StrategyOutput],
                config: Optional[AggregatorConfig] = None) -> Optional[Signal]:
        config = config or self.config
        strategy_action = strategy.action if strategy is not None else SignalType.HOLD

        if advanced is not None and strategy_action != SignalType.HOLD:
            confluence = strategy.confluence.score
            if advanced.type == strategy_action:
                logger.info(f"Both engines agree: {advanced.type.value} {symbol}")
                return replace(
                    advanced.signal,
                    confidence=min(1.0, advanced.confidence * config.consensus_boost),
                    reasoning=f"{advanced.signal.reasoning} | Multi-engine consensus "
                              f"with {confluence * 100:.0f}% confluence"
                )
            logger.info(f"Engines disagree on {symbol}: advanced {advanced.type.value}, "
                        f"strategy {strategy_action.value}")
            if advanced.confidence > confluence:
                return advanced.signal
            return self.strategy_signal(strategy)

        if advanced is not None and advanced.total_score >= config.advanced_only_min_score:
            return advanced.signal

        if (strategy is not None and strategy_action != SignalType.HOLD
                and strategy.confluence.score >= config.strategy_only_min_confluence):
            return self.strategy_signal(strategy)

        return None

    @staticmethod
    def strategy_signal(output: StrategyOutput) -> Signal:
        timestamp = datetime.now()
        return Signal(
            id=signal_id("mtf", output.symbol, timestamp),
            symbol=output.symbol,
            type=output.action,
            entry_price=output.entry_price,
            target_price=output.entry_plan.targets[0],
            stop_loss=output.entry_plan.stop_loss,
            confidence=output.confluence.score,
            reasoning=output.rationale,
            timestamp=timestamp,
            source="strategy",
            metadata={'leverage': output.entry_plan.leverage}
        )

    def engine_stats(self) -> dict:
        return {
            'advanced_cooldowns': len(self.advanced.active_cooldowns()),
            'risk_stats': self.risk_manager.stats()
        }
