"""
Trading System Orchestrator
===========================
Wires every component once and passes references:
    DATA → FEATURES → DETECTORS → STRATEGY / ADVANCED → AGGREGATOR
         → RISK → EXECUTION → MONITORING

Core principles enforced:
- Signals need multi-timeframe and multi-category agreement
- Risk rules are enforced algorithmically
- No emotional overrides once live
"""

from dataclasses import replace
from typing import Dict, List, Optional
import copy
import logging
import threading

from .alpha import AdvancedSignalEngine, CombinedSignal, SignalAggregator, StrategyEngine
from .config import ConfigManager, JsonFileConfigSource, SystemConfig
from .data import (
    CachedMarketDataProvider,
    FearGreedSentimentProvider,
    MarketDataProvider,
    MockMarketDataProvider,
    SentimentProvider,
    StaticSentimentProvider,
    YFinanceMarketDataProvider
)
from .errors import ConfigurationError, TradingEngineError
from .execution import AutoTradeExecutionEngine, PaperTradingProvider, TradingProvider
from .monitoring import EventBus, create_dashboard
from .risk import RiskManager

logger = logging.getLogger(__name__)


def build_market_data(config: SystemConfig) -> MarketDataProvider:
    if config.data.provider == "yfinance":
        provider = YFinanceMarketDataProvider()
    else:
        provider = MockMarketDataProvider()
    if config.data.cache_ttl_seconds > 0:
        provider = CachedMarketDataProvider(provider, ttl_seconds=config.data.cache_ttl_seconds)
    return provider


def build_sentiment(config: SystemConfig) -> SentimentProvider:
    if config.data.provider == "yfinance":
        return FearGreedSentimentProvider(
            url=config.data.fear_greed_url,
            cache_seconds=config.data.sentiment_cache_seconds,
            timeout=config.data.request_timeout_seconds
        )
    return StaticSentimentProvider()


class TradingSystem:
    """
    Main trading system orchestrator.

    Owns exactly one instance of each service. Configuration changes from
    the ConfigManager are pushed into every component that holds a copy.
    """

    def __init__(self, config: Optional[SystemConfig] = None,
                 config_manager: Optional[ConfigManager] = None,
                 market_data: Optional[MarketDataProvider] = None,
                 sentiment: Optional[SentimentProvider] = None,
                 trading: Optional[TradingProvider] = None):
        self.config_manager = config_manager or ConfigManager(config=config)
        cfg = self.config_manager.current

        self.market_data = market_data or build_market_data(cfg)
        self.sentiment = sentiment or build_sentiment(cfg)

        self.risk_manager = RiskManager(cfg.risk)
        self.strategy = StrategyEngine(cfg.strategy, cfg.weights, sentiment=self.sentiment)
        self.advanced = AdvancedSignalEngine(cfg.advanced)
        self.aggregator = SignalAggregator(
            self.strategy, self.advanced, self.risk_manager,
            market_data=self.market_data,
            config=cfg.aggregator,
            history_limit=cfg.data.history_limit
        )

        self.trading = trading or PaperTradingProvider(
            initial_balance=cfg.initial_capital,
            market_data=self.market_data,
            quote_asset=cfg.auto_trade.quote_asset
        )

        self.events = EventBus()
        self.engine = AutoTradeExecutionEngine(
            self.aggregator, self.risk_manager, self.market_data, self.trading,
            config=cfg.auto_trade,
            events=self.events,
            config_manager=self.config_manager
        )

        self.config_manager.add_listener(self._apply_config)
        self._stop_event = threading.Event()

        logger.info(f"TradingSystem initialized with {cfg.data.provider} data "
                    f"for {', '.join(cfg.auto_trade.symbols)}")

    def _apply_config(self, snapshot: SystemConfig):
        self.aggregator.apply_config(snapshot)
        self.risk_manager.update_config(snapshot.risk)
        self.engine.update_config(snapshot.auto_trade)

    # ========== RUNNING ==========

    def run_once(self, symbols: Optional[List[str]] = None) -> Dict[str, CombinedSignal]:
        """One decision pass per symbol without placing orders."""
        symbols = symbols or self.config_manager.current.auto_trade.symbols
        results = {}
        for symbol in symbols:
            try:
                results[symbol] = self.aggregator.generate_combined_signal(symbol)
            except TradingEngineError as e:
                logger.error(f"Analysis failed for {symbol}: {e}")
        return results

    def start(self):
        self._stop_event.clear()
        self.engine.start()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._stop_event.wait(timeout)

    def shutdown(self):
        """Gracefully shutdown the system."""
        logger.info("Shutting down trading system...")
        self._stop_event.set()
        self.engine.stop()
        self.aggregator.shutdown()
        logger.info("Trading system shutdown complete")

    def get_status(self) -> Dict:
        status = self.engine.get_status()
        status['engines'] = self.aggregator.engine_stats()
        return status


def _format_signal(symbol: str, combined: CombinedSignal) -> str:
    if combined.signal is not None:
        s = combined.signal
        return (f"{symbol}: {s.type.value} @ {s.entry_price:.2f} "
                f"(SL {s.stop_loss:.2f}, TP {s.target_price:.2f}, "
                f"confidence {s.confidence * 100:.0f}%) [{s.source}] {s.reasoning}")
    if combined.blocked_reason:
        return f"{symbol}: blocked - {combined.blocked_reason}"
    if combined.strategy is not None:
        return f"{symbol}: no signal - {combined.strategy.rationale}"
    return f"{symbol}: no signal"


def main():
    """Main entry point for the trading system."""
    import argparse

    parser = argparse.ArgumentParser(description='Crypto Multi-Timeframe Auto-Trading Engine')
    parser.add_argument('--config', type=str, help='Path to JSON config file (hot reloaded)')
    parser.add_argument('--symbols', nargs='+', help='Symbols to trade, e.g. BTC ETH')
    parser.add_argument('--provider', choices=['mock', 'yfinance'], help='Market data provider')
    parser.add_argument('--capital', type=float, help='Initial paper capital')
    parser.add_argument('--once', action='store_true',
                        help='Run one decision cycle per symbol, print signals and exit')
    parser.add_argument('--dashboard', action='store_true', help='Serve the Socket.IO dashboard bridge')
    parser.add_argument('--log-level', default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'], help='Logging level')

    args = parser.parse_args()

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        if args.config:
            config_manager = ConfigManager(source=JsonFileConfigSource(args.config))
        else:
            config_manager = ConfigManager()

        # Command line overrides apply to the startup snapshot
        config = copy.deepcopy(config_manager.current)
        if args.symbols:
            config.auto_trade = replace(config.auto_trade, symbols=[s.upper() for s in args.symbols])
        if args.provider:
            config.data = replace(config.data, provider=args.provider)
        if args.capital is not None:
            config.initial_capital = args.capital
        if args.dashboard:
            config.dashboard = replace(config.dashboard, enabled=True)
        config_manager.update(config)
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        raise SystemExit(2)

    system = TradingSystem(config_manager=config_manager)

    if args.once:
        for symbol, combined in system.run_once().items():
            print(_format_signal(symbol, combined))
        system.shutdown()
        return

    try:
        system.start()
        dashboard = config_manager.current.dashboard
        if dashboard.enabled:
            app, socketio = create_dashboard(system.engine, system.risk_manager, dashboard)
            socketio.run(app, host=dashboard.host, port=dashboard.port, allow_unsafe_werkzeug=True)
        else:
            while not system.wait(1.0):
                pass
    except KeyboardInterrupt:
        print("\nShutting down...")
    finally:
        system.shutdown()


if __name__ == "__main__":
    main()
