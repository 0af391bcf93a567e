import threading
import time

import pytest

from crypto_trading.alpha.signal_aggregator import CombinedSignal
from crypto_trading.alpha.signals import Signal, SignalType
from crypto_trading.config import AutoTradeConfig
from crypto_trading.data.market_data import MockMarketDataProvider
from crypto_trading.errors import EngineStateError, InsufficientBalanceError
from crypto_trading.execution.auto_trader import AutoTradeExecutionEngine, EngineState
from crypto_trading.execution.broker import PaperTradingProvider
from crypto_trading.monitoring.events import EventType
from crypto_trading.risk.risk_manager import RiskManager, TradeStatus


class StubAggregator:
    """Returns a fixed signal without touching any engine."""

    def __init__(self, signal=None):
        self.signal = signal
        self.calls = []

    def fetch_bars(self, symbol):
        return {}

    def generate_combined_signal(self, symbol, bars=None):
        self.calls.append(symbol)
        return CombinedSignal(signal=self.signal, advanced=None, strategy=None)


def make_signal(side=SignalType.BUY, confidence=0.9):
    return Signal(id="sig-1", symbol="BTC", type=side, entry_price=100.0,
                  target_price=106.0, stop_loss=97.0, confidence=confidence, reasoning="test")


@pytest.fixture
def market():
    provider = MockMarketDataProvider()
    provider.set_price("BTC", 100.0)
    return provider


def build_engine(market, clock, aggregator=None, broker=None, **config):
    config.setdefault('symbols', ["BTC"])
    broker = broker or PaperTradingProvider(10000.0, slippage=0.0, market_data=market)
    engine = AutoTradeExecutionEngine(
        aggregator or StubAggregator(),
        RiskManager(clock=clock),
        market,
        broker,
        AutoTradeConfig(**config),
        clock=clock
    )
    events = []
    engine.subscribe(events.append)
    return engine, events


def of_type(events, event_type):
    return [e for e in events if e.type == event_type]


# ========== ROUND TRIPS ==========

def test_long_round_trip_take_profit(market, clock):
    engine, events = build_engine(market, clock)
    position = engine.execute_signal(make_signal())

    assert position.amount == pytest.approx(10.0)  # clamped by max_position_size
    assert position.entry_price == 100.0
    assert position.stop_loss == pytest.approx(97.0)
    assert position.take_profit == pytest.approx(106.0)
    assert len(of_type(events, EventType.TRADE_OPENED)) == 1

    market.set_price("BTC", 107.0)
    clock.advance(minutes=45)
    closed = engine.monitor_positions()

    assert len(closed) == 1
    result = closed[0]
    assert result.exit_reason == "take_profit"
    assert result.status == TradeStatus.WIN
    assert result.pnl == pytest.approx(70.0)
    assert result.duration.total_seconds() == 45 * 60
    assert engine.open_positions() == []
    assert engine.risk_manager.open_positions() == []
    assert engine.risk_manager.trade_history()[0].pnl == pytest.approx(70.0)
    assert of_type(events, EventType.TRADE_CLOSED)[0].payload['exit_reason'] == "take_profit"


def test_short_round_trip_take_profit(market, clock):
    engine, _ = build_engine(market, clock)
    position = engine.execute_signal(make_signal(SignalType.SELL))
    assert position.stop_loss == pytest.approx(103.0)
    assert position.take_profit == pytest.approx(94.0)

    market.set_price("BTC", 93.0)
    result = engine.monitor_positions()[0]
    assert result.exit_reason == "take_profit"
    assert result.status == TradeStatus.WIN
    assert result.pnl == pytest.approx(70.0)


def test_stop_loss_exit(market, clock):
    engine, _ = build_engine(market, clock)
    engine.execute_signal(make_signal())

    market.set_price("BTC", 96.0)
    result = engine.monitor_positions()[0]
    assert result.exit_reason == "stop_loss"
    assert result.status == TradeStatus.LOSS
    assert result.pnl == pytest.approx(-40.0)
    assert engine.risk_manager.consecutive_losses("BTC") == 1


def test_trailing_stop_ratchets_and_exits(market, clock):
    engine, _ = build_engine(market, clock)
    engine.execute_signal(make_signal())

    market.set_price("BTC", 104.0)
    assert engine.monitor_positions() == []
    position = engine.open_positions()[0]
    assert position.trailing_active
    assert position.stop_loss == pytest.approx(102.44)
    assert position.highest_price == 104.0

    market.set_price("BTC", 103.0)
    assert engine.monitor_positions() == []
    assert engine.open_positions()[0].stop_loss == pytest.approx(102.44)

    market.set_price("BTC", 102.0)
    result = engine.monitor_positions()[0]
    assert result.exit_reason == "trailing_stop"
    assert result.status == TradeStatus.WIN
    assert result.pnl == pytest.approx(20.0)


def test_signal_levels_when_configured():
    config = AutoTradeConfig(use_signal_levels=True)
    assert AutoTradeExecutionEngine.calculate_levels(make_signal(), 100.0, config) == (97.0, 106.0)


# ========== FAILURES ==========

def test_broker_failure_publishes_error(market, clock):
    class BrokeBroker(PaperTradingProvider):
        def place_order(self, *args, **kwargs):
            raise InsufficientBalanceError("no funds")

    engine, events = build_engine(market, clock, broker=BrokeBroker(market_data=market))
    assert engine.execute_signal(make_signal()) is None

    errors = of_type(events, EventType.ERROR)
    assert len(errors) == 1
    assert errors[0].payload == {'stage': 'open', 'symbol': 'BTC', 'reason': 'no funds'}
    assert engine.open_positions() == []
    assert engine.risk_manager.open_positions() == []


def test_unclosed_position_stays_tracked(market, clock):
    class StuckBroker(PaperTradingProvider):
        def close_position(self, symbol):
            return None

    engine, events = build_engine(market, clock, broker=StuckBroker(slippage=0.0, market_data=market))
    engine.execute_signal(make_signal())

    market.set_price("BTC", 96.0)
    assert engine.monitor_positions() == []
    assert len(engine.open_positions()) == 1
    assert len(engine.risk_manager.open_positions()) == 1
    assert of_type(events, EventType.TRADE_CLOSED) == []


def test_failing_subscriber_is_isolated(market, clock):
    engine, events = build_engine(market, clock)

    def broken(event):
        raise RuntimeError("subscriber crashed")

    engine.subscribe(broken)
    assert engine.execute_signal(make_signal()) is not None
    assert len(of_type(events, EventType.TRADE_OPENED)) == 1
    assert engine.events.error_count == 1


# ========== SIGNAL CYCLE ==========

def test_cycle_respects_confidence_threshold(market, clock):
    aggregator = StubAggregator(make_signal(confidence=0.6))
    engine, _ = build_engine(market, clock, aggregator=aggregator)

    assert engine.run_cycle() == []
    assert aggregator.calls == ["BTC"]
    assert engine.cycle_count == 1

    aggregator.signal = make_signal(confidence=0.9)
    assert len(engine.run_cycle()) == 1


def test_cycle_respects_engine_cooldown(market, clock):
    aggregator = StubAggregator(make_signal())
    engine, _ = build_engine(market, clock, aggregator=aggregator)
    assert len(engine.run_cycle()) == 1

    # The cycle monitors first: this closes the trade, then the symbol is cooling down
    market.set_price("BTC", 107.0)
    assert engine.run_cycle() == []
    assert engine.open_positions() == []

    market.set_price("BTC", 100.0)
    clock.advance(minutes=29)
    assert engine.run_cycle() == []
    clock.advance(minutes=2)
    assert len(engine.run_cycle()) == 1


def test_disabled_engine_skips_signals(market, clock):
    aggregator = StubAggregator(make_signal())
    engine, _ = build_engine(market, clock, aggregator=aggregator, enabled=False)
    assert engine.run_cycle() == []
    assert aggregator.calls == []


def test_signal_errors_become_events(market, clock):
    class FailingAggregator(StubAggregator):
        def generate_combined_signal(self, symbol, bars=None):
            raise RuntimeError("analysis failed")

    engine, events = build_engine(market, clock, aggregator=FailingAggregator())
    assert engine.run_cycle() == []
    errors = of_type(events, EventType.ERROR)
    assert errors[0].payload['stage'] == "signal"
    assert engine.error_count == 1


# ========== LIFECYCLE ==========

def test_start_stop_lifecycle(market, clock):
    engine, events = build_engine(market, clock, cycle_seconds=60, monitor_seconds=60,
                                  housekeeping_seconds=60)
    engine.start()
    assert engine.state == EngineState.RUNNING
    with pytest.raises(EngineStateError):
        engine.start()

    engine.stop()
    engine.stop()
    assert engine.state == EngineState.STOPPED
    assert len(of_type(events, EventType.STARTED)) == 1
    assert len(of_type(events, EventType.STOPPED)) == 1
    assert of_type(events, EventType.STARTED)[0].payload['config']['symbols'] == ["BTC"]


def test_update_config_publishes_event(market, clock):
    engine, events = build_engine(market, clock)
    engine.update_config(AutoTradeConfig(min_confidence=80.0, symbols=["ETH"]))
    assert engine.config.min_confidence == 80.0
    assert of_type(events, EventType.CONFIG_UPDATED)[0].payload['config']['symbols'] == ["ETH"]


def test_status_snapshot(market, clock):
    engine, _ = build_engine(market, clock)
    engine.execute_signal(make_signal())
    status = engine.get_status()
    assert status['state'] == "stopped"
    assert status['symbols'] == ["BTC"]
    assert len(status['open_positions']) == 1
    assert status['risk']['open_positions'] == 1
    assert status['last_cycle_at'] is None


def wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class GatedBroker(PaperTradingProvider):
    """Paper broker whose orders and closes block until `release` is set."""

    def __init__(self, market_data):
        super().__init__(10000.0, slippage=0.0, market_data=market_data)
        self.entered = threading.Event()
        self.release = threading.Event()
        self.gate_orders = False
        self.gate_closes = False
        self.close_calls = 0

    def place_order(self, *args, **kwargs):
        if self.gate_orders:
            self.entered.set()
            self.release.wait(5.0)
        return super().place_order(*args, **kwargs)

    def close_position(self, symbol):
        self.close_calls += 1
        if self.gate_closes:
            self.entered.set()
            self.release.wait(5.0)
        return super().close_position(symbol)


def test_stop_from_event_subscriber_releases_every_loop(market, clock):
    class FailingAggregator(StubAggregator):
        def generate_combined_signal(self, symbol, bars=None):
            raise RuntimeError("analysis failed")

    engine, events = build_engine(market, clock, aggregator=FailingAggregator(), cycle_seconds=0.1,
                                  monitor_seconds=0.1, housekeeping_seconds=0.1)

    def kill_switch(event):
        if event.type == EventType.ERROR:
            engine.stop()

    engine.subscribe(kill_switch)
    engine.start()
    threads = [task._thread for task in engine._tasks]

    assert wait_for(lambda: len(of_type(events, EventType.STOPPED)) == 1)
    assert wait_for(lambda: not any(thread.is_alive() for thread in threads))
    assert engine.state == EngineState.STOPPED
    assert engine.events.error_count == 0

    engine.stop()
    assert len(of_type(events, EventType.STOPPED)) == 1


def test_stop_waits_for_in_flight_order(market, clock):
    broker = GatedBroker(market)
    engine, events = build_engine(market, clock, broker=broker, cycle_seconds=60,
                                  monitor_seconds=60, housekeeping_seconds=60)
    engine.start()

    broker.gate_orders = True
    opener = threading.Thread(target=engine.execute_signal, args=(make_signal(),))
    opener.start()
    assert broker.entered.wait(2.0)

    stopper = threading.Thread(target=engine.stop)
    stopper.start()
    stopper.join(timeout=0.2)
    assert stopper.is_alive()
    assert of_type(events, EventType.STOPPED) == []

    broker.release.set()
    stopper.join(timeout=5.0)
    opener.join(timeout=5.0)
    assert not stopper.is_alive()

    stopped = of_type(events, EventType.STOPPED)
    assert len(stopped) == 1
    assert stopped[0].payload['open_positions'] == 1
    assert len(of_type(events, EventType.TRADE_OPENED)) == 1


def test_concurrent_closes_record_one_trade(market, clock):
    broker = GatedBroker(market)
    engine, events = build_engine(market, clock, broker=broker)
    position = engine.execute_signal(make_signal())
    market.set_price("BTC", 96.0)

    broker.gate_closes = True
    results = []

    def close():
        results.append(engine.close_position(position, "stop_loss", 96.0))

    closers = [threading.Thread(target=close) for _ in range(2)]
    for closer in closers:
        closer.start()
    assert broker.entered.wait(2.0)
    broker.release.set()
    for closer in closers:
        closer.join(timeout=5.0)

    trades = [r for r in results if r is not None]
    assert len(results) == 2
    assert len(trades) == 1
    assert trades[0].pnl == pytest.approx(-40.0)
    assert broker.close_calls == 1
    assert len(engine.risk_manager.trade_history()) == 1
    assert len(of_type(events, EventType.TRADE_CLOSED)) == 1


def test_status_reports_performance(market, clock):
    engine, _ = build_engine(market, clock)
    engine.execute_signal(make_signal())
    market.set_price("BTC", 107.0)
    engine.monitor_positions()

    performance = engine.get_status()['performance']
    assert performance['total_trades'] == 1
    assert performance['win_rate'] == pytest.approx(100.0)
    assert performance['total_pnl'] == pytest.approx(70.0)
    assert performance['average_pnl'] == pytest.approx(70.0)
