import pytest

from crypto_trading.alpha.signal_aggregator import CombinedSignal
from crypto_trading.config import ConfigManager, InMemoryConfigSource, SystemConfig
from crypto_trading.data.market_data import CachedMarketDataProvider, MockMarketDataProvider
from crypto_trading.data.sentiment import StaticSentimentProvider
from crypto_trading.orchestrator import TradingSystem, _format_signal, build_market_data, build_sentiment


@pytest.fixture
def system():
    system = TradingSystem()
    yield system
    system.shutdown()


def test_default_wiring():
    config = SystemConfig()
    assert isinstance(build_market_data(config), CachedMarketDataProvider)
    assert isinstance(build_sentiment(config), StaticSentimentProvider)

    config.data.cache_ttl_seconds = 0
    assert isinstance(build_market_data(config), MockMarketDataProvider)


def test_run_once_produces_combined_signals(system):
    results = system.run_once(["BTC"])
    assert set(results) == {"BTC"}
    combined = results["BTC"]
    assert isinstance(combined, CombinedSignal)
    assert combined.strategy is not None
    assert _format_signal("BTC", combined).startswith("BTC:")


def test_config_updates_reach_every_component(system):
    config = SystemConfig()
    config.auto_trade.min_confidence = 85.0
    config.risk.max_open_positions = 5
    config.strategy.confluence_threshold = 0.75
    system.config_manager.update(config)

    assert system.engine.config.min_confidence == 85.0
    assert system.risk_manager.config.max_open_positions == 5
    assert system.strategy.config.confluence_threshold == 0.75


def test_hot_reload_through_housekeeping():
    source = InMemoryConfigSource({'auto_trade': {'min_confidence': 70}})
    system = TradingSystem(config_manager=ConfigManager(source=source))
    try:
        source.set({'auto_trade': {'min_confidence': 90}})
        system.engine.housekeeping()
        assert system.engine.config.min_confidence == 90

        errors = []
        system.engine.subscribe(errors.append)
        source.set({'auto_trade': {'min_confidence': -1}})
        system.engine.housekeeping()
        assert errors[-1].payload['stage'] == "config"
        assert system.engine.config.min_confidence == 90
    finally:
        system.shutdown()


def test_status_includes_engine_stats(system):
    status = system.get_status()
    assert status['state'] == "stopped"
    assert status['engines']['advanced_cooldowns'] == 0
    assert 'risk_stats' in status['engines']
