import json

import pytest

from crypto_trading.config import (
    AutoTradeConfig,
    ConfigManager,
    InMemoryConfigSource,
    JsonFileConfigSource,
    StrategyConfig,
    SystemConfig
)
from crypto_trading.errors import ConfigurationError


def test_defaults_validate():
    config = SystemConfig().validate()
    assert config.auto_trade.min_confidence == 70.0
    assert config.strategy.timeframes == ("15m", "1h", "4h")
    assert config.advanced.min_risk_reward == 3.0


@pytest.mark.parametrize("section", [
    AutoTradeConfig(min_confidence=150.0),
    StrategyConfig(ladder=(0.5, 0.5, 0.5)),
    StrategyConfig(timeframes=("1h", "4h")),
    AutoTradeConfig(symbols=[]),
])
def test_invalid_sections_rejected(section):
    with pytest.raises(ConfigurationError):
        section.validate()


def test_unknown_keys_rejected():
    with pytest.raises(ConfigurationError):
        SystemConfig.from_dict({'auto_trade': {'min_confidence': 70, 'turbo': True}})
    with pytest.raises(ConfigurationError):
        SystemConfig.from_dict({'plugins': {}})
    with pytest.raises(ConfigurationError):
        SystemConfig.from_dict(["not", "a", "mapping"])


def test_wrong_types_become_configuration_errors():
    with pytest.raises(ConfigurationError):
        SystemConfig.from_dict({'risk': {'max_open_positions': "three"}}).validate()


def test_save_and_load_round_trip(tmp_path):
    path = tmp_path / "config.json"
    config = SystemConfig()
    config.auto_trade.symbols = ["BTC", "DOGE"]
    config.strategy.target_multiples = (2.5, 3.5, 5.0)
    config.save(str(path))

    loaded = SystemConfig.load(str(path))
    assert loaded.auto_trade.symbols == ["BTC", "DOGE"]
    assert loaded.strategy.target_multiples == (2.5, 3.5, 5.0)
    assert loaded.to_dict() == config.to_dict()


def test_manager_reloads_on_change():
    source = InMemoryConfigSource({'auto_trade': {'min_confidence': 70}})
    manager = ConfigManager(source=source)
    before = manager.current
    assert not manager.reload_if_changed()

    source.set({'auto_trade': {'min_confidence': 85}})
    assert manager.reload_if_changed()
    assert manager.current.auto_trade.min_confidence == 85
    # The previous snapshot object is untouched
    assert before.auto_trade.min_confidence == 70


def test_failed_reload_keeps_snapshot_and_reports_once():
    source = InMemoryConfigSource({'auto_trade': {'min_confidence': 70}})
    manager = ConfigManager(source=source)

    source.set({'auto_trade': {'min_confidence': 500}})
    with pytest.raises(ConfigurationError):
        manager.reload_if_changed()
    assert manager.current.auto_trade.min_confidence == 70

    # Same bad version: no second error
    assert not manager.reload_if_changed()

    source.set({'auto_trade': {'min_confidence': 60}})
    assert manager.reload_if_changed()
    assert manager.current.auto_trade.min_confidence == 60


def test_listeners_receive_snapshots_and_are_isolated():
    manager = ConfigManager()
    seen = []

    def broken(snapshot):
        raise RuntimeError("listener failed")

    manager.add_listener(broken)
    manager.add_listener(seen.append)

    config = SystemConfig()
    config.auto_trade.min_confidence = 90.0
    snapshot = manager.update(config)

    assert seen == [snapshot]
    assert manager.current.auto_trade.min_confidence == 90.0
    # update() copies, so later edits to the argument do not leak in
    config.auto_trade.min_confidence = 10.0
    assert manager.current.auto_trade.min_confidence == 90.0


def test_invalid_update_is_rejected():
    manager = ConfigManager()
    config = SystemConfig()
    config.risk.max_open_positions = 0
    with pytest.raises(ConfigurationError):
        manager.update(config)
    assert manager.current.risk.max_open_positions == 3


def test_json_file_source(tmp_path):
    path = tmp_path / "live.json"
    path.write_text(json.dumps({'risk': {'max_open_positions': 5}}))

    source = JsonFileConfigSource(str(path))
    assert source.version() is not None
    manager = ConfigManager(source=source)
    assert manager.current.risk.max_open_positions == 5

    missing = JsonFileConfigSource(str(tmp_path / "missing.json"))
    assert missing.version() is None
    with pytest.raises(ConfigurationError):
        missing.load()
