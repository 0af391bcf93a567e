"""
Configuration Management
========================
Central configuration for the signal engine and the auto-trader.

Every section is a dataclass with defaults and a validate() method.
ConfigManager owns the live snapshot and swaps it atomically on reload,
so a decision cycle always reads one consistent SystemConfig.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, fields, asdict
from typing import Any, Callable, Dict, Hashable, List, Optional, Tuple
import copy
import json
import logging
import math
import os
import threading

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


def _require(condition: bool, message: str):
    if not condition:
        raise ConfigurationError(message)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


@dataclass
class DataConfig:
    """Market data and context provider configuration."""
    provider: str = "mock"  # mock, yfinance
    history_limit: int = 200
    cache_ttl_seconds: float = 60.0
    sentiment_cache_seconds: float = 300.0
    fear_greed_url: str = "https://api.alternative.me/fng/"
    request_timeout_seconds: float = 10.0

    def validate(self):
        _require(self.provider in ("mock", "yfinance"), f"Unknown data provider: {self.provider}")
        _require(self.history_limit >= 50, "history_limit must be at least 50 bars")
        _require(self.cache_ttl_seconds >= 0, "cache_ttl_seconds must be >= 0")
        _require(self.sentiment_cache_seconds >= 0, "sentiment_cache_seconds must be >= 0")


@dataclass
class DetectorWeights:
    """Per-detector weights. Signed; the category share is fixed elsewhere."""
    # Core technicals
    rsi: float = 0.09
    macd: float = 0.09
    ma_cross: float = 0.09
    bollinger: float = 0.09
    volume: float = 0.07
    adx: float = 0.09
    roc: float = 0.05

    # Smart money concepts
    market_structure: float = 0.05
    support_resistance: float = 0.09

    # Patterns
    reversal: float = 0.08

    # Sentiment
    sentiment: float = 0.08
    news: float = 0.06
    whales: float = 0.02

    # ML
    ml_prediction: float = 0.15

    def validate(self):
        for f in fields(self):
            value = getattr(self, f.name)
            _require(_is_number(value), f"Detector weight '{f.name}' must be a finite number, got {value!r}")
        _require(sum(abs(getattr(self, f.name)) for f in fields(self)) > 0,
                 "At least one detector weight must be non-zero")


@dataclass
class StrategyConfig:
    """Multi-timeframe strategy engine configuration."""
    timeframes: Tuple[str, ...] = ("15m", "1h", "4h")
    entry_timeframe: str = "1h"

    # Multi-timeframe vote thresholds
    strong_buy_score: float = 0.65
    majority_buy_score: float = 0.60
    strong_sell_score: float = 0.35
    majority_sell_score: float = 0.40

    # Confluence and context gating
    confluence_threshold: float = 0.60
    bad_news_threshold: float = -0.35
    bad_sentiment_threshold: float = -0.25

    # Entry plan
    atr_stop_multiplier: float = 1.2
    target_multiples: Tuple[float, ...] = (2.0, 3.0, 4.0)
    ladder: Tuple[float, ...] = (0.40, 0.35, 0.25)
    trailing_distance_atr: float = 1.0
    account_risk: float = 0.02
    min_leverage: float = 2.0
    max_leverage: float = 10.0
    liquidation_buffer: float = 0.35
    adverse_context_threshold: float = -0.3
    adverse_leverage_factor: float = 0.7

    def validate(self):
        _require(len(self.timeframes) == 3, "Strategy engine requires exactly 3 timeframes")
        _require(self.entry_timeframe in self.timeframes, "entry_timeframe must be one of the timeframes")
        _require(0 < self.confluence_threshold <= 1, "confluence_threshold must be in (0, 1]")
        _require(self.atr_stop_multiplier > 0, "atr_stop_multiplier must be positive")
        _require(len(self.target_multiples) == 3 and all(m > 0 for m in self.target_multiples),
                 "target_multiples must be 3 positive numbers")
        _require(len(self.ladder) == 3 and abs(sum(self.ladder) - 1.0) < 1e-9,
                 "ladder allocation must be 3 fractions summing to 1.0")
        _require(0 < self.min_leverage <= self.max_leverage, "leverage band must satisfy 0 < min <= max")
        _require(0 <= self.liquidation_buffer < 1, "liquidation_buffer must be in [0, 1)")


@dataclass
class AdvancedEngineConfig:
    """5-layer advanced signal engine configuration."""
    timeframe: str = "1h"
    min_total_score: float = 75.0
    min_risk_reward: float = 3.0
    atr_stop_multiplier: float = 1.2
    # First target sits at 3R so a clean setup can clear the 3:1 gate
    target_multiples: Tuple[float, ...] = (3.0, 4.5, 6.0)
    cooldown_hours: float = 4.0

    def validate(self):
        _require(0 < self.min_total_score <= 100, "min_total_score must be in (0, 100]")
        _require(self.min_risk_reward > 0, "min_risk_reward must be positive")
        _require(len(self.target_multiples) == 3 and all(m > 0 for m in self.target_multiples),
                 "target_multiples must be 3 positive numbers")
        _require(self.cooldown_hours >= 0, "cooldown_hours must be >= 0")


@dataclass
class AggregatorConfig:
    """Combination rules for the two signal engines."""
    consensus_boost: float = 1.2
    advanced_only_min_score: float = 85.0
    strategy_only_min_confluence: float = 0.70
    engine_timeout_seconds: float = 30.0

    def validate(self):
        _require(self.consensus_boost >= 1.0, "consensus_boost must be >= 1.0")
        _require(self.engine_timeout_seconds > 0, "engine_timeout_seconds must be positive")


@dataclass
class RiskConfig:
    """Risk manager configuration."""
    max_open_positions: int = 3
    max_daily_loss: float = 500.0  # quote currency
    max_risk_per_trade: float = 2.0  # percent of balance
    max_position_size: float = 10.0  # base units
    min_leverage: float = 1.0
    max_leverage: float = 10.0

    # Cooldown after a losing streak
    cooldown_bars: int = 20
    bar_duration_minutes: float = 15.0
    cooldown_after_losses: int = 2
    max_consecutive_losses: int = 3

    def validate(self):
        _require(self.max_open_positions >= 1, "max_open_positions must be >= 1")
        _require(self.max_daily_loss > 0, "max_daily_loss must be positive")
        _require(0 < self.max_risk_per_trade <= 100, "max_risk_per_trade must be in (0, 100]")
        _require(self.max_position_size > 0, "max_position_size must be positive")
        _require(0 < self.min_leverage <= self.max_leverage, "leverage band must satisfy 0 < min <= max")
        _require(self.cooldown_bars >= 0 and self.bar_duration_minutes >= 0, "cooldown must be non-negative")


@dataclass
class AutoTradeConfig:
    """Auto-trade execution loop configuration."""
    enabled: bool = True
    min_confidence: float = 70.0  # percent
    max_positions: int = 3
    risk_per_trade: float = 2.0  # percent of balance
    symbols: List[str] = field(default_factory=lambda: ["BTC", "ETH", "SOL"])
    quote_asset: str = "USDT"
    stop_loss_percent: float = 3.0
    take_profit_percent: float = 6.0
    cooldown_minutes: float = 30.0
    use_signal_levels: bool = False

    # Trailing protection
    trailing_trigger_percent: float = 3.0
    trailing_distance_percent: float = 1.5

    # Loop cadence
    cycle_seconds: float = 30.0
    monitor_seconds: float = 10.0
    housekeeping_seconds: float = 60.0
    provider_timeout_seconds: float = 10.0
    shutdown_timeout_seconds: float = 30.0

    def validate(self):
        _require(0 <= self.min_confidence <= 100, "min_confidence is a percentage in [0, 100]")
        _require(self.max_positions >= 1, "max_positions must be >= 1")
        _require(0 < self.risk_per_trade <= 100, "risk_per_trade must be in (0, 100]")
        _require(len(self.symbols) > 0, "at least one symbol is required")
        _require(self.stop_loss_percent > 0 and self.take_profit_percent > 0,
                 "stop_loss_percent and take_profit_percent must be positive")
        _require(self.trailing_distance_percent > 0, "trailing_distance_percent must be positive")
        _require(min(self.cycle_seconds, self.monitor_seconds, self.housekeeping_seconds) > 0,
                 "loop intervals must be positive")
        _require(self.provider_timeout_seconds > 0, "provider_timeout_seconds must be positive")


@dataclass
class DashboardConfig:
    """Event bridge for dashboards."""
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 5000

    def validate(self):
        _require(0 < self.port < 65536, f"Invalid dashboard port: {self.port}")


@dataclass
class SystemConfig:
    """Master configuration containing all sub-configs."""
    data: DataConfig = field(default_factory=DataConfig)
    weights: DetectorWeights = field(default_factory=DetectorWeights)
    strategy: StrategyConfig = field(default_factory=StrategyConfig)
    advanced: AdvancedEngineConfig = field(default_factory=AdvancedEngineConfig)
    aggregator: AggregatorConfig = field(default_factory=AggregatorConfig)
    risk: RiskConfig = field(default_factory=RiskConfig)
    auto_trade: AutoTradeConfig = field(default_factory=AutoTradeConfig)
    dashboard: DashboardConfig = field(default_factory=DashboardConfig)

    initial_capital: float = 10000.0
    log_level: str = "INFO"

    def validate(self) -> 'SystemConfig':
        """Validate every section. Raises ConfigurationError on the first problem."""
        try:
            for section in (self.data, self.weights, self.strategy, self.advanced,
                            self.aggregator, self.risk, self.auto_trade, self.dashboard):
                section.validate()
            _require(_is_number(self.initial_capital) and self.initial_capital > 0,
                     "initial_capital must be positive")
        except TypeError as e:
            # Wrong value types surface as comparison errors
            raise ConfigurationError(f"Invalid configuration value: {e}") from e
        return self

    def save(self, filepath: str):
        """Save configuration to JSON file."""
        with open(filepath, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def load(cls, filepath: str) -> 'SystemConfig':
        """Load configuration from JSON file."""
        with open(filepath, 'r') as f:
            data = json.load(f)
        return cls.from_dict(data)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SystemConfig':
        """Build a config from a plain dict. Unknown keys are a configuration error."""
        if not isinstance(data, dict):
            raise ConfigurationError(f"Configuration must be a mapping, got {type(data).__name__}")

        sections = {f.name: f for f in fields(cls)}
        kwargs = {}
        for key, value in data.items():
            if key not in sections:
                raise ConfigurationError(f"Unknown configuration section: {key}")
            default = getattr(cls(), key)
            if hasattr(default, '__dataclass_fields__'):
                kwargs[key] = _section_from_dict(type(default), value, key)
            else:
                kwargs[key] = value
        return cls(**kwargs)


def _section_from_dict(section_cls, data: Any, name: str):
    if not isinstance(data, dict):
        raise ConfigurationError(f"Section '{name}' must be a mapping")

    defaults = section_cls()
    known = {f.name for f in fields(section_cls)}
    kwargs = {}
    for key, value in data.items():
        if key not in known:
            raise ConfigurationError(f"Unknown key '{name}.{key}'")
        if isinstance(getattr(defaults, key), tuple) and isinstance(value, list):
            value = tuple(value)
        kwargs[key] = value
    try:
        return section_cls(**kwargs)
    except TypeError as e:
        raise ConfigurationError(f"Invalid section '{name}': {e}") from e


# ========== CONFIGURATION SOURCES ==========

class ConfigSource(ABC):
    """Where configuration comes from. Must be re-readable without restart."""

    @abstractmethod
    def load(self) -> Dict[str, Any]:
        """Return the raw configuration mapping."""
        pass

    @abstractmethod
    def version(self) -> Hashable:
        """Cheap change marker; a different value means reload."""
        pass


class JsonFileConfigSource(ConfigSource):
    """JSON file on disk; the modification time is the version."""

    def __init__(self, filepath: str):
        self.filepath = filepath

    def load(self) -> Dict[str, Any]:
        try:
            with open(self.filepath, 'r') as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Cannot read configuration from {self.filepath}: {e}") from e

    def version(self) -> Hashable:
        try:
            return os.stat(self.filepath).st_mtime_ns
        except OSError:
            return None


class InMemoryConfigSource(ConfigSource):
    """Mutable in-process source, used by tests and embedding code."""

    def __init__(self, data: Optional[Dict[str, Any]] = None):
        self._data = copy.deepcopy(data) if data is not None else {}
        self._version = 0
        self._lock = threading.Lock()

    def set(self, data: Dict[str, Any]):
        with self._lock:
            self._data = copy.deepcopy(data)
            self._version += 1

    def load(self) -> Dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._data)

    def version(self) -> Hashable:
        with self._lock:
            return self._version


class ConfigManager:
    """
    Owns the live configuration snapshot.

    Readers take `current` once per cycle and keep that object for the
    whole cycle. Reload builds and validates a fresh SystemConfig and then
    swaps the reference, so readers see either the old or the new
    snapshot and never a mix. A failed reload keeps the previous snapshot.
    """

    def __init__(self, source: Optional[ConfigSource] = None, config: Optional[SystemConfig] = None):
        self.source = source
        self._lock = threading.Lock()
        self._listeners: List[Callable[[SystemConfig], None]] = []

        if source is not None:
            self._version = source.version()
            self._current = self._build(source.load())
        else:
            self._version = None
            self._current = copy.deepcopy(config if config is not None else SystemConfig()).validate()

    @staticmethod
    def _build(raw: Dict[str, Any]) -> SystemConfig:
        return SystemConfig.from_dict(raw).validate()

    @property
    def current(self) -> SystemConfig:
        with self._lock:
            return self._current

    def add_listener(self, callback: Callable[[SystemConfig], None]):
        """Register a callback invoked with each new snapshot."""
        self._listeners.append(callback)

    def update(self, config: SystemConfig) -> SystemConfig:
        """Swap in a programmatically built config after validating it."""
        snapshot = copy.deepcopy(config).validate()
        self._swap(snapshot, self._version)
        return snapshot

    def reload(self) -> SystemConfig:
        """Re-read the source. Raises ConfigurationError and keeps the old snapshot on failure."""
        if self.source is None:
            return self.current
        version = self.source.version()
        snapshot = self._build(self.source.load())
        self._swap(snapshot, version)
        return snapshot

    def reload_if_changed(self) -> bool:
        """Reload only when the source version moved. Returns True if a new snapshot was applied."""
        if self.source is None:
            return False
        version = self.source.version()
        with self._lock:
            unchanged = version == self._version
        if unchanged:
            return False
        try:
            self.reload()
        except ConfigurationError:
            # Remember the bad version so it is reported once, not every poll
            with self._lock:
                self._version = version
            raise
        return True

    def _swap(self, snapshot: SystemConfig, version: Hashable):
        with self._lock:
            self._current = snapshot
            self._version = version

        logger.info("Configuration snapshot updated")
        for callback in self._listeners:
            try:
                callback(snapshot)
            except Exception as e:
                logger.error(f"Config listener error: {e}")
