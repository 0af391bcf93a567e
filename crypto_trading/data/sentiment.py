"""
Market Context Module
=====================
Sentiment, news and whale-activity context for the decision cycle.

All values are normalized to [-1, +1]. A provider that cannot reach its
source falls back to the last good value and then to neutral; it never
blocks or fails the decision cycle.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional, Tuple
import logging
import threading
import time

import requests

logger = logging.getLogger(__name__)


def _clamp(value: float) -> float:
    return max(-1.0, min(1.0, value))


@dataclass(frozen=True)
class MarketContext:
    """External context for one symbol."""
    sentiment: float = 0.0
    news: float = 0.0
    whale_activity: float = 0.0

    @classmethod
    def neutral(cls) -> 'MarketContext':
        return cls(0.0, 0.0, 0.0)

    def to_dict(self) -> dict:
        return {
            'sentiment': self.sentiment,
            'news': self.news,
            'whale_activity': self.whale_activity
        }


class SentimentProvider(ABC):
    """Abstract sentiment/news collaborator."""

    @abstractmethod
    def get_market_context(self, symbol: str) -> MarketContext:
        """Context for a base symbol such as 'BTC'."""
        pass


class StaticSentimentProvider(SentimentProvider):
    """Fixed context, per symbol or global. Used offline and in tests."""

    def __init__(self, sentiment: float = 0.0, news: float = 0.0, whale_activity: float = 0.0):
        self._default = MarketContext(_clamp(sentiment), _clamp(news), _clamp(whale_activity))
        self._per_symbol: Dict[str, MarketContext] = {}
        self._lock = threading.Lock()

    def set(self, symbol: Optional[str] = None, sentiment: float = 0.0, news: float = 0.0,
            whale_activity: float = 0.0):
        context = MarketContext(_clamp(sentiment), _clamp(news), _clamp(whale_activity))
        with self._lock:
            if symbol is None:
                self._default = context
            else:
                self._per_symbol[symbol.upper()] = context

    def get_market_context(self, symbol: str) -> MarketContext:
        with self._lock:
            return self._per_symbol.get(symbol.upper(), self._default)


class FearGreedSentimentProvider(SentimentProvider):
    """
    Global sentiment from the Crypto Fear & Greed Index.

    The 0-100 index maps linearly onto [-1, +1]: (index - 50) / 50.
    News and whale activity have no public feed here and stay neutral.
    """

    def __init__(self, url: str = "https://api.alternative.me/fng/", cache_seconds: float = 300.0,
                 timeout: float = 10.0, session: Optional[requests.Session] = None,
                 clock=time.monotonic):
        self.url = url
        self.cache_seconds = cache_seconds
        self.timeout = timeout
        self.session = session or requests.Session()
        self._clock = clock
        self._cache: Optional[Tuple[float, float]] = None
        self._lock = threading.Lock()

    def get_market_context(self, symbol: str) -> MarketContext:
        return MarketContext(sentiment=self.get_global_sentiment())

    def get_global_sentiment(self) -> float:
        now = self._clock()
        with self._lock:
            cached = self._cache
        if cached and now - cached[0] < self.cache_seconds:
            return cached[1]

        try:
            response = self.session.get(self.url, params={'limit': 1}, timeout=self.timeout)
            response.raise_for_status()
            index = float(response.json()['data'][0]['value'])
        except (requests.exceptions.RequestException, KeyError, IndexError, TypeError, ValueError) as e:
            if cached:
                logger.warning(f"Fear & Greed fetch failed, using stale value: {e}")
                return cached[1]
            logger.warning(f"Fear & Greed fetch failed, using neutral sentiment: {e}")
            return 0.0

        normalized = _clamp((index - 50) / 50)
        with self._lock:
            self._cache = (now, normalized)
        logger.info(f"Fear & Greed index {index:.0f} -> sentiment {normalized:+.2f}")
        return normalized
