"""
Engine Events
=============
Observer bus for engine lifecycle and trade events, the periodic loop
used by the auto-trader, and bounded provider calls.
"""

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
import logging
import threading

from ..errors import ProviderTimeoutError

logger = logging.getLogger(__name__)


class EventType(Enum):
    STARTED = "started"
    STOPPED = "stopped"
    TRADE_OPENED = "trade_opened"
    TRADE_CLOSED = "trade_closed"
    ERROR = "error"
    CONFIG_UPDATED = "config_updated"


@dataclass(frozen=True)
class EngineEvent:
    type: EventType
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            'type': self.type.value,
            'payload': self.payload,
            'timestamp': self.timestamp.isoformat()
        }


EventCallback = Callable[[EngineEvent], None]


class EventBus:
    """
    Fan-out of engine events to subscribers.

    A failing subscriber is logged and skipped; it never affects the
    publisher or the other subscribers.
    """

    def __init__(self):
        self._subscribers: List[EventCallback] = []
        self._lock = threading.Lock()
        self.error_count = 0

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """Register a callback. Returns a function that unsubscribes it."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, event_type: EventType, payload: Optional[Dict[str, Any]] = None) -> EngineEvent:
        event = EngineEvent(type=event_type, payload=payload or {})
        with self._lock:
            subscribers = list(self._subscribers)

        for callback in subscribers:
            try:
                callback(event)
            except Exception as e:
                self.error_count += 1
                logger.error(f"Event subscriber error on {event_type.value}: {e}")
        return event

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)


class PeriodicTask:
    """
    Runs `fn` every `interval` seconds on a daemon thread until stopped.

    Exceptions from `fn` are logged and counted; the loop keeps going.
    """

    def __init__(self, name: str, interval: float, fn: Callable[[], Any]):
        self.name = name
        self.interval = interval
        self.fn = fn
        self.error_count = 0
        self.run_count = 0
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        logger.debug(f"Periodic task {self.name} started ({self.interval}s)")

    def stop(self, timeout: float = 5.0):
        """Signal the loop to exit. Called from the loop's own thread, returns without joining."""
        self._stop.set()
        if self._thread is threading.current_thread():
            self._thread = None
            return
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning(f"Periodic task {self.name} did not stop within {timeout}s")
            self._thread = None

    def _loop(self):
        while not self._stop.wait(self.interval):
            try:
                self.fn()
                self.run_count += 1
            except Exception as e:
                self.error_count += 1
                logger.error(f"{self.name} error: {e}")


_provider_executor = ThreadPoolExecutor(max_workers=8, thread_name_prefix="provider-call")


def call_with_timeout(fn: Callable, *args, timeout: float = 10.0, **kwargs):
    """
    Call a provider function with an upper bound on how long we wait.

    Raises ProviderTimeoutError on timeout. Other exceptions propagate
    unchanged. A timed-out call keeps running in the background; only
    the wait is abandoned.
    """
    future = _provider_executor.submit(fn, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout:
        future.cancel()
        name = getattr(fn, '__name__', repr(fn))
        raise ProviderTimeoutError(f"{name} timed out after {timeout}s") from None
