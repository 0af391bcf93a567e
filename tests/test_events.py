import threading
import time

import pytest

from crypto_trading.errors import ProviderTimeoutError
from crypto_trading.monitoring.events import EventBus, EventType, PeriodicTask, call_with_timeout


def wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def test_event_bus_fan_out_and_isolation():
    bus = EventBus()
    received = []

    def broken(event):
        raise RuntimeError("bad subscriber")

    bus.subscribe(broken)
    bus.subscribe(received.append)

    event = bus.publish(EventType.TRADE_OPENED, {'symbol': 'BTC'})
    assert received == [event]
    assert bus.error_count == 1
    assert event.to_dict()['type'] == "trade_opened"
    assert event.to_dict()['payload'] == {'symbol': 'BTC'}


def test_unsubscribe():
    bus = EventBus()
    received = []
    unsubscribe = bus.subscribe(received.append)
    assert bus.subscriber_count == 1

    unsubscribe()
    unsubscribe()
    bus.publish(EventType.STOPPED)
    assert received == []
    assert bus.subscriber_count == 0


def test_periodic_task_runs_until_stopped():
    calls = []
    task = PeriodicTask("test", 0.01, lambda: calls.append(1))
    task.start()
    try:
        assert wait_for(lambda: len(calls) >= 3)
        assert task.is_running
    finally:
        task.stop(timeout=2.0)
    assert not task.is_running
    count = len(calls)
    time.sleep(0.05)
    assert len(calls) == count


def test_periodic_task_survives_errors():
    def failing():
        raise ValueError("tick failed")

    task = PeriodicTask("failing", 0.01, failing)
    task.start()
    try:
        assert wait_for(lambda: task.error_count >= 2)
    finally:
        task.stop(timeout=2.0)
    assert task.run_count == 0


def test_call_with_timeout():
    assert call_with_timeout(lambda a, b=0: a + b, 2, b=3) == 5

    release = threading.Event()
    with pytest.raises(ProviderTimeoutError):
        call_with_timeout(release.wait, 5.0, timeout=0.05)
    release.set()


def test_call_with_timeout_propagates_errors():
    def bad():
        raise ValueError("provider exploded")

    with pytest.raises(ValueError, match="provider exploded"):
        call_with_timeout(bad)


def test_periodic_task_can_stop_itself():
    holder = {}

    def tick():
        holder['thread'] = threading.current_thread()
        holder['task'].stop(timeout=2.0)

    task = PeriodicTask("self-stopping", 0.01, tick)
    holder['task'] = task
    task.start()
    assert wait_for(lambda: 'thread' in holder)
    assert wait_for(lambda: not holder['thread'].is_alive())
    assert task.error_count == 0
    assert not task.is_running
