"""
Monitoring Module
=================
"""
from .events import (
    EventBus,
    EventType,
    EngineEvent,
    PeriodicTask,
    call_with_timeout
)
from .dashboard import create_dashboard

__all__ = [
    'EventBus',
    'EventType',
    'EngineEvent',
    'PeriodicTask',
    'call_with_timeout',
    'create_dashboard'
]
