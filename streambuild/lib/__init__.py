# streambuild/lib/__init__.py
"""
Shared plumbing - the session event bus and WebSocket fan-out.
"""
from .events import EventBus, SessionEvent
from .websocket import ConnectionManager, manager

__all__ = [
    "EventBus",
    "SessionEvent",
    "ConnectionManager",
    "manager",
]
