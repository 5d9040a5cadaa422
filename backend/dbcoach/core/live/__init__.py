"""
DB Coach Live
=============

Event model and WebSocket hub that carry streaming sessions to clients.
"""

from dbcoach.core.live.events import (
    EventBuilder,
    EventCategory,
    EventType,
    Severity,
    StreamEvent,
)
from dbcoach.core.live.websocket_hub import (
    ConnectionManager,
    get_connection_manager,
    websocket_endpoint,
)

__all__ = [
    "ConnectionManager",
    "EventBuilder",
    "EventCategory",
    "EventType",
    "Severity",
    "StreamEvent",
    "get_connection_manager",
    "websocket_endpoint",
]
