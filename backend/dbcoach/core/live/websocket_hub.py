"""
DB Coach Live - WebSocket Hub
=============================

Pushes StreamEvents to browsers and accepts playback commands back.

A client connects, optionally subscribes to specific sessions (all
sessions otherwise) and picks a minimum severity. Per-chunk reveal
events are DEBUG, so only clients that ask for them pay for them.
Commands (play, pause, stop, rate) go to the handler registered by the
session manager.
"""

import asyncio
import json
from datetime import datetime, timezone
from typing import Dict, Set, Optional, Callable, Any, List, Awaitable
from dataclasses import dataclass, field
from uuid import uuid4
from enum import Enum
import logging

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from .events import StreamEvent, EventType, Severity

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ==========================================================================
# Wire Format
# ==========================================================================

class WSMessageType(str, Enum):
    """Frame types exchanged with live clients"""
    # inbound
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"
    PING = "ping"
    COMMAND = "command"

    # outbound
    CONNECTED = "connected"
    EVENT = "event"
    STATE = "state"
    COMMAND_RESULT = "command_result"
    PONG = "pong"
    ERROR = "error"


@dataclass
class WSMessage:
    """One JSON frame"""
    type: WSMessageType
    payload: Any
    timestamp: str = field(default_factory=_now)
    message_id: str = field(default_factory=lambda: uuid4().hex)

    def to_json(self) -> str:
        return json.dumps({
            "type": self.type.value,
            "payload": self.payload,
            "timestamp": self.timestamp,
            "message_id": self.message_id,
        })

    @classmethod
    def from_json(cls, raw: str) -> 'WSMessage':
        frame = json.loads(raw)
        return cls(
            type=WSMessageType(frame["type"]),
            payload=frame.get("payload") or {},
            timestamp=frame.get("timestamp") or _now(),
            message_id=frame.get("message_id") or uuid4().hex,
        )


# (session_id, command, payload) -> result dict
CommandHandler = Callable[[str, str, Dict[str, Any]], Awaitable[Dict[str, Any]]]
# session_id -> snapshot, or None for unknown sessions
StateProvider = Callable[[str], Optional[Dict[str, Any]]]

SEVERITY_RANK = {
    Severity.DEBUG: 0,
    Severity.INFO: 1,
    Severity.WARNING: 2,
    Severity.ERROR: 3,
}

SESSION_END_EVENTS = frozenset({
    EventType.SESSION_COMPLETED,
    EventType.SESSION_STOPPED,
    EventType.SESSION_ERROR,
})


# ==========================================================================
# Clients
# ==========================================================================

@dataclass
class LiveClient:
    """A connected browser tab"""
    id: str
    websocket: WebSocket
    sessions: Set[str] = field(default_factory=set)
    min_severity: Severity = Severity.INFO
    connected_at: str = field(default_factory=_now)
    is_active: bool = True

    def wants(self, event: StreamEvent) -> bool:
        if self.sessions and event.session_id and event.session_id not in self.sessions:
            return False
        return SEVERITY_RANK[event.severity] >= SEVERITY_RANK[self.min_severity]


class ConnectionManager:
    """
    Fan-out point between streaming sessions and live clients.

    emit_event() is the sink every orchestrator publishes into; it keeps
    a bounded history (reveal chunks excluded) and tracks which sessions
    are still running.
    """

    def __init__(self, max_history: int = 5000):
        self.connections: Dict[str, LiveClient] = {}
        self.active_sessions: Set[str] = set()
        self.event_history: List[StreamEvent] = []
        self.max_history = max_history
        self._command_handler: Optional[CommandHandler] = None
        self._state_provider: Optional[StateProvider] = None
        self._lock = asyncio.Lock()
        self._inbound = {
            WSMessageType.PING: self._on_ping,
            WSMessageType.SUBSCRIBE: self._on_subscribe,
            WSMessageType.UNSUBSCRIBE: self._on_unsubscribe,
            WSMessageType.COMMAND: self._on_command,
        }

    def set_command_handler(self, handler: Optional[CommandHandler]) -> None:
        self._command_handler = handler

    def set_state_provider(self, provider: Optional[StateProvider]) -> None:
        self._state_provider = provider

    # ==========================================================================
    # Lifecycle
    # ==========================================================================

    async def connect(self, websocket: WebSocket) -> str:
        await websocket.accept()
        client = LiveClient(id=uuid4().hex, websocket=websocket)

        async with self._lock:
            self.connections[client.id] = client

        await self.send(client.id, WSMessageType.CONNECTED, {
            "client_id": client.id,
            "active_sessions": sorted(self.active_sessions),
        })
        logger.info(f"Live client {client.id} joined ({len(self.connections)} connected)")
        return client.id

    async def disconnect(self, client_id: str):
        async with self._lock:
            client = self.connections.pop(client_id, None)
        if client is not None:
            client.is_active = False
            logger.info(f"Live client {client_id} left ({len(self.connections)} connected)")

    # ==========================================================================
    # Inbound Frames
    # ==========================================================================

    async def handle_message(self, client_id: str, message: WSMessage):
        client = self.connections.get(client_id)
        handler = self._inbound.get(message.type)
        if client is None or handler is None:
            return
        await handler(client, message)

    async def _on_ping(self, client: LiveClient, message: WSMessage):
        await self.send(client.id, WSMessageType.PONG, {"received": message.timestamp})

    async def _on_subscribe(self, client: LiveClient, message: WSMessage):
        session_id = message.payload.get("session_id")
        if not session_id:
            return
        client.sessions.add(session_id)
        if "severity" in message.payload:
            client.min_severity = Severity(message.payload["severity"])

        snapshot = self._state_provider(session_id) if self._state_provider else None
        if snapshot is not None:
            await self.send(client.id, WSMessageType.STATE, snapshot)

    async def _on_unsubscribe(self, client: LiveClient, message: WSMessage):
        client.sessions.discard(message.payload.get("session_id"))

    async def _on_command(self, client: LiveClient, message: WSMessage):
        command = message.payload.get("command")
        session_id = message.payload.get("session_id")

        if not command or not session_id:
            await self.send(client.id, WSMessageType.ERROR, {"error": "command and session_id are required"})
            return
        if self._command_handler is None:
            await self.send(client.id, WSMessageType.ERROR, {"error": "Commands are not available"})
            return

        try:
            result = await self._command_handler(session_id, command, message.payload)
        except (KeyError, ValueError) as e:
            # KeyError carries its message as the first arg
            error = e.args[0] if isinstance(e, KeyError) and e.args else str(e)
            await self.send(client.id, WSMessageType.ERROR, {"error": error, "command": command})
            return

        await self.send(client.id, WSMessageType.COMMAND_RESULT, {
            "command": command,
            "session_id": session_id,
            "result": result,
        })

    # ==========================================================================
    # Outbound Frames
    # ==========================================================================

    async def send(self, client_id: str, message_type: WSMessageType, payload: Any):
        client = self.connections.get(client_id)
        if client is None or not client.is_active:
            return
        if client.websocket.client_state != WebSocketState.CONNECTED:
            return

        try:
            await client.websocket.send_text(WSMessage(type=message_type, payload=payload).to_json())
        except Exception as e:
            logger.warning(f"Dropping live client {client_id}: {e}")
            client.is_active = False

    async def broadcast_event(self, event: StreamEvent):
        """Send an event to every client whose filters accept it"""
        payload = event.to_dict()
        for client in list(self.connections.values()):
            if client.is_active and client.wants(event):
                await self.send(client.id, WSMessageType.EVENT, payload)

    async def emit_event(self, event: StreamEvent):
        if event.event_type != EventType.CONTENT_REVEALED:
            self.event_history.append(event)
            del self.event_history[:-self.max_history]

        if event.session_id:
            if event.event_type == EventType.SESSION_STARTED:
                self.active_sessions.add(event.session_id)
            elif event.event_type in SESSION_END_EVENTS:
                self.active_sessions.discard(event.session_id)

        await self.broadcast_event(event)

    def history_for(self, session_id: str) -> List[StreamEvent]:
        """Recorded events for one session, oldest first"""
        return [e for e in self.event_history if e.session_id == session_id]


# ==========================================================================
# Process-wide Hub
# ==========================================================================

_connection_manager: Optional[ConnectionManager] = None


def get_connection_manager() -> ConnectionManager:
    global _connection_manager
    if _connection_manager is None:
        _connection_manager = ConnectionManager()
    return _connection_manager


async def websocket_endpoint(websocket: WebSocket):
    """Serve one live client until it disconnects."""
    manager = get_connection_manager()
    client_id = await manager.connect(websocket)

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                await manager.handle_message(client_id, WSMessage.from_json(raw))
            except (json.JSONDecodeError, KeyError, ValueError):
                await manager.send(client_id, WSMessageType.ERROR, {"error": "Invalid message"})
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"Live socket for {client_id} failed: {e}")
    finally:
        await manager.disconnect(client_id)
