"""
DB Coach Streaming - Session Manager
====================================

Registry of live StreamingOrchestrators keyed by session id.
Creates sessions with a shared generation pipeline and conversation
store, routes playback commands, and prunes finished sessions once more
than MAX_TRACKED_SESSIONS are held.
"""

from typing import Any, Callable, Dict, List, Optional

import structlog

from dbcoach.core.config import settings
from dbcoach.core.models import DatabaseType
from dbcoach.core.streaming.generation import ContentGenerationPipeline, GenerationBackend
from dbcoach.core.streaming.orchestrator import EventSink, OrchestratorConfig, StreamingOrchestrator
from dbcoach.core.streaming.persistence import ConversationStore

logger = structlog.get_logger()


class StreamingSessionManager:
    """
    Owns every streaming session in the process.

    Usage:
        manager = StreamingSessionManager(backend, store, emit_event=hub.emit_event)
        orchestrator = await manager.create_session("A blog with comments", DatabaseType.SQL)
    """

    COMMANDS = ("play", "pause", "stop", "rate")

    def __init__(
        self,
        backend: Optional[GenerationBackend] = None,
        store: Optional[ConversationStore] = None,
        emit_event: Optional[EventSink] = None,
        config_factory: Optional[Callable[..., OrchestratorConfig]] = None,
        max_sessions: Optional[int] = None,
    ):
        self.backend = backend
        self.store = store
        self.pipeline = ContentGenerationPipeline(backend)
        self._emit_event = emit_event
        self._config_factory = config_factory or OrchestratorConfig.from_settings
        self.max_sessions = max_sessions or settings.MAX_TRACKED_SESSIONS
        self.sessions: Dict[str, StreamingOrchestrator] = {}

    async def create_session(
        self,
        request_text: str,
        database_type: DatabaseType,
        reveal_rate: Optional[int] = None,
    ) -> StreamingOrchestrator:
        await self._prune()

        orchestrator = StreamingOrchestrator(
            request_text=request_text,
            database_type=database_type,
            pipeline=self.pipeline,
            store=self.store,
            emit_event=self._emit_event,
            on_complete=self._on_complete,
            on_error=self._on_error,
            config=self._config_factory(reveal_rate=reveal_rate),
        )
        self.sessions[orchestrator.session_id] = orchestrator
        await orchestrator.start()
        return orchestrator

    def get(self, session_id: str) -> StreamingOrchestrator:
        try:
            return self.sessions[session_id]
        except KeyError:
            raise KeyError(f"Session {session_id} not found") from None

    def list_sessions(self) -> List[StreamingOrchestrator]:
        return sorted(self.sessions.values(), key=lambda o: o.session.created_at, reverse=True)

    async def stop_session(self, session_id: str) -> StreamingOrchestrator:
        orchestrator = self.get(session_id)
        await orchestrator.stop()
        return orchestrator

    async def handle_command(self, session_id: str, command: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Execute a playback command coming from a live client."""
        orchestrator = self.get(session_id)
        if command not in self.COMMANDS:
            raise ValueError(f"Unknown command '{command}'")

        if command == "play":
            orchestrator.play()
        elif command == "pause":
            orchestrator.pause()
        elif command == "stop":
            await orchestrator.stop()
        elif command == "rate":
            if "rate" not in payload:
                raise ValueError("rate command requires a 'rate' value")
            orchestrator.set_reveal_rate(int(payload["rate"]))

        return {
            "status": orchestrator.session.status.value,
            "is_playing": orchestrator.is_playing,
            "reveal_rate": orchestrator.reveal_rate,
        }

    def state_for(self, session_id: str) -> Optional[Dict[str, Any]]:
        orchestrator = self.sessions.get(session_id)
        return orchestrator.status_dict() if orchestrator else None

    async def shutdown(self) -> None:
        """Stop every running session and release the backend."""
        for orchestrator in list(self.sessions.values()):
            await orchestrator.close()
        if self.backend is not None:
            await self.backend.aclose()
        logger.info("streaming_sessions_shutdown", sessions=len(self.sessions))

    async def _prune(self) -> None:
        if len(self.sessions) < self.max_sessions:
            return
        finished = [o for o in self.list_sessions() if o.session.is_terminal]
        excess = len(self.sessions) - self.max_sessions + 1
        for orchestrator in reversed(finished[-excess:] if excess > 0 else []):
            await orchestrator.close()
            del self.sessions[orchestrator.session_id]
            logger.info("streaming_session_pruned", session_id=orchestrator.session_id)

    def _on_complete(self, session_id: str) -> None:
        logger.info("streaming_session_delivered", session_id=session_id)

    def _on_error(self, message: str) -> None:
        logger.error("streaming_session_persistence_failed", error=message)
