"""
Streaming Sessions API Routes
=============================

REST endpoints for live database-design sessions.

- POST   /api/v1/streaming/sessions                          - Start a session
- GET    /api/v1/streaming/sessions                          - List sessions
- GET    /api/v1/streaming/sessions/{id}                     - Session status, tasks, progress, ETA
- GET    /api/v1/streaming/sessions/{id}/tasks/{task}/content - Revealed content (+ artifacts)
- GET    /api/v1/streaming/sessions/{id}/insights            - Insight log
- GET    /api/v1/streaming/sessions/{id}/reasoning           - Reasoning steps
- POST   /api/v1/streaming/sessions/{id}/reasoning/{step}/toggle - Expand/collapse a step
- POST   /api/v1/streaming/sessions/{id}/play                - Resume reveal
- POST   /api/v1/streaming/sessions/{id}/pause               - Pause reveal
- POST   /api/v1/streaming/sessions/{id}/stop                - Stop the session
- PUT    /api/v1/streaming/sessions/{id}/reveal-rate         - Change reveal rate
- POST   /api/v1/streaming/sessions/{id}/save                - Retry a failed save

Live events for a session are pushed over the WebSocket hub.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from dbcoach.core.config import settings
from dbcoach.core.database import AsyncSessionLocal
from dbcoach.core.live.websocket_hub import get_connection_manager
from dbcoach.core.models import DatabaseType, TaskStatus
from dbcoach.core.streaming.content_parser import parse_content
from dbcoach.core.streaming.gemini_backend import GeminiBackend
from dbcoach.core.streaming.orchestrator import StreamingOrchestrator
from dbcoach.core.streaming.persistence import ConversationStore
from dbcoach.core.streaming.session_manager import StreamingSessionManager

router = APIRouter(prefix="/api/v1/streaming", tags=["streaming"])


# ==========================================================================
# Schemas
# ==========================================================================

class StartSessionRequest(BaseModel):
    """Request to start a streaming session."""
    prompt: str = Field(..., min_length=3, max_length=4000, description="What the database is for")
    database_type: DatabaseType = Field(DatabaseType.SQL, description="sql, nosql or vectordb")
    reveal_rate: Optional[int] = Field(None, ge=1, description="Characters per second (clamped)")


class RevealRateRequest(BaseModel):
    rate: int = Field(..., ge=1, description="Characters per second (clamped)")


class SubtaskResponse(BaseModel):
    id: str
    title: str
    status: str
    progress: float


class TaskResponse(BaseModel):
    id: str
    title: str
    agent: str
    position: int
    status: str
    progress: float
    estimated_seconds: float
    subtasks: List[SubtaskResponse]
    tier: Optional[str]
    error_message: Optional[str]
    started_at: Optional[str]
    completed_at: Optional[str]


class SessionResponse(BaseModel):
    """Streaming session status."""
    session_id: str
    request_text: str
    database_type: str
    status: str
    is_terminal: bool
    created_at: str
    completed_at: Optional[str]
    error_message: Optional[str]
    tasks: List[TaskResponse]
    active_task_id: Optional[str]
    total_progress: float
    estimated_remaining_seconds: float
    is_playing: bool
    reveal_rate: int
    insight_count: int
    reasoning_count: int


class TaskContentResponse(BaseModel):
    task_id: str
    status: str
    progress: float
    revealed: str
    is_complete: bool
    tier: Optional[str]
    artifacts: Optional[Dict[str, Any]] = None


class InsightResponse(BaseModel):
    agent: str
    message: str
    kind: str
    task_id: Optional[str]
    timestamp: str


class ReasoningStepResponse(BaseModel):
    id: str
    task_id: str
    text: str
    confidence: float
    expanded: bool
    timestamp: str


class PlaybackResponse(BaseModel):
    session_id: str
    status: str
    is_playing: bool
    reveal_rate: int


# ==========================================================================
# Dependencies
# ==========================================================================

_session_manager: Optional[StreamingSessionManager] = None


def get_session_manager() -> StreamingSessionManager:
    """Get or create the streaming session manager singleton."""
    global _session_manager

    if _session_manager is None:
        hub = get_connection_manager()
        backend = GeminiBackend() if settings.gemini_enabled else None
        _session_manager = StreamingSessionManager(
            backend=backend,
            store=ConversationStore(AsyncSessionLocal),
            emit_event=hub.emit_event,
        )
        hub.set_command_handler(_session_manager.handle_command)
        hub.set_state_provider(_session_manager.state_for)

    return _session_manager


async def shutdown_session_manager() -> None:
    global _session_manager
    if _session_manager is not None:
        await _session_manager.shutdown()
        _session_manager = None


# ==========================================================================
# Helper Functions
# ==========================================================================

def _get_or_404(manager: StreamingSessionManager, session_id: str) -> StreamingOrchestrator:
    try:
        return manager.get(session_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")


def _require_running(orchestrator: StreamingOrchestrator) -> None:
    if orchestrator.session.is_terminal:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Session {orchestrator.session_id} is {orchestrator.session.status.value}",
        )


def _to_response(orchestrator: StreamingOrchestrator) -> SessionResponse:
    data = orchestrator.status_dict()
    session = data.pop("session")
    return SessionResponse(
        session_id=session["id"],
        request_text=session["request_text"],
        database_type=session["database_type"],
        status=session["status"],
        is_terminal=session["is_terminal"],
        created_at=session["created_at"],
        completed_at=session["completed_at"],
        error_message=session["error_message"],
        **data,
    )


def _playback(orchestrator: StreamingOrchestrator) -> PlaybackResponse:
    return PlaybackResponse(
        session_id=orchestrator.session_id,
        status=orchestrator.session.status.value,
        is_playing=orchestrator.is_playing,
        reveal_rate=orchestrator.reveal_rate,
    )


# ==========================================================================
# Session Endpoints
# ==========================================================================

@router.post("/sessions", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
async def start_session(
    request: StartSessionRequest,
    manager: StreamingSessionManager = Depends(get_session_manager),
):
    """Start generating a design; progress streams over the live hub."""
    orchestrator = await manager.create_session(
        request_text=request.prompt,
        database_type=request.database_type,
        reveal_rate=request.reveal_rate,
    )
    return _to_response(orchestrator)


@router.get("/sessions", response_model=List[SessionResponse])
async def list_sessions(
    manager: StreamingSessionManager = Depends(get_session_manager),
):
    return [_to_response(o) for o in manager.list_sessions()]


@router.get("/sessions/{session_id}", response_model=SessionResponse)
async def get_session(
    session_id: str,
    manager: StreamingSessionManager = Depends(get_session_manager),
):
    return _to_response(_get_or_404(manager, session_id))


@router.get("/sessions/{session_id}/tasks/{task_id}/content", response_model=TaskContentResponse)
async def get_task_content(
    session_id: str,
    task_id: str,
    manager: StreamingSessionManager = Depends(get_session_manager),
):
    """Revealed text for a task; parsed artifacts once the task is complete."""
    orchestrator = _get_or_404(manager, session_id)
    try:
        task = orchestrator.get_task(task_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Task {task_id} not found")

    buffer = orchestrator.buffer(task_id)
    is_complete = task.status == TaskStatus.COMPLETED
    artifacts = None
    if is_complete and buffer.clean is not None:
        artifacts = parse_content(buffer.clean, orchestrator.session.database_type).to_dict()

    return TaskContentResponse(
        task_id=task.id,
        status=task.status.value,
        progress=round(task.progress, 2),
        revealed=buffer.revealed,
        is_complete=is_complete,
        tier=task.tier.value if task.tier else None,
        artifacts=artifacts,
    )


@router.get("/sessions/{session_id}/insights", response_model=List[InsightResponse])
async def get_insights(
    session_id: str,
    since: int = Query(0, ge=0, description="Skip the first N entries"),
    manager: StreamingSessionManager = Depends(get_session_manager),
):
    orchestrator = _get_or_404(manager, session_id)
    return [InsightResponse(**entry.to_dict()) for entry in orchestrator.insights[since:]]


@router.get("/sessions/{session_id}/reasoning", response_model=List[ReasoningStepResponse])
async def get_reasoning(
    session_id: str,
    manager: StreamingSessionManager = Depends(get_session_manager),
):
    orchestrator = _get_or_404(manager, session_id)
    return [ReasoningStepResponse(**step.to_dict()) for step in orchestrator.reasoning_steps]


@router.post("/sessions/{session_id}/reasoning/{step_id}/toggle", response_model=ReasoningStepResponse)
async def toggle_reasoning(
    session_id: str,
    step_id: str,
    manager: StreamingSessionManager = Depends(get_session_manager),
):
    orchestrator = _get_or_404(manager, session_id)
    try:
        step = orchestrator.toggle_reasoning(step_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Reasoning step {step_id} not found")
    return ReasoningStepResponse(**step.to_dict())


# ==========================================================================
# Playback Controls
# ==========================================================================

@router.post("/sessions/{session_id}/play", response_model=PlaybackResponse)
async def play_session(
    session_id: str,
    manager: StreamingSessionManager = Depends(get_session_manager),
):
    orchestrator = _get_or_404(manager, session_id)
    _require_running(orchestrator)
    orchestrator.play()
    return _playback(orchestrator)


@router.post("/sessions/{session_id}/pause", response_model=PlaybackResponse)
async def pause_session(
    session_id: str,
    manager: StreamingSessionManager = Depends(get_session_manager),
):
    orchestrator = _get_or_404(manager, session_id)
    _require_running(orchestrator)
    orchestrator.pause()
    return _playback(orchestrator)


@router.post("/sessions/{session_id}/stop", response_model=SessionResponse)
async def stop_session(
    session_id: str,
    manager: StreamingSessionManager = Depends(get_session_manager),
):
    """Stop immediately; partial results are saved."""
    orchestrator = _get_or_404(manager, session_id)
    _require_running(orchestrator)
    await manager.stop_session(session_id)
    return _to_response(orchestrator)


@router.put("/sessions/{session_id}/reveal-rate", response_model=PlaybackResponse)
async def set_reveal_rate(
    session_id: str,
    request: RevealRateRequest,
    manager: StreamingSessionManager = Depends(get_session_manager),
):
    orchestrator = _get_or_404(manager, session_id)
    _require_running(orchestrator)
    orchestrator.set_reveal_rate(request.rate)
    return _playback(orchestrator)


@router.post("/sessions/{session_id}/save", response_model=SessionResponse)
async def retry_save(
    session_id: str,
    manager: StreamingSessionManager = Depends(get_session_manager),
):
    """Retry persisting a session whose save failed."""
    orchestrator = _get_or_404(manager, session_id)
    try:
        saved = await orchestrator.retry_save()
    except RuntimeError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if not saved:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=orchestrator.session.error_message or "Save failed",
        )
    return _to_response(orchestrator)
