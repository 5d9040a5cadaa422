"""
DB Coach Live - Event System
============================

Event types and structures pushed to the presentation layer while a
streaming session runs. The orchestrator emits a StreamEvent for every
state transition; the WebSocket hub fans them out to subscribers.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any
from dataclasses import dataclass, field, asdict
from uuid import uuid4
import json


# ==========================================================================
# Event Categories
# ==========================================================================

class EventCategory(str, Enum):
    """Top-level event categories"""
    SYSTEM = "system"       # Hub / application events
    SESSION = "session"     # Session lifecycle
    TASK = "task"           # Stage lifecycle and progress
    CONTENT = "content"     # Revealed characters
    AGENT = "agent"         # Reasoning steps and insights
    PLAYBACK = "playback"   # Pause / resume / rate


class EventType(str, Enum):
    """Specific event types"""
    # System
    SYSTEM_READY = "system.ready"
    SYSTEM_ERROR = "system.error"

    # Session
    SESSION_STARTED = "session.started"
    SESSION_COMPLETED = "session.completed"
    SESSION_STOPPED = "session.stopped"
    SESSION_ERROR = "session.error"
    SESSION_SAVED = "session.saved"

    # Task
    TASK_STARTED = "task.started"
    TASK_PROGRESS = "task.progress"
    TASK_COMPLETED = "task.completed"
    TASK_FAILED = "task.failed"

    # Content
    CONTENT_REVEALED = "content.revealed"

    # Agent
    REASONING_STEP = "agent.reasoning"
    INSIGHT = "agent.insight"

    # Playback
    PLAYBACK_PAUSED = "playback.paused"
    PLAYBACK_RESUMED = "playback.resumed"
    REVEAL_RATE_CHANGED = "playback.rate_changed"


class Severity(str, Enum):
    """Event severity levels"""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


# ==========================================================================
# Core Event Structure
# ==========================================================================

@dataclass
class StreamEvent:
    """
    Base event structure for everything a session reports.
    """
    # Identity
    id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    # Classification
    category: EventCategory = EventCategory.SYSTEM
    event_type: EventType = EventType.SYSTEM_READY
    severity: Severity = Severity.INFO

    # Context
    session_id: Optional[str] = None
    task_id: Optional[str] = None
    agent: Optional[str] = None

    # Content
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    # Progress (for trackable operations)
    progress_percent: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization"""
        return {k: v for k, v in asdict(self).items() if v is not None}

    def to_json(self) -> str:
        """Convert to JSON string"""
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StreamEvent':
        """Create from dictionary"""
        data = dict(data)
        if 'category' in data:
            data['category'] = EventCategory(data['category'])
        if 'event_type' in data:
            data['event_type'] = EventType(data['event_type'])
        if 'severity' in data:
            data['severity'] = Severity(data['severity'])
        return cls(**data)


# ==========================================================================
# Specialized Event Builders
# ==========================================================================

class EventBuilder:
    """Factory for creating specific event types"""

    @staticmethod
    def session_started(
        session_id: str,
        request_text: str,
        database_type: str,
        task_ids: List[str],
    ) -> StreamEvent:
        """Session accepted and its first stage activated"""
        return StreamEvent(
            category=EventCategory.SESSION,
            event_type=EventType.SESSION_STARTED,
            session_id=session_id,
            message=f"Designing {database_type} schema",
            details={
                "request_preview": request_text[:200],
                "database_type": database_type,
                "task_ids": task_ids,
            },
            progress_percent=0.0,
        )

    @staticmethod
    def session_finished(
        session_id: str,
        status: str,
        progress: float,
        error: str = None,
    ) -> StreamEvent:
        """Session reached a terminal state"""
        event_types = {
            "completed": EventType.SESSION_COMPLETED,
            "stopped": EventType.SESSION_STOPPED,
            "error": EventType.SESSION_ERROR,
        }
        return StreamEvent(
            category=EventCategory.SESSION,
            event_type=event_types.get(status, EventType.SESSION_COMPLETED),
            severity=Severity.ERROR if status == "error" else Severity.INFO,
            session_id=session_id,
            message=error or f"Session {status}",
            details={"status": status},
            progress_percent=progress,
        )

    @staticmethod
    def session_saved(session_id: str, title: str) -> StreamEvent:
        """Session results handed to the conversation store"""
        return StreamEvent(
            category=EventCategory.SESSION,
            event_type=EventType.SESSION_SAVED,
            session_id=session_id,
            message=f"Saved as '{title}'",
            details={"title": title},
        )

    @staticmethod
    def task_started(
        session_id: str,
        task_id: str,
        title: str,
        agent: str,
        position: int,
    ) -> StreamEvent:
        """A stage became the active task"""
        return StreamEvent(
            category=EventCategory.TASK,
            event_type=EventType.TASK_STARTED,
            session_id=session_id,
            task_id=task_id,
            agent=agent,
            message=f"Starting {title}",
            details={"position": position},
            progress_percent=0.0,
        )

    @staticmethod
    def task_progress(
        session_id: str,
        task_id: str,
        progress: float,
        session_progress: float,
    ) -> StreamEvent:
        """Task progress update"""
        return StreamEvent(
            category=EventCategory.TASK,
            event_type=EventType.TASK_PROGRESS,
            session_id=session_id,
            task_id=task_id,
            progress_percent=progress,
            details={"session_progress": session_progress},
        )

    @staticmethod
    def task_finished(
        session_id: str,
        task_id: str,
        title: str,
        status: str,
        tier: str = None,
        error: str = None,
    ) -> StreamEvent:
        """A stage reached completed or error"""
        failed = status == "error"
        return StreamEvent(
            category=EventCategory.TASK,
            event_type=EventType.TASK_FAILED if failed else EventType.TASK_COMPLETED,
            severity=Severity.WARNING if failed else Severity.INFO,
            session_id=session_id,
            task_id=task_id,
            message=error or f"{title} completed",
            details={"status": status, "tier": tier},
            progress_percent=100.0 if not failed else None,
        )

    @staticmethod
    def content_revealed(
        session_id: str,
        task_id: str,
        text: str,
        cursor: int,
        length: int,
    ) -> StreamEvent:
        """A slice of clean content was appended to the reveal buffer"""
        return StreamEvent(
            category=EventCategory.CONTENT,
            event_type=EventType.CONTENT_REVEALED,
            severity=Severity.DEBUG,
            session_id=session_id,
            task_id=task_id,
            message=text,
            details={"cursor": cursor, "length": length},
            progress_percent=(cursor / length * 100) if length > 0 else 100.0,
        )

    @staticmethod
    def reasoning_step(
        session_id: str,
        task_id: str,
        step_id: str,
        text: str,
        confidence: float,
    ) -> StreamEvent:
        """Backend reported a reasoning step for the active task"""
        return StreamEvent(
            category=EventCategory.AGENT,
            event_type=EventType.REASONING_STEP,
            session_id=session_id,
            task_id=task_id,
            message=text,
            details={"step_id": step_id, "confidence": confidence},
        )

    @staticmethod
    def insight(
        session_id: str,
        agent: str,
        message: str,
        kind: str,
        task_id: str = None,
    ) -> StreamEvent:
        """Human-readable insight appended to the log"""
        severity = {
            "fallback": Severity.WARNING,
            "timeout": Severity.WARNING,
            "error": Severity.ERROR,
        }.get(kind, Severity.INFO)
        return StreamEvent(
            category=EventCategory.AGENT,
            event_type=EventType.INSIGHT,
            severity=severity,
            session_id=session_id,
            task_id=task_id,
            agent=agent,
            message=message,
            details={"kind": kind},
        )

    @staticmethod
    def playback(
        session_id: str,
        playing: bool,
    ) -> StreamEvent:
        """Reveal gate opened or closed"""
        return StreamEvent(
            category=EventCategory.PLAYBACK,
            event_type=EventType.PLAYBACK_RESUMED if playing else EventType.PLAYBACK_PAUSED,
            session_id=session_id,
            message="Streaming resumed" if playing else "Streaming paused",
            details={"playing": playing},
        )

    @staticmethod
    def reveal_rate_changed(session_id: str, rate: int) -> StreamEvent:
        """Reveal rate adjusted"""
        return StreamEvent(
            category=EventCategory.PLAYBACK,
            event_type=EventType.REVEAL_RATE_CHANGED,
            session_id=session_id,
            message=f"Reveal rate set to {rate} chars/s",
            details={"rate": rate},
        )
