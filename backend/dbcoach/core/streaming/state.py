"""
DB Coach Streaming - Session State
==================================

Immutable snapshots of tasks, sessions, reasoning steps and insights,
plus the per-task content buffers.

Task and session state is never mutated in place: the orchestrator
replaces a snapshot with `dataclasses.replace` so readers always see a
consistent value. Content buffers are the one mutable structure and are
only written by the active task's generation/reveal pair.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple
from uuid import uuid4

from dbcoach.core.models import ContentTier, DatabaseType, SessionStatus, TaskStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ==========================================================================
# Stage Catalogue
# ==========================================================================

@dataclass(frozen=True)
class SubtaskDefinition:
    key: str
    title: str


@dataclass(frozen=True)
class StageDefinition:
    """A fixed generation stage: what it is called, who runs it, its weight."""
    key: str
    title: str
    agent: str
    estimated_seconds: float
    subtasks: Tuple[SubtaskDefinition, ...] = ()


DEFAULT_STAGES: Tuple[StageDefinition, ...] = (
    StageDefinition(
        key="requirements_analysis",
        title="Requirements Analysis",
        agent="Requirements Analyst",
        estimated_seconds=15,
        subtasks=(
            SubtaskDefinition("analyze_domain", "Analyze business domain"),
            SubtaskDefinition("extract_requirements", "Extract requirements"),
            SubtaskDefinition("classify_complexity", "Classify complexity"),
        ),
    ),
    StageDefinition(
        key="schema_design",
        title="Schema Design",
        agent="Schema Architect",
        estimated_seconds=25,
        subtasks=(
            SubtaskDefinition("design_entities", "Design entities"),
            SubtaskDefinition("map_relationships", "Map relationships"),
            SubtaskDefinition("optimize_structure", "Optimize structure"),
        ),
    ),
    StageDefinition(
        key="implementation_package",
        title="Implementation Package",
        agent="Implementation Specialist",
        estimated_seconds=20,
        subtasks=(
            SubtaskDefinition("generate_sql", "Generate implementation scripts"),
            SubtaskDefinition("create_samples", "Create sample data"),
            SubtaskDefinition("setup_apis", "Set up access patterns"),
        ),
    ),
    StageDefinition(
        key="quality_assurance",
        title="Quality Assurance",
        agent="Quality Assurance",
        estimated_seconds=10,
        subtasks=(
            SubtaskDefinition("validate_design", "Validate design"),
            SubtaskDefinition("performance_review", "Performance review"),
            SubtaskDefinition("security_audit", "Security audit"),
        ),
    ),
)


# ==========================================================================
# Task State
# ==========================================================================

@dataclass(frozen=True)
class SubtaskState:
    id: str
    title: str
    status: TaskStatus = TaskStatus.PENDING
    progress: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "status": self.status.value,
            "progress": round(self.progress, 2),
        }


@dataclass(frozen=True)
class TaskState:
    """Snapshot of one stage of a session."""
    id: str
    title: str
    agent: str
    position: int
    estimated_seconds: float
    status: TaskStatus = TaskStatus.PENDING
    progress: float = 0.0
    token: Optional[int] = None
    subtasks: Tuple[SubtaskState, ...] = ()
    tier: Optional[ContentTier] = None
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_stage(cls, stage: StageDefinition, position: int) -> "TaskState":
        return cls(
            id=stage.key,
            title=stage.title,
            agent=stage.agent,
            position=position,
            estimated_seconds=stage.estimated_seconds,
            subtasks=tuple(SubtaskState(id=s.key, title=s.title) for s in stage.subtasks),
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in (TaskStatus.COMPLETED, TaskStatus.ERROR)

    def with_progress(self, progress: float) -> "TaskState":
        """Return a copy with progress raised to `progress` (never lowered)."""
        progress = max(self.progress, min(100.0, progress))
        return replace(self, progress=progress, subtasks=_derive_subtasks(self.subtasks, progress))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "agent": self.agent,
            "position": self.position,
            "status": self.status.value,
            "progress": round(self.progress, 2),
            "estimated_seconds": self.estimated_seconds,
            "subtasks": [s.to_dict() for s in self.subtasks],
            "tier": self.tier.value if self.tier else None,
            "error_message": self.error_message,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


def _derive_subtasks(subtasks: Tuple[SubtaskState, ...], progress: float) -> Tuple[SubtaskState, ...]:
    # Subtask i of n owns the progress band [i/n, (i+1)/n)
    if not subtasks:
        return subtasks
    span = 100.0 / len(subtasks)
    derived = []
    for index, sub in enumerate(subtasks):
        low = index * span
        local = max(0.0, min(100.0, (progress - low) / span * 100.0))
        if local >= 100.0:
            status = TaskStatus.COMPLETED
        elif progress >= low and progress > 0:
            status = TaskStatus.ACTIVE
        else:
            status = TaskStatus.PENDING
        derived.append(replace(sub, status=status, progress=local))
    return tuple(derived)


# ==========================================================================
# Session State
# ==========================================================================

@dataclass(frozen=True)
class SessionState:
    id: str
    request_text: str
    database_type: DatabaseType
    created_at: datetime = field(default_factory=utcnow)
    status: SessionStatus = SessionStatus.CREATED
    progress: float = 0.0
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (SessionStatus.COMPLETED, SessionStatus.STOPPED, SessionStatus.ERROR)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "request_text": self.request_text,
            "database_type": self.database_type.value,
            "created_at": self.created_at.isoformat(),
            "status": self.status.value,
            "progress": round(self.progress, 2),
            "is_terminal": self.is_terminal,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error_message": self.error_message,
        }


# ==========================================================================
# Narrative Streams
# ==========================================================================

@dataclass(frozen=True)
class ReasoningStep:
    task_id: str
    text: str
    confidence: float
    id: str = field(default_factory=lambda: uuid4().hex[:12])
    expanded: bool = False
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "text": self.text,
            "confidence": self.confidence,
            "expanded": self.expanded,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class InsightLogEntry:
    agent: str
    message: str
    kind: str = "info"  # start | completion | fallback | timeout | info | error
    task_id: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent": self.agent,
            "message": self.message,
            "kind": self.kind,
            "task_id": self.task_id,
            "timestamp": self.timestamp.isoformat(),
        }


# ==========================================================================
# Content Buffers
# ==========================================================================

class ContentBuffer:
    """
    Raw, clean and revealed text for one task.

    The raw buffer is write-once. The reveal buffer only ever grows and
    is always a prefix of the clean buffer.
    """

    def __init__(self, task_id: str):
        self.task_id = task_id
        self._raw: Optional[str] = None
        self._clean: Optional[str] = None
        self._cursor = 0

    @property
    def raw(self) -> Optional[str]:
        return self._raw

    @property
    def clean(self) -> Optional[str]:
        return self._clean

    @property
    def revealed(self) -> str:
        if self._clean is None:
            return ""
        return self._clean[:self._cursor]

    @property
    def cursor(self) -> int:
        return self._cursor

    @property
    def is_written(self) -> bool:
        return self._raw is not None

    @property
    def is_fully_revealed(self) -> bool:
        return self._clean is not None and self._cursor >= len(self._clean)

    def write(self, raw: str, clean: str) -> None:
        if self._raw is not None:
            raise RuntimeError(f"Content for task {self.task_id} was already written")
        self._raw = raw
        self._clean = clean

    def reveal_to(self, cursor: int) -> str:
        """Advance the reveal cursor; returns the newly disclosed slice."""
        if self._clean is None:
            raise RuntimeError(f"Task {self.task_id} has no content to reveal")
        cursor = min(cursor, len(self._clean))
        if cursor <= self._cursor:
            return ""
        disclosed = self._clean[self._cursor:cursor]
        self._cursor = cursor
        return disclosed

    def reveal_all(self) -> str:
        return self.reveal_to(len(self._clean or ""))
