"""
DB Coach - Database Models
==========================

SQLAlchemy models and the enums shared between the streaming core
and the persisted conversation history.
"""

import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    DateTime,
    Enum,
    Float,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from dbcoach.core.database import Base


# ==========================================================================
# Enums
# ==========================================================================

class DatabaseType(str, enum.Enum):
    """Content-domain variant requested by the user."""
    SQL = "sql"
    NOSQL = "nosql"
    VECTORDB = "vectordb"

    @property
    def label(self) -> str:
        return {
            DatabaseType.SQL: "SQL",
            DatabaseType.NOSQL: "NoSQL",
            DatabaseType.VECTORDB: "VectorDB",
        }[self]


class TaskStatus(str, enum.Enum):
    """Lifecycle of a single generation stage."""
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    ERROR = "error"


class SessionStatus(str, enum.Enum):
    """Lifecycle of a streaming session."""
    CREATED = "created"
    RUNNING = "running"
    COMPLETED = "completed"    # All stages reached a terminal state
    STOPPED = "stopped"        # Stopped by the user, partial results
    ERROR = "error"            # Results kept in memory, persistence failed


class ContentTier(str, enum.Enum):
    """Which fallback tier produced a stage's content."""
    PRIMARY = "primary"
    TEMPLATE = "template"
    MINIMAL = "minimal"


# ==========================================================================
# Mixins
# ==========================================================================

class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


# ==========================================================================
# Models
# ==========================================================================

class Conversation(Base, TimestampMixin):
    """
    A finished (or stopped) streaming session.

    Stores the clean content of every stage keyed by task id, together
    with the insight log, task snapshots and reasoning steps so the
    conversation can be reopened without regenerating anything.
    """

    __tablename__ = "conversations"

    id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
    )
    prompt: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )
    database_type: Mapped[DatabaseType] = mapped_column(
        Enum(DatabaseType),
        nullable=False,
        index=True,
    )
    title: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    status: Mapped[SessionStatus] = mapped_column(
        Enum(SessionStatus),
        default=SessionStatus.COMPLETED,
        nullable=False,
    )

    # Content
    generated_content: Mapped[dict] = mapped_column(
        JSON,
        default=dict,
        nullable=False,
    )
    insights: Mapped[list] = mapped_column(
        JSON,
        default=list,
        nullable=False,
    )
    tasks: Mapped[list] = mapped_column(
        JSON,
        default=list,
        nullable=False,
    )
    reasoning_steps: Mapped[Optional[list]] = mapped_column(
        JSON,
        default=list,
        nullable=True,
    )

    # Metrics
    duration_seconds: Mapped[Optional[float]] = mapped_column(
        Float,
        nullable=True,
    )
    total_characters: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    total_insights: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    fallback_tiers: Mapped[Optional[dict]] = mapped_column(
        JSON,
        default=dict,
        nullable=True,
    )

    started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<Conversation {self.id} '{self.title}' ({self.status.value})>"
