"""
DB Coach Streaming - Conversation Persistence
=============================================

Turns a finished session into a SessionSnapshot and stores it as a
Conversation row. Also generates human-friendly conversation titles.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dbcoach.core.config import settings
from dbcoach.core.models import Conversation, DatabaseType, SessionStatus
from dbcoach.core.streaming.fallbacks import GENERIC_PROFILE, classify_domain
from dbcoach.core.streaming.state import (
    InsightLogEntry,
    ReasoningStep,
    SessionState,
    TaskState,
)

logger = structlog.get_logger()


class PersistenceFailure(Exception):
    """The conversation store could not save a session."""

    def __init__(self, session_id: str, cause: BaseException):
        self.session_id = session_id
        self.cause = cause
        super().__init__(f"Could not save session {session_id}: {cause}")


# ==========================================================================
# Title Generation
# ==========================================================================

class ConversationTitleGenerator:
    """Derives a short title from the request text."""

    STOP_WORDS = {
        "database", "create", "build", "design", "make", "system", "table",
        "need", "want", "like", "would", "please", "with", "that", "this",
        "for", "and", "the",
    }

    @classmethod
    def generate(cls, prompt: str, database_type: DatabaseType) -> str:
        label = database_type.label
        domain = classify_domain(prompt)
        if domain is not GENERIC_PROFILE:
            return f"{domain.name} ({label})"

        words = [
            w for w in re.sub(r"[^\w\s]", "", prompt).lower().split()
            if len(w) > 3 and w not in cls.STOP_WORDS
        ]
        if words:
            title = " ".join(w.capitalize() for w in words[:2])
            return f"{title} {label} Database"
        return f"{label} Database Design"


# ==========================================================================
# Snapshot
# ==========================================================================

@dataclass
class SessionSnapshot:
    """Everything about a session that survives it."""
    session: SessionState
    tasks: List[TaskState]
    generated_content: Dict[str, str]
    insights: List[InsightLogEntry] = field(default_factory=list)
    reasoning_steps: List[ReasoningStep] = field(default_factory=list)
    started_at: Optional[datetime] = None

    @property
    def title(self) -> str:
        return ConversationTitleGenerator.generate(self.session.request_text, self.session.database_type)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at is None or self.session.completed_at is None:
            return None
        return (self.session.completed_at - self.started_at).total_seconds()

    @property
    def fallback_tiers(self) -> Dict[str, str]:
        return {t.id: t.tier.value for t in self.tasks if t.tier is not None}

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.session.id,
            "prompt": self.session.request_text,
            "database_type": self.session.database_type,
            "title": self.title,
            "status": self.session.status,
            "generated_content": dict(self.generated_content),
            "insights": [i.to_dict() for i in self.insights],
            "tasks": [t.to_dict() for t in self.tasks],
            "reasoning_steps": [r.to_dict() for r in self.reasoning_steps],
            "duration_seconds": self.duration_seconds,
            "total_characters": sum(len(c) for c in self.generated_content.values()),
            "total_insights": len(self.insights),
            "fallback_tiers": self.fallback_tiers,
            "started_at": self.started_at,
            "completed_at": self.session.completed_at,
        }


# ==========================================================================
# Conversation Store
# ==========================================================================

class ConversationStore:
    """
    Async CRUD over saved conversations.

    Usage:
        store = ConversationStore(AsyncSessionLocal)
        await store.save(snapshot)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        max_conversations: Optional[int] = None,
    ):
        self._session_factory = session_factory
        self.max_conversations = max_conversations or settings.MAX_SAVED_CONVERSATIONS

    async def save(self, snapshot: SessionSnapshot) -> Conversation:
        record = snapshot.to_record()
        try:
            async with self._session_factory() as db:
                conversation = await db.get(Conversation, record["id"])
                if conversation is None:
                    conversation = Conversation(**record)
                    db.add(conversation)
                else:
                    for key, value in record.items():
                        setattr(conversation, key, value)
                await db.flush()
                await self._prune(db, keep=record["id"])
                await db.commit()
                await db.refresh(conversation)
        except SQLAlchemyError as e:
            logger.error("conversation_save_failed", session_id=record["id"], error=str(e))
            raise PersistenceFailure(record["id"], e) from e

        logger.info(
            "conversation_saved",
            session_id=record["id"],
            title=record["title"],
            status=record["status"].value,
            total_characters=record["total_characters"],
        )
        return conversation

    async def _prune(self, db: AsyncSession, keep: str) -> None:
        total = await db.scalar(select(func.count()).select_from(Conversation))
        if not total or total <= self.max_conversations:
            return
        stale = (
            select(Conversation.id)
            .where(Conversation.id != keep)
            .order_by(Conversation.created_at.desc(), Conversation.id.desc())
            .offset(self.max_conversations - 1)
        )
        stale_ids = list((await db.scalars(stale)).all())
        if stale_ids:
            await db.execute(delete(Conversation).where(Conversation.id.in_(stale_ids)))
            logger.info("conversations_pruned", removed=len(stale_ids))

    async def get(self, conversation_id: str) -> Optional[Conversation]:
        async with self._session_factory() as db:
            return await db.get(Conversation, conversation_id)

    async def list(
        self,
        limit: int = 50,
        offset: int = 0,
        database_type: Optional[DatabaseType] = None,
        status: Optional[SessionStatus] = None,
    ) -> List[Conversation]:
        query = select(Conversation)
        if database_type is not None:
            query = query.where(Conversation.database_type == database_type)
        if status is not None:
            query = query.where(Conversation.status == status)
        query = query.order_by(Conversation.created_at.desc()).offset(offset).limit(limit)
        async with self._session_factory() as db:
            return list((await db.scalars(query)).all())

    async def search(self, text: str, limit: int = 20) -> List[Conversation]:
        pattern = f"%{text.strip()}%"
        query = (
            select(Conversation)
            .where(or_(Conversation.title.ilike(pattern), Conversation.prompt.ilike(pattern)))
            .order_by(Conversation.created_at.desc())
            .limit(limit)
        )
        async with self._session_factory() as db:
            return list((await db.scalars(query)).all())

    async def delete(self, conversation_id: str) -> bool:
        async with self._session_factory() as db:
            conversation = await db.get(Conversation, conversation_id)
            if conversation is None:
                return False
            await db.delete(conversation)
            await db.commit()
        logger.info("conversation_deleted", session_id=conversation_id)
        return True
