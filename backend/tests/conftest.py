"""
DB Coach - Test Fixtures
========================

Shared pytest fixtures for all tests.
"""

import os

# Settings are read at import time
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["GEMINI_API_KEY"] = ""

import asyncio
from collections.abc import AsyncGenerator
from typing import Any, Callable, List, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dbcoach.api import conversations, streaming
from dbcoach.api.main import app
from dbcoach.core.database import Base, create_engine, create_session_factory, init_db
from dbcoach.core.live.events import StreamEvent
from dbcoach.core.live.websocket_hub import ConnectionManager
from dbcoach.core.models import DatabaseType
from dbcoach.core.streaming.generation import (
    ContentGenerationPipeline,
    GenerationBackend,
    ReasoningUpdate,
)
from dbcoach.core.streaming.orchestrator import EventSink, OrchestratorConfig, StreamingOrchestrator
from dbcoach.core.streaming.persistence import ConversationStore
from dbcoach.core.streaming.session_manager import StreamingSessionManager


# ==========================================================================
# Test Database Setup
# ==========================================================================

# Use in-memory SQLite for tests (fast)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture(scope="function")
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """
    Session factory over a fresh in-memory database.

    Creates all tables before the test, drops them after.
    """
    engine = create_engine(TEST_DATABASE_URL)
    await init_db(engine)

    yield create_session_factory(engine)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def conversation_store(session_factory) -> ConversationStore:
    return ConversationStore(session_factory)


# ==========================================================================
# Generation Backends
# ==========================================================================

SAMPLE_CONTENT = (
    "=== Schema Design ===\n"
    "[STREAMING] Generating tables...\n"
    "Here is the schema:\n\n"
    "```sql\n"
    "CREATE TABLE authors (\n"
    "    id SERIAL PRIMARY KEY,\n"
    "    name VARCHAR(255) NOT NULL\n"
    ");\n\n"
    "CREATE TABLE posts (\n"
    "    id SERIAL PRIMARY KEY,\n"
    "    author_id INTEGER NOT NULL REFERENCES authors(id),\n"
    "    title VARCHAR(255) NOT NULL\n"
    ");\n"
    "```\n\n"
    "Authors own posts; every post belongs to exactly one author.\n"
    "Confidence: 0.92\n"
)


class StaticBackend(GenerationBackend):
    """Returns the same content for every stage."""

    name = "static"

    def __init__(
        self,
        content: str = SAMPLE_CONTENT,
        delay: float = 0.0,
        reasoning: tuple = ("Mapping entities to tables",),
    ):
        self.content = content
        self.delay = delay
        self.reasoning = reasoning
        self.requests: List[str] = []

    async def generate(self, request_text, database_type, on_reasoning=None):
        self.requests.append(request_text)
        for text in self.reasoning:
            if on_reasoning:
                on_reasoning(ReasoningUpdate(text, confidence=0.85))
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.content


class FailingBackend(GenerationBackend):
    name = "failing"

    async def generate(self, request_text, database_type, on_reasoning=None):
        raise RuntimeError("model unavailable")


class HangingBackend(GenerationBackend):
    """Never answers within any reasonable ceiling."""

    name = "hanging"

    async def generate(self, request_text, database_type, on_reasoning=None):
        await asyncio.sleep(3600)
        return SAMPLE_CONTENT


# ==========================================================================
# Orchestrator Fixtures
# ==========================================================================

FAST_CONFIG = {
    "task_timeout": 2.0,
    "reveal_rate": 2000,
    "rate_min": 1,
    "rate_max": 100000,
    "tick_hz": 100,
    "poll_interval": 0.01,
}


@pytest.fixture
def config_factory() -> Callable[..., OrchestratorConfig]:
    """Builds configs that reveal ~20 characters every 10ms."""
    def _factory(**overrides: Any) -> OrchestratorConfig:
        values = dict(FAST_CONFIG)
        values.update({k: v for k, v in overrides.items() if v is not None})
        return OrchestratorConfig(**values)
    return _factory


@pytest.fixture
def make_orchestrator(config_factory):
    """
    Factory for orchestrators with fast timing.

    Pass `events=[]` to collect every published event, or `emit_event`
    for a custom sink.
    """
    def _make(
        backend: Optional[GenerationBackend] = None,
        request_text: str = "A blog with authors, posts and comments",
        database_type: DatabaseType = DatabaseType.SQL,
        events: Optional[List[StreamEvent]] = None,
        emit_event: Optional[EventSink] = None,
        config: Optional[OrchestratorConfig] = None,
        pipeline: Optional[ContentGenerationPipeline] = None,
        **kwargs: Any,
    ) -> StreamingOrchestrator:
        sink = emit_event
        if events is not None:
            async def sink(event: StreamEvent) -> None:
                events.append(event)

        return StreamingOrchestrator(
            request_text=request_text,
            database_type=database_type,
            pipeline=pipeline or ContentGenerationPipeline(backend, soft_timeout=5.0),
            emit_event=sink,
            config=config or config_factory(),
            **kwargs,
        )
    return _make


# ==========================================================================
# API Fixtures
# ==========================================================================

@pytest_asyncio.fixture(scope="function")
async def hub() -> ConnectionManager:
    return ConnectionManager()


@pytest_asyncio.fixture(scope="function")
async def session_manager(conversation_store, config_factory, hub) -> AsyncGenerator[StreamingSessionManager, None]:
    manager = StreamingSessionManager(
        backend=StaticBackend(delay=0.01),
        store=conversation_store,
        emit_event=hub.emit_event,
        config_factory=config_factory,
    )
    hub.set_command_handler(manager.handle_command)
    hub.set_state_provider(manager.state_for)
    yield manager
    await manager.shutdown()


@pytest_asyncio.fixture(scope="function")
async def client(session_manager, conversation_store) -> AsyncGenerator[AsyncClient, None]:
    """
    Provide async HTTP client for API testing.

    Overrides the session manager and conversation store dependencies.
    """
    app.dependency_overrides[streaming.get_session_manager] = lambda: session_manager
    app.dependency_overrides[conversations.get_conversation_store] = lambda: conversation_store

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ==========================================================================
# Helpers
# ==========================================================================

def events_of(events: List[StreamEvent], event_type) -> List[StreamEvent]:
    return [e for e in events if e.event_type == event_type]
