"""
DB Coach Streaming
==================

The streaming task-orchestration and content pipeline.

Components:
- StreamingOrchestrator: sequential stage driver with timeouts, pause and stop
- ContentGenerationPipeline: primary backend with template and minimal fallbacks
- RevealSimulator: rate-controlled disclosure of produced content
- ContentNormalizer: rule chain that strips meta-commentary
- parse_content: relational, document and vector artifact extraction
- ConversationStore: persistence of finished sessions
- StreamingSessionManager: registry of live sessions
"""

from dbcoach.core.streaming.content_parser import parse_content
from dbcoach.core.streaming.generation import (
    ContentGenerationPipeline,
    ContentTooShort,
    GenerationBackend,
    GenerationFailure,
    GenerationTimeout,
    ReasoningUpdate,
)
from dbcoach.core.streaming.normalizer import ContentNormalizer, normalize
from dbcoach.core.streaming.orchestrator import OrchestratorConfig, StreamingOrchestrator
from dbcoach.core.streaming.persistence import (
    ConversationStore,
    ConversationTitleGenerator,
    PersistenceFailure,
    SessionSnapshot,
)
from dbcoach.core.streaming.reveal import PlaybackGate, RevealSimulator
from dbcoach.core.streaming.session_manager import StreamingSessionManager

__all__ = [
    "ContentGenerationPipeline",
    "ContentNormalizer",
    "ContentTooShort",
    "ConversationStore",
    "ConversationTitleGenerator",
    "GenerationBackend",
    "GenerationFailure",
    "GenerationTimeout",
    "OrchestratorConfig",
    "PersistenceFailure",
    "PlaybackGate",
    "ReasoningUpdate",
    "RevealSimulator",
    "SessionSnapshot",
    "StreamingOrchestrator",
    "StreamingSessionManager",
    "normalize",
    "parse_content",
]
