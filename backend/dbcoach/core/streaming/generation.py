"""
DB Coach Streaming - Content Generation Pipeline
================================================

Produces raw content for one stage with layered fallbacks:

1. Primary: the configured GenerationBackend, bounded by a soft timeout.
2. Template: a role-specific static template flavoured with the
   request's domain and technology, used when the primary tier raises.
3. Minimal: a generic document, used when whatever came back is shorter
   than the minimum viable length.

Every error is recovered here; callers always receive content.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, List, Optional

import structlog

from dbcoach.core.config import settings
from dbcoach.core.models import ContentTier, DatabaseType
from dbcoach.core.streaming.fallbacks import FallbackContext, minimal_content, template_content
from dbcoach.core.streaming.prompts import build_stage_request
from dbcoach.core.streaming.state import TaskState

logger = structlog.get_logger()


# ==========================================================================
# Errors
# ==========================================================================

class GenerationError(Exception):
    """Base class for errors the pipeline recovers from."""


class GenerationTimeout(GenerationError):
    def __init__(self, seconds: float):
        self.seconds = seconds
        super().__init__(f"Generation did not finish within {seconds:g}s")


class GenerationFailure(GenerationError):
    def __init__(self, cause: BaseException):
        self.cause = cause
        super().__init__(f"Generation failed: {cause}")


class ContentTooShort(GenerationError):
    def __init__(self, length: int, minimum: int):
        self.length = length
        self.minimum = minimum
        super().__init__(f"Content too short ({length} < {minimum} characters)")


# ==========================================================================
# Backend Contract
# ==========================================================================

@dataclass(frozen=True)
class ReasoningUpdate:
    """A reasoning step reported by a backend while it works."""
    text: str
    confidence: float = 0.8


ReasoningCallback = Callable[[ReasoningUpdate], None]
InsightCallback = Callable[[str, str], None]  # (message, kind)


class GenerationBackend(ABC):
    """Anything that can turn a stage request into text."""

    name: str = "backend"

    @abstractmethod
    async def generate(
        self,
        request_text: str,
        database_type: DatabaseType,
        on_reasoning: Optional[ReasoningCallback] = None,
    ) -> str:
        ...

    async def aclose(self) -> None:
        return None


# ==========================================================================
# Pipeline
# ==========================================================================

@dataclass
class GenerationOutcome:
    content: str
    tier: ContentTier
    errors: List[GenerationError] = field(default_factory=list)
    elapsed_seconds: float = 0.0

    @property
    def used_fallback(self) -> bool:
        return self.tier != ContentTier.PRIMARY


class ContentGenerationPipeline:
    """Tiered content producer shared by every task of a session."""

    def __init__(
        self,
        backend: Optional[GenerationBackend] = None,
        soft_timeout: Optional[float] = None,
        min_length: Optional[int] = None,
    ):
        self.backend = backend
        self.soft_timeout = soft_timeout if soft_timeout is not None else settings.GENERATION_SOFT_TIMEOUT_SECONDS
        self.min_length = min_length if min_length is not None else settings.MIN_CONTENT_LENGTH

    async def produce(
        self,
        task: TaskState,
        request_text: str,
        database_type: DatabaseType,
        on_reasoning: Optional[ReasoningCallback] = None,
        on_insight: Optional[InsightCallback] = None,
    ) -> GenerationOutcome:
        started = time.monotonic()
        errors: List[GenerationError] = []

        def insight(message: str, kind: str) -> None:
            if on_insight is not None:
                on_insight(message, kind)

        try:
            content = await self._primary(task, request_text, database_type, on_reasoning)
            tier = ContentTier.PRIMARY
        except GenerationError as e:
            errors.append(e)
            logger.warning(
                "generation_primary_failed",
                task_id=task.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            context = FallbackContext.build(request_text, database_type)
            content = template_content(task.id, context)
            tier = ContentTier.TEMPLATE
            insight(
                f"{task.title}: primary generation unavailable ({e}); "
                f"using {context.domain.name} template for {context.technology}",
                "fallback",
            )

        stripped = len(content.strip())
        if stripped < self.min_length:
            too_short = ContentTooShort(stripped, self.min_length)
            errors.append(too_short)
            logger.warning("generation_content_too_short", task_id=task.id, tier=tier.value, length=stripped)
            content = self.minimal(task, database_type)
            tier = ContentTier.MINIMAL
            insight(f"{task.title}: {too_short}; using baseline content", "fallback")

        elapsed = time.monotonic() - started
        if tier == ContentTier.PRIMARY:
            insight(f"{task.title}: generated {len(content)} characters in {elapsed:.1f}s", "info")

        logger.info(
            "generation_completed",
            task_id=task.id,
            tier=tier.value,
            length=len(content),
            elapsed_seconds=round(elapsed, 3),
        )
        return GenerationOutcome(content=content, tier=tier, errors=errors, elapsed_seconds=elapsed)

    def minimal(self, task: TaskState, database_type: DatabaseType) -> str:
        return minimal_content(task.title, database_type)

    async def _primary(
        self,
        task: TaskState,
        request_text: str,
        database_type: DatabaseType,
        on_reasoning: Optional[ReasoningCallback],
    ) -> str:
        if self.backend is None:
            raise GenerationFailure(RuntimeError("no generation backend configured"))

        stage_request = build_stage_request(task, request_text, database_type)
        try:
            result = await asyncio.wait_for(
                self.backend.generate(stage_request, database_type, on_reasoning),
                timeout=self.soft_timeout,
            )
        except asyncio.TimeoutError as e:
            raise GenerationTimeout(self.soft_timeout) from e
        except Exception as e:
            raise GenerationFailure(e) from e

        if not isinstance(result, str):
            raise GenerationFailure(TypeError(f"backend returned {type(result).__name__}"))
        return result
