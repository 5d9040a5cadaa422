"""
DB Coach Streaming - Task Orchestrator
======================================

Drives one streaming session: a fixed list of stages executed strictly
in order. For each stage the orchestrator

1. activates the task and issues a fresh generation token,
2. asks the ContentGenerationPipeline for content,
3. normalizes it into the clean buffer,
4. reveals it through a RevealSimulator,
5. completes the task and advances to the next one.

Each task is bounded by a hard ceiling: wall-clock time while generating,
unpaused time while revealing. When the ceiling fires during generation
the task is force-completed with baseline content; when it fires during
reveal the rest of the clean content is shown at once. Either way the token is invalidated so late
continuations are discarded.

Stop makes the session terminal immediately, cancels in-flight work and
persists whatever was produced.
"""

import asyncio
import inspect
import itertools
from dataclasses import dataclass, replace
from datetime import datetime
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union
from uuid import uuid4

import structlog

from dbcoach.core.config import settings
from dbcoach.core.live.events import EventBuilder, StreamEvent
from dbcoach.core.models import ContentTier, DatabaseType, SessionStatus, TaskStatus
from dbcoach.core.streaming.generation import (
    ContentGenerationPipeline,
    GenerationTimeout,
    ReasoningUpdate,
)
from dbcoach.core.streaming.normalizer import ContentNormalizer
from dbcoach.core.streaming.persistence import (
    ConversationStore,
    PersistenceFailure,
    SessionSnapshot,
)
from dbcoach.core.streaming.reveal import PlaybackGate, RevealChunk, RevealSimulator, clamp_rate
from dbcoach.core.streaming.state import (
    DEFAULT_STAGES,
    ContentBuffer,
    InsightLogEntry,
    ReasoningStep,
    SessionState,
    StageDefinition,
    TaskState,
    utcnow,
)

logger = structlog.get_logger()

COACH_AGENT = "DB.Coach"

EventSink = Callable[[StreamEvent], Awaitable[Any]]
Notifier = Callable[[str], Union[Awaitable[Any], Any]]


# ==========================================================================
# Configuration
# ==========================================================================

@dataclass
class OrchestratorConfig:
    task_timeout: float
    reveal_rate: int
    rate_min: int
    rate_max: int
    tick_hz: int
    poll_interval: float

    @classmethod
    def from_settings(cls, **overrides: Any) -> "OrchestratorConfig":
        values = {
            "task_timeout": settings.TASK_TIMEOUT_SECONDS,
            "reveal_rate": settings.REVEAL_RATE_DEFAULT,
            "rate_min": settings.REVEAL_RATE_MIN,
            "rate_max": settings.REVEAL_RATE_MAX,
            "tick_hz": settings.REVEAL_TICK_HZ,
            "poll_interval": settings.PAUSE_POLL_SECONDS,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


# ==========================================================================
# Deadline
# ==========================================================================

class TaskDeadline:
    """
    Hard per-task ceiling.

    Generation is timed on the wall clock since pausing never holds it
    back. Once reveal starts, time spent with the gate closed stops
    counting against the budget.
    """

    def __init__(self, seconds: float, gate: PlaybackGate):
        self.seconds = seconds
        self._gate = gate
        self._started = gate.now()
        self._paused_at_reveal: Optional[float] = None

    def start_reveal(self) -> None:
        self._paused_at_reveal = self._gate.paused_seconds()

    def elapsed(self) -> float:
        wall = self._gate.now() - self._started
        if self._paused_at_reveal is None:
            return wall
        return wall - (self._gate.paused_seconds() - self._paused_at_reveal)

    def remaining(self) -> float:
        return max(0.0, self.seconds - self.elapsed())

    async def run(self, awaitable: Awaitable[Any]) -> Any:
        """Await `awaitable`, raising GenerationTimeout once the budget is spent."""
        work = asyncio.ensure_future(awaitable)
        try:
            while True:
                remaining = self.remaining()
                if remaining <= 0:
                    raise GenerationTimeout(self.seconds)
                done, _ = await asyncio.wait({work}, timeout=remaining)
                if work in done:
                    return work.result()
        finally:
            if not work.done():
                work.cancel()


# ==========================================================================
# Orchestrator
# ==========================================================================

class StreamingOrchestrator:
    """
    Sequential state machine for one session.

    Task and session snapshots are immutable and replaced on every
    transition. Each active task carries a generation token; reasoning,
    insight and reveal continuations presenting any other token are
    dropped.
    """

    def __init__(
        self,
        request_text: str,
        database_type: DatabaseType,
        pipeline: ContentGenerationPipeline,
        store: Optional[ConversationStore] = None,
        emit_event: Optional[EventSink] = None,
        on_complete: Optional[Notifier] = None,
        on_error: Optional[Notifier] = None,
        config: Optional[OrchestratorConfig] = None,
        stages: Sequence[StageDefinition] = DEFAULT_STAGES,
        normalizer: Optional[ContentNormalizer] = None,
        session_id: Optional[str] = None,
    ):
        self.config = config or OrchestratorConfig.from_settings()
        self.pipeline = pipeline
        self.store = store
        self.normalizer = normalizer or ContentNormalizer()
        self._emit_event = emit_event
        self._on_complete = on_complete
        self._on_error = on_error
        self._stages = tuple(stages)

        self.session = SessionState(
            id=session_id or uuid4().hex,
            request_text=request_text,
            database_type=database_type,
        )
        self._tasks: List[TaskState] = []
        self._buffers: Dict[str, ContentBuffer] = {}
        self._insights: List[InsightLogEntry] = []
        self._reasoning: List[ReasoningStep] = []

        self._gate = PlaybackGate()
        self._reveal_rate = self._clamp(self.config.reveal_rate)
        self._tokens = itertools.count(1)
        self._active_index: Optional[int] = None

        self._runner: Optional[asyncio.Task] = None
        self._publisher: Optional[asyncio.Task] = None
        self._outbox: "asyncio.Queue[Optional[StreamEvent]]" = asyncio.Queue()
        self._done = asyncio.Event()
        self._finalized = False
        self._final_status: Optional[SessionStatus] = None
        self._started_at: Optional[datetime] = None

    # ==========================================================================
    # Read-only Views
    # ==========================================================================

    @property
    def session_id(self) -> str:
        return self.session.id

    @property
    def tasks(self) -> List[TaskState]:
        return list(self._tasks)

    @property
    def active_task(self) -> Optional[TaskState]:
        if self._active_index is None:
            return None
        task = self._tasks[self._active_index]
        return task if task.status == TaskStatus.ACTIVE else None

    @property
    def insights(self) -> List[InsightLogEntry]:
        return list(self._insights)

    @property
    def reasoning_steps(self) -> List[ReasoningStep]:
        return list(self._reasoning)

    @property
    def is_playing(self) -> bool:
        return self._gate.is_playing

    @property
    def reveal_rate(self) -> int:
        return self._reveal_rate

    @property
    def total_progress(self) -> float:
        """Mean task progress weighted by estimated duration."""
        weight = sum(t.estimated_seconds for t in self._tasks)
        if not weight:
            return 0.0
        return sum(t.progress * t.estimated_seconds for t in self._tasks) / weight

    @property
    def estimated_remaining_seconds(self) -> float:
        return sum(
            t.estimated_seconds * (1 - t.progress / 100.0)
            for t in self._tasks
            if not t.is_terminal
        )

    def get_task(self, task_id: str) -> TaskState:
        for task in self._tasks:
            if task.id == task_id:
                return task
        raise KeyError(task_id)

    def buffer(self, task_id: str) -> ContentBuffer:
        return self._buffers[task_id]

    def revealed(self, task_id: str) -> str:
        return self._buffers[task_id].revealed

    def status_dict(self) -> Dict[str, Any]:
        active = self.active_task
        return {
            "session": self.session.to_dict(),
            "tasks": [t.to_dict() for t in self._tasks],
            "active_task_id": active.id if active else None,
            "total_progress": round(self.total_progress, 2),
            "estimated_remaining_seconds": round(self.estimated_remaining_seconds, 1),
            "is_playing": self.is_playing,
            "reveal_rate": self.reveal_rate,
            "insight_count": len(self._insights),
            "reasoning_count": len(self._reasoning),
        }

    def snapshot(self) -> SessionSnapshot:
        content: Dict[str, str] = {}
        for task in self._tasks:
            buffer = self._buffers[task.id]
            if task.status == TaskStatus.COMPLETED and buffer.clean is not None:
                content[task.id] = buffer.clean
            elif buffer.revealed:
                content[task.id] = buffer.revealed
        return SessionSnapshot(
            session=self.session,
            tasks=list(self._tasks),
            generated_content=content,
            insights=list(self._insights),
            reasoning_steps=list(self._reasoning),
            started_at=self._started_at,
        )

    # ==========================================================================
    # Controls
    # ==========================================================================

    async def start(self, stages: Optional[Sequence[StageDefinition]] = None) -> None:
        """Initialize tasks, activate the first one and begin driving."""
        if self._runner is not None or self._finalized:
            raise RuntimeError(f"Session {self.session.id} already started")
        if stages is not None:
            self._stages = tuple(stages)
        if not self._stages:
            raise ValueError("At least one stage is required")

        self._tasks = [TaskState.from_stage(stage, i) for i, stage in enumerate(self._stages)]
        self._buffers = {t.id: ContentBuffer(t.id) for t in self._tasks}
        self._started_at = utcnow()
        self.session = replace(self.session, status=SessionStatus.RUNNING)

        self._publish(EventBuilder.session_started(
            session_id=self.session.id,
            request_text=self.session.request_text,
            database_type=self.session.database_type.value,
            task_ids=[t.id for t in self._tasks],
        ))
        logger.info(
            "streaming_session_started",
            session_id=self.session.id,
            database_type=self.session.database_type.value,
            tasks=len(self._tasks),
        )

        self._activate(0)
        self._runner = asyncio.create_task(self._run())

    def play(self) -> bool:
        return self.set_playing(True)

    def pause(self) -> bool:
        return self.set_playing(False)

    def set_playing(self, playing: bool) -> bool:
        """Open or close the reveal gate. Generation is never paused."""
        if self.session.is_terminal:
            return False
        changed = self._gate.resume() if playing else self._gate.pause()
        if changed:
            logger.info("streaming_playback_changed", session_id=self.session.id, playing=playing)
            self._publish(EventBuilder.playback(self.session.id, playing))
        return changed

    def set_reveal_rate(self, rate: int) -> int:
        if self.session.is_terminal:
            return self._reveal_rate
        self._reveal_rate = self._clamp(rate)
        self._publish(EventBuilder.reveal_rate_changed(self.session.id, self._reveal_rate))
        return self._reveal_rate

    def toggle_reasoning(self, step_id: str) -> ReasoningStep:
        for index, step in enumerate(self._reasoning):
            if step.id == step_id:
                toggled = replace(step, expanded=not step.expanded)
                self._reasoning[index] = toggled
                return toggled
        raise KeyError(step_id)

    async def stop(self) -> None:
        """Terminate immediately and keep whatever was produced."""
        if self.session.is_terminal:
            return

        logger.info("streaming_session_stopping", session_id=self.session.id)
        # Terminal first, so every outstanding token is stale from here on
        self.session = replace(self.session, status=SessionStatus.STOPPED)

        if self._runner is not None and not self._runner.done():
            self._runner.cancel()
            try:
                await self._runner
            except asyncio.CancelledError:
                pass

        if self._active_index is not None:
            task = self._tasks[self._active_index]
            if task.status == TaskStatus.ACTIVE:
                self._tasks[self._active_index] = replace(
                    task,
                    status=TaskStatus.ERROR,
                    token=next(self._tokens),
                    error_message="Stopped before completion",
                    completed_at=utcnow(),
                )
                self._publish(EventBuilder.task_finished(
                    self.session.id, task.id, task.title, TaskStatus.ERROR.value,
                    error="Stopped before completion",
                ))

        await self._finalize(SessionStatus.STOPPED)

    async def retry_save(self) -> bool:
        """Re-attempt persistence after a PersistenceFailure."""
        if self.session.status != SessionStatus.ERROR or self._final_status is None:
            raise RuntimeError(f"Session {self.session.id} has no failed save to retry")

        self.session = replace(self.session, status=self._final_status, error_message=None)
        saved = await self._persist()
        if saved:
            self._publish(EventBuilder.session_finished(
                self.session.id, self.session.status.value, self.session.progress,
            ))
            await self._notify(self._on_complete, self.session.id)
        await self._drain_events()
        return saved

    async def wait_for_completion(self, timeout: Optional[float] = None) -> SessionState:
        await asyncio.wait_for(self._done.wait(), timeout=timeout)
        return self.session

    async def close(self) -> None:
        """Stop if still running and release the event publisher."""
        await self.stop()
        await self._drain_events()

    # ==========================================================================
    # Driving
    # ==========================================================================

    async def _run(self) -> None:
        index: Optional[int] = 0
        while index is not None:
            await self._drive_task(index)
            index = self._advance(index)
        await self._finalize(SessionStatus.COMPLETED)

    def _advance(self, index: int) -> Optional[int]:
        """Activate the next task, or return None when every task is terminal."""
        next_index = index + 1
        if next_index >= len(self._tasks):
            self._active_index = None
            return None
        self._activate(next_index)
        return next_index

    def _activate(self, index: int) -> None:
        task = replace(
            self._tasks[index],
            status=TaskStatus.ACTIVE,
            token=next(self._tokens),
            started_at=utcnow(),
        )
        self._tasks[index] = task
        self._active_index = index
        self._log_insight(task.agent, f"Starting {task.title.lower()}...", "start", task.id)
        self._publish(EventBuilder.task_started(
            self.session.id, task.id, task.title, task.agent, task.position,
        ))
        logger.info(
            "streaming_task_started",
            session_id=self.session.id,
            task_id=task.id,
            token=task.token,
        )

    async def _drive_task(self, index: int) -> None:
        task = self._tasks[index]
        token = task.token
        deadline = TaskDeadline(self.config.task_timeout, self._gate)

        try:
            try:
                outcome = await deadline.run(self.pipeline.produce(
                    task,
                    self.session.request_text,
                    self.session.database_type,
                    on_reasoning=partial(self._record_reasoning, task.id, token),
                    on_insight=partial(self._pipeline_insight, task.id, token),
                ))
            except GenerationTimeout as e:
                self._force_complete(index, e)
                return

            self._write_content(index, outcome.content, outcome.tier)
            simulator = RevealSimulator(
                task_id=task.id,
                token=token,
                source=self._buffers[task.id].clean,
                gate=self._gate,
                rate=lambda: self._reveal_rate,
                is_current=partial(self._is_current, task.id),
                tick_hz=self.config.tick_hz,
                poll_interval=self.config.poll_interval,
            )
            deadline.start_reveal()
            try:
                await deadline.run(self._consume(simulator))
            except GenerationTimeout as e:
                self._invalidate(index)
                self._log_insight(
                    task.agent,
                    f"{task.title} reveal exceeded {e.seconds:g}s; showing the rest at once",
                    "timeout",
                    task.id,
                )
                self._flush(index)

            self._complete(index)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("streaming_task_failed", session_id=self.session.id, task_id=task.id)
            self._fail(index, e)

    async def _consume(self, simulator: RevealSimulator) -> None:
        async for chunk in simulator.stream():
            self._apply_chunk(chunk)

    def _apply_chunk(self, chunk: RevealChunk) -> None:
        if not self._is_current(chunk.task_id, chunk.token):
            return
        index = self._active_index
        disclosed = self._buffers[chunk.task_id].reveal_to(chunk.cursor)
        if not disclosed:
            return

        before = self._tasks[index].progress
        task = self._tasks[index].with_progress(chunk.progress)
        self._tasks[index] = task
        self._update_session_progress()

        self._publish(EventBuilder.content_revealed(
            self.session.id, task.id, disclosed, chunk.cursor, chunk.length,
        ))
        if int(task.progress) != int(before):
            self._publish(EventBuilder.task_progress(
                self.session.id, task.id, round(task.progress, 2), round(self.session.progress, 2),
            ))

    # ==========================================================================
    # Task Transitions
    # ==========================================================================

    def _is_current(self, task_id: str, token: int) -> bool:
        if self.session.is_terminal or self._active_index is None:
            return False
        task = self._tasks[self._active_index]
        return task.id == task_id and task.token == token and task.status == TaskStatus.ACTIVE

    def _invalidate(self, index: int) -> None:
        task = self._tasks[index]
        self._tasks[index] = replace(task, token=next(self._tokens))
        logger.info(
            "streaming_token_invalidated",
            session_id=self.session.id,
            task_id=task.id,
            stale_token=task.token,
        )

    def _write_content(self, index: int, raw: str, tier: ContentTier) -> None:
        task = self._tasks[index]
        clean = self.normalizer.normalize(raw)
        self._buffers[task.id].write(raw, clean)
        self._tasks[index] = replace(task, tier=tier)

    def _flush(self, index: int) -> None:
        task = self._tasks[index]
        buffer = self._buffers[task.id]
        disclosed = buffer.reveal_all()
        if disclosed:
            self._publish(EventBuilder.content_revealed(
                self.session.id, task.id, disclosed, buffer.cursor, len(buffer.clean),
            ))

    def _force_complete(self, index: int, error: GenerationTimeout) -> None:
        task = self._tasks[index]
        self._invalidate(index)
        logger.warning(
            "streaming_task_timeout",
            session_id=self.session.id,
            task_id=task.id,
            seconds=error.seconds,
        )
        self._write_content(index, self.pipeline.minimal(task, self.session.database_type), ContentTier.MINIMAL)
        self._log_insight(
            task.agent,
            f"{task.title} timed out after {error.seconds:g}s; using baseline content",
            "timeout",
            task.id,
        )
        self._flush(index)
        self._complete(index)

    def _complete(self, index: int) -> None:
        task = self._tasks[index].with_progress(100.0)
        task = replace(task, status=TaskStatus.COMPLETED, completed_at=utcnow())
        self._tasks[index] = task
        self._update_session_progress()
        self._log_insight(task.agent, f"{task.title} completed successfully!", "completion", task.id)
        self._publish(EventBuilder.task_finished(
            self.session.id, task.id, task.title, TaskStatus.COMPLETED.value,
            tier=task.tier.value if task.tier else None,
        ))
        logger.info(
            "streaming_task_completed",
            session_id=self.session.id,
            task_id=task.id,
            tier=task.tier.value if task.tier else None,
        )

    def _fail(self, index: int, error: Exception) -> None:
        task = self._tasks[index]
        buffer = self._buffers[task.id]
        if not buffer.is_written:
            self._write_content(index, self.pipeline.minimal(task, self.session.database_type), ContentTier.MINIMAL)
        self._flush(index)

        task = replace(
            self._tasks[index],
            status=TaskStatus.ERROR,
            token=next(self._tokens),
            error_message=str(error),
            completed_at=utcnow(),
        )
        self._tasks[index] = task
        self._log_insight(task.agent, f"{task.title} failed: {error}", "error", task.id)
        self._publish(EventBuilder.task_finished(
            self.session.id, task.id, task.title, TaskStatus.ERROR.value, error=str(error),
        ))

    def _update_session_progress(self) -> None:
        self.session = replace(self.session, progress=self.total_progress)

    # ==========================================================================
    # Narrative Streams
    # ==========================================================================

    def _record_reasoning(self, task_id: str, token: int, update: Union[ReasoningUpdate, str]) -> None:
        if not self._is_current(task_id, token):
            logger.debug("stale_reasoning_discarded", session_id=self.session.id, task_id=task_id, token=token)
            return
        if isinstance(update, str):
            update = ReasoningUpdate(update)
        step = ReasoningStep(
            task_id=task_id,
            text=update.text,
            confidence=max(0.0, min(1.0, update.confidence)),
        )
        self._reasoning.append(step)
        self._publish(EventBuilder.reasoning_step(
            self.session.id, task_id, step.id, step.text, step.confidence,
        ))

    def _pipeline_insight(self, task_id: str, token: int, message: str, kind: str) -> None:
        if not self._is_current(task_id, token):
            return
        self._log_insight(self.get_task(task_id).agent, message, kind, task_id)

    def _log_insight(self, agent: str, message: str, kind: str, task_id: Optional[str] = None) -> None:
        entry = InsightLogEntry(agent=agent, message=message, kind=kind, task_id=task_id)
        self._insights.append(entry)
        self._publish(EventBuilder.insight(self.session.id, agent, message, kind, task_id))

    # ==========================================================================
    # Finalization
    # ==========================================================================

    async def _finalize(self, status: SessionStatus) -> None:
        if self._finalized:
            return
        self._finalized = True
        self._active_index = None
        self.session = replace(
            self.session,
            status=status,
            progress=self.total_progress,
            completed_at=utcnow(),
        )

        if status == SessionStatus.COMPLETED:
            self._log_insight(COACH_AGENT, "Database design complete. All stages finished.", "completion")
        else:
            self._log_insight(COACH_AGENT, "Generation stopped. Partial results were kept.", "info")

        logger.info(
            "streaming_session_finished",
            session_id=self.session.id,
            status=status.value,
            progress=round(self.session.progress, 2),
        )

        saved = await self._persist()
        if saved:
            self._publish(EventBuilder.session_finished(
                self.session.id, self.session.status.value, self.session.progress,
            ))
        await self._drain_events()
        self._done.set()
        if saved:
            await self._notify(self._on_complete, self.session.id)

    async def _persist(self) -> bool:
        if self.store is None or self._started_at is None:
            return True

        snapshot = self.snapshot()
        try:
            await self.store.save(snapshot)
        except PersistenceFailure as e:
            self._final_status = self.session.status
            self.session = replace(self.session, status=SessionStatus.ERROR, error_message=str(e))
            self._log_insight(COACH_AGENT, f"Results could not be saved: {e.cause}", "error")
            self._publish(EventBuilder.session_finished(
                self.session.id, SessionStatus.ERROR.value, self.session.progress, error=str(e),
            ))
            await self._notify(self._on_error, str(e))
            return False

        self._final_status = None
        self._publish(EventBuilder.session_saved(self.session.id, snapshot.title))
        return True

    async def _notify(self, callback: Optional[Notifier], argument: str) -> None:
        if callback is None:
            return
        try:
            result = callback(argument)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("streaming_callback_failed", session_id=self.session.id)

    # ==========================================================================
    # Event Publishing
    # ==========================================================================

    def _publish(self, event: StreamEvent) -> None:
        if self._emit_event is None:
            return
        self._outbox.put_nowait(event)
        if self._publisher is None or self._publisher.done():
            self._publisher = asyncio.create_task(self._publish_loop())

    async def _publish_loop(self) -> None:
        while True:
            event = await self._outbox.get()
            if event is None:
                return
            try:
                await self._emit_event(event)
            except Exception as e:
                logger.warning(
                    "streaming_event_emit_failed",
                    session_id=self.session.id,
                    event_type=event.event_type.value,
                    error=str(e),
                )

    async def _drain_events(self) -> None:
        if self._publisher is None or self._publisher.done():
            return
        self._outbox.put_nowait(None)
        await self._publisher
        self._publisher = None

    def _clamp(self, rate: int) -> int:
        return clamp_rate(rate, self.config.rate_min, self.config.rate_max)
