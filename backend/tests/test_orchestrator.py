"""
Streaming Orchestrator Tests
============================

End-to-end tests of the task state machine: normal runs, fallbacks,
hard ceilings, pause/resume, stop, stale continuations and persistence.
"""

import asyncio
from collections import defaultdict
from typing import Dict, List

import pytest

from conftest import FailingBackend, HangingBackend, StaticBackend, events_of
from dbcoach.core.live.events import EventType, StreamEvent
from dbcoach.core.models import ContentTier, DatabaseType, SessionStatus, TaskStatus
from dbcoach.core.streaming.generation import ContentGenerationPipeline, GenerationBackend, GenerationTimeout
from dbcoach.core.streaming.orchestrator import OrchestratorConfig, TaskDeadline
from dbcoach.core.streaming.persistence import PersistenceFailure
from dbcoach.core.streaming.reveal import PlaybackGate
from dbcoach.core.streaming.state import DEFAULT_STAGES

TASK_IDS = [stage.key for stage in DEFAULT_STAGES]


# ==========================================================================
# Fixtures
# ==========================================================================

class LateBackend(GenerationBackend):
    """Keeps its reasoning callbacks so tests can fire them late."""

    def __init__(self):
        self.callbacks = []

    async def generate(self, request_text, database_type, on_reasoning=None):
        self.callbacks.append(on_reasoning)
        return "Entities: users, orders and order items with timestamps on each record."


class FlakyStore:
    """Conversation store stand-in that fails the first N saves."""

    def __init__(self, failures: int = 1):
        self.failures = failures
        self.saved = []

    async def save(self, snapshot):
        if self.failures > 0:
            self.failures -= 1
            raise PersistenceFailure(snapshot.session.id, RuntimeError("disk full"))
        self.saved.append(snapshot)
        return snapshot


class ExplodingPipeline(ContentGenerationPipeline):
    """Raises for one stage, behaves normally for the rest."""

    def __init__(self, backend, broken_task: str):
        super().__init__(backend)
        self.broken_task = broken_task

    async def produce(self, task, *args, **kwargs):
        if task.id == self.broken_task:
            raise ValueError("pipeline exploded")
        return await super().produce(task, *args, **kwargs)


async def run_to_end(orchestrator, timeout: float = 10):
    await orchestrator.start()
    return await orchestrator.wait_for_completion(timeout=timeout)


# ==========================================================================
# Normal Run
# ==========================================================================

class TestNormalRun:
    """Every stage generates, reveals and completes in order."""

    async def test_all_tasks_complete(self, make_orchestrator):
        orchestrator = make_orchestrator(StaticBackend())

        session = await run_to_end(orchestrator)

        assert session.status == SessionStatus.COMPLETED
        assert [t.id for t in orchestrator.tasks] == TASK_IDS
        assert all(t.status == TaskStatus.COMPLETED for t in orchestrator.tasks)
        assert all(t.tier == ContentTier.PRIMARY for t in orchestrator.tasks)
        assert orchestrator.total_progress == 100.0
        assert orchestrator.estimated_remaining_seconds == 0
        assert orchestrator.active_task is None

    async def test_revealed_equals_clean_content(self, make_orchestrator):
        orchestrator = make_orchestrator(StaticBackend())
        await run_to_end(orchestrator)

        for task_id in TASK_IDS:
            buffer = orchestrator.buffer(task_id)
            assert buffer.revealed == buffer.clean
            assert buffer.clean.startswith("```sql")
            assert "[STREAMING]" not in buffer.clean

    async def test_insight_log_narrates_the_run(self, make_orchestrator):
        orchestrator = make_orchestrator(StaticBackend())
        await run_to_end(orchestrator)

        messages = [i.message for i in orchestrator.insights]
        assert messages[0] == "Starting requirements analysis..."
        assert "Schema Design completed successfully!" in messages
        assert messages[-1] == "Database design complete. All stages finished."

    async def test_reasoning_recorded_per_task(self, make_orchestrator):
        orchestrator = make_orchestrator(StaticBackend(reasoning=("Mapping", "Checking")))
        await run_to_end(orchestrator)

        steps = orchestrator.reasoning_steps
        assert len(steps) == 8
        assert [s.task_id for s in steps[::2]] == TASK_IDS

    async def test_start_twice_fails(self, make_orchestrator):
        orchestrator = make_orchestrator(StaticBackend())
        await run_to_end(orchestrator)

        with pytest.raises(RuntimeError):
            await orchestrator.start()


# ==========================================================================
# Event Stream Properties
# ==========================================================================

class TestEventStream:

    async def test_single_active_task_and_monotonic_progress(self, make_orchestrator):
        events: List[StreamEvent] = []
        active_counts: List[int] = []
        orchestrator = None

        async def sink(event: StreamEvent) -> None:
            events.append(event)
            active_counts.append(sum(1 for t in orchestrator.tasks if t.status == TaskStatus.ACTIVE))

        orchestrator = make_orchestrator(StaticBackend(), emit_event=sink)
        await run_to_end(orchestrator)

        assert max(active_counts) == 1

        progress: Dict[str, List[float]] = defaultdict(list)
        for event in events_of(events, EventType.TASK_PROGRESS):
            progress[event.task_id].append(event.progress_percent)
        assert progress
        for values in progress.values():
            assert values == sorted(values)

    async def test_revealed_chunks_rebuild_clean_content(self, make_orchestrator):
        events: List[StreamEvent] = []
        orchestrator = make_orchestrator(StaticBackend(), events=events)
        await run_to_end(orchestrator)

        revealed: Dict[str, str] = defaultdict(str)
        for event in events_of(events, EventType.CONTENT_REVEALED):
            revealed[event.task_id] += event.message

        for task_id in TASK_IDS:
            assert revealed[task_id] == orchestrator.buffer(task_id).clean

    async def test_tasks_start_in_order_and_session_events_bracket_them(self, make_orchestrator):
        events: List[StreamEvent] = []
        orchestrator = make_orchestrator(StaticBackend(), events=events)
        await run_to_end(orchestrator)

        assert events[0].event_type == EventType.SESSION_STARTED
        assert events[-1].event_type == EventType.SESSION_COMPLETED
        assert [e.task_id for e in events_of(events, EventType.TASK_STARTED)] == TASK_IDS


# ==========================================================================
# Fallbacks and Ceilings
# ==========================================================================

class TestFallbacks:

    async def test_failing_backend_uses_templates(self, make_orchestrator):
        orchestrator = make_orchestrator(FailingBackend())

        session = await run_to_end(orchestrator)

        assert session.status == SessionStatus.COMPLETED
        assert all(t.tier == ContentTier.TEMPLATE for t in orchestrator.tasks)
        assert "CREATE TABLE authors" in orchestrator.buffer("schema_design").clean
        assert len([i for i in orchestrator.insights if i.kind == "fallback"]) == 4

    async def test_ceiling_during_generation_forces_minimal_content(self, make_orchestrator, config_factory):
        orchestrator = make_orchestrator(HangingBackend(), config=config_factory(task_timeout=0.1))
        loop = asyncio.get_running_loop()
        started = loop.time()

        session = await run_to_end(orchestrator, timeout=5)

        assert loop.time() - started < 2.0
        assert session.status == SessionStatus.COMPLETED
        assert all(t.tier == ContentTier.MINIMAL for t in orchestrator.tasks)
        assert all(t.status == TaskStatus.COMPLETED for t in orchestrator.tasks)
        assert len([i for i in orchestrator.insights if i.kind == "timeout"]) == 4
        assert orchestrator.revealed("schema_design").startswith("# Schema Design")

    async def test_ceiling_during_reveal_flushes_the_rest(self, make_orchestrator, config_factory):
        # 10 chars/s would need seconds per task; the ceiling cuts it short
        config = config_factory(task_timeout=0.2, reveal_rate=10, tick_hz=10)
        orchestrator = make_orchestrator(StaticBackend(), config=config)

        session = await run_to_end(orchestrator, timeout=5)

        assert session.status == SessionStatus.COMPLETED
        for task_id in TASK_IDS:
            buffer = orchestrator.buffer(task_id)
            assert buffer.revealed == buffer.clean
            assert orchestrator.get_task(task_id).tier == ContentTier.PRIMARY

    async def test_unexpected_task_error_does_not_stop_the_session(self, make_orchestrator):
        pipeline = ExplodingPipeline(StaticBackend(), broken_task="schema_design")
        orchestrator = make_orchestrator(pipeline=pipeline)

        session = await run_to_end(orchestrator)

        broken = orchestrator.get_task("schema_design")
        assert session.status == SessionStatus.COMPLETED
        assert broken.status == TaskStatus.ERROR
        assert broken.error_message == "pipeline exploded"
        assert orchestrator.revealed("schema_design").startswith("# Schema Design")
        assert orchestrator.get_task("quality_assurance").status == TaskStatus.COMPLETED


class TestTaskDeadline:

    async def test_generation_is_timed_on_the_wall_clock(self):
        gate = PlaybackGate()
        deadline = TaskDeadline(0.1, gate)

        gate.pause()
        await asyncio.sleep(0.15)

        assert deadline.remaining() == 0
        with pytest.raises(GenerationTimeout):
            await deadline.run(asyncio.sleep(1))

    async def test_paused_time_during_reveal_is_not_counted(self):
        gate = PlaybackGate()
        deadline = TaskDeadline(0.1, gate)
        deadline.start_reveal()

        gate.pause()
        await asyncio.sleep(0.15)

        assert deadline.remaining() > 0.05
        assert await deadline.run(asyncio.sleep(0, result="done")) == "done"

    async def test_pause_before_reveal_still_counts(self):
        gate = PlaybackGate()
        deadline = TaskDeadline(0.3, gate)

        gate.pause()
        await asyncio.sleep(0.1)
        deadline.start_reveal()
        await asyncio.sleep(0.1)

        assert deadline.elapsed() == pytest.approx(0.1, abs=0.05)


# ==========================================================================
# Playback Controls
# ==========================================================================

class TestPlayback:

    async def test_pause_holds_reveal_but_not_generation(self, make_orchestrator):
        orchestrator = make_orchestrator(StaticBackend(delay=0.01))
        await orchestrator.start()
        assert orchestrator.pause() is True

        await asyncio.sleep(0.2)
        task = orchestrator.active_task
        assert task.id == "requirements_analysis"
        assert orchestrator.buffer(task.id).is_written
        assert orchestrator.revealed(task.id) == ""

        assert orchestrator.play() is True
        session = await orchestrator.wait_for_completion(timeout=5)
        assert session.status == SessionStatus.COMPLETED

    async def test_ceiling_does_not_fire_while_reveal_is_paused(self, make_orchestrator, config_factory):
        orchestrator = make_orchestrator(StaticBackend(), config=config_factory(task_timeout=0.4))
        await orchestrator.start()
        orchestrator.pause()

        await asyncio.sleep(0.7)
        assert orchestrator.active_task.id == "requirements_analysis"

        orchestrator.play()
        await orchestrator.wait_for_completion(timeout=5)
        assert all(t.tier == ContentTier.PRIMARY for t in orchestrator.tasks)
        assert not [i for i in orchestrator.insights if i.kind == "timeout"]

    async def test_ceiling_fires_for_hanging_generation_while_paused(self, make_orchestrator, config_factory):
        orchestrator = make_orchestrator(HangingBackend(), config=config_factory(task_timeout=0.3))
        await orchestrator.start(DEFAULT_STAGES[:1])
        orchestrator.pause()

        await asyncio.sleep(1.0)

        first = orchestrator.get_task("requirements_analysis")
        assert first.status == TaskStatus.COMPLETED
        assert first.tier == ContentTier.MINIMAL
        assert orchestrator.revealed(first.id) == orchestrator.buffer(first.id).clean
        assert [i.task_id for i in orchestrator.insights if i.kind == "timeout"] == [first.id]
        await orchestrator.close()

    async def test_pause_mid_reveal_resumes_from_cursor(self, make_orchestrator, config_factory):
        events: List[StreamEvent] = []
        # 10 characters every 50ms
        config = config_factory(task_timeout=10, reveal_rate=200, tick_hz=20)
        orchestrator = make_orchestrator(StaticBackend(), events=events, config=config)
        task_id = "requirements_analysis"
        await orchestrator.start(DEFAULT_STAGES[:1])

        buffer = orchestrator.buffer(task_id)
        while buffer.cursor == 0:
            await asyncio.sleep(0.005)
        orchestrator.pause()

        await asyncio.sleep(0.05)
        held = buffer.cursor
        assert 0 < held < len(buffer.clean)
        await asyncio.sleep(0.3)
        assert buffer.cursor == held

        orchestrator.play()
        await orchestrator.wait_for_completion(timeout=10)

        chunks = [e.message for e in events_of(events, EventType.CONTENT_REVEALED) if e.task_id == task_id]
        assert "".join(chunks) == buffer.clean
        assert buffer.revealed == buffer.clean

    async def test_reveal_rate_sets_task_duration(self, make_orchestrator, config_factory):
        timeline = []
        loop = asyncio.get_running_loop()

        async def sink(event: StreamEvent) -> None:
            timeline.append((event.event_type, event.task_id, loop.time()))

        # 4 characters every 10ms: 200 characters take ~0.5s
        config = config_factory(task_timeout=10, reveal_rate=400, tick_hz=100)
        orchestrator = make_orchestrator(StaticBackend(content="abcd" * 50), emit_event=sink, config=config)

        await orchestrator.start(DEFAULT_STAGES[:2])
        await orchestrator.wait_for_completion(timeout=10)

        def at(event_type, task_id):
            return next(t for kind, task, t in timeline if kind == event_type and task == task_id)

        first, second = DEFAULT_STAGES[0].key, DEFAULT_STAGES[1].key
        assert len(orchestrator.buffer(first).clean) == 200
        duration = at(EventType.TASK_COMPLETED, first) - at(EventType.TASK_STARTED, first)
        assert 0.4 <= duration < 1.5
        assert at(EventType.TASK_STARTED, second) - at(EventType.TASK_COMPLETED, first) < 0.1

    async def test_reveal_rate_is_clamped(self, make_orchestrator):
        orchestrator = make_orchestrator(StaticBackend(), config=OrchestratorConfig.from_settings())

        assert orchestrator.reveal_rate == 40
        assert orchestrator.set_reveal_rate(5) == 10
        assert orchestrator.set_reveal_rate(5000) == 200

    async def test_playback_rejected_after_completion(self, make_orchestrator):
        orchestrator = make_orchestrator(StaticBackend())
        await run_to_end(orchestrator)

        assert orchestrator.pause() is False
        assert orchestrator.is_playing

    async def test_rate_change_ignored_after_completion(self, make_orchestrator):
        events: List[StreamEvent] = []
        orchestrator = make_orchestrator(StaticBackend(), events=events)
        await run_to_end(orchestrator)
        rate = orchestrator.reveal_rate
        published = len(events)

        assert orchestrator.set_reveal_rate(rate + 50) == rate
        await asyncio.sleep(0.01)

        assert orchestrator.reveal_rate == rate
        assert len(events) == published
        assert not events_of(events, EventType.REVEAL_RATE_CHANGED)

    async def test_toggle_reasoning(self, make_orchestrator):
        orchestrator = make_orchestrator(StaticBackend())
        await run_to_end(orchestrator)
        step = orchestrator.reasoning_steps[0]

        assert orchestrator.toggle_reasoning(step.id).expanded is True
        assert orchestrator.toggle_reasoning(step.id).expanded is False
        with pytest.raises(KeyError):
            orchestrator.toggle_reasoning("missing")


# ==========================================================================
# Stop
# ==========================================================================

class TestStop:

    async def test_stop_during_generation(self, make_orchestrator, conversation_store):
        orchestrator = make_orchestrator(HangingBackend(), store=conversation_store)
        await orchestrator.start()
        await asyncio.sleep(0.05)

        await orchestrator.stop()

        assert orchestrator.session.status == SessionStatus.STOPPED
        first, *rest = orchestrator.tasks
        assert first.status == TaskStatus.ERROR
        assert first.error_message == "Stopped before completion"
        assert all(t.status == TaskStatus.PENDING for t in rest)
        assert orchestrator.active_task is None
        assert orchestrator.insights[-1].message == "Generation stopped. Partial results were kept."

        saved = await conversation_store.get(orchestrator.session_id)
        assert saved.status == SessionStatus.STOPPED
        assert saved.generated_content == {}

    async def test_stop_during_reveal_keeps_revealed_prefix(self, make_orchestrator, config_factory, conversation_store):
        config = config_factory(reveal_rate=20, tick_hz=10)
        orchestrator = make_orchestrator(StaticBackend(), config=config, store=conversation_store)
        await orchestrator.start()
        await asyncio.sleep(0.35)

        await orchestrator.stop()

        buffer = orchestrator.buffer("requirements_analysis")
        assert 0 < len(buffer.revealed) < len(buffer.clean)
        assert buffer.clean.startswith(buffer.revealed)

        saved = await conversation_store.get(orchestrator.session_id)
        assert saved.generated_content == {"requirements_analysis": buffer.revealed}

    async def test_stop_is_idempotent_and_blocks_late_chunks(self, make_orchestrator, config_factory):
        orchestrator = make_orchestrator(StaticBackend(), config=config_factory(reveal_rate=20, tick_hz=10))
        await orchestrator.start()
        await asyncio.sleep(0.25)
        await orchestrator.stop()
        revealed = orchestrator.revealed("requirements_analysis")

        await orchestrator.stop()
        await asyncio.sleep(0.2)

        assert orchestrator.revealed("requirements_analysis") == revealed
        assert orchestrator.session.status == SessionStatus.STOPPED


# ==========================================================================
# Stale Continuations
# ==========================================================================

class TestStaleTokens:

    async def test_late_reasoning_is_discarded(self, make_orchestrator):
        backend = LateBackend()
        orchestrator = make_orchestrator(backend)
        await run_to_end(orchestrator)
        recorded = len(orchestrator.reasoning_steps)

        for callback in backend.callbacks:
            callback("late thought")

        assert len(orchestrator.reasoning_steps) == recorded

    async def test_reasoning_accepted_only_while_task_is_current(self, make_orchestrator):
        backend = LateBackend()
        orchestrator = make_orchestrator(backend, config=OrchestratorConfig(
            task_timeout=5, reveal_rate=10, rate_min=1, rate_max=100, tick_hz=10, poll_interval=0.01,
        ))
        await orchestrator.start()
        while len(backend.callbacks) < 1:
            await asyncio.sleep(0.01)
        first_callback = backend.callbacks[0]

        first_callback("still thinking about requirements")
        assert len(orchestrator.reasoning_steps) == 1

        await orchestrator.stop()
        first_callback("after stop")
        assert len(orchestrator.reasoning_steps) == 1


# ==========================================================================
# Persistence
# ==========================================================================

class TestPersistence:

    async def test_completed_session_is_saved(self, make_orchestrator, conversation_store):
        orchestrator = make_orchestrator(StaticBackend(), store=conversation_store)
        await run_to_end(orchestrator)

        saved = await conversation_store.get(orchestrator.session_id)
        assert saved.status == SessionStatus.COMPLETED
        assert saved.title == "Blog Management (SQL)"
        assert set(saved.generated_content) == set(TASK_IDS)
        assert saved.fallback_tiers == {task_id: "primary" for task_id in TASK_IDS}
        assert saved.total_insights == len(orchestrator.insights)

    async def test_save_failure_then_retry(self, make_orchestrator):
        store = FlakyStore(failures=1)
        errors: List[str] = []
        completions: List[str] = []
        orchestrator = make_orchestrator(
            StaticBackend(),
            store=store,
            on_error=errors.append,
            on_complete=completions.append,
        )

        session = await run_to_end(orchestrator)

        assert session.status == SessionStatus.ERROR
        assert "disk full" in session.error_message
        assert len(errors) == 1
        assert completions == []

        assert await orchestrator.retry_save() is True
        assert orchestrator.session.status == SessionStatus.COMPLETED
        assert len(store.saved) == 1
        assert completions == [orchestrator.session_id]

        with pytest.raises(RuntimeError):
            await orchestrator.retry_save()

    async def test_async_completion_callback(self, make_orchestrator):
        done = asyncio.Event()

        async def on_complete(session_id: str) -> None:
            done.set()

        orchestrator = make_orchestrator(StaticBackend(), on_complete=on_complete)
        await run_to_end(orchestrator)

        assert done.is_set()

    async def test_estimates_before_progress(self, make_orchestrator):
        orchestrator = make_orchestrator(HangingBackend(), database_type=DatabaseType.NOSQL)
        await orchestrator.start()

        assert orchestrator.active_task.id == "requirements_analysis"
        assert orchestrator.estimated_remaining_seconds == 70
        assert orchestrator.total_progress == 0

        await orchestrator.close()
