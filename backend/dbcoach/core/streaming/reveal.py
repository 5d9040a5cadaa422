"""
DB Coach Streaming - Character Reveal Simulator
===============================================

Discloses already-produced content a few characters at a time so the
presentation layer can show it "typing". The simulator is an async
generator of RevealChunk messages; the orchestrator consumes them and
applies each one to the task's content buffer.

Characters per tick is max(1, rate // tick_hz) and ticks are spaced
chars_per_tick / rate seconds apart, so the configured rate holds for
any value in range. A closed PlaybackGate suspends the loop (polling)
without losing the cursor. A stale generation token ends it silently.
"""

import asyncio
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Optional

from dbcoach.core.config import settings


def clamp_rate(rate: int, minimum: Optional[int] = None, maximum: Optional[int] = None) -> int:
    minimum = settings.REVEAL_RATE_MIN if minimum is None else minimum
    maximum = settings.REVEAL_RATE_MAX if maximum is None else maximum
    return max(minimum, min(maximum, int(rate)))


# ==========================================================================
# Playback Gate
# ==========================================================================

class PlaybackGate:
    """
    Session-wide play/pause flag.

    Also keeps the total time spent paused so the reveal part of a task
    deadline can be measured in unpaused time.
    """

    def __init__(self, playing: bool = True, clock: Callable[[], float] = None):
        self._clock = clock or (lambda: asyncio.get_running_loop().time())
        self._playing = playing
        self._paused_total = 0.0
        self._paused_since: Optional[float] = None if playing else self._clock()

    @property
    def is_playing(self) -> bool:
        return self._playing

    def pause(self) -> bool:
        """Close the gate. Returns False if it was already closed."""
        if not self._playing:
            return False
        self._playing = False
        self._paused_since = self._clock()
        return True

    def resume(self) -> bool:
        """Open the gate. Returns False if it was already open."""
        if self._playing:
            return False
        self._playing = True
        if self._paused_since is not None:
            self._paused_total += self._clock() - self._paused_since
        self._paused_since = None
        return True

    def paused_seconds(self) -> float:
        total = self._paused_total
        if self._paused_since is not None:
            total += self._clock() - self._paused_since
        return total

    def now(self) -> float:
        return self._clock()


# ==========================================================================
# Reveal Simulator
# ==========================================================================

@dataclass(frozen=True)
class RevealChunk:
    task_id: str
    token: int
    text: str
    cursor: int
    length: int

    @property
    def progress(self) -> float:
        if self.length == 0:
            return 100.0
        return self.cursor / self.length * 100.0


class RevealSimulator:
    """Reveals `source` for one task under one generation token."""

    def __init__(
        self,
        task_id: str,
        token: int,
        source: str,
        gate: PlaybackGate,
        rate: Callable[[], int],
        is_current: Callable[[int], bool],
        tick_hz: Optional[int] = None,
        poll_interval: Optional[float] = None,
        cursor: int = 0,
    ):
        self.task_id = task_id
        self.token = token
        self.source = source
        self.cursor = cursor
        self._gate = gate
        self._rate = rate
        self._is_current = is_current
        self.tick_hz = tick_hz or settings.REVEAL_TICK_HZ
        self.poll_interval = poll_interval if poll_interval is not None else settings.PAUSE_POLL_SECONDS

    @property
    def length(self) -> int:
        return len(self.source)

    @property
    def finished(self) -> bool:
        return self.cursor >= self.length

    def chars_per_tick(self, rate: int) -> int:
        return max(1, rate // self.tick_hz)

    async def stream(self) -> AsyncIterator[RevealChunk]:
        while not self.finished:
            if not self._is_current(self.token):
                return

            if not self._gate.is_playing:
                await asyncio.sleep(self.poll_interval)
                continue

            rate = max(1, int(self._rate()))
            step = self.chars_per_tick(rate)
            end = min(self.length, self.cursor + step)
            chunk = RevealChunk(
                task_id=self.task_id,
                token=self.token,
                text=self.source[self.cursor:end],
                cursor=end,
                length=self.length,
            )
            self.cursor = end
            yield chunk

            if not self.finished:
                await asyncio.sleep(step / rate)
