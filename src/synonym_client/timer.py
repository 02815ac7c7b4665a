# synonym_client/timer.py
"""
Local countdowns anchored to an absolute epoch supplied by the game process.

The remaining time is recomputed from the wall clock on every sample, never
decremented, so throttled or late ticks correct themselves instead of
accumulating drift.
"""
from __future__ import annotations

import asyncio
import math
import time
from typing import Callable, Optional

from .logger import logger

Clock = Callable[[], float]

# Anything below this is taken to be epoch seconds rather than milliseconds.
_MS_THRESHOLD = 1e12


def normalize_epoch_ms(value: float) -> int:
    """Return an epoch timestamp in milliseconds, accepting seconds or milliseconds."""
    if value < _MS_THRESHOLD:
        return int(round(value * 1000))
    return int(value)


def _running_loop() -> Optional[asyncio.AbstractEventLoop]:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


def wall_clock_ms() -> float:
    return time.time() * 1000


def format_countdown(remaining_ms: int) -> str:
    if remaining_ms <= 0:
        return "Game Starting..."
    return f"Starting in {math.ceil(remaining_ms / 1000)}s"


class CountdownTimer:
    """Samples `anchor - now` for one anchor at a time and signals expiry once."""

    def __init__(self, clock: Clock = wall_clock_ms, tick_interval: float = 1.0, autorun: bool = True):
        self._clock = clock
        self.tick_interval = tick_interval
        # Without autorun the owner drives the timer through `sample()`.
        self.autorun = autorun
        self.anchor_ms: Optional[int] = None
        self.remaining: Optional[int] = None
        self.expired = False
        self._generation = 0
        self._on_tick: Optional[Callable[[int], None]] = None
        self._on_expire: Optional[Callable[[], None]] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self.anchor_ms is not None and not self.expired

    def start(
        self,
        anchor: float,
        on_tick: Optional[Callable[[int], None]] = None,
        on_expire: Optional[Callable[[], None]] = None,
    ) -> int:
        """
        Replaces any running countdown with one ending at `anchor`.

        Args:
            anchor: Epoch seconds or milliseconds.
            on_tick: Called with the remaining milliseconds on every sample.
            on_expire: Called exactly once, when remaining first reaches zero.

        Returns:
            The remaining milliseconds at start.
        """
        self.cancel()
        self._generation += 1
        generation = self._generation
        self.anchor_ms = normalize_epoch_ms(anchor)
        self.expired = False
        self._on_tick = on_tick
        self._on_expire = on_expire
        logger.debug(f"Timer started for anchor {self.anchor_ms}")
        remaining = self.sample()
        loop = _running_loop() if self.autorun else None
        # An expiry callback may already have restarted the timer with a new anchor.
        if loop is not None and not self.expired and generation == self._generation:
            self._task = loop.create_task(self._run(generation))
        return remaining

    def sample(self, now: Optional[float] = None) -> int:
        """Recomputes the remaining time from the clock, firing expiry on the first zero."""
        if self.anchor_ms is None:
            return 0
        if self.expired:
            return 0
        now = self._clock() if now is None else now
        remaining = max(0, int(self.anchor_ms - now))
        self.remaining = remaining
        if self._on_tick:
            self._on_tick(remaining)
        if remaining == 0:
            self.expired = True
            callback, self._on_expire = self._on_expire, None
            logger.debug(f"Timer for anchor {self.anchor_ms} expired")
            if callback:
                callback()
        return remaining

    def cancel(self):
        self._generation += 1
        loop = _running_loop()
        current = asyncio.current_task() if loop is not None else None
        if self._task and not self._task.done() and self._task is not current:
            self._task.cancel()
        self._task = None
        self._on_tick = None
        self._on_expire = None

    def reset(self):
        self.cancel()
        self.anchor_ms = None
        self.remaining = None
        self.expired = False

    async def _run(self, generation: int):
        while generation == self._generation and not self.expired:
            wait_s = min(self.tick_interval, (self.remaining or 0) / 1000)
            await asyncio.sleep(max(wait_s, 0.001))
            if generation != self._generation:
                return
            self.sample()
