"""Countdown state machine for a round: idle -> running <-> paused -> expired.

Remaining time is always recomputed from the wall clock as
``duration - (now - start - paused_total)``. It is never decremented, so a
missed or late tick cannot make the timer drift. The periodic tick only
refreshes the values for display and notices expiry.
"""

from __future__ import annotations

import asyncio
import math
import time
from enum import Enum
from typing import Callable, Optional

DEFAULT_TICK_INTERVAL = 0.1  # seconds; display smoothness only


class TimerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    EXPIRED = "expired"


class RoundTimer:
    def __init__(
        self,
        duration_sec: float,
        on_expire: Optional[Callable[[], None]] = None,
        on_tick: Optional[Callable[[float], None]] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        tick_interval: float = DEFAULT_TICK_INTERVAL,
    ) -> None:
        if duration_sec <= 0:
            raise ValueError("duration_sec must be positive")
        self.duration = float(duration_sec)
        self.on_expire = on_expire
        self.on_tick = on_tick
        self._clock = clock
        self.tick_interval = tick_interval

        self.state = TimerState.IDLE
        self.remaining_time = self.duration
        self.elapsed_time = 0.0
        self._start_at: Optional[float] = None
        self._pause_at: Optional[float] = None
        self._paused_total = 0.0
        self._ticker: Optional[asyncio.Task] = None

    @property
    def progress(self) -> float:
        return min(1.0, max(0.0, self.elapsed_time / self.duration))

    def start(self) -> bool:
        if self.state is not TimerState.IDLE:
            return False
        self._start_at = self._clock()
        self._pause_at = None
        self._paused_total = 0.0
        self.state = TimerState.RUNNING
        self._start_ticker()
        return True

    def pause(self) -> bool:
        if self.state is not TimerState.RUNNING:
            return False
        # Freeze the displayed values at the moment of pausing
        now = self._clock()
        self._recompute(now)
        if self.remaining_time <= 0:
            # The deadline passed before the next tick noticed it
            self._expire()
            return False
        self._pause_at = now
        self.state = TimerState.PAUSED
        self._stop_ticker()
        return True

    def resume(self) -> bool:
        if self.state is not TimerState.PAUSED:
            return False
        if self._pause_at is not None:
            self._paused_total += self._clock() - self._pause_at
        self._pause_at = None
        self.state = TimerState.RUNNING
        self._start_ticker()
        return True

    def reset(self) -> None:
        self._stop_ticker()
        self.state = TimerState.IDLE
        self.remaining_time = self.duration
        self.elapsed_time = 0.0
        self._start_at = None
        self._pause_at = None
        self._paused_total = 0.0

    def close(self) -> None:
        """Stop ticking without changing state; call on teardown."""
        self._stop_ticker()

    def tick(self) -> float:
        if self.state is not TimerState.RUNNING:
            return self.remaining_time
        self._recompute(self._clock())
        if self.on_tick is not None:
            self.on_tick(self.remaining_time)
        if self.remaining_time <= 0:
            self._expire()
        return self.remaining_time

    def _recompute(self, now: float) -> None:
        if self._start_at is None:
            return
        elapsed = now - self._start_at - self._paused_total
        self.elapsed_time = min(max(elapsed, 0.0), self.duration)
        self.remaining_time = max(0.0, self.duration - elapsed)

    def _expire(self) -> None:
        self.state = TimerState.EXPIRED
        self._stop_ticker()
        if self.on_expire is not None:
            self.on_expire()

    def _start_ticker(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No event loop: the owner calls tick() itself
            return
        self._ticker = loop.create_task(self._run())

    def _stop_ticker(self) -> None:
        task, self._ticker = self._ticker, None
        if task is None or task.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        # Expiry fires from inside the ticker; let that task finish on its own
        if task is not current:
            task.cancel()

    async def _run(self) -> None:
        while self.state is TimerState.RUNNING:
            await asyncio.sleep(self.tick_interval)
            self.tick()


def format_time(seconds: float) -> str:
    seconds = max(seconds, 0)
    return f"{int(seconds // 60):02d}:{int(seconds % 60):02d}"


def format_time_smooth(seconds: float) -> str:
    seconds = max(seconds, 0)
    whole = math.floor(seconds % 60)
    hundredths = math.floor((seconds % 60 - whole) * 100)
    return f"{int(seconds // 60):02d}:{whole:02d}.{hundredths:02d}"


def format_duration(milliseconds: int) -> str:
    if milliseconds < 1000:
        return f"{milliseconds}ms"
    seconds, remaining_ms = divmod(int(milliseconds), 1000)
    if seconds < 60:
        return f"{seconds}.{remaining_ms:03d}s"
    minutes, seconds = divmod(seconds, 60)
    return f"{minutes}m {seconds}s"


def time_remaining_percentage(remaining: float, total: float) -> float:
    if total <= 0:
        return 0.0
    return max(0.0, min(100.0, remaining / total * 100))
