"""Deadline primitive and the asyncio loop that drives timer state machines."""

import asyncio
import logging
import time
from typing import Callable, List, Optional, Protocol

logger = logging.getLogger(__name__)


class TimerMachine(Protocol):
    def next_deadline(self) -> Optional[float]:
        ...

    def tick(self, now: float) -> None:
        ...


class Deadline:
    """A single armed point in time on an injected clock."""

    def __init__(self):
        self.at: Optional[float] = None

    @property
    def armed(self) -> bool:
        return self.at is not None

    def arm(self, delay: float, now: float) -> None:
        self.at = now + max(0.0, delay)

    def cancel(self) -> None:
        self.at = None

    def due(self, now: float) -> bool:
        return self.at is not None and now >= self.at

    def remaining(self, now: float) -> Optional[float]:
        if self.at is None:
            return None
        return max(0.0, self.at - now)


class TimerLoop:
    """
    Single task that ticks every registered machine at its next deadline.

    Machines call ``wake()`` (via the session) whenever they re-arm so the
    loop recomputes how long to sleep.
    """

    def __init__(
        self,
        machines: List[TimerMachine],
        clock: Callable[[], float] = time.monotonic,
        idle_poll_seconds: float = 1.0,
    ):
        self.machines = machines
        self.clock = clock
        self.idle_poll_seconds = idle_poll_seconds
        self._wake = asyncio.Event()
        self._running = False

    def wake(self) -> None:
        self._wake.set()

    def _sleep_seconds(self) -> float:
        now = self.clock()
        deadlines = [d for d in (m.next_deadline() for m in self.machines) if d is not None]
        if not deadlines:
            return self.idle_poll_seconds
        return max(0.0, min(deadlines) - now)

    def tick_all(self, now: Optional[float] = None) -> None:
        now = self.clock() if now is None else now
        for machine in self.machines:
            try:
                machine.tick(now)
            except Exception as e:
                logger.error(f"Timer machine {machine.__class__.__name__} failed: {e}")

    async def run(self) -> None:
        self._running = True
        logger.info("Timer loop started")
        while self._running:
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self._sleep_seconds())
            except asyncio.TimeoutError:
                pass
            self._wake.clear()
            self.tick_all()
        logger.info("Timer loop stopped")

    def stop(self) -> None:
        self._running = False
        self._wake.set()
