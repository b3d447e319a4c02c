"""Idle re-engagement scheduler: idle -> watching -> countdown -> engaging -> idle."""

import logging
import time
from enum import Enum
from typing import Callable, List, Optional

from ..config import settings
from .busy_state import BusyState
from .timers import Deadline

logger = logging.getLogger(__name__)

# Watch periods longer than this spend their first part in the "waiting" sub-phase
LONG_WATCH_SECONDS = 10.0
WAITING_SHARE = 0.6


class ReengagementPhase(str, Enum):
    IDLE = "idle"
    WATCHING = "watching"
    COUNTDOWN = "countdown"
    ENGAGING = "engaging"


class ReengagementScheduler:
    """
    Timer state machine proposing a follow-up turn after user idleness.

    All transitions take an explicit ``now`` so tests can drive virtual time;
    ``tick`` advances the machine once its deadline passes.
    """

    def __init__(
        self,
        busy: BusyState,
        can_schedule: Callable[[], bool],
        on_trigger: Callable[[str], None],
        clock: Callable[[], float] = time.monotonic,
        interval_seconds: Optional[float] = None,
        countdown_seconds: Optional[float] = None,
        activity_grace_seconds: Optional[float] = None,
        on_change: Optional[Callable[[], None]] = None,
    ):
        self.busy = busy
        self.can_schedule = can_schedule
        self.on_trigger = on_trigger
        self.clock = clock
        self.interval_seconds = interval_seconds or settings.reengagement_default_seconds
        self.countdown_seconds = (
            countdown_seconds if countdown_seconds is not None
            else settings.reengagement_countdown_seconds
        )
        self.activity_grace_seconds = (
            activity_grace_seconds if activity_grace_seconds is not None
            else settings.user_activity_grace_seconds
        )
        self.on_change = on_change
        self.enabled = True

        self.phase = ReengagementPhase.IDLE
        self.reason: Optional[str] = None
        self.deadline = Deadline()
        self._waiting_until: Optional[float] = None
        self._user_active_until: Optional[float] = None
        self._tokens: List[str] = []

    def _now(self, now: Optional[float]) -> float:
        return self.clock() if now is None else now

    def _changed(self) -> None:
        if self.on_change:
            self.on_change()

    def _release_tokens(self) -> None:
        tokens, self._tokens = self._tokens, []
        for token in tokens:
            self.busy.release(token)

    def _hold(self, tag: str) -> None:
        self._release_tokens()
        self._tokens.append(self.busy.acquire(f"{tag}:{self.reason}"))

    def set_interval(self, seconds: float) -> None:
        if seconds < settings.reengagement_min_seconds:
            raise ValueError(f"interval must be at least {settings.reengagement_min_seconds}s")
        self.interval_seconds = seconds

    def user_active(self, now: Optional[float] = None) -> bool:
        now = self._now(now)
        return self._user_active_until is not None and now < self._user_active_until

    def sub_phase(self, now: Optional[float] = None) -> str:
        """Phase name including the ``waiting`` part of a long watch."""
        if (
            self.phase == ReengagementPhase.WATCHING
            and self._waiting_until is not None
            and self._now(now) < self._waiting_until
        ):
            return "waiting"
        return self.phase.value

    def schedule(self, reason: str, delay: Optional[float] = None, now: Optional[float] = None) -> bool:
        """
        Start watching for idleness.

        Returns:
            False if scheduling is disabled or currently blocked
        """
        now = self._now(now)
        if not self.enabled or self.user_active(now) or not self.can_schedule():
            return False
        delay = self.interval_seconds if delay is None else delay

        self.reason = reason
        self.phase = ReengagementPhase.WATCHING
        self.deadline.arm(delay, now)
        self._waiting_until = now + delay * WAITING_SHARE if delay > LONG_WATCH_SECONDS else None
        self._hold("reengage-wait")
        logger.debug(f"Re-engagement watching for {delay}s ({reason})")
        self._changed()
        return True

    def cancel(self, why: str = "") -> None:
        if self.phase == ReengagementPhase.IDLE and not self.deadline.armed:
            return
        logger.debug(f"Re-engagement cancelled from {self.phase.value}: {why}")
        self.phase = ReengagementPhase.IDLE
        self.deadline.cancel()
        self._waiting_until = None
        self._release_tokens()
        self._changed()

    def note_user_activity(self, now: Optional[float] = None) -> None:
        now = self._now(now)
        self._user_active_until = now + self.activity_grace_seconds
        self.cancel("user-activity")
        self._changed()

    def evaluate(self, now: Optional[float] = None) -> None:
        """React to a change of the surrounding state."""
        now = self._now(now)
        if self.phase in (ReengagementPhase.WATCHING, ReengagementPhase.COUNTDOWN):
            if not self.can_schedule():
                self.cancel("blocked")
        elif self.phase == ReengagementPhase.IDLE and not self.user_active(now):
            self.schedule("became-idle", now=now)

    def next_deadline(self) -> Optional[float]:
        if self.deadline.armed:
            return self.deadline.at
        if self.phase == ReengagementPhase.IDLE and self._user_active_until is not None:
            return self._user_active_until
        return None

    def tick(self, now: float) -> None:
        if self.phase == ReengagementPhase.IDLE:
            if self._user_active_until is not None and now >= self._user_active_until:
                self._user_active_until = None
                self.evaluate(now)
            return

        if not self.deadline.due(now):
            return

        if not self.can_schedule():
            self.cancel("blocked")
            return

        if self.phase == ReengagementPhase.WATCHING:
            self.phase = ReengagementPhase.COUNTDOWN
            self._waiting_until = None
            self.deadline.arm(self.countdown_seconds, now)
            self._hold("reengage-countdown")
            self._changed()
            return

        if self.phase == ReengagementPhase.COUNTDOWN:
            reason = self.reason or "idle"
            self.phase = ReengagementPhase.ENGAGING
            self.deadline.cancel()
            self._release_tokens()
            logger.info(f"Re-engagement firing ({reason})")
            try:
                self.on_trigger(reason)
            finally:
                self.phase = ReengagementPhase.IDLE
                self._changed()
