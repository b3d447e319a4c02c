"""Auto-send of a recognized utterance once the transcript stops changing."""

import logging
import time
from typing import Callable, Optional

from ..config import settings
from .response_parser import strip_bracketed
from .speech import SpeechBridge
from .timers import Deadline

logger = logging.getLogger(__name__)

MIN_UTTERANCE_CHARS = 2


class AutoSendOnSilence:
    """Fires ``on_send`` with a transcript that stayed stable for the configured period."""

    def __init__(
        self,
        speech: SpeechBridge,
        can_send: Callable[[], bool],
        on_send: Callable[[str], None],
        clock: Callable[[], float] = time.monotonic,
        stable_seconds: Optional[float] = None,
    ):
        self.speech = speech
        self.can_send = can_send
        self.on_send = on_send
        self.clock = clock
        self.stable_seconds = (
            stable_seconds if stable_seconds is not None else settings.auto_send_stable_seconds
        )
        self.enabled = True
        self.deadline = Deadline()
        self._snapshot: Optional[str] = None

    def _current_text(self) -> str:
        return strip_bracketed(self.speech.transcript)

    def cancel(self) -> None:
        self.deadline.cancel()
        self._snapshot = None

    def on_transcript(self, now: Optional[float] = None) -> None:
        """Re-arm whenever the transcript changes."""
        now = self.clock() if now is None else now
        text = self._current_text()
        if not self.enabled or len(text) < MIN_UTTERANCE_CHARS:
            self.cancel()
            return
        if text != self._snapshot:
            self._snapshot = text
            self.deadline.arm(self.stable_seconds, now)

    def next_deadline(self) -> Optional[float]:
        return self.deadline.at

    def tick(self, now: float) -> None:
        if not self.deadline.due(now):
            return
        self.deadline.cancel()
        text = self._current_text()
        if text != self._snapshot or len(text) < MIN_UTTERANCE_CHARS:
            return
        if not self.enabled or not self.can_send():
            logger.debug("Stable transcript held back: cannot send right now")
            return
        self._snapshot = None
        self.speech.clear_transcript()
        logger.info("Auto-sending stable transcript")
        self.on_send(text)
