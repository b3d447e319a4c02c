"""Per-pair composition root wiring the engine services together."""

import itertools
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from ..config import settings
from ..models.schemas import ConversationSettings, MediaAsset, Message, ReplySuggestion, SpeechPart
from .auto_send import AutoSendOnSilence
from .background_tasks import BackgroundTaskManager
from .busy_state import BusyState
from .chat_store import ChatStore
from .enrichment import EnrichmentFanout
from .languages import parse_pair_id
from .llm_client import GenerationClient, ObjectStore, get_llm_client
from .media import CameraSnapshot, MediaLifecycleManager
from .orchestrator import OrchestratorError, TurnOrchestrator
from .reengagement import ReengagementScheduler
from .speech import SpeechBridge
from .storage import Storage
from .timers import TimerLoop

logger = logging.getLogger(__name__)


class ConversationSession:
    """
    Everything needed to run one conversation pair.

    Listeners connect the pieces: busy, speech and chat changes re-evaluate
    the re-engagement scheduler, finished speech resumes recognition and
    catches up on suggestions, and transcript changes feed auto-send.
    """

    def __init__(
        self,
        pair_id: str,
        storage: Optional[Storage] = None,
        client: Optional[GenerationClient] = None,
        object_store: Optional[ObjectStore] = None,
        task_manager: Optional[BackgroundTaskManager] = None,
        camera: Optional[CameraSnapshot] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize a conversation session.

        Args:
            pair_id: Pair identifier such as ``es-ES__en-US``
            storage: Storage instance (creates new if None)
            client: Generation client (configured Gemini client if None)
            object_store: Remote media store (the client if it is one)
            task_manager: Background task manager (creates new if None)
            camera: Optional local camera used for snapshots
            clock: Monotonic clock shared by the timer machines

        Raises:
            ValueError: If the pair id is invalid
            ApiFailure: If no client is given and no API key is configured
        """
        self.pair = parse_pair_id(pair_id)
        self.pair_id = self.pair.id
        self.storage = storage or Storage(base_dir=settings.data_dir)
        self.client = client or get_llm_client()
        if object_store is None:
            if not isinstance(self.client, ObjectStore):
                raise ValueError("An object store is required when the client is not one")
            object_store = self.client
        self.task_manager = task_manager or BackgroundTaskManager()
        self.camera = camera
        self.clock = clock
        self._pushed_frame: Optional[MediaAsset] = None
        self._task_counter = itertools.count(1)
        self._pending_sends = 0

        self.preferences: ConversationSettings = self.storage.load_settings()
        self.chat_store = ChatStore(
            self.pair_id, self.storage, max_visible_messages=self.preferences.max_visible_messages
        )
        self.busy = BusyState()
        self.speech = SpeechBridge(self.chat_store)
        self.media = MediaLifecycleManager(object_store, self.chat_store, clock=clock)

        self.scheduler = ReengagementScheduler(
            self.busy,
            can_schedule=self._can_reengage,
            on_trigger=self._on_reengagement_due,
            clock=clock,
            interval_seconds=self.preferences.reengagement_seconds,
            on_change=self._wake_timers,
        )
        self.enrichment = EnrichmentFanout(
            self.pair,
            self.chat_store,
            self.client,
            self.media,
            self.speech,
            self.busy,
            self.storage,
            lambda: self.preferences,
            task_manager=self.task_manager,
            on_reengagement_interval=self._apply_suggested_interval,
        )
        self.orchestrator = TurnOrchestrator(
            self.pair,
            self.chat_store,
            self.client,
            self.media,
            self.speech,
            self.busy,
            self.enrichment,
            self.storage,
            lambda: self.preferences,
            scheduler=self.scheduler,
            snapshot_provider=self._capture_snapshot,
        )
        self.auto_send = AutoSendOnSilence(
            self.speech,
            can_send=self.orchestrator.can_start,
            on_send=self._on_auto_send,
            clock=clock,
        )
        self.timers = TimerLoop([self.scheduler, self.auto_send], clock=clock)
        self._apply_preferences()

        self.busy.subscribe(self._on_state_change)
        self.chat_store.subscribe(self._on_state_change)
        self.speech.subscribe(self._on_speech_change)

    # Wiring

    def _wake_timers(self) -> None:
        self.timers.wake()

    def _apply_preferences(self) -> None:
        prefs = self.preferences
        self.scheduler.enabled = prefs.reengagement_enabled
        self.scheduler.set_interval(prefs.reengagement_seconds)
        self.auto_send.enabled = prefs.stt_enabled
        self.chat_store.max_visible_messages = prefs.max_visible_messages
        if not prefs.reengagement_enabled:
            self.scheduler.cancel("disabled")
        if not prefs.stt_enabled:
            self.auto_send.cancel()

    def _can_reengage(self) -> bool:
        return (
            self.preferences.reengagement_enabled
            and self.orchestrator.is_idle()
            and not self.speech.is_active()
            and not self.speech.transcript.strip()
            and self.busy.external_count() == 0
            and self._pending_sends == 0
        )

    def _on_state_change(self) -> None:
        self.scheduler.evaluate()
        self.timers.wake()

    def _on_speech_change(self, change: str) -> None:
        if change == "transcript":
            if self.speech.transcript.strip():
                self.scheduler.note_user_activity()
            self.auto_send.on_transcript()
        elif change == "speech-ended":
            self.orchestrator.resume_recognition()
            self.enrichment.on_speech_ended()
        self._on_state_change()

    def _spawn(self, kind: str, coroutine) -> None:
        self.task_manager.create_task(f"{kind}:{next(self._task_counter)}", coroutine)

    def _spawn_send(self, coroutine) -> None:
        self._pending_sends += 1
        self._spawn("send", self._track_send(coroutine))

    async def _track_send(self, coroutine) -> bool:
        try:
            return await coroutine
        finally:
            self._pending_sends -= 1
            self._on_state_change()

    def _on_reengagement_due(self, reason: str) -> None:
        self._spawn_send(self.orchestrator.trigger_reengagement(reason))

    def _on_auto_send(self, text: str) -> None:
        if self.preferences.suggestion_mode:
            self._spawn("suggestion", self.enrichment.create_suggestion(text))
        else:
            self._spawn_send(self.orchestrator.send_message(text))

    def _apply_suggested_interval(self, seconds: int) -> None:
        logger.info(f"Re-engagement interval updated to {seconds}s for {self.pair_id}")
        self.scheduler.set_interval(seconds)

    async def _capture_snapshot(self) -> Optional[MediaAsset]:
        if self._pushed_frame is not None:
            frame, self._pushed_frame = self._pushed_frame, None
            return frame
        if self.camera is not None:
            return await self.camera.capture()
        return None

    # Lifecycle

    def start(self) -> None:
        """Start the timer loop; requires a running event loop."""
        if not self.task_manager.is_task_running(f"timers:{self.pair_id}"):
            self.task_manager.create_task(f"timers:{self.pair_id}", self.timers.run())
        self.scheduler.evaluate()

    def close(self) -> None:
        self.timers.stop()
        self.scheduler.cancel("closed")
        self.auto_send.cancel()
        self.task_manager.cancel_all_tasks()

    # Operations

    async def send(self, text: str, attachment: Optional[MediaAsset] = None) -> bool:
        return await self.orchestrator.send_message(text, attachment)

    def push_snapshot(self, frame: MediaAsset) -> None:
        """Provide the latest camera frame for the next snapshot request."""
        self._pushed_frame = frame

    def update_preferences(self, preferences: ConversationSettings) -> ConversationSettings:
        self.preferences = preferences
        self._apply_preferences()
        return preferences

    def set_bookmark(self, message_id: Optional[str]) -> None:
        self.chat_store.set_bookmark(message_id)

    def delete_message(self, message_id: str) -> bool:
        """
        Delete one message and release its remote media.

        Raises:
            OrchestratorError: If the message is the reply currently generating
        """
        message = self.chat_store.get(message_id)
        if message is None:
            return False
        if message.thinking:
            raise OrchestratorError("Cannot delete a reply that is still generating")
        self.chat_store.delete_message(message_id)
        self.enrichment.forget(message_id)
        if message.remote_ref:
            self._spawn("release", self.media.release(message))
        return True

    def reset(self) -> None:
        """
        Delete the whole history of this pair.

        Raises:
            OrchestratorError: If a turn is in flight
        """
        if not self.orchestrator.is_idle():
            raise OrchestratorError("Cannot reset history while a turn is in flight")
        for message in self.chat_store.messages:
            if message.remote_ref:
                self._spawn("release", self.media.release(message))
        self.scheduler.cancel("reset")
        self.speech.stop_speaking()
        self.chat_store.reset()
        self.enrichment.forget()

    async def create_suggestion(self, text: str) -> Optional[ReplySuggestion]:
        return await self.enrichment.create_suggestion(text)

    def note_user_activity(self, toggle_hold: bool = False) -> bool:
        self.scheduler.note_user_activity()
        if toggle_hold:
            return self.busy.toggle_user_hold()
        return self.busy.is_busy("user-hold")

    def report_speech_state(
        self,
        speaking: Optional[bool] = None,
        listening: Optional[bool] = None,
        transcript: Optional[str] = None,
    ) -> None:
        self.speech.report_state(speaking=speaking, listening=listening, transcript=transcript)

    def drain_speech_queue(self) -> List[SpeechPart]:
        return self.speech.drain_queue()

    def messages(self) -> List[Message]:
        return self.chat_store.messages

    def status(self) -> Dict[str, Any]:
        now = self.clock()
        return {
            "pair_id": self.pair_id,
            "turn": self.orchestrator.status(),
            "busy": self.busy.tags(),
            "reengagement": {
                "phase": self.scheduler.sub_phase(now),
                "reason": self.scheduler.reason,
                "remaining_seconds": self.scheduler.deadline.remaining(now),
                "interval_seconds": self.scheduler.interval_seconds,
            },
            "speech": {
                "speaking": self.speech.is_speaking,
                "listening": self.speech.is_listening,
                "recognition_wanted": self.speech.recognition_wanted,
                "pending": self.speech.has_pending,
            },
            "suggestions": {
                "message_id": self.enrichment.suggestions_for,
                "items": [s.model_dump(exclude={"speech_cache"}) for s in self.enrichment.current_suggestions],
            },
            "bookmark_message_id": self.chat_store.bookmark_message_id,
        }
