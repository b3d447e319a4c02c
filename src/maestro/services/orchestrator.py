"""Turn orchestrator: one user action in, one persisted assistant reply out."""

import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from ..config import settings
from ..models.schemas import (
    ConversationSettings,
    GroundingRef,
    LanguagePair,
    MediaAsset,
    Message,
    PrepProgress,
    RemoteRef,
)
from .busy_state import BusyState
from .chat_store import ChatStore
from .enrichment import EnrichmentFanout
from .error_recovery import ErrorRecovery, ErrorRecoveryContext
from .history_window import HistoryWindow, build_window, select_candidates
from .llm_client import ApiFailure, GenerationClient, UploadFailure
from .media import (
    MediaCaptureFailure,
    MediaLifecycleManager,
    MediaProcessingError,
    capture_with_timeout,
    video_keyframe,
)
from .prompts import REENGAGEMENT_PROMPT, build_system_instruction
from .reengagement import ReengagementScheduler
from .response_parser import parse_reply
from .speech import SpeechBridge
from .storage import Storage, StorageError

logger = logging.getLogger(__name__)

USER_MESSAGE = "user"
IMAGE_REENGAGEMENT = "image-reengagement"
CONVERSATIONAL_REENGAGEMENT = "conversational-reengagement"
MESSAGE_TYPES = (USER_MESSAGE, IMAGE_REENGAGEMENT, CONVERSATIONAL_REENGAGEMENT)

SnapshotProvider = Callable[[], Awaitable[Optional[MediaAsset]]]


class OrchestratorError(Exception):
    """Custom exception for orchestrator errors."""
    pass


class TurnPhase(str, Enum):
    IDLE = "idle"
    BUILDING_PAYLOAD = "building_payload"
    ENSURING_MEDIA = "ensuring_media"
    GENERATING = "generating"
    ENRICHING = "enriching"
    ERROR = "error"


class TurnOrchestrator:
    """Single-flight state machine running one conversation turn at a time."""

    def __init__(
        self,
        pair: LanguagePair,
        chat_store: ChatStore,
        client: GenerationClient,
        media: MediaLifecycleManager,
        speech: SpeechBridge,
        busy: BusyState,
        enrichment: EnrichmentFanout,
        storage: Storage,
        conversation_settings: Callable[[], ConversationSettings],
        scheduler: Optional[ReengagementScheduler] = None,
        snapshot_provider: Optional[SnapshotProvider] = None,
        text_model: Optional[str] = None,
    ):
        """
        Initialize turn orchestrator.

        Args:
            pair: Language pair of the conversation
            chat_store: Message store; the orchestrator owns the assistant placeholder
            client: Text generation client
            media: Media lifecycle manager
            speech: Speech bridge (playback and recognition)
            busy: Busy tokens; a running turn holds a ``send`` token
            enrichment: Post-reply fan-out
            storage: Profile persistence
            conversation_settings: Returns the current user preferences
            scheduler: Re-engagement scheduler notified at turn boundaries
            snapshot_provider: Optional camera capture for auto-snapshots
            text_model: Model used for the primary reply
        """
        self.pair = pair
        self.chat_store = chat_store
        self.client = client
        self.media = media
        self.speech = speech
        self.busy = busy
        self.enrichment = enrichment
        self.storage = storage
        self.conversation_settings = conversation_settings
        self.scheduler = scheduler
        self.snapshot_provider = snapshot_provider
        self.text_model = text_model or settings.text_model

        self.phase = TurnPhase.IDLE
        self.prep_progress: Optional[PrepProgress] = None
        self.grounding_refs: List[GroundingRef] = []
        self.last_error: Optional[str] = None
        self._sending = False
        self._interrupted_recognition = False

    def is_idle(self) -> bool:
        return not self._sending and self.phase == TurnPhase.IDLE

    def can_start(self) -> bool:
        return self.is_idle() and not self.speech.is_active()

    def status(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "sending": self._sending,
            "prep_progress": self.prep_progress.model_dump() if self.prep_progress else None,
            "grounding_refs": [ref.model_dump() for ref in self.grounding_refs],
            "last_error": self.last_error,
        }

    def _on_prep_progress(self, progress: PrepProgress) -> None:
        self.prep_progress = progress

    def resume_recognition(self) -> bool:
        """Restart recognition stopped by a send once no speech is pending."""
        if not self._interrupted_recognition or self.speech.is_active() or self._sending:
            return False
        self._interrupted_recognition = False
        self.speech.start_recognition()
        return True

    async def _resolve_attachment(
        self,
        attachment: Optional[MediaAsset],
        message_type: str,
        prefs: ConversationSettings,
    ) -> Optional[MediaAsset]:
        if message_type == CONVERSATIONAL_REENGAGEMENT:
            return None
        if attachment is not None:
            return attachment
        if message_type != USER_MESSAGE or not prefs.send_with_snapshot or not self.snapshot_provider:
            return None
        try:
            return await capture_with_timeout(self.snapshot_provider)
        except MediaCaptureFailure as e:
            ErrorRecoveryContext(self.chat_store.pair_id, None, e)
            return None

    async def _split_variants(
        self, attachment: Optional[MediaAsset]
    ) -> Tuple[Optional[MediaAsset], Optional[MediaAsset]]:
        """
        Split an attachment into (display, model-facing) variants.

        A video is shown as its middle still frame and sent as the original clip.
        """
        if attachment is None:
            return None, None
        if attachment.kind != "video":
            return attachment, None
        try:
            still = await video_keyframe(attachment)
        except MediaProcessingError as e:
            logger.warning(f"No keyframe for video attachment: {e}")
            still = None
        return still, attachment

    async def _upload_current(self, message: Message) -> Optional[RemoteRef]:
        try:
            return await self.media.upload_message_media(message)
        except UploadFailure as e:
            ErrorRecoveryContext(self.chat_store.pair_id, message.id, e)
            return None

    def _history(self, exclude: Tuple[str, ...]) -> List[Message]:
        return [m for m in self.chat_store.messages if m.id not in exclude]

    async def _prepare_window(
        self,
        exclude: Tuple[str, ...],
        prefs: ConversationSettings,
        budget: int,
    ) -> HistoryWindow:
        """
        Build the outgoing window with two media ensure passes.

        The first pass supplies the call; the second runs on the final
        payload and its verification result is authoritative.
        """
        bookmark = self.chat_store.bookmark_message_id
        max_turns = prefs.max_visible_messages
        profile_text = self.storage.load_profile().text

        first = await self.media.ensure_live_references(
            select_candidates(self._history(exclude), bookmark, max_turns),
            self._on_prep_progress,
            budget,
        )
        history = self._history(exclude)
        window = build_window(
            history,
            bookmark,
            max_turns,
            budget,
            profile_text=profile_text,
            verified_ids=first.verified,
            ref_overrides=first.ref_overrides,
            max_context_chars=settings.context_section_max_chars,
        )

        in_payload = {item.message_id for item in window.items if item.remote_ref is not None}
        payload_messages = [m for m in history if m.id in in_payload]
        second = await self.media.ensure_live_references(
            payload_messages, self._on_prep_progress, budget
        )
        overrides = dict(first.ref_overrides)
        overrides.update(second.ref_overrides)

        return build_window(
            self._history(exclude),
            bookmark,
            max_turns,
            budget,
            profile_text=profile_text,
            verified_ids=second.verified,
            ref_overrides=overrides,
            max_context_chars=settings.context_section_max_chars,
        )

    async def send_message(
        self,
        text: str,
        attachment: Optional[MediaAsset] = None,
        message_type: str = USER_MESSAGE,
    ) -> bool:
        """
        Run one full turn.

        Args:
            text: User prompt text
            attachment: Freshly captured media to send with the prompt
            message_type: ``user`` or one of the re-engagement types, which
                need no prompt text

        Returns:
            True if an assistant reply was persisted; False if the turn was
            rejected or failed
        """
        if message_type not in MESSAGE_TYPES:
            raise ValueError(f"unknown message type: {message_type}")
        if not self.is_idle():
            logger.info("Send rejected: a turn is already in flight")
            return False
        if self.speech.is_active():
            logger.info("Send rejected: speech playback is active")
            return False

        reengagement = message_type != USER_MESSAGE
        prompt_text = REENGAGEMENT_PROMPT if reengagement else (text or "").strip()
        if not prompt_text and attachment is None:
            return False

        self._sending = True
        token = self.busy.acquire("send")
        self.last_error = None
        if self.speech.recognition_wanted:
            self.speech.stop_recognition()
            self._interrupted_recognition = True
        if self.scheduler:
            self.scheduler.cancel("send")

        placeholder_id: Optional[str] = None
        outcome = False
        try:
            self.phase = TurnPhase.BUILDING_PAYLOAD
            prefs = self.conversation_settings()
            resolved = await self._resolve_attachment(attachment, message_type, prefs)
            display, model_facing = await self._split_variants(resolved)

            user_message = self.chat_store.add_message(
                Message(
                    role="user",
                    text=prompt_text,
                    display_media=display,
                    transport_media=model_facing,
                )
            )
            placeholder = self.chat_store.add_message(Message(role="assistant", thinking=True))
            placeholder_id = placeholder.id
            logger.info(f"Turn started for {self.chat_store.pair_id} ({message_type})")

            self.phase = TurnPhase.ENSURING_MEDIA
            current_ref = None
            if user_message.has_media:
                current_ref = await self._upload_current(user_message)
            budget = self.media.media_budget - (1 if current_ref else 0)
            window = await self._prepare_window((user_message.id, placeholder_id), prefs, max(budget, 0))
            self.prep_progress = None

            self.phase = TurnPhase.GENERATING
            result = await self.client.generate(
                self.text_model,
                prompt_text,
                window=window,
                system_instruction=build_system_instruction(self.pair),
                attachment=current_ref,
                search_enabled=prefs.search_enabled,
            )
            raw = result.text.strip()
            if not raw:
                raise ApiFailure("The tutor returned an empty reply", code="EMPTY_RESPONSE")

            pairs = parse_reply(raw, self.pair.native_prefix)
            updated = self.chat_store.update_message(
                placeholder_id,
                thinking=False,
                translations=pairs or None,
                text=None if pairs else raw,
                raw_response=raw,
            )
            self.grounding_refs = list(result.grounding_refs)
            outcome = True

            if updated is None:
                logger.info(f"Placeholder {placeholder_id} was deleted during generation")
            else:
                self.phase = TurnPhase.ENRICHING
                self.enrichment.dispatch(placeholder_id)
            logger.info(f"Turn completed for {self.chat_store.pair_id}")

        except Exception as e:
            self.phase = TurnPhase.ERROR
            ErrorRecoveryContext(self.chat_store.pair_id, placeholder_id, e)
            self.last_error = ErrorRecovery.get_user_message(e)
            self._record_error(placeholder_id, self.last_error)

        finally:
            self._sending = False
            self.busy.release(token)
            self.prep_progress = None
            self.phase = TurnPhase.IDLE
            self.resume_recognition()
            if self.scheduler:
                self.scheduler.schedule("send-complete" if outcome else "send-error")

        return outcome

    def _record_error(self, placeholder_id: Optional[str], text: str) -> None:
        """Turn the placeholder into the single error message of this turn."""
        try:
            if placeholder_id and self.chat_store.get(placeholder_id):
                self.chat_store.update_message(
                    placeholder_id,
                    role="error",
                    thinking=False,
                    text=text,
                    translations=None,
                    raw_response=None,
                    display_media=None,
                    transport_media=None,
                    remote_ref=None,
                    reply_suggestions=None,
                )
            else:
                self.chat_store.add_message(Message(role="error", text=text))
        except StorageError as e:
            logger.error(f"Could not persist turn error: {e}")

    async def trigger_reengagement(self, reason: str) -> bool:
        """
        Send a synthetic follow-up turn after idleness.

        Uses a fresh snapshot as visual context when enabled and available.
        """
        prefs = self.conversation_settings()
        if not prefs.reengagement_enabled:
            return False
        logger.info(f"Re-engagement turn requested ({reason})")

        snapshot = None
        if prefs.reengagement_use_visual_context and self.snapshot_provider:
            try:
                snapshot = await capture_with_timeout(self.snapshot_provider)
            except MediaCaptureFailure as e:
                ErrorRecoveryContext(self.chat_store.pair_id, None, e)

        if snapshot is not None:
            return await self.send_message(REENGAGEMENT_PROMPT, snapshot, IMAGE_REENGAGEMENT)
        return await self.send_message(REENGAGEMENT_PROMPT, None, CONVERSATIONAL_REENGAGEMENT)
