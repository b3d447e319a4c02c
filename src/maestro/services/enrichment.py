"""Best-effort enrichment of finished replies: suggestions, images, speech and profile."""

import asyncio
import logging
import time
from typing import Awaitable, Callable, List, Optional, Set

from ..config import settings
from ..models.schemas import (
    ConversationSettings,
    LanguagePair,
    MediaAsset,
    Message,
    RemoteRef,
    ReplySuggestion,
    SuggestionPayload,
)
from .background_tasks import BackgroundTaskManager
from .busy_state import BusyState
from .chat_store import ChatStore
from .error_recovery import ErrorRecoveryContext
from .history_window import (
    HistoryWindow,
    WindowItem,
    build_window,
    restrict_for_image_generation,
    select_candidates,
)
from .json_utils import ParseFailure, parse_suggestion_payload
from .llm_client import ApiFailure, GenerationClient, UploadFailure
from .media import MediaLifecycleManager, MediaProcessingError, derive_transport_variant
from .prompts import (
    build_image_prompt,
    build_profile_merge_prompt,
    build_suggestion_prompt,
    image_extra_user_message,
    image_system_instruction,
)
from .response_parser import strip_bracketed
from .retry import fixed_backoff, linear_backoff, retry
from .speech import SpeechBridge, build_speech_parts
from .storage import Storage, StorageError

logger = logging.getLogger(__name__)

TRANSLATION_FAILED_TEXT = "Translation failed"


class EnrichmentFanout:
    """Runs the independent, independently failable enrichment steps for a reply."""

    def __init__(
        self,
        pair: LanguagePair,
        chat_store: ChatStore,
        client: GenerationClient,
        media: MediaLifecycleManager,
        speech: SpeechBridge,
        busy: BusyState,
        storage: Storage,
        conversation_settings: Callable[[], ConversationSettings],
        task_manager: Optional[BackgroundTaskManager] = None,
        on_reengagement_interval: Optional[Callable[[int], None]] = None,
        avatar_ref: Optional[RemoteRef] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize enrichment fan-out.

        Args:
            pair: Language pair of the conversation
            chat_store: Message store, mutated only by id
            client: Generation client (text, image, translation)
            media: Media lifecycle manager for image context and uploads
            speech: Speech bridge receiving speakable parts
            busy: Busy tokens; running enrichment holds one
            storage: Profile persistence
            conversation_settings: Returns the current user preferences
            task_manager: Where fire-and-forget work is spawned
            on_reengagement_interval: Receives a model-suggested idle interval
            avatar_ref: Optional tutor avatar sent with image prompts
            sleep: Awaitable sleep used between retries
        """
        self.pair = pair
        self.chat_store = chat_store
        self.client = client
        self.media = media
        self.speech = speech
        self.busy = busy
        self.storage = storage
        self.conversation_settings = conversation_settings
        self.task_manager = task_manager or BackgroundTaskManager()
        self.on_reengagement_interval = on_reengagement_interval
        self.avatar_ref = avatar_ref
        self.sleep = sleep

        self.current_suggestions: List[ReplySuggestion] = []
        self.suggestions_for: Optional[str] = None
        self._suggestion_guard: Set[str] = set()

    def dispatch(self, message_id: str) -> None:
        """Start all enrichment for a finalized reply without waiting for it."""
        message = self.chat_store.get(message_id)
        if message is None or message.thinking:
            return
        prefs = self.conversation_settings()

        self.speak_message(message_id)
        self.request_suggestions(message_id)
        if prefs.image_generation_enabled and message.target_text():
            self.task_manager.create_task(
                f"imagegen:{message_id}", self.generate_assistant_image(message_id)
            )

    def request_suggestions(self, message_id: str) -> bool:
        """Spawn a suggestion fetch unless one already ran for this message."""
        if message_id in self._suggestion_guard:
            return False
        self.task_manager.create_task(
            f"suggestions:{message_id}", self.fetch_reply_suggestions(message_id)
        )
        return True

    def forget(self, message_id: Optional[str] = None) -> None:
        """Drop suggestion state for one deleted message, or for all of them."""
        if message_id is None:
            self._suggestion_guard.clear()
            self.current_suggestions = []
            self.suggestions_for = None
            return
        self._suggestion_guard.discard(message_id)
        if self.suggestions_for == message_id:
            self.current_suggestions = []
            self.suggestions_for = None

    def on_speech_ended(self) -> bool:
        """Catch up on suggestions for the latest reply once playback finishes."""
        latest = self.chat_store.latest_assistant_message()
        if latest is None:
            return False
        return self.request_suggestions(latest.id)

    def speak_message(self, message_id: str) -> bool:
        message = self.chat_store.get(message_id)
        if message is None:
            return False
        parts = build_speech_parts(message, self.pair, self.conversation_settings())
        return self.speech.speak(parts, self.pair.target_code)

    def _previous_summary(self, messages: List[Message], before_index: int) -> Optional[str]:
        for i in range(before_index - 1, -1, -1):
            message = messages[i]
            if message.role == "assistant" and message.chat_summary:
                return message.chat_summary
        return None

    async def _request_suggestions(self, prompt: str) -> SuggestionPayload:
        result = await self.client.generate(
            self.client.aux_model,
            prompt,
            response_options={"response_mime_type": "application/json"},
        )
        return parse_suggestion_payload(result.text, settings.reengagement_min_seconds)

    async def fetch_reply_suggestions(self, message_id: str) -> List[ReplySuggestion]:
        """
        Fetch reply suggestions for one assistant message.

        Runs at most once per message id. Failures after all retries clear the
        current suggestions and are otherwise silent.

        Returns:
            The suggestions now shown for the message
        """
        if message_id in self._suggestion_guard:
            return self.current_suggestions if self.suggestions_for == message_id else []
        messages = self.chat_store.messages
        index = next((i for i, m in enumerate(messages) if m.id == message_id), -1)
        if index < 0 or messages[index].role != "assistant" or messages[index].thinking:
            return []
        message = messages[index]
        self._suggestion_guard.add(message_id)

        if message.reply_suggestions:
            self.current_suggestions = list(message.reply_suggestions)
            self.suggestions_for = message_id
            return self.current_suggestions

        history = select_candidates(
            messages[:index], self.chat_store.bookmark_message_id, settings.suggestion_history_turns
        )
        prompt = build_suggestion_prompt(
            self.pair,
            tutor_message=message.raw_response or message.target_text(),
            history_turns=history,
            previous_summary=self._previous_summary(messages, index),
        )

        with self.busy.hold("suggestions"):
            try:
                payload = await retry(
                    lambda: self._request_suggestions(prompt),
                    max_attempts=settings.suggestion_max_retries + 1,
                    backoff=linear_backoff(settings.suggestion_backoff_ms / 1000),
                    sleep=self.sleep,
                    label=f"reply suggestions for {message_id}",
                )
            except (ApiFailure, ParseFailure) as e:
                ErrorRecoveryContext(self.chat_store.pair_id, message_id, e)
                self.current_suggestions = []
                self.suggestions_for = message_id
                return []

        suggestions = [ReplySuggestion(target=s.target, native=s.native) for s in payload.suggestions]
        self.current_suggestions = suggestions
        self.suggestions_for = message_id
        updates = {"reply_suggestions": suggestions}
        if payload.chat_summary:
            updates["chat_summary"] = payload.chat_summary
        self.chat_store.update_message(message_id, **updates)

        if payload.reengagement_seconds and self.on_reengagement_interval:
            self.on_reengagement_interval(payload.reengagement_seconds)
        if payload.chat_summary:
            await self.merge_profile(payload.chat_summary)
        return suggestions

    async def merge_profile(self, summary: str) -> Optional[str]:
        """Merge a chat summary into the long-lived profile; failures are swallowed."""
        try:
            existing = self.storage.load_profile().text
            prompt = build_profile_merge_prompt(existing, summary, settings.profile_max_chars)
            result = await self.client.generate(
                self.client.aux_model, prompt, response_options={"temperature": 0.1}
            )
            merged = result.text.strip()
            if not merged:
                return None
            return self.storage.save_profile(merged).text
        except (ApiFailure, StorageError) as e:
            logger.warning(f"Profile merge skipped: {e}")
            return None

    async def _image_window(self, message_id: str) -> HistoryWindow:
        messages = self.chat_store.messages
        index = next((i for i, m in enumerate(messages) if m.id == message_id), len(messages))
        bookmark = self.chat_store.bookmark_message_id
        max_turns = self.conversation_settings().max_visible_messages

        candidates = select_candidates(messages[:index], bookmark, max_turns)
        ensured = await self.media.ensure_live_references(candidates)

        window = build_window(
            self.chat_store.messages[:index],
            bookmark,
            max_turns,
            self.media.media_budget,
            verified_ids=ensured.verified,
            ref_overrides=ensured.ref_overrides,
            max_context_chars=settings.context_section_max_chars,
        )
        window = restrict_for_image_generation(window, settings.image_gen_max_context_images)
        extra = WindowItem(role="user", text=image_extra_user_message())
        return window.model_copy(update={"items": window.items + [extra]})

    async def _attempt_image(self, message_id: str, text: str):
        window = await self._image_window(message_id)
        result = await self.client.generate_image(
            window, build_image_prompt(text), image_system_instruction(), self.avatar_ref
        )
        if not result.ok:
            raise ApiFailure(result.error or "No image returned", code="IMAGE_GENERATION_FAILED")
        return result

    async def generate_assistant_image(self, message_id: str) -> bool:
        """
        Generate an illustrative image for an assistant reply.

        Returns:
            True if an image was stored on the message
        """
        message = self.chat_store.get(message_id)
        text = message.target_text() if message else ""
        if not text:
            return False

        with self.busy.hold("imagegen"):
            try:
                self.chat_store.update_message(
                    message_id,
                    is_generating_image=True,
                    image_gen_error=None,
                    generation_started_at=time.time(),
                )
                result = await retry(
                    lambda: self._attempt_image(message_id, text),
                    max_attempts=settings.image_gen_attempts,
                    backoff=fixed_backoff(settings.image_gen_retry_delay_seconds),
                    sleep=self.sleep,
                    label=f"image generation for {message_id}",
                )
            except (ApiFailure, UploadFailure, StorageError) as e:
                self.chat_store.update_message(
                    message_id,
                    is_generating_image=False,
                    image_gen_error=str(e) or "Image generation failed",
                    generation_started_at=None,
                )
                return False

            display = MediaAsset.from_bytes(result.data, result.mime_type or "image/png")
            transport = None
            remote_ref = None
            try:
                transport = await derive_transport_variant(display)
                remote_ref = await self.media.object_store.upload(
                    transport.to_bytes(), transport.mime_type, f"assistant-image-{message_id}"
                )
            except (MediaProcessingError, UploadFailure) as e:
                logger.warning(f"Generated image kept local only for {message_id}: {e}")

            self.chat_store.update_message(
                message_id,
                display_media=display,
                transport_media=transport,
                remote_ref=remote_ref,
                is_generating_image=False,
                image_gen_error=None,
                generation_started_at=None,
            )
            return True

    async def create_suggestion(self, text: str) -> Optional[ReplySuggestion]:
        """
        Turn a learner utterance into a reply suggestion by translating it.

        The recognition language decides the direction. A translation failure
        is surfaced as an error message.
        """
        clean = strip_bracketed(text)
        if not clean:
            return None
        prefs = self.conversation_settings()
        spoken_lang = prefs.stt_language or self.pair.native_code

        try:
            if spoken_lang == self.pair.target_code:
                target = clean
                native = await self.client.translate_text(
                    clean, self.pair.target_name, self.pair.native_name
                )
            else:
                native = clean
                target = await self.client.translate_text(
                    clean, self.pair.native_name, self.pair.target_name
                )
        except ApiFailure as e:
            logger.warning(f"Manual suggestion translation failed: {e}")
            self.chat_store.add_message(
                Message(role="error", text=f"{TRANSLATION_FAILED_TEXT}: {e.message}")
            )
            return None

        suggestion = ReplySuggestion(target=target, native=native)
        owner = self.chat_store.latest_assistant_message()
        if owner is not None:
            existing = [s for s in owner.reply_suggestions or [] if s.target != target]
            self.chat_store.update_message(owner.id, reply_suggestions=[suggestion] + existing)
            self.suggestions_for = owner.id
        self.current_suggestions = [suggestion] + [
            s for s in self.current_suggestions if s.target != target
        ]
        return suggestion
