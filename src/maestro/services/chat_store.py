"""In-memory message list for one conversation pair, persisted on every change."""

import logging
from typing import Callable, List, Optional

from ..config import settings
from ..models.schemas import Message, SpeechCacheEntry
from .storage import MAX_SPEECH_AUDIO_CHARS, Storage, cap_speech_cache

logger = logging.getLogger(__name__)

# Auto bookmark keeps this many real turns beyond max_visible_messages
BOOKMARK_SLACK = 2


class ChatStore:
    """
    Ordered message list keyed by message id.

    Every mutation goes through an id-addressed method so concurrent writers
    (orchestrator, suggestions, image generation, speech cache) only touch the
    fields they name.
    """

    def __init__(
        self,
        pair_id: str,
        storage: Storage,
        max_visible_messages: Optional[int] = None,
    ):
        self.pair_id = pair_id
        self.storage = storage
        self.max_visible_messages = max_visible_messages or settings.max_visible_messages
        self._messages: List[Message] = storage.load(pair_id)
        self._bookmark_id: Optional[str] = storage.get_bookmark(pair_id)
        self._listeners: List[Callable[[], None]] = []

        if self._bookmark_id and self.get(self._bookmark_id) is None:
            logger.info(f"Dropping dangling bookmark {self._bookmark_id} for {pair_id}")
            self._bookmark_id = None
            storage.set_bookmark(pair_id, None)

    @property
    def messages(self) -> List[Message]:
        return list(self._messages)

    @property
    def bookmark_message_id(self) -> Optional[str]:
        return self._bookmark_id

    def subscribe(self, listener: Callable[[], None]) -> None:
        """Register a callback fired after every mutation."""
        self._listeners.append(listener)

    def _index_of(self, message_id: str) -> int:
        for i, message in enumerate(self._messages):
            if message.id == message_id:
                return i
        return -1

    def get(self, message_id: str) -> Optional[Message]:
        idx = self._index_of(message_id)
        return self._messages[idx] if idx >= 0 else None

    def _changed(self) -> None:
        self.storage.append_or_replace(self.pair_id, self._messages)
        self._notify()

    def _notify(self) -> None:
        for listener in self._listeners:
            try:
                listener()
            except Exception as e:
                logger.error(f"Chat store listener failed: {e}")

    def add_message(self, message: Message) -> Message:
        self._messages.append(message)
        self._maybe_advance_bookmark()
        self._changed()
        return message

    def update_message(self, message_id: str, **updates) -> Optional[Message]:
        """
        Merge field updates into one message.

        Returns:
            The updated message, or None if the id is unknown (deleted meanwhile)
        """
        idx = self._index_of(message_id)
        if idx < 0:
            logger.debug(f"Ignoring update for missing message {message_id}")
            return None
        updated = self._messages[idx].model_copy(update=updates)
        self._messages[idx] = updated
        if "thinking" in updates or "role" in updates:
            self._maybe_advance_bookmark()
        self._changed()
        return updated

    def delete_message(self, message_id: str) -> bool:
        idx = self._index_of(message_id)
        if idx < 0:
            return False
        del self._messages[idx]
        if self._bookmark_id == message_id:
            self._set_bookmark(None)
        self._changed()
        return True

    def reset(self) -> None:
        """Full-history reset for this pair."""
        self._messages = []
        self._bookmark_id = None
        self.storage.delete_history(self.pair_id)
        self._notify()

    def _set_bookmark(self, message_id: Optional[str]) -> None:
        self._bookmark_id = message_id
        self.storage.set_bookmark(self.pair_id, message_id)

    def set_bookmark(self, message_id: Optional[str]) -> None:
        """Set or clear the truncation bookmark."""
        if message_id is not None:
            message = self.get(message_id)
            if message is None:
                raise ValueError(f"Unknown message id: {message_id}")
            if message.thinking:
                raise ValueError("Cannot bookmark a message that is still thinking")
        self._set_bookmark(message_id)

    def _maybe_advance_bookmark(self) -> None:
        """Move the bookmark forward once real turns exceed the visible budget."""
        limit = self.max_visible_messages + BOOKMARK_SLACK
        eligible = [i for i, m in enumerate(self._messages) if m.is_real_turn]
        if len(eligible) <= limit:
            return

        bookmark_idx = self._index_of(self._bookmark_id) if self._bookmark_id else -1
        start = max(bookmark_idx, 0)
        visible = sum(1 for i in eligible if i >= start)
        if visible <= limit:
            return

        first_kept = eligible[max(0, len(eligible) - limit)]
        for i in range(first_kept, len(self._messages)):
            candidate = self._messages[i]
            if candidate.role == "assistant" and not candidate.thinking:
                if candidate.id != self._bookmark_id:
                    logger.info(f"Auto-advancing bookmark to {candidate.id}")
                    self._set_bookmark(candidate.id)
                return

    def latest_assistant_message(self) -> Optional[Message]:
        for message in reversed(self._messages):
            if message.role == "assistant" and not message.thinking:
                return message
        return None

    def upsert_speech_cache(
        self,
        message_id: str,
        entry: SpeechCacheEntry,
        suggestion_index: Optional[int] = None,
    ) -> bool:
        """
        Store synthesized audio on a message or one of its reply suggestions.

        Returns:
            True if the entry was stored
        """
        if not entry.audio or len(entry.audio) > MAX_SPEECH_AUDIO_CHARS:
            return False
        message = self.get(message_id)
        if message is None:
            return False

        if suggestion_index is None:
            cache = dict(message.speech_cache)
            cache[entry.key] = entry
            self.update_message(message_id, speech_cache=cap_speech_cache(cache))
            return True

        suggestions = list(message.reply_suggestions or [])
        if not 0 <= suggestion_index < len(suggestions):
            return False
        target = suggestions[suggestion_index]
        cache = dict(target.speech_cache)
        cache[entry.key] = entry
        suggestions[suggestion_index] = target.model_copy(
            update={"speech_cache": cap_speech_cache(cache)}
        )
        self.update_message(message_id, reply_suggestions=suggestions)
        return True
