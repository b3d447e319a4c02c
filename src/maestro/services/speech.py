"""Speech subsystem bridge: outgoing speech queue, recognition state and audio cache."""

import hashlib
import logging
from typing import Callable, List, Optional

from ..models.schemas import (
    ConversationSettings,
    LanguagePair,
    Message,
    SpeechCacheEntry,
    SpeechPart,
)

logger = logging.getLogger(__name__)

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def compute_speech_cache_key(text: str, lang: str, provider: str, voice: Optional[str] = None) -> str:
    """Cache key covering content, language, provider and voice."""
    normalized = f"{provider}::{voice or ''}::{lang}::{(text or '').strip()}"
    digest = hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:16]
    return f"{digest}-{_base36(len(normalized))}"


def build_speech_parts(
    message: Message,
    pair: LanguagePair,
    conversation_settings: ConversationSettings,
) -> List[SpeechPart]:
    """Speakable parts of a message: target sentences, optionally each followed by its translation."""
    provider = conversation_settings.tts_provider
    voice = conversation_settings.tts_voice
    segments = []
    if message.translations:
        for translation in message.translations:
            if translation.target.strip():
                segments.append((translation.target.strip(), pair.target_code))
            if conversation_settings.speak_native and translation.native.strip():
                segments.append((translation.native.strip(), pair.native_code))
    else:
        fallback = (message.raw_response or message.text or "").strip()
        if fallback:
            segments.append((fallback, pair.target_code))

    parts = []
    for index, (text, lang) in enumerate(segments):
        key = compute_speech_cache_key(text, lang, provider, voice)
        cached = message.speech_cache.get(key)
        parts.append(
            SpeechPart(
                text=text,
                lang=lang,
                message_id=message.id,
                part_index=index,
                cache_key=key,
                cached_audio=cached.audio if cached else None,
            )
        )
    return parts


class SpeechBridge:
    """
    Speech subsystem as seen by the engine.

    The UI plays queued parts, runs recognition and reports its state back;
    listeners fire on every reported change.
    """

    def __init__(self, chat_store=None):
        self.chat_store = chat_store
        self.is_speaking = False
        self.is_listening = False
        self.recognition_wanted = False
        self.transcript = ""
        self._queue: List[SpeechPart] = []
        self._listeners: List[Callable[[str], None]] = []

    def subscribe(self, listener: Callable[[str], None]) -> None:
        """Register a callback receiving the name of the change."""
        self._listeners.append(listener)

    def _notify(self, change: str) -> None:
        for listener in self._listeners:
            try:
                listener(change)
            except Exception as e:
                logger.error(f"Speech listener failed on {change}: {e}")

    @property
    def has_pending(self) -> bool:
        return bool(self._queue)

    def is_active(self) -> bool:
        return self.is_speaking or self.has_pending

    def speak(self, parts: List[SpeechPart], default_lang: str) -> bool:
        """Queue parts for playback; parts without a language use ``default_lang``."""
        queued = [p if p.lang else p.model_copy(update={"lang": default_lang}) for p in parts if p.text]
        if not queued:
            return False
        self._queue.extend(queued)
        self._notify("queued")
        return True

    def stop_speaking(self) -> None:
        self._queue.clear()
        if self.is_speaking:
            self.is_speaking = False
        self._notify("speech-stopped")

    def drain_queue(self) -> List[SpeechPart]:
        """Hand queued parts to the player."""
        parts, self._queue = self._queue, []
        return parts

    def start_recognition(self) -> None:
        self.recognition_wanted = True
        self._notify("recognition-start")

    def stop_recognition(self) -> None:
        self.recognition_wanted = False
        self._notify("recognition-stop")

    def clear_transcript(self) -> None:
        self.transcript = ""

    def report_state(
        self,
        speaking: Optional[bool] = None,
        listening: Optional[bool] = None,
        transcript: Optional[str] = None,
    ) -> None:
        """Apply state reported by the speech subsystem and notify listeners."""
        if speaking is not None and speaking != self.is_speaking:
            self.is_speaking = speaking
            self._notify("speech-started" if speaking else "speech-ended")
        if listening is not None and listening != self.is_listening:
            self.is_listening = listening
            self._notify("listening-changed")
        if transcript is not None and transcript != self.transcript:
            self.transcript = transcript
            self._notify("transcript")

    def cache_audio(
        self,
        message_id: str,
        text: str,
        lang: str,
        provider: str,
        audio: str,
        voice: Optional[str] = None,
        mime_type: str = "audio/wav",
        suggestion_index: Optional[int] = None,
    ) -> bool:
        """Store synthesized audio on the owning message or suggestion."""
        if self.chat_store is None:
            return False
        entry = SpeechCacheEntry(
            key=compute_speech_cache_key(text, lang, provider, voice),
            lang=lang,
            provider=provider,
            voice=voice,
            audio=audio,
            mime_type=mime_type,
        )
        return self.chat_store.upsert_speech_cache(message_id, entry, suggestion_index)
