"""Pydantic models for data validation and type safety."""

import base64
import time
import uuid
from typing import Dict, List, Literal, Optional
from pydantic import BaseModel, Field, field_validator


Role = Literal["user", "assistant", "error", "status", "system_selection"]
MessageType = Literal["user", "conversational-reengagement", "image-reengagement"]


def _new_id() -> str:
    return uuid.uuid4().hex


def media_kind_for_mime(mime_type: str) -> str:
    """Coarse media kind (image, video, audio, file) for a mime type."""
    major = (mime_type or "").split("/", 1)[0].lower()
    return major if major in ("image", "video", "audio") else "file"


class MediaAsset(BaseModel):
    """Inline media payload, base64 encoded so it survives JSON persistence."""
    data: str
    mime_type: str

    @classmethod
    def from_bytes(cls, raw: bytes, mime_type: str) -> "MediaAsset":
        return cls(data=base64.b64encode(raw).decode("ascii"), mime_type=mime_type)

    def to_bytes(self) -> bytes:
        return base64.b64decode(self.data)

    @property
    def kind(self) -> str:
        return media_kind_for_mime(self.mime_type)

    @property
    def encoded_size(self) -> int:
        return len(self.data)


class RemoteRef(BaseModel):
    """Handle to a blob on the remote object store."""
    uri: str
    mime_type: str
    name: Optional[str] = None


class TranslationPair(BaseModel):
    """One target-language sentence and its native-language translation."""
    target: str
    native: str = ""


class SpeechCacheEntry(BaseModel):
    """Previously synthesized audio for one piece of text."""
    key: str
    lang: str
    provider: str
    voice: Optional[str] = None
    audio: str
    mime_type: str = "audio/wav"
    updated_at: float = Field(default_factory=time.time)


class ReplySuggestion(BaseModel):
    """Suggested learner reply with its own speech cache."""
    target: str
    native: str
    speech_cache: Dict[str, SpeechCacheEntry] = Field(default_factory=dict)


class Message(BaseModel):
    """One conversation turn unit."""
    id: str = Field(default_factory=_new_id)
    timestamp: float = Field(default_factory=time.time)
    role: Role
    text: Optional[str] = None
    translations: Optional[List[TranslationPair]] = None
    raw_response: Optional[str] = None
    # Three variants of the same logical attachment
    display_media: Optional[MediaAsset] = None
    transport_media: Optional[MediaAsset] = None
    remote_ref: Optional[RemoteRef] = None
    is_generating_image: bool = False
    image_gen_error: Optional[str] = None
    generation_started_at: Optional[float] = None
    thinking: bool = False
    chat_summary: Optional[str] = None
    reply_suggestions: Optional[List[ReplySuggestion]] = None
    speech_cache: Dict[str, SpeechCacheEntry] = Field(default_factory=dict)

    @property
    def has_media(self) -> bool:
        return bool(self.display_media or self.transport_media or self.remote_ref)

    @property
    def is_real_turn(self) -> bool:
        """User/assistant message that is not an in-flight placeholder."""
        return self.role in ("user", "assistant") and not self.thinking

    @property
    def has_content(self) -> bool:
        return bool(self.text or self.translations or self.raw_response)

    @property
    def media_kind(self) -> Optional[str]:
        for asset in (self.transport_media, self.display_media):
            if asset:
                return asset.kind
        if self.remote_ref:
            return media_kind_for_mime(self.remote_ref.mime_type)
        return None

    def target_text(self) -> str:
        """Target-language text of the message, falling back to plain text."""
        if self.translations:
            return " ".join(p.target for p in self.translations if p.target).strip()
        return (self.text or "").strip()


class ChatMeta(BaseModel):
    """Per-pair metadata stored next to the message list."""
    bookmark_message_id: Optional[str] = None


class ConversationState(BaseModel):
    """Snapshot of one conversation pair."""
    pair_id: str
    messages: List[Message] = Field(default_factory=list)
    bookmark_message_id: Optional[str] = None
    max_visible_messages: int = 50


class LanguagePair(BaseModel):
    """Target language being learned and the learner's native language."""
    target_code: str
    target_name: str
    native_code: str
    native_name: str

    @property
    def id(self) -> str:
        return f"{self.target_code}__{self.native_code}"

    @property
    def native_short(self) -> str:
        return self.native_code.split("-", 1)[0].upper()

    @property
    def native_prefix(self) -> str:
        return f"[{self.native_short}]"


class ConversationSettings(BaseModel):
    """User preferences persisted by the settings store."""
    speak_native: bool = True
    tts_provider: str = "browser"
    tts_voice: Optional[str] = None
    stt_enabled: bool = False
    stt_language: Optional[str] = None
    suggestion_mode: bool = False
    send_with_snapshot: bool = False
    reengagement_enabled: bool = True
    reengagement_seconds: int = 60
    reengagement_use_visual_context: bool = False
    search_enabled: bool = False
    image_generation_enabled: bool = False
    max_visible_messages: int = 50

    @field_validator("reengagement_seconds")
    @classmethod
    def validate_reengagement_seconds(cls, v: int) -> int:
        """Reject idle intervals too short to be useful."""
        if v < 5:
            raise ValueError("reengagement_seconds must be at least 5")
        return v

    @field_validator("max_visible_messages")
    @classmethod
    def validate_max_visible(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_visible_messages must be positive")
        return v


class UserProfile(BaseModel):
    """Long-lived learner profile digest shared across pairs."""
    text: str = ""
    updated_at: Optional[float] = None


class GroundingRef(BaseModel):
    """Web source cited by a search-grounded reply."""
    uri: str
    title: Optional[str] = None


class GenerationResult(BaseModel):
    """Result of a text generation call."""
    text: str
    grounding_refs: List[GroundingRef] = Field(default_factory=list)


class ImageResult(BaseModel):
    """Result of an image generation call; either bytes or an error."""
    data: Optional[bytes] = None
    mime_type: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.data is not None and not self.error


class RefUpdate(BaseModel):
    """Remote reference correction discovered by a media ensure pass."""
    old_uri: Optional[str] = None
    new_ref: RemoteRef


class PrepProgress(BaseModel):
    """Progress of the media preparation phase."""
    label: str
    done: int = 0
    total: int = 0
    eta_ms: Optional[int] = None


class SpeechPart(BaseModel):
    """One unit of speakable text dispatched to the speech subsystem."""
    text: str
    lang: str
    message_id: str
    part_index: int
    cache_key: str
    cached_audio: Optional[str] = None


class SuggestionPayload(BaseModel):
    """Structured output of the reply-suggestion call."""
    suggestions: List[TranslationPair] = Field(default_factory=list)
    reengagement_seconds: Optional[int] = None
    chat_summary: Optional[str] = None
