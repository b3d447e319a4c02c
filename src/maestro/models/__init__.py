"""Data models for the Maestro tutoring engine."""

from .schemas import (
    ChatMeta,
    ConversationSettings,
    ConversationState,
    GenerationResult,
    GroundingRef,
    ImageResult,
    LanguagePair,
    MediaAsset,
    Message,
    MessageType,
    PrepProgress,
    RefUpdate,
    RemoteRef,
    ReplySuggestion,
    Role,
    SpeechCacheEntry,
    SpeechPart,
    SuggestionPayload,
    TranslationPair,
    UserProfile,
    media_kind_for_mime,
)

__all__ = [
    "ChatMeta",
    "ConversationSettings",
    "ConversationState",
    "GenerationResult",
    "GroundingRef",
    "ImageResult",
    "LanguagePair",
    "MediaAsset",
    "Message",
    "MessageType",
    "PrepProgress",
    "RefUpdate",
    "RemoteRef",
    "ReplySuggestion",
    "Role",
    "SpeechCacheEntry",
    "SpeechPart",
    "SuggestionPayload",
    "TranslationPair",
    "UserProfile",
    "media_kind_for_mime",
]
