"""File-based storage layer for conversation history, settings and profile."""

import json
import logging
import os
import re
import shutil
import tempfile
import time
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from filelock import FileLock

from ..config import settings
from ..models.schemas import (
    ChatMeta,
    ConversationSettings,
    Message,
    SpeechCacheEntry,
    UserProfile,
)

logger = logging.getLogger(__name__)

# Encoded (base64) size caps for inline media kept in the history file
INLINE_MEDIA_CAPS = {
    "image": 1_000_000,
    "video": 4_000_000,
    "audio": 8_000_000,
    "file": 8_000_000,
}
MAX_SPEECH_AUDIO_CHARS = 10_000_000
MAX_SPEECH_CACHE_ENTRIES = 80

INTERRUPTED_REPLY_TEXT = "Reply interrupted before it finished."
INTERRUPTED_IMAGE_TEXT = "Image generation was interrupted."


class StorageError(Exception):
    """Custom exception for storage errors."""
    pass


def cap_speech_cache(cache: Dict[str, SpeechCacheEntry]) -> Dict[str, SpeechCacheEntry]:
    """Drop oversize audio and keep the most recent entries."""
    entries = [
        entry for entry in cache.values()
        if entry.audio and len(entry.audio) <= MAX_SPEECH_AUDIO_CHARS
    ]
    entries.sort(key=lambda e: e.updated_at)
    entries = entries[-MAX_SPEECH_CACHE_ENTRIES:]
    return {entry.key: entry for entry in entries}


def sanitize_for_persistence(message: Message, raw_limit: Optional[int] = None) -> Message:
    """
    Return a copy of a message that is safe to write to disk.

    Oversize display media is replaced by the transport variant (or dropped),
    oversize transport media is dropped, the raw response is truncated and the
    speech caches are capped.
    """
    raw_limit = raw_limit or settings.raw_response_max_chars
    updates: Dict = {}

    display = message.display_media
    if display and display.encoded_size > INLINE_MEDIA_CAPS[display.kind]:
        transport = message.transport_media
        if transport and transport.encoded_size <= INLINE_MEDIA_CAPS[transport.kind]:
            updates["display_media"] = transport
        else:
            updates["display_media"] = None
        logger.info(f"Trimmed oversize display media on message {message.id}")

    transport = message.transport_media
    if transport and transport.encoded_size > INLINE_MEDIA_CAPS[transport.kind]:
        updates["transport_media"] = None

    if message.raw_response and len(message.raw_response) > raw_limit:
        updates["raw_response"] = message.raw_response[:raw_limit]

    if message.speech_cache:
        updates["speech_cache"] = cap_speech_cache(message.speech_cache)

    if message.reply_suggestions:
        updates["reply_suggestions"] = [
            s.model_copy(update={"speech_cache": cap_speech_cache(s.speech_cache)})
            for s in message.reply_suggestions
        ]

    return message.model_copy(update=updates) if updates else message


def reconcile_interrupted(messages: List[Message]) -> Tuple[List[Message], bool]:
    """
    Resolve transient markers left behind by a crash or reload.

    Returns:
        Tuple of (reconciled messages, whether anything changed)
    """
    changed = False
    result = []
    for message in messages:
        updates: Dict = {}
        if message.is_generating_image:
            updates.update(
                is_generating_image=False,
                image_gen_error=INTERRUPTED_IMAGE_TEXT,
                generation_started_at=None,
            )
        if message.thinking:
            updates["thinking"] = False
            if not message.has_content:
                updates.update(
                    role="error",
                    text=INTERRUPTED_REPLY_TEXT,
                    translations=None,
                    raw_response=None,
                    display_media=None,
                    transport_media=None,
                    remote_ref=None,
                )
        if updates:
            changed = True
            message = message.model_copy(update=updates)
        result.append(message)
    return result, changed


class Storage:
    """File-based storage manager for conversation data."""

    def __init__(self, base_dir: str = "maestro_data"):
        """
        Initialize storage manager.

        Args:
            base_dir: Base directory for conversation storage
        """
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        (self.base_dir / "pairs").mkdir(exist_ok=True)

    def _get_pair_dir(self, pair_id: str) -> Path:
        """Get conversation pair directory path."""
        safe = re.sub(r"[^A-Za-z0-9_.-]", "_", pair_id)
        if not safe or safe in {".", ".."}:
            raise StorageError(f"Invalid pair id: {pair_id!r}")
        return self.base_dir / "pairs" / safe

    def _get_messages_path(self, pair_id: str) -> Path:
        return self._get_pair_dir(pair_id) / "messages.json"

    def _get_backup_path(self, pair_id: str) -> Path:
        return self._get_pair_dir(pair_id) / "messages.backup.json"

    def _get_meta_path(self, pair_id: str) -> Path:
        return self._get_pair_dir(pair_id) / "meta.json"

    def _atomic_write_json(self, file_path: Path, data: Dict) -> None:
        """
        Write JSON file atomically using temp file + rename.

        Args:
            file_path: Target file path
            data: Data to write
        """
        file_path.parent.mkdir(parents=True, exist_ok=True)
        temp_fd, temp_path = tempfile.mkstemp(
            dir=file_path.parent,
            prefix=".tmp_",
            suffix=".json"
        )

        try:
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False)
            shutil.move(temp_path, file_path)
        except Exception as e:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise StorageError(f"Failed to write {file_path}: {e}")

    def _read_json(self, file_path: Path) -> Dict:
        """
        Read JSON file with locking.

        Args:
            file_path: File path to read

        Returns:
            Parsed JSON data
        """
        lock_path = file_path.with_suffix(".lock")

        try:
            with FileLock(lock_path, timeout=10):
                with open(file_path, "r", encoding="utf-8") as f:
                    return json.load(f)
        except FileNotFoundError:
            raise StorageError(f"File not found: {file_path}")
        except json.JSONDecodeError as e:
            raise StorageError(f"Invalid JSON in {file_path}: {e}")

    def _write_json(self, file_path: Path, data: Dict) -> None:
        """
        Write JSON file with locking and atomic write.

        Args:
            file_path: File path to write
            data: Data to write
        """
        file_path.parent.mkdir(parents=True, exist_ok=True)
        lock_path = file_path.with_suffix(".lock")

        try:
            with FileLock(lock_path, timeout=10):
                self._atomic_write_json(file_path, data)
        except Exception as e:
            raise StorageError(f"Failed to write {file_path}: {e}")

    def _safe_write(self, file_path: Path, backup_path: Path, data: Dict) -> None:
        """Write with one retry, then fall back to the backup file."""
        try:
            self._write_json(file_path, data)
            self._clear_backup(backup_path)
            return
        except StorageError as e:
            logger.warning(f"Save failed, retrying once: {e}")

        try:
            self._write_json(file_path, data)
            self._clear_backup(backup_path)
            return
        except StorageError as e:
            logger.error(f"Save failed twice, writing backup {backup_path}: {e}")

        self._write_json(backup_path, data)

    def _clear_backup(self, backup_path: Path) -> None:
        if backup_path.exists():
            backup_path.unlink()
            logger.info(f"Removed stale backup {backup_path}")

    def _load_raw_messages(self, pair_id: str) -> List[Dict]:
        for path in (self._get_messages_path(pair_id), self._get_backup_path(pair_id)):
            if not path.exists():
                continue
            try:
                data = self._read_json(path)
            except StorageError as e:
                logger.warning(f"Could not read {path}, trying backup: {e}")
                continue
            records = data.get("messages", [])
            if isinstance(records, list):
                return records
        return []

    def load(self, pair_id: str) -> List[Message]:
        """
        Load the message list for a pair, reconciling interrupted messages.

        Malformed records are skipped. If reconciliation changed anything the
        cleaned history is written back.
        """
        messages = []
        for record in self._load_raw_messages(pair_id):
            try:
                messages.append(Message.model_validate(record))
            except Exception as e:
                logger.warning(f"Skipping malformed message in {pair_id}: {e}")

        messages, changed = reconcile_interrupted(messages)
        if changed:
            logger.info(f"Reconciled interrupted messages for pair {pair_id}")
            self.append_or_replace(pair_id, messages)
        return messages

    def append_or_replace(self, pair_id: str, messages: List[Message]) -> None:
        """Persist the full ordered message list for a pair."""
        records = [
            sanitize_for_persistence(m).model_dump(mode="json")
            for m in messages
            if m.role != "system_selection"
        ]
        self._safe_write(
            self._get_messages_path(pair_id),
            self._get_backup_path(pair_id),
            {"pair_id": pair_id, "saved_at": time.time(), "messages": records},
        )

    def delete_history(self, pair_id: str) -> None:
        """Remove stored messages and meta for a pair."""
        for path in (
            self._get_messages_path(pair_id),
            self._get_backup_path(pair_id),
            self._get_meta_path(pair_id),
        ):
            if path.exists():
                path.unlink()
        logger.info(f"Deleted history for pair {pair_id}")

    def get_meta(self, pair_id: str) -> ChatMeta:
        path = self._get_meta_path(pair_id)
        if not path.exists():
            return ChatMeta()
        try:
            return ChatMeta(**self._read_json(path))
        except (StorageError, ValueError) as e:
            logger.warning(f"Ignoring unreadable meta for {pair_id}: {e}")
            return ChatMeta()

    def set_meta(self, pair_id: str, **updates) -> ChatMeta:
        """Merge updates into the stored meta record."""
        meta = self.get_meta(pair_id).model_copy(update=updates)
        self._write_json(self._get_meta_path(pair_id), meta.model_dump())
        return meta

    def get_bookmark(self, pair_id: str) -> Optional[str]:
        return self.get_meta(pair_id).bookmark_message_id

    def set_bookmark(self, pair_id: str, message_id: Optional[str]) -> None:
        self.set_meta(pair_id, bookmark_message_id=message_id)

    def load_settings(self) -> ConversationSettings:
        """Load conversation settings, falling back to defaults."""
        path = self.base_dir / "settings.json"
        if not path.exists():
            return ConversationSettings(max_visible_messages=settings.max_visible_messages)
        try:
            return ConversationSettings(**self._read_json(path))
        except (StorageError, ValueError) as e:
            logger.warning(f"Ignoring unreadable settings: {e}")
            return ConversationSettings(max_visible_messages=settings.max_visible_messages)

    def save_settings(self, conversation_settings: ConversationSettings) -> None:
        self._write_json(self.base_dir / "settings.json", conversation_settings.model_dump())

    def load_profile(self) -> UserProfile:
        path = self.base_dir / "profile.json"
        if not path.exists():
            return UserProfile()
        try:
            return UserProfile(**self._read_json(path))
        except (StorageError, ValueError) as e:
            logger.warning(f"Ignoring unreadable profile: {e}")
            return UserProfile()

    def save_profile(self, text: str) -> UserProfile:
        """Persist the profile digest, capped to the context budget."""
        profile = UserProfile(
            text=text[: settings.context_section_max_chars],
            updated_at=time.time(),
        )
        self._write_json(self.base_dir / "profile.json", profile.model_dump())
        return profile
