import json

from maestro.models.schemas import (
    ConversationSettings,
    MediaAsset,
    Message,
    SpeechCacheEntry,
    TranslationPair,
)
from maestro.services.storage import (
    INLINE_MEDIA_CAPS,
    INTERRUPTED_IMAGE_TEXT,
    INTERRUPTED_REPLY_TEXT,
    MAX_SPEECH_CACHE_ENTRIES,
    Storage,
    StorageError,
    sanitize_for_persistence,
)

PAIR_ID = "es-ES__en-US"


def test_save_and_load_preserve_order_and_identity(tmp_path):
    storage = Storage(base_dir=str(tmp_path))
    messages = [
        Message(role="user", text="hola"),
        Message(role="assistant", translations=[TranslationPair(target="Hola", native="Hello")]),
        Message(role="status", text="Switched pair"),
    ]
    storage.append_or_replace(PAIR_ID, messages)

    loaded = storage.load(PAIR_ID)
    assert [m.id for m in loaded] == [m.id for m in messages]
    assert loaded[1].translations[0].native == "Hello"


def test_system_selection_messages_are_not_persisted(tmp_path):
    storage = Storage(base_dir=str(tmp_path))
    storage.append_or_replace(
        PAIR_ID,
        [Message(role="system_selection", text="pick"), Message(role="user", text="hola")],
    )
    assert [m.role for m in storage.load(PAIR_ID)] == ["user"]


def test_thinking_message_becomes_error_on_load(tmp_path):
    storage = Storage(base_dir=str(tmp_path))
    user = Message(role="user", text="hola")
    placeholder = Message(role="assistant", thinking=True)
    storage.append_or_replace(PAIR_ID, [user, placeholder])

    loaded = storage.load(PAIR_ID)
    assert loaded[0] == user
    assert loaded[1].id == placeholder.id
    assert loaded[1].role == "error"
    assert loaded[1].thinking is False
    assert loaded[1].text == INTERRUPTED_REPLY_TEXT
    assert loaded[1].timestamp == placeholder.timestamp

    # Reconciled history was written back
    raw = json.loads((tmp_path / "pairs" / PAIR_ID / "messages.json").read_text(encoding="utf-8"))
    assert raw["messages"][1]["role"] == "error"


def test_thinking_message_with_content_is_finalized(tmp_path):
    storage = Storage(base_dir=str(tmp_path))
    message = Message(role="assistant", thinking=True, raw_response="Hola", text="Hola")
    storage.append_or_replace(PAIR_ID, [message])

    loaded = storage.load(PAIR_ID)[0]
    assert loaded.role == "assistant"
    assert loaded.thinking is False
    assert loaded.text == "Hola"


def test_interrupted_image_generation_records_error(tmp_path):
    storage = Storage(base_dir=str(tmp_path))
    message = Message(role="assistant", text="Hola", is_generating_image=True, generation_started_at=1.0)
    storage.append_or_replace(PAIR_ID, [message])

    loaded = storage.load(PAIR_ID)[0]
    assert loaded.is_generating_image is False
    assert loaded.image_gen_error == INTERRUPTED_IMAGE_TEXT
    assert loaded.generation_started_at is None


def test_malformed_records_are_skipped(tmp_path):
    storage = Storage(base_dir=str(tmp_path))
    storage.append_or_replace(PAIR_ID, [Message(role="user", text="ok")])
    path = tmp_path / "pairs" / PAIR_ID / "messages.json"
    data = json.loads(path.read_text(encoding="utf-8"))
    data["messages"].append({"role": "nonsense"})
    path.write_text(json.dumps(data), encoding="utf-8")

    assert [m.text for m in storage.load(PAIR_ID)] == ["ok"]


def test_failed_save_falls_back_to_backup(tmp_path, monkeypatch):
    storage = Storage(base_dir=str(tmp_path))
    original_write = storage._write_json
    attempts = []

    def flaky_write(file_path, data):
        attempts.append(file_path.name)
        if file_path.name == "messages.json":
            raise StorageError("disk full")
        original_write(file_path, data)

    monkeypatch.setattr(storage, "_write_json", flaky_write)
    storage.append_or_replace(PAIR_ID, [Message(role="user", text="hola")])

    assert attempts == ["messages.json", "messages.json", "messages.backup.json"]
    assert [m.text for m in storage.load(PAIR_ID)] == ["hola"]


def test_successful_save_removes_stale_backup(tmp_path, monkeypatch):
    storage = Storage(base_dir=str(tmp_path))
    original_write = storage._write_json
    disk_full = [True]

    def flaky_write(file_path, data):
        if disk_full[0] and file_path.name == "messages.json":
            raise StorageError("disk full")
        original_write(file_path, data)

    monkeypatch.setattr(storage, "_write_json", flaky_write)
    storage.append_or_replace(PAIR_ID, [Message(role="user", text="hola")])
    backup = tmp_path / "pairs" / PAIR_ID / "messages.backup.json"
    assert backup.exists()

    disk_full[0] = False
    storage.append_or_replace(
        PAIR_ID, [Message(role="user", text="hola"), Message(role="assistant", text="adiós")]
    )

    assert not backup.exists()
    assert [m.text for m in storage.load(PAIR_ID)] == ["hola", "adiós"]


def test_unreadable_primary_uses_backup(tmp_path):
    storage = Storage(base_dir=str(tmp_path))
    storage.append_or_replace(PAIR_ID, [Message(role="user", text="hola")])
    pair_dir = tmp_path / "pairs" / PAIR_ID
    (pair_dir / "messages.backup.json").write_text(
        (pair_dir / "messages.json").read_text(encoding="utf-8"), encoding="utf-8"
    )
    (pair_dir / "messages.json").write_text("{broken", encoding="utf-8")

    assert [m.text for m in storage.load(PAIR_ID)] == ["hola"]


def test_bookmark_is_kept_in_meta(tmp_path):
    storage = Storage(base_dir=str(tmp_path))
    assert storage.get_bookmark(PAIR_ID) is None
    storage.set_bookmark(PAIR_ID, "m1")
    assert storage.get_bookmark(PAIR_ID) == "m1"
    storage.delete_history(PAIR_ID)
    assert storage.get_bookmark(PAIR_ID) is None


def test_sanitize_replaces_oversize_display_with_transport():
    big = MediaAsset(data="A" * (INLINE_MEDIA_CAPS["image"] + 4), mime_type="image/png")
    small = MediaAsset(data="QUJD", mime_type="image/jpeg")
    message = Message(role="user", display_media=big, transport_media=small, raw_response="x" * 50)

    clean = sanitize_for_persistence(message, raw_limit=10)
    assert clean.display_media == small
    assert clean.transport_media == small
    assert clean.raw_response == "x" * 10


def test_sanitize_caps_speech_cache():
    cache = {
        f"k{i}": SpeechCacheEntry(key=f"k{i}", lang="es-ES", provider="p", audio="UklGRg==", updated_at=float(i))
        for i in range(MAX_SPEECH_CACHE_ENTRIES + 5)
    }
    clean = sanitize_for_persistence(Message(role="assistant", text="hola", speech_cache=cache))
    assert len(clean.speech_cache) == MAX_SPEECH_CACHE_ENTRIES
    assert "k0" not in clean.speech_cache
    assert f"k{MAX_SPEECH_CACHE_ENTRIES + 4}" in clean.speech_cache


def test_settings_and_profile_round_trip(tmp_path):
    storage = Storage(base_dir=str(tmp_path))
    assert storage.load_settings().reengagement_seconds == 60

    storage.save_settings(ConversationSettings(speak_native=False, reengagement_seconds=20))
    loaded = storage.load_settings()
    assert loaded.speak_native is False
    assert loaded.reengagement_seconds == 20

    profile = storage.save_profile("Learner enjoys cooking.")
    assert storage.load_profile().text == "Learner enjoys cooking."
    assert profile.updated_at is not None
