import pytest

from maestro.models.schemas import Message, ReplySuggestion, SpeechCacheEntry
from maestro.services.chat_store import BOOKMARK_SLACK, ChatStore
from maestro.services.storage import Storage

PAIR_ID = "es-ES__en-US"


def _store(tmp_path, max_visible=50):
    return ChatStore(PAIR_ID, Storage(base_dir=str(tmp_path)), max_visible_messages=max_visible)


def test_update_by_id_touches_only_named_fields(tmp_path):
    store = _store(tmp_path)
    message = store.add_message(Message(role="assistant", text="Hola", chat_summary="s"))
    store.update_message(message.id, is_generating_image=True)
    store.update_message(message.id, reply_suggestions=[ReplySuggestion(target="Sí", native="Yes")])

    current = store.get(message.id)
    assert current.is_generating_image is True
    assert current.reply_suggestions[0].target == "Sí"
    assert current.chat_summary == "s"
    assert current.text == "Hola"


def test_update_of_deleted_message_is_ignored(tmp_path):
    store = _store(tmp_path)
    message = store.add_message(Message(role="user", text="hola"))
    assert store.delete_message(message.id) is True
    assert store.update_message(message.id, text="late") is None
    assert store.messages == []


def test_changes_are_persisted_and_notified(tmp_path):
    store = _store(tmp_path)
    seen = []
    store.subscribe(lambda: seen.append(len(store.messages)))
    store.add_message(Message(role="user", text="hola"))

    reloaded = _store(tmp_path)
    assert [m.text for m in reloaded.messages] == ["hola"]
    assert seen == [1]


def test_bookmark_rejects_unknown_and_thinking_messages(tmp_path):
    store = _store(tmp_path)
    placeholder = store.add_message(Message(role="assistant", thinking=True))
    with pytest.raises(ValueError):
        store.set_bookmark("missing")
    with pytest.raises(ValueError):
        store.set_bookmark(placeholder.id)


def test_deleting_bookmarked_message_clears_bookmark(tmp_path):
    store = _store(tmp_path)
    message = store.add_message(Message(role="assistant", text="Hola"))
    store.set_bookmark(message.id)
    store.delete_message(message.id)
    assert store.bookmark_message_id is None
    assert _store(tmp_path).bookmark_message_id is None


def test_dangling_bookmark_is_dropped_on_load(tmp_path):
    storage = Storage(base_dir=str(tmp_path))
    storage.set_bookmark(PAIR_ID, "gone")
    store = ChatStore(PAIR_ID, storage)
    assert store.bookmark_message_id is None


def test_bookmark_advances_when_history_exceeds_visible_budget(tmp_path):
    store = _store(tmp_path, max_visible=4)
    ids = []
    for i in range(4 + BOOKMARK_SLACK):
        role = "user" if i % 2 == 0 else "assistant"
        ids.append(store.add_message(Message(role=role, text=f"t{i}")).id)
    assert store.bookmark_message_id is None

    store.add_message(Message(role="user", text="one more"))
    # Seven real turns, limit six: cut-off at index 1, an assistant message
    assert store.bookmark_message_id == ids[1]


def test_reset_clears_history_and_bookmark(tmp_path):
    store = _store(tmp_path)
    message = store.add_message(Message(role="assistant", text="Hola"))
    store.set_bookmark(message.id)
    store.reset()
    assert store.messages == []
    assert store.bookmark_message_id is None
    assert _store(tmp_path).messages == []


def test_speech_cache_upsert_on_message_and_suggestion(tmp_path):
    store = _store(tmp_path)
    message = store.add_message(
        Message(
            role="assistant",
            text="Hola",
            reply_suggestions=[ReplySuggestion(target="Sí", native="Yes")],
        )
    )
    entry = SpeechCacheEntry(key="k1", lang="es-ES", provider="browser", audio="UklGRg==")

    assert store.upsert_speech_cache(message.id, entry) is True
    assert store.upsert_speech_cache(message.id, entry.model_copy(update={"audio": "bmV3"})) is True
    assert store.upsert_speech_cache(message.id, entry, suggestion_index=0) is True
    assert store.upsert_speech_cache(message.id, entry, suggestion_index=5) is False
    assert store.upsert_speech_cache("missing", entry) is False

    current = store.get(message.id)
    assert list(current.speech_cache) == ["k1"]
    assert current.speech_cache["k1"].audio == "bmV3"
    assert "k1" in current.reply_suggestions[0].speech_cache
