from maestro.models.schemas import MediaAsset, Message, RemoteRef, TranslationPair
from maestro.services.history_window import (
    PREVIOUS_IMAGE_NOTE,
    PROFILE_HEADER,
    SUMMARY_HEADER,
    HistoryWindow,
    WindowItem,
    build_window,
    restrict_for_image_generation,
    select_candidates,
)


def _ref(n: int, mime: str = "image/jpeg") -> RemoteRef:
    return RemoteRef(uri=f"https://store.test/files/f{n}", mime_type=mime, name=f"files/f{n}")


def _history(turns: int, media_every: int = 0):
    messages = []
    for i in range(turns):
        role = "user" if i % 2 == 0 else "assistant"
        message = Message(id=f"m{i}", role=role, text=f"turn {i}")
        if media_every and i % media_every == 0:
            message = message.model_copy(
                update={
                    "transport_media": MediaAsset(data="aGVsbG8=", mime_type="image/jpeg"),
                    "remote_ref": _ref(i),
                }
            )
        messages.append(message)
    return messages


def test_window_is_deterministic():
    messages = _history(10, media_every=3)
    first = build_window(messages, "m2", 5, 2, profile_text="likes cats")
    second = build_window(messages, "m2", 5, 2, profile_text="likes cats")
    assert first == second


def test_window_starts_strictly_after_bookmark():
    messages = _history(12)
    for index in range(len(messages)):
        window = build_window(messages, f"m{index}", None, 10)
        ids = [item.message_id for item in window.items]
        assert all(int(i[1:]) > index for i in ids)


def test_placeholder_bookmark_is_ignored():
    messages = _history(4) + [Message(id="p", role="assistant", thinking=True)]
    window = build_window(messages, "p", None, 10)
    assert [item.message_id for item in window.items] == ["m0", "m1", "m2", "m3"]


def test_only_real_turns_count_toward_max_turns():
    messages = _history(6)
    messages.insert(3, Message(id="err", role="error", text="boom"))
    messages.insert(5, Message(id="st", role="status", text="status"))
    candidates = select_candidates(messages, None, 4)
    assert [m.id for m in candidates] == ["m2", "m3", "m4", "m5"]


def test_media_budget_limits_live_references():
    messages = _history(12, media_every=1)
    window = build_window(messages, None, None, 3)
    assert window.live_ref_count == 3
    live = [item.message_id for item in window.items if item.remote_ref]
    assert live == ["m9", "m10", "m11"]
    assert window.items[0].text.endswith("[image context omitted]")


def test_unverified_reference_is_replaced_by_note():
    messages = _history(4, media_every=2)
    window = build_window(messages, None, None, 10, verified_ids={"m2"})
    by_id = {item.message_id: item for item in window.items}
    assert by_id["m0"].remote_ref is None
    assert "[image context omitted]" in by_id["m0"].text
    assert by_id["m2"].remote_ref == _ref(2)


def test_ref_override_wins_over_stored_reference():
    messages = _history(2, media_every=2)
    fresh = _ref(99)
    window = build_window(messages, None, None, 10, ref_overrides={"m0": fresh})
    assert window.items[0].remote_ref == fresh


def test_preface_carries_profile_and_summary_before_window():
    messages = _history(6)
    messages[1] = messages[1].model_copy(update={"chat_summary": "Old summary"})
    messages[5] = messages[5].model_copy(update={"chat_summary": "Newest summary"})
    window = build_window(messages, "m3", None, 10, profile_text="Prefers short answers")
    assert window.preface.startswith(PROFILE_HEADER)
    assert "Prefers short answers" in window.preface
    assert f"{SUMMARY_HEADER}\nOld summary" in window.preface
    assert "Newest summary" not in window.preface


def test_summary_is_taken_from_bookmark_not_window_start():
    messages = _history(6)
    messages[1] = messages[1].model_copy(update={"chat_summary": "At bookmark"})
    messages[3] = messages[3].model_copy(update={"chat_summary": "After bookmark"})
    window = build_window(messages, "m1", 2, 5)
    assert window.preface == f"{SUMMARY_HEADER}\nAt bookmark"


def test_no_summary_without_bookmark():
    messages = _history(6)
    messages[3] = messages[3].model_copy(update={"chat_summary": "Mid summary"})
    assert build_window(messages, None, 2, 5).preface is None
    assert build_window(messages, "missing", 2, 5).preface is None


def test_assistant_items_prefer_raw_response():
    message = Message(
        id="a",
        role="assistant",
        translations=[TranslationPair(target="Hola", native="Hello")],
        raw_response="Hola\n[EN] Hello",
    )
    window = build_window([message], None, None, 10)
    assert window.items[0].text == "Hola\n[EN] Hello"


def test_preface_becomes_leading_user_turn():
    window = HistoryWindow(
        preface="context",
        items=[WindowItem(message_id="a", role="assistant", text="Hola")],
    )
    turns = window.to_turns()
    assert turns[0].role == "user" and turns[0].text == "context"

    window = HistoryWindow(preface="context", items=[WindowItem(role="user", text="hi")])
    assert window.to_turns()[0].text == "context\n\nhi"


def test_image_generation_keeps_three_most_recent_images():
    items = [
        WindowItem(message_id=f"m{i}", role="user", text=f"t{i}", remote_ref=_ref(i))
        for i in range(5)
    ]
    items.append(
        WindowItem(message_id="v", role="user", text="clip", remote_ref=_ref(9, "video/mp4"))
    )
    restricted = restrict_for_image_generation(HistoryWindow(items=items), 3)
    kept = [item.message_id for item in restricted.items if item.remote_ref]
    assert kept == ["m2", "m3", "m4"]
    assert restricted.items[0].text == f"t0 {PREVIOUS_IMAGE_NOTE}"
    assert restricted.items[-1].text == "clip [video context omitted]"
