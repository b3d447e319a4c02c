import asyncio

import pytest

from fakes import AUX_MODEL, FakeGenerationClient, FakeObjectStore, make_session, png_asset
from maestro.config import settings
from maestro.models.schemas import ConversationSettings, MediaAsset
from maestro.services.error_recovery import ErrorRecovery
from maestro.services.llm_client import ApiFailure
from maestro.services.orchestrator import OrchestratorError
from maestro.services.prompts import REENGAGEMENT_PROMPT


class BlockingClient(FakeGenerationClient):
    """Holds the primary reply until released."""

    def __init__(self):
        super().__init__()
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def generate(self, model, prompt, **kwargs):
        if model != AUX_MODEL:
            self.started.set()
            await self.release.wait()
        return await super().generate(model, prompt, **kwargs)


def _raise_for_text_model(error):
    def handler(call):
        if call["model"] != AUX_MODEL:
            raise error
        return "{}"
    return handler


def test_successful_turn_persists_parsed_reply_and_enriches(tmp_path):
    async def scenario():
        session = make_session(tmp_path)
        ok = await session.send("Hola")
        await session.task_manager.wait_all(timeout=5)
        return session, ok

    session, ok = asyncio.run(scenario())

    assert ok is True
    user, reply = session.messages()
    assert (user.role, user.text) == ("user", "Hola")
    assert reply.role == "assistant" and not reply.thinking
    assert [(p.target, p.native) for p in reply.translations] == [
        ("Hola, ¿qué tal?", "Hello, how are you?"),
        ("¿Qué comiste hoy?", "What did you eat today?"),
    ]
    assert reply.raw_response.startswith("Hola")
    assert [s.target for s in reply.reply_suggestions] == ["Comí paella", "Nada todavía"]
    assert reply.chat_summary == "Learner talked about lunch."
    assert session.storage.load_profile().text == "Merged profile: likes food."
    assert session.scheduler.interval_seconds == 30
    assert len(session.drain_speech_queue()) == 4
    assert session.status()["turn"]["phase"] == "idle"

    text_call = session.client.calls_for(settings.text_model)[0]
    assert text_call["prompt"] == "Hola"
    assert "Spanish" in text_call["system_instruction"]


def test_second_send_is_rejected_while_turn_is_in_flight(tmp_path):
    async def scenario():
        client = BlockingClient()
        session = make_session(tmp_path, client=client)
        first = asyncio.create_task(session.send("Hola"))
        await client.started.wait()

        snapshot = session.status()
        second = await session.send("Otra vez")
        placeholder = session.messages()[-1]
        with pytest.raises(OrchestratorError):
            session.delete_message(placeholder.id)
        with pytest.raises(OrchestratorError):
            session.reset()

        client.release.set()
        return session, snapshot, second, await first

    session, snapshot, second, first = asyncio.run(scenario())

    assert snapshot["turn"]["phase"] == "generating"
    assert "send" in snapshot["busy"]
    assert second is False
    assert first is True
    assert [m.text for m in session.messages() if m.role == "user"] == ["Hola"]


def test_api_failure_turns_placeholder_into_error(tmp_path):
    failure = ApiFailure("quota", status=429, code="RESOURCE_EXHAUSTED")

    async def scenario():
        session = make_session(tmp_path, client=FakeGenerationClient(_raise_for_text_model(failure)))
        ok = await session.send("Hola")
        return session, ok

    session, ok = asyncio.run(scenario())

    assert ok is False
    roles = [m.role for m in session.messages()]
    assert roles == ["user", "error"]
    error = session.messages()[-1]
    assert error.text == ErrorRecovery.CODE_MESSAGES["RESOURCE_EXHAUSTED"]
    assert not error.thinking
    assert session.status()["turn"]["last_error"] == error.text
    assert session.scheduler.reason == "send-error"
    assert session.busy.external_count() == 0


def test_empty_reply_is_an_error(tmp_path):
    async def scenario():
        session = make_session(tmp_path, client=FakeGenerationClient(lambda call: "   "))
        return session, await session.send("Hola")

    session, ok = asyncio.run(scenario())
    assert ok is False
    assert session.messages()[-1].role == "error"


def test_attachment_is_uploaded_and_sent_with_prompt(tmp_path):
    async def scenario():
        store = FakeObjectStore()
        session = make_session(tmp_path, object_store=store)
        ok = await session.send("¿Qué es esto?", png_asset())
        await session.task_manager.wait_all(timeout=5)
        return session, store, ok

    session, store, ok = asyncio.run(scenario())

    assert ok is True
    user = session.messages()[0]
    assert user.display_media.mime_type == "image/png"
    assert user.transport_media.mime_type == "image/jpeg"
    assert user.remote_ref is not None
    text_call = session.client.calls_for(settings.text_model)[0]
    assert text_call["attachment"] == user.remote_ref
    assert store.uploads == [f"message-{user.id}"]


def test_upload_failure_degrades_to_text_only_turn(tmp_path):
    async def scenario():
        session = make_session(tmp_path, object_store=FakeObjectStore(fail_uploads=True))
        ok = await session.send("Mira", png_asset())
        await session.task_manager.wait_all(timeout=5)
        return session, ok

    session, ok = asyncio.run(scenario())

    assert ok is True
    user = session.messages()[0]
    assert user.display_media is not None
    assert user.remote_ref is None
    assert session.client.calls_for(settings.text_model)[0]["attachment"] is None
    assert session.messages()[-1].role == "assistant"


def test_video_is_sent_as_original_clip(tmp_path):
    video = MediaAsset.from_bytes(b"not really a video", "video/mp4")

    async def scenario():
        session = make_session(tmp_path)
        ok = await session.send("Mira mi video", video)
        await session.task_manager.wait_all(timeout=5)
        return session, ok

    session, ok = asyncio.run(scenario())

    assert ok is True
    user = session.messages()[0]
    assert user.display_media is None
    assert user.transport_media == video
    attachment = session.client.calls_for(settings.text_model)[0]["attachment"]
    assert attachment.mime_type == "video/mp4"


def test_send_is_rejected_while_speech_is_active(tmp_path):
    async def scenario():
        session = make_session(tmp_path)
        session.report_speech_state(speaking=True)
        return session, await session.send("Hola")

    session, ok = asyncio.run(scenario())
    assert ok is False
    assert session.messages() == []


def test_empty_prompt_without_attachment_is_ignored(tmp_path):
    async def scenario():
        session = make_session(tmp_path)
        return session, await session.send("   ")

    session, ok = asyncio.run(scenario())
    assert ok is False
    assert session.messages() == []


def test_conversational_reengagement_sends_synthetic_prompt(tmp_path):
    async def scenario():
        session = make_session(tmp_path)
        ok = await session.orchestrator.trigger_reengagement("send-complete")
        await session.task_manager.wait_all(timeout=5)
        return session, ok

    session, ok = asyncio.run(scenario())

    assert ok is True
    user = session.messages()[0]
    assert user.text == REENGAGEMENT_PROMPT
    assert not user.has_media
    assert session.client.calls_for(settings.text_model)[0]["prompt"] == REENGAGEMENT_PROMPT


def test_visual_reengagement_uses_pushed_snapshot(tmp_path):
    async def scenario():
        session = make_session(tmp_path)
        session.update_preferences(ConversationSettings(reengagement_use_visual_context=True))
        session.push_snapshot(png_asset((320, 240)))
        ok = await session.orchestrator.trigger_reengagement("became-idle")
        await session.task_manager.wait_all(timeout=5)
        return session, ok

    session, ok = asyncio.run(scenario())

    assert ok is True
    user = session.messages()[0]
    assert user.display_media is not None
    assert session.client.calls_for(settings.text_model)[0]["attachment"] is not None


def test_reengagement_is_skipped_when_disabled(tmp_path):
    async def scenario():
        session = make_session(tmp_path)
        session.update_preferences(ConversationSettings(reengagement_enabled=False))
        return session, await session.orchestrator.trigger_reengagement("became-idle")

    session, ok = asyncio.run(scenario())
    assert ok is False
    assert session.messages() == []


def test_history_is_sent_on_following_turns(tmp_path):
    async def scenario():
        session = make_session(tmp_path)
        await session.send("Hola")
        await session.task_manager.wait_all(timeout=5)
        session.drain_speech_queue()
        ok = await session.send("Comí paella")
        await session.task_manager.wait_all(timeout=5)
        return session, ok

    session, ok = asyncio.run(scenario())

    assert ok is True
    window = session.client.calls_for(settings.text_model)[1]["window"]
    assert [item.role for item in window.items] == ["user", "assistant"]
    assert window.items[0].text == "Hola"


class ExpiringStore(FakeObjectStore):
    """Reports references dead right after the next liveness check."""

    def __init__(self):
        super().__init__()
        self.expire_after_check = False

    async def check_live(self, refs):
        result = await super().check_live(refs)
        if self.expire_after_check:
            self.expire_all()
            self.expire_after_check = False
        return result


async def _send_with_photo_then_text(session, store_setup):
    await session.send("Mira", png_asset())
    await session.task_manager.wait_all(timeout=5)
    session.drain_speech_queue()
    store_setup()
    ok = await session.send("Hola")
    await session.task_manager.wait_all(timeout=5)
    return ok


def test_failed_liveness_check_does_not_abort_turn(tmp_path):
    store = FakeObjectStore()

    async def scenario():
        session = make_session(tmp_path, object_store=store)
        ok = await _send_with_photo_then_text(session, lambda: setattr(store, "fail_checks", True))
        return session, ok

    session, ok = asyncio.run(scenario())

    assert ok is True
    assert session.messages()[-1].role == "assistant"
    window = session.client.calls_for(settings.text_model)[1]["window"]
    assert window.items[0].remote_ref is not None
    assert window.items[0].remote_ref.uri == session.messages()[0].remote_ref.uri
    assert len(store.uploads) > 1


def test_second_liveness_pass_is_authoritative(tmp_path):
    store = ExpiringStore()

    async def scenario():
        session = make_session(tmp_path, object_store=store)
        seeded = []

        def expire_on_next_check():
            seeded.append(session.messages()[0].remote_ref)
            store.expire_after_check = True

        ok = await _send_with_photo_then_text(session, expire_on_next_check)
        return session, seeded[0], ok

    session, seed, ok = asyncio.run(scenario())

    assert ok is True
    assert store.checks == [[seed.uri], [seed.uri]]
    assert len(store.uploads) == 2
    sent = session.client.calls_for(settings.text_model)[1]["window"].items[0].remote_ref
    assert sent.uri != seed.uri
    assert sent == session.messages()[0].remote_ref
