from maestro.services.auto_send import AutoSendOnSilence
from maestro.services.speech import SpeechBridge


def _auto_send(can_send=True):
    speech = SpeechBridge()
    sent = []
    auto = AutoSendOnSilence(
        speech,
        can_send=lambda: can_send,
        on_send=sent.append,
        clock=lambda: 0.0,
        stable_seconds=2.0,
    )
    return auto, speech, sent


def test_stable_transcript_is_sent_once():
    auto, speech, sent = _auto_send()
    speech.transcript = "hola amigo"
    auto.on_transcript(now=0.0)

    auto.tick(1.9)
    assert sent == []
    auto.tick(2.0)
    assert sent == ["hola amigo"]
    assert speech.transcript == ""

    auto.tick(10.0)
    assert sent == ["hola amigo"]


def test_changing_transcript_rearms_the_deadline():
    auto, speech, sent = _auto_send()
    speech.transcript = "hola"
    auto.on_transcript(now=0.0)
    speech.transcript = "hola amigo"
    auto.on_transcript(now=1.5)

    auto.tick(2.0)
    assert sent == []
    auto.tick(3.5)
    assert sent == ["hola amigo"]


def test_short_or_bracketed_text_is_ignored():
    auto, speech, sent = _auto_send()
    speech.transcript = "[noise] a"
    auto.on_transcript(now=0.0)
    assert auto.next_deadline() is None
    auto.tick(5.0)
    assert sent == []


def test_blocked_send_keeps_transcript():
    auto, speech, sent = _auto_send(can_send=False)
    speech.transcript = "hola amigo"
    auto.on_transcript(now=0.0)
    auto.tick(2.0)
    assert sent == []
    assert speech.transcript == "hola amigo"
