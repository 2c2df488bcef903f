"""VoiceSession: control messages, tool context, fan-out and pipeline lifecycle."""

import asyncio
import json

from duplex_voice.session import VoiceSession
from tests.fakes import FakeGroq, FakeRecognizer, FakeSocket, settle, text_chunk


def _session(connect_ok=True, keys=True, client=None):
    recognizers = []

    def make_recognizer(api_key, config):
        recognizer = FakeRecognizer(api_key, config, connect_ok=connect_ok)
        recognizers.append(recognizer)
        return recognizer

    session = VoiceSession(
        "s1",
        deepgram_api_key="dg" if keys else None,
        groq_api_key="gq" if keys else None,
        recognizer_factory=make_recognizer,
        client_factory=lambda key: client or FakeGroq(),
    )
    return session, recognizers


async def _flush(session):
    await settle(session.coordinator)
    await asyncio.sleep(0)


class TestControlMessages:
    def test_get_state_goes_to_requester_only(self):
        async def run():
            session, _ = _session()
            a, b = FakeSocket(), FakeSocket()
            session.attach(a)
            session.attach(b)
            await session.handle_text(a, json.dumps({"type": "get_state"}))
            await _flush(session)
            assert a.types() == ["form_state"]
            assert a.sent[0]["form"]["full_name"] == ""
            assert b.sent == []
            await session.close()

        asyncio.run(run())

    def test_update_field_broadcasts(self):
        async def run():
            session, _ = _session()
            a, b = FakeSocket(), FakeSocket()
            session.attach(a)
            session.attach(b)
            await session.handle_text(a, json.dumps({"type": "update_field", "field": "email", "value": "a@b.c"}))
            await _flush(session)
            assert session.form.email == "a@b.c"
            expected = {"type": "field_updated", "field": "email", "value": "a@b.c"}
            assert a.sent == [expected] and b.sent == [expected]
            await session.close()

        asyncio.run(run())

    def test_unknown_field_and_garbage_ignored(self):
        async def run():
            session, _ = _session()
            ws = FakeSocket()
            session.attach(ws)
            await session.handle_text(ws, json.dumps({"type": "update_field", "field": "password", "value": "x"}))
            await session.handle_text(ws, "{{{")
            await _flush(session)
            assert ws.sent == []
            await session.close()

        asyncio.run(run())

    def test_reset_form(self):
        async def run():
            session, _ = _session()
            ws = FakeSocket()
            session.attach(ws)
            session.form.full_name = "Ada"
            await session.handle_text(ws, json.dumps({"type": "reset_form"}))
            await _flush(session)
            assert session.form.full_name == ""
            assert ws.types() == ["form_reset"]
            await session.close()

        asyncio.run(run())


class TestToolContext:
    def test_complete_requires_full_name(self):
        async def run():
            session, _ = _session()
            assert await session.complete_onboarding() == "Cannot complete: full name is required"
            assert not session.completed

            await session.update_field("full_name", "Ada Lovelace")
            assert await session.complete_onboarding() == "Onboarding complete"
            assert session.completed

        asyncio.run(run())

    def test_complete_broadcasts_form(self):
        async def run():
            session, _ = _session()
            ws = FakeSocket()
            session.attach(ws)
            await session.update_field("full_name", "Ada")
            await session.complete_onboarding()
            await _flush(session)
            assert ws.types() == ["field_updated", "onboarding_complete"]
            assert ws.sent[1]["form"]["full_name"] == "Ada"
            await session.close()

        asyncio.run(run())

    def test_unknown_field_raises_for_tool(self):
        async def run():
            session, _ = _session()
            try:
                await session.update_field("shoe_size", "9")
            except ValueError as exc:
                assert "shoe_size" in str(exc)
            else:
                raise AssertionError("expected ValueError")

        asyncio.run(run())


class TestPipeline:
    """Voice mode start / stop."""

    def test_hello_voice_starts_pipeline(self):
        async def run():
            session, recognizers = _session()
            ws = FakeSocket()
            session.attach(ws)
            await session.handle_text(ws, json.dumps({"type": "hello", "mode": "voice"}))
            await _flush(session)

            assert session.voice_mode
            assert ws.sent == [{"type": "services_ready", "stt": True, "sampleRate": 16000}]
            assert recognizers[0].api_key == "dg"
            assert recognizers[0].callbacks is not None

            await session.handle_audio(b"\x00\x01")
            assert recognizers[0].frames == [b"\x00\x01"]
            await session.close()
            assert recognizers[0].disconnected

        asyncio.run(run())

    def test_hello_text_mode_does_nothing(self):
        async def run():
            session, recognizers = _session()
            ws = FakeSocket()
            session.attach(ws)
            await session.handle_text(ws, json.dumps({"type": "hello"}))
            await _flush(session)
            assert not session.voice_mode
            assert recognizers == []
            await session.close()

        asyncio.run(run())

    def test_missing_keys_emit_single_error(self):
        async def run():
            session, recognizers = _session(keys=False)
            ws = FakeSocket()
            session.attach(ws)
            assert await session.start_pipeline(ws) is False
            await _flush(session)
            assert ws.types() == ["error"]
            assert recognizers == []
            assert not session.voice_mode
            await session.close()

        asyncio.run(run())

    def test_connect_failure_leaves_no_pipeline(self):
        async def run():
            session, _ = _session(connect_ok=False)
            ws = FakeSocket()
            session.attach(ws)
            assert await session.start_pipeline(ws) is False
            await _flush(session)
            assert ws.types() == ["error"]
            assert not session.voice_mode
            await session.handle_audio(b"\x00\x00")
            await session.close()

        asyncio.run(run())

    def test_audio_dropped_without_pipeline(self):
        async def run():
            session, recognizers = _session()
            await session.handle_audio(b"\x00\x00")
            assert recognizers == []

        asyncio.run(run())

    def test_confirmed_speech_produces_reply_for_all_connections(self):
        async def run():
            client = FakeGroq(full=[[text_chunk("Hello Ada, how old are you?")]])
            session, recognizers = _session(client=client)
            a, b = FakeSocket(), FakeSocket()
            session.attach(a)
            session.attach(b)
            await session.start_pipeline(a)

            recognizers[0].callbacks.on_confirmed_transcript("I'm Ada", 0)
            for _ in range(5):
                await _flush(session)

            expected = ["user_turn", "ai_turn_start", "text_delta", "text_delta", "ai_turn"]
            assert a.types()[1:] == expected
            assert b.types() == expected
            await session.stop_pipeline()
            assert not session.voice_mode
            await session.close()

        asyncio.run(run())

    def test_stop_voice(self):
        async def run():
            session, recognizers = _session()
            ws = FakeSocket()
            session.attach(ws)
            await session.start_pipeline(ws)
            await session.handle_text(ws, json.dumps({"type": "stop_voice"}))
            assert not session.voice_mode
            assert recognizers[0].disconnected
            await session.close()

        asyncio.run(run())


class TestConnections:
    def test_dead_connection_dropped(self):
        async def run():
            session, _ = _session()
            good, dead = FakeSocket(), FakeSocket(fail=True)
            session.attach(good)
            session.attach(dead)
            await session.handle_text(good, json.dumps({"type": "reset_form"}))
            await _flush(session)
            assert session.connection_count == 1
            assert good.types() == ["form_reset"]
            await session.close()

        asyncio.run(run())

    def test_detach_reports_last_connection(self):
        async def run():
            session, _ = _session()
            a, b = FakeSocket(), FakeSocket()
            session.attach(a)
            session.attach(b)
            assert session.detach(a) is False
            assert session.detach(b) is True
            await session.close()

        asyncio.run(run())
