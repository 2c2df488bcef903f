"""SpeculativeReplyEngine against a scripted Groq client."""

import asyncio

from duplex_voice.config import VoiceEngineConfig
from duplex_voice.events import ERROR_REPLY_TEXT, AiTurn, AiTurnStart, TextDelta
from duplex_voice.llm import SpeculativeReplyEngine, ToolContext, build_form_context
from duplex_voice.results import GenerationAborted, GenerationCompleted, GenerationFailed
from tests.fakes import FakeGroq, text_chunk, tool_call, tool_chunk

FORM = {"full_name": "", "email": "", "phone": "", "age": "", "physical": "", "mental": ""}


class RecordingTools:
    def __init__(self, complete_result="Onboarding complete", fail_update=False):
        self.updates = []
        self.completions = 0
        self._complete_result = complete_result
        self._fail_update = fail_update

    async def update_field(self, field, value):
        if self._fail_update:
            raise ValueError("no such field")
        self.updates.append((field, value))

    async def complete_onboarding(self):
        self.completions += 1
        return self._complete_result

    def context(self):
        return ToolContext(update_field=self.update_field, complete_onboarding=self.complete_onboarding)


def _engine(client, tools=None, **reply):
    config = VoiceEngineConfig()
    if reply:
        config = config.merge_patch({"reply": reply})
    return SpeculativeReplyEngine(client, config, tools.context() if tools else None)


def _texts(events):
    return "".join(e.text for e in events if isinstance(e, TextDelta))


class TestFormContext:
    def test_lists_filled_and_missing(self):
        context = build_form_context({"full_name": "Ada", "email": ""})
        assert "Filled: full_name: Ada" in context
        assert "Still needed: email" in context

    def test_empty_form(self):
        assert "Filled: none" in build_form_context({"age": ""})


class TestFullGeneration:
    """Authoritative streamed replies."""

    def test_streams_deltas_and_completes(self):
        async def run():
            client = FakeGroq(full=[[text_chunk("Hello "), text_chunk("Ada.")]])
            engine = _engine(client)
            events = []
            result = await engine.generate_reply("hi", 0, FORM, events.append)

            assert result == GenerationCompleted("Hello Ada.")
            assert isinstance(events[0], AiTurnStart)
            assert _texts(events) == "Hello Ada."
            assert events[-2] == TextDelta(text="", is_end=True, turn_order=0)
            assert events[-1] == AiTurn(turn_order=0, text="Hello Ada.")
            assert engine.history == [
                {"role": "user", "content": "hi"},
                {"role": "assistant", "content": "Hello Ada."},
            ]
            call = client.calls_of("full")[0]
            assert call["model"] == "llama-3.3-70b-versatile"
            assert call["tool_choice"] == "auto"
            assert "max_tokens" not in call
            assert call["messages"][0]["role"] == "system"

        asyncio.run(run())

    def test_failure_rolls_back_history(self):
        async def run():
            client = FakeGroq(full=[[text_chunk("Hel"), RuntimeError("provider down")]])
            engine = _engine(client)
            events = []
            result = await engine.generate_reply("hi", 0, FORM, events.append)

            assert isinstance(result, GenerationFailed)
            assert "provider down" in result.reason
            assert events[-1] == AiTurn(turn_order=0, text=ERROR_REPLY_TEXT, error=True)
            assert any(isinstance(e, TextDelta) and e.is_end for e in events)
            assert engine.history == []

        asyncio.run(run())

    def test_abort_is_not_an_error(self):
        async def run():
            gate = asyncio.Event()
            client = FakeGroq(full=[[text_chunk("Once upon"), gate, text_chunk(" a time")]])
            engine = _engine(client)
            events = []
            reply = asyncio.create_task(engine.generate_reply("story", 0, FORM, events.append))
            for _ in range(5):
                await asyncio.sleep(0)
            assert engine.generation_in_flight

            engine.abort_current()
            result = await reply

            assert result == GenerationAborted()
            assert not any(isinstance(e, AiTurn) for e in events)
            assert engine.history == [{"role": "user", "content": "story"}]
            assert not engine.generation_in_flight

        asyncio.run(run())

    def test_new_generation_supersedes_previous(self):
        async def run():
            gate = asyncio.Event()
            client = FakeGroq(full=[[gate, text_chunk("never")], [text_chunk("second")]])
            engine = _engine(client)
            first = asyncio.create_task(engine.generate_reply("one", 0, FORM, lambda e: None))
            for _ in range(5):
                await asyncio.sleep(0)
            second = await engine.generate_reply("two", 1, FORM, lambda e: None)

            assert await first == GenerationAborted()
            assert second == GenerationCompleted("second")

        asyncio.run(run())

    def test_history_is_capped(self):
        async def run():
            client = FakeGroq(full=[[text_chunk(f"r{i}")] for i in range(5)])
            engine = _engine(client, history_limit=4)
            for i in range(5):
                await engine.generate_reply(f"u{i}", i, FORM, lambda e: None)
            history = engine.history
            assert len(history) == 4
            assert history[0] == {"role": "user", "content": "u3"}
            assert history[-1] == {"role": "assistant", "content": "r4"}

        asyncio.run(run())


class TestTools:
    """Inline tool execution during a streamed reply."""

    def test_fill_field_then_spoken_reply(self):
        async def run():
            tools = RecordingTools()
            client = FakeGroq(full=[
                [
                    text_chunk("Thanks, Ada."),
                    tool_chunk(0, "call_1", "fill_field", '{"field": "full_'),
                    tool_chunk(0, None, None, 'name", "value": "Ada"}'),
                ],
                [text_chunk("How old are you?")],
            ])
            engine = _engine(client, tools)
            events = []
            result = await engine.generate_reply("I'm Ada", 0, FORM, events.append)
            await asyncio.sleep(0)

            assert tools.updates == [("full_name", "Ada")]
            assert result == GenerationCompleted("Thanks, Ada. How old are you?")
            second = client.calls_of("full")[1]["messages"]
            assert second[-2]["tool_calls"][0]["function"]["arguments"] == '{"field": "full_name", "value": "Ada"}'
            assert second[-1] == {"role": "tool", "tool_call_id": "call_1", "content": "Done."}

        asyncio.run(run())

    def test_complete_onboarding_result_returned_to_model(self):
        async def run():
            tools = RecordingTools(complete_result="Cannot complete: full name is required")
            client = FakeGroq(full=[
                [tool_chunk(0, "c1", "complete_onboarding", '{"confirm": "yes"}')],
                [text_chunk("Could I have your name first?")],
            ])
            engine = _engine(client, tools)
            await engine.generate_reply("that's all", 0, FORM, lambda e: None)

            assert tools.completions == 1
            tool_message = client.calls_of("full")[1]["messages"][-1]
            assert tool_message["content"] == "Cannot complete: full name is required"

        asyncio.run(run())

    def test_tool_failure_does_not_stop_speech(self):
        async def run():
            tools = RecordingTools(fail_update=True)
            client = FakeGroq(full=[
                [text_chunk("Got it."), tool_chunk(0, "c1", "fill_field", '{"field": "x", "value": "y"}')],
                [text_chunk(" Anything else?")],
            ])
            engine = _engine(client, tools)
            result = await engine.generate_reply("hm", 0, FORM, lambda e: None)
            await asyncio.sleep(0)
            assert result == GenerationCompleted("Got it. Anything else?")
            await engine.disconnect()

        asyncio.run(run())

    def test_bad_arguments_and_unknown_tool(self):
        async def run():
            engine = _engine(FakeGroq(), RecordingTools())
            assert (await engine._execute_tool("fill_field", "{oops")).startswith("Error")
            assert (await engine._execute_tool("launch", "{}")) == "Error: unknown tool launch"

        asyncio.run(run())


class TestEagerReplies:
    """Speculative pass and the exact-match rule."""

    def test_matching_eager_reply_is_spoken(self):
        async def run():
            tools = RecordingTools()
            client = FakeGroq(
                eager=["Lovely to meet you, Ada."],
                tool_pass=[[tool_call("t1", "fill_field", '{"field": "full_name", "value": "Ada"}')], []],
            )
            engine = _engine(client, tools)
            engine.prepare_eager_reply("my name is Ada", FORM)
            events = []
            result = await engine.generate_reply("my name is Ada", 0, FORM, events.append)

            assert result == GenerationCompleted("Lovely to meet you, Ada.")
            assert client.calls_of("full") == []
            deltas = [e for e in events if isinstance(e, TextDelta)]
            assert deltas[0].text == "Lovely to meet you, Ada." and deltas[1].is_end
            assert events[-1] == AiTurn(turn_order=0, text="Lovely to meet you, Ada.")
            assert client.calls_of("eager")[0]["model"] == "llama-3.1-8b-instant"

            for _ in range(10):
                await asyncio.sleep(0)
            assert tools.updates == [("full_name", "Ada")]
            first_pass = client.calls_of("tool_pass")[0]["messages"]
            prompts = [m["content"] for m in first_pass if m["role"] == "user"]
            assert "my name is Ada" in prompts[-1]
            assert prompts[-1].startswith("[SYSTEM:")
            assert engine.history[-1] == {"role": "assistant", "content": "Lovely to meet you, Ada."}

        asyncio.run(run())

    def test_mismatched_eager_target_forces_full_generation(self):
        async def run():
            gate = asyncio.Event()
            client = FakeGroq(eager=[(gate, "Great, yes!")], full=[[text_chunk("Okay, no problem.")]])
            engine = _engine(client)
            engine.prepare_eager_reply("yes", FORM)
            await asyncio.sleep(0)

            result = await engine.generate_reply("no", 0, FORM, lambda e: None)
            gate.set()
            await asyncio.sleep(0)

            assert result == GenerationCompleted("Okay, no problem.")
            assert len(client.calls_of("full")) == 1
            assert engine.eager_target is None
            assert not engine.eager_in_flight

        asyncio.run(run())

    def test_superseded_eager_target_is_not_cached(self):
        async def run():
            gate = asyncio.Event()
            client = FakeGroq(eager=[(gate, "stale"), "I am seventy"], full=[[text_chunk("fresh")]])
            engine = _engine(client)
            engine.prepare_eager_reply("I am", FORM)
            await asyncio.sleep(0)
            engine.prepare_eager_reply("I am 70", FORM)
            gate.set()
            result = await engine.generate_reply("I am 70", 0, FORM, lambda e: None)
            assert result == GenerationCompleted("I am seventy")

        asyncio.run(run())

    def test_slow_eager_times_out_into_full_generation(self):
        async def run():
            gate = asyncio.Event()
            client = FakeGroq(eager=[(gate, "too late")], full=[[text_chunk("live reply")]])
            engine = _engine(client, eager_wait_ms=10)
            engine.prepare_eager_reply("hello", FORM)
            result = await engine.generate_reply("hello", 0, FORM, lambda e: None)
            assert result == GenerationCompleted("live reply")
            assert not engine.eager_in_flight

        asyncio.run(run())

    def test_eager_error_falls_back(self):
        async def run():
            client = FakeGroq(eager=[RuntimeError("rate limited")], full=[[text_chunk("fallback")]])
            engine = _engine(client)
            engine.prepare_eager_reply("hi", FORM)
            result = await engine.generate_reply("hi", 0, FORM, lambda e: None)
            assert result == GenerationCompleted("fallback")

        asyncio.run(run())

    def test_abort_leaves_eager_alone(self):
        async def run():
            gate = asyncio.Event()
            client = FakeGroq(eager=[(gate, "later")])
            engine = _engine(client)
            engine.prepare_eager_reply("hmm", FORM)
            await asyncio.sleep(0)
            engine.abort_current()
            assert engine.eager_in_flight
            await engine.disconnect()
            assert not engine.eager_in_flight

        asyncio.run(run())


class TestBackgroundToolPass:
    """The tool-only pass that follows a spoken eager reply."""

    def test_hanging_tool_pass_gives_up_after_timeout(self):
        async def run():
            tools = RecordingTools()
            gate = asyncio.Event()
            fill = tool_call("t1", "fill_field", '{"field": "age", "value": "70"}')
            client = FakeGroq(eager=["Seventy, got it."], tool_pass=[(gate, [fill])])
            engine = _engine(client, tools, tool_pass_timeout_ms=100)
            engine.prepare_eager_reply("I am 70", FORM)
            result = await engine.generate_reply("I am 70", 0, FORM, lambda e: None)
            assert result == GenerationCompleted("Seventy, got it.")

            await asyncio.sleep(0)
            assert len(engine._background) == 1
            await asyncio.sleep(0.3)
            assert engine._background == set()

            gate.set()
            await asyncio.sleep(0)
            assert tools.updates == []

        asyncio.run(run())

    def test_disconnect_cancels_pending_tool_pass(self):
        async def run():
            tools = RecordingTools()
            gate = asyncio.Event()
            fill = tool_call("t1", "fill_field", '{"field": "age", "value": "70"}')
            client = FakeGroq(eager=["Seventy, got it."], tool_pass=[(gate, [fill])])
            engine = _engine(client, tools)
            engine.prepare_eager_reply("I am 70", FORM)
            await engine.generate_reply("I am 70", 0, FORM, lambda e: None)

            await asyncio.sleep(0)
            assert len(engine._background) == 1
            await asyncio.wait_for(engine.disconnect(), 1.0)
            assert engine._background == set()

            gate.set()
            for _ in range(5):
                await asyncio.sleep(0)
            assert tools.updates == []
            assert len(client.calls_of("tool_pass")) == 1

        asyncio.run(run())
