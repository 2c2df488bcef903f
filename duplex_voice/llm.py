"""
llm.py — Duplex Voice · Speculative reply engine
================================================
Owns the conversation history and two independently cancellable
generation tasks against Groq:

  eager: fast model, no tools, started on a provisional end of turn.
           Cached only while its target transcript is still current.
  full:  authoritative model with tool calls, started on a confirmed
           utterance.  Aborted on barge-in.

When a cached eager reply matches the confirmed transcript byte for byte
it is spoken immediately, and a tool-only pass runs in the background so
the slower tool-calling round trip never delays the first audible word.

Cancellation never surfaces as an error: ``generate_reply`` returns a
:class:`GenerationAborted` and nothing is appended to history for the
aborted reply.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Optional

from groq import AsyncGroq

from duplex_voice.config import VoiceEngineConfig
from duplex_voice.events import (
    ERROR_REPLY_TEXT,
    AiTurn,
    AiTurnStart,
    OutwardEvent,
    TextDelta,
)
from duplex_voice.results import (
    GenerationAborted,
    GenerationCompleted,
    GenerationFailed,
    GenerationResult,
    ResolvedInTime,
    TaskFailed,
    TimedOut,
    wait_bounded,
)

log = logging.getLogger("duplex_voice.llm")

Emit = Callable[[OutwardEvent], None]

FORM_FIELDS: tuple[str, ...] = ("full_name", "email", "phone", "age", "physical", "mental")

TOOLS: list[dict[str, Any]] = [
    {
        "type": "function",
        "function": {
            "name": "fill_field",
            "description": (
                "Fill a profile field with information from the user. ALWAYS include a spoken "
                "text response alongside tool calls. Valid fields: " + ", ".join(FORM_FIELDS) + "."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "field": {
                        "type": "string",
                        "enum": list(FORM_FIELDS),
                        "description": "The profile field to fill",
                    },
                    "value": {"type": "string", "description": "The value to set"},
                },
                "required": ["field", "value"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "complete_onboarding",
            "description": "Mark onboarding as complete when all required fields are filled",
            "parameters": {
                "type": "object",
                "properties": {
                    "confirm": {"type": "string", "description": 'Set to "yes" to confirm completion'},
                },
                "required": ["confirm"],
            },
        },
    },
]

_TOOL_PASS_INSTRUCTION = (
    "[SYSTEM: You already responded to the user with spoken text. Now determine if any tool "
    'calls are needed based on the user\'s message: "{transcript}". If no tools are needed, '
    'respond with just "ok". Do NOT generate spoken text, only call tools if appropriate.]'
)


@dataclass
class ToolContext:
    """Side effects the model may trigger.  Supplied by the owning session."""
    update_field: Callable[[str, str], Awaitable[None]]
    complete_onboarding: Callable[[], Awaitable[str]]


def create_groq_client(api_key: str) -> AsyncGroq:
    return AsyncGroq(api_key=api_key)


def build_form_context(form: Mapping[str, str]) -> str:
    filled = [f"{k}: {v}" for k, v in form.items() if v]
    empty = [k for k, v in form.items() if not v]
    return (
        "\n\nCurrent form state:\n"
        f"Filled: {', '.join(filled) if filled else 'none'}\n"
        f"Still needed: {', '.join(empty) if empty else 'none'}"
    )


class _TurnStream:
    """Emits the ai_turn_start / text_delta / end sequence for one turn."""

    def __init__(self, turn_order: int, emit: Emit):
        self.turn_order = turn_order
        self._emit = emit
        self._parts: list[str] = []
        self.started = False
        self.ended = False
        self._separate_next = False

    @property
    def text(self) -> str:
        return "".join(self._parts)

    def delta(self, text: str) -> None:
        if not text:
            return
        if not self.started:
            self.started = True
            self._emit(AiTurnStart(turn_order=self.turn_order))
        if self._separate_next:
            self._separate_next = False
            if self._parts and not self._parts[-1][-1:].isspace() and not text[:1].isspace():
                text = " " + text
        self._parts.append(text)
        self._emit(TextDelta(text=text, is_end=False, turn_order=self.turn_order))

    def new_step(self) -> None:
        """Model round trip boundary: keep words from two steps apart."""
        self._separate_next = bool(self._parts)

    def end(self) -> None:
        if self.ended:
            return
        self.ended = True
        self._emit(TextDelta(text="", is_end=True, turn_order=self.turn_order))


class SpeculativeReplyEngine:
    def __init__(
        self,
        client: Any,
        config: Optional[VoiceEngineConfig] = None,
        tool_context: Optional[ToolContext] = None,
    ):
        self._client = client
        self.config = config or VoiceEngineConfig()
        self.tool_context = tool_context

        self._history: list[dict[str, Any]] = []

        # Eager state
        self._eager_task: asyncio.Task | None = None
        self._eager_target: str | None = None
        self._eager_reply: str | None = None

        # Full generation
        self._full_task: asyncio.Task | None = None

        # Background work: tool-only passes and fire-and-forget field updates
        self._background: set[asyncio.Task] = set()

    # -- history -------------------------------------------------------------

    @property
    def history(self) -> list[dict[str, Any]]:
        return [dict(m) for m in self._history]

    def _append_history(self, role: str, content: str) -> dict[str, Any]:
        message = {"role": role, "content": content}
        self._history.append(message)
        limit = self.config.reply.history_limit
        if len(self._history) > limit:
            self._history = self._history[-limit:]
        return message

    def _drop_history_entry(self, message: dict[str, Any]) -> None:
        self._history = [m for m in self._history if m is not message]

    def _limits(self) -> dict[str, Any]:
        max_tokens = self.config.groq.max_tokens
        return {"max_tokens": max_tokens} if max_tokens is not None else {}

    def _system_message(self, form: Mapping[str, str]) -> dict[str, Any]:
        return {"role": "system", "content": self.config.system_prompt + build_form_context(form)}

    # -- introspection -------------------------------------------------------

    @property
    def eager_target(self) -> str | None:
        return self._eager_target

    @property
    def eager_in_flight(self) -> bool:
        return self._eager_task is not None and not self._eager_task.done()

    @property
    def generation_in_flight(self) -> bool:
        return self._full_task is not None and not self._full_task.done()

    # -- eager pass ----------------------------------------------------------

    def prepare_eager_reply(self, transcript: str, form_snapshot: Mapping[str, str]) -> None:
        """Start a speculative reply for *transcript*, superseding any earlier one."""
        self._cancel_eager()
        self._eager_target = transcript
        self._eager_reply = None
        messages = [self._system_message(form_snapshot), *self.history, {"role": "user", "content": transcript}]
        self._eager_task = asyncio.create_task(self._run_eager(transcript, messages), name="eager_reply")
        log.info("event=eager_start transcript_len=%d", len(transcript))

    def _cancel_eager(self) -> None:
        task, self._eager_task = self._eager_task, None
        if task is not None and not task.done():
            task.cancel()
            log.debug("event=eager_cancel")

    async def _run_eager(self, transcript: str, messages: list[dict[str, Any]]) -> str | None:
        groq = self.config.groq
        start = time.perf_counter()
        try:
            response = await self._client.chat.completions.create(
                model=groq.eager_model,
                messages=messages,
                temperature=groq.temperature,
                **self._limits(),
                stream=False,
            )
            text = (response.choices[0].message.content or "").strip()
        except asyncio.CancelledError:
            log.debug("event=eager_cancelled transcript_len=%d", len(transcript))
            raise
        except Exception as exc:
            log.warning("event=eager_error error=%s", exc)
            return None

        elapsed_ms = (time.perf_counter() - start) * 1000
        if self._eager_target == transcript:
            self._eager_reply = text
            log.info("event=eager_ready reply_len=%d duration_ms=%.1f", len(text), elapsed_ms)
        else:
            log.info("event=eager_discarded reason=target_changed duration_ms=%.1f", elapsed_ms)
        return text

    async def _take_eager_reply(self, transcript: str) -> str | None:
        """Resolve the eager cache against the confirmed transcript (exact match only)."""
        task = self._eager_task
        if task is not None and not task.done() and self._eager_target == transcript:
            wait_sec = self.config.reply.eager_wait_ms / 1000.0
            log.info("event=eager_wait timeout_ms=%d", self.config.reply.eager_wait_ms)
            outcome = await wait_bounded(task, wait_sec)
            if isinstance(outcome, TimedOut):
                log.warning("event=eager_wait_timeout timeout_ms=%d", self.config.reply.eager_wait_ms)
            elif isinstance(outcome, TaskFailed):
                log.warning("event=eager_wait_failed error=%r", outcome.error)
            elif isinstance(outcome, ResolvedInTime):
                log.debug("event=eager_wait_resolved")
        elif self._eager_target is not None and self._eager_target != transcript:
            log.info(
                "event=eager_mismatch eager_len=%d confirmed_len=%d",
                len(self._eager_target), len(transcript),
            )

        reply = self._eager_reply if self._eager_target == transcript else None
        self._cancel_eager()
        self._eager_target = None
        self._eager_reply = None
        return reply or None

    # -- full generation -----------------------------------------------------

    async def generate_reply(
        self,
        transcript: str,
        turn_order: int,
        form_snapshot: Mapping[str, str],
        emit: Emit,
    ) -> GenerationResult:
        """Authoritative reply for a confirmed utterance.  Never raises on abort."""
        prior = self._full_task
        if prior is not None and not prior.done():
            log.warning("event=generation_superseded turn_order=%d", turn_order)
            prior.cancel()

        user_message = self._append_history("user", transcript)
        form = dict(form_snapshot)
        task = asyncio.create_task(
            self._run_turn(transcript, turn_order, form, emit, user_message),
            name=f"reply_{turn_order}",
        )
        self._full_task = task
        try:
            return await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            log.info("event=generation_aborted turn_order=%d", turn_order)
            return GenerationAborted()
        finally:
            if self._full_task is task:
                self._full_task = None

    def abort_current(self) -> None:
        """Cancel the outstanding full generation.  The eager pass is left alone."""
        task = self._full_task
        if task is not None and not task.done():
            task.cancel()
            log.info("event=generation_abort_requested")

    async def _run_turn(
        self,
        transcript: str,
        turn_order: int,
        form: dict[str, str],
        emit: Emit,
        user_message: dict[str, Any],
    ) -> GenerationResult:
        out = _TurnStream(turn_order, emit)
        try:
            eager_text = await self._take_eager_reply(transcript)
            if eager_text is not None:
                log.info("event=eager_reply_used turn_order=%d reply_len=%d", turn_order, len(eager_text))
                out.delta(eager_text)
                out.end()
                self._append_history("assistant", eager_text)
                emit(AiTurn(turn_order=turn_order, text=eager_text))
                self._start_tool_pass(transcript, form)
                return GenerationCompleted(eager_text)

            log.info("event=full_generation_start turn_order=%d", turn_order)
            reply = await self._stream_full(form, out)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.error("event=generation_failed turn_order=%d error=%s", turn_order, exc, exc_info=True)
            if out.started:
                out.end()
            self._drop_history_entry(user_message)
            emit(AiTurn(turn_order=turn_order, text=ERROR_REPLY_TEXT, error=True))
            return GenerationFailed(str(exc) or type(exc).__name__)

        out.end()
        if reply:
            self._append_history("assistant", reply)
        emit(AiTurn(turn_order=turn_order, text=reply))
        log.info("event=generation_complete turn_order=%d reply_len=%d", turn_order, len(reply))
        return GenerationCompleted(reply)

    async def _stream_full(self, form: dict[str, str], out: _TurnStream) -> str:
        groq = self.config.groq
        messages: list[dict[str, Any]] = [self._system_message(form), *self.history]
        start_ms = time.perf_counter() * 1000

        for step in range(groq.max_tool_steps):
            out.new_step()
            stream = await self._client.chat.completions.create(
                model=groq.model,
                messages=messages,
                temperature=groq.temperature,
                **self._limits(),
                tools=TOOLS,
                tool_choice="auto",
                stream=True,
            )
            step_text: list[str] = []
            calls: dict[int, dict[str, str]] = {}
            async for chunk in stream:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                if delta.content:
                    if not out.started:
                        log.info("event=llm_first_token latency_ms=%.1f", time.perf_counter() * 1000 - start_ms)
                    step_text.append(delta.content)
                    out.delta(delta.content)
                for tc in delta.tool_calls or []:
                    slot = calls.setdefault(tc.index, {"id": "", "name": "", "arguments": ""})
                    if tc.id:
                        slot["id"] = tc.id
                    if tc.function is not None:
                        if tc.function.name:
                            slot["name"] = tc.function.name
                        if tc.function.arguments:
                            slot["arguments"] += tc.function.arguments

            if not calls:
                break

            ordered = [calls[i] for i in sorted(calls)]
            messages.append({
                "role": "assistant",
                "content": "".join(step_text) or None,
                "tool_calls": [
                    {
                        "id": c["id"],
                        "type": "function",
                        "function": {"name": c["name"], "arguments": c["arguments"] or "{}"},
                    }
                    for c in ordered
                ],
            })
            for call in ordered:
                result = await self._execute_tool(call["name"], call["arguments"])
                messages.append({"role": "tool", "tool_call_id": call["id"], "content": result})
        else:
            log.warning("event=tool_steps_exhausted max_steps=%d", groq.max_tool_steps)

        return out.text

    # -- tools ---------------------------------------------------------------

    async def _execute_tool(self, name: str, raw_arguments: str) -> str:
        try:
            args = json.loads(raw_arguments) if raw_arguments else {}
        except json.JSONDecodeError:
            log.warning("event=tool_bad_arguments tool=%s raw=%.80r", name, raw_arguments)
            return "Error: arguments were not valid JSON"
        if not isinstance(args, dict):
            return "Error: arguments must be an object"

        ctx = self.tool_context
        if name == "fill_field":
            field = str(args.get("field", ""))
            value = str(args.get("value", ""))
            log.info("event=tool_call tool=fill_field field=%s value_len=%d", field, len(value))
            if ctx is not None:
                self._spawn_background(ctx.update_field(field, value), name=f"fill_{field}")
            return "Done."

        if name == "complete_onboarding":
            log.info("event=tool_call tool=complete_onboarding")
            if ctx is None:
                return "Onboarding complete"
            try:
                return await ctx.complete_onboarding()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                log.error("event=tool_error tool=complete_onboarding error=%s", exc)
                return f"Error: {exc}"

        log.warning("event=tool_unknown tool=%s", name)
        return f"Error: unknown tool {name}"

    def _spawn_background(self, coro: Awaitable[Any], name: str) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        task.set_name(name)
        self._background.add(task)
        task.add_done_callback(self._background_done)
        return task

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("event=tool_error task=%s error=%s", task.get_name(), exc)

    # -- background tool pass ------------------------------------------------

    def _start_tool_pass(self, transcript: str, form: dict[str, str]) -> None:
        messages = [
            self._system_message(form),
            *self.history,
            {"role": "user", "content": _TOOL_PASS_INSTRUCTION.format(transcript=transcript)},
        ]
        self._spawn_background(self._run_tool_pass(messages), name="tool_pass")

    async def _run_tool_pass(self, messages: list[dict[str, Any]]) -> None:
        timeout_sec = self.config.reply.tool_pass_timeout_ms / 1000.0
        try:
            calls = await asyncio.wait_for(self._tool_pass_steps(messages), timeout=timeout_sec)
            log.info("event=tool_pass_complete tool_calls=%d", calls)
        except asyncio.TimeoutError:
            log.warning("event=tool_pass_timeout limit_ms=%d", self.config.reply.tool_pass_timeout_ms)
        except asyncio.CancelledError:
            log.debug("event=tool_pass_cancelled")
            raise
        except Exception as exc:
            log.error("event=tool_pass_error error=%s", exc)

    async def _tool_pass_steps(self, messages: list[dict[str, Any]]) -> int:
        groq = self.config.groq
        total = 0
        for _ in range(groq.max_tool_steps):
            response = await self._client.chat.completions.create(
                model=groq.model,
                messages=messages,
                temperature=groq.tool_pass_temperature,
                tools=TOOLS,
                tool_choice="auto",
                stream=False,
            )
            message = response.choices[0].message
            tool_calls = message.tool_calls or []
            if not tool_calls:
                break
            messages.append({
                "role": "assistant",
                "content": message.content,
                "tool_calls": [
                    {
                        "id": tc.id,
                        "type": "function",
                        "function": {"name": tc.function.name, "arguments": tc.function.arguments or "{}"},
                    }
                    for tc in tool_calls
                ],
            })
            for tc in tool_calls:
                total += 1
                result = await self._execute_tool(tc.function.name, tc.function.arguments)
                messages.append({"role": "tool", "tool_call_id": tc.id, "content": result})
        return total

    # -- teardown ------------------------------------------------------------

    async def disconnect(self) -> None:
        self.abort_current()
        self._cancel_eager()
        self._eager_target = None
        self._eager_reply = None
        pending = [t for t in self._background if not t.done()]
        for task in pending:
            task.cancel()
        full = self._full_task
        waiting = pending + ([full] if full is not None and not full.done() else [])
        if waiting:
            await asyncio.gather(*waiting, return_exceptions=True)
        self._background.clear()
        log.info("event=reply_engine_closed cancelled_background=%d", len(pending))
