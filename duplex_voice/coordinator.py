"""
coordinator.py — Duplex Voice · Turn-taking state machine
=========================================================
Single-writer actor that decides, at every instant, whose turn it is.

Every input (recognizer callbacks, reply-engine events, drain-timer
firings, session notifications) is posted to one inbox and handled one
message at a time, so the shared state below is only ever touched from
the handler path and needs no locks:

  state             IDLE | AGENT_SPEAKING
  pending_user      confirmed transcripts that arrived while the agent spoke
  speech            AgentSpeechEstimate for the reply being voiced
  drain timer       single-shot; models how long the sink needs to finish
                    voicing the reply

Transitions
───────────
  confirmed  / IDLE            → dispatch to the reply engine (fresh turn order)
  confirmed  / AGENT_SPEAKING  → buffer
  eager EOT  / IDLE            → prepare_eager_reply
  eager EOT  / AGENT_SPEAKING  → ignored
  ai_turn_start                → AGENT_SPEAKING, speech estimate starts
  ai_turn                      → (re)arm drain timer for max(min, len * ms_per_char)
  drain fired                  → flush buffer as one combined dispatch, else IDLE
  speech start / AGENT_SPEAKING → barge-in: abort, reconcile heard prefix, IDLE
  speech start / IDLE          → notification only
  carryover fired / IDLE       → dispatch transcripts held back by a barge-in
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Union, assert_never

from duplex_voice.config import TurnConfig
from duplex_voice.events import (
    AiTurn,
    AiTurnStart,
    InterimTranscript,
    OutwardEvent,
    StartOfTurn,
    TextDelta,
    UserTurn,
)
from duplex_voice.recognizer import RecognizerCallbacks
from duplex_voice.results import GenerationFailed, GenerationResult

log = logging.getLogger("duplex_voice.coordinator")


class TurnState(Enum):
    IDLE = "IDLE"
    AGENT_SPEAKING = "AGENT_SPEAKING"


@dataclass
class AgentSpeechEstimate:
    full_text: str
    started_at: float  # clock() seconds at the first delta of the turn


def compute_drain_ms(text: str, config: TurnConfig) -> float:
    return max(config.minimum_drain_ms, len(text) * config.ms_per_char_estimate)


def estimate_heard_prefix(
    full_text: str,
    elapsed_ms: float,
    ms_per_char: float,
) -> str:
    """Portion of *full_text* judged voiced after *elapsed_ms* of playback."""
    chars = math.floor(max(0.0, elapsed_ms) / ms_per_char)
    return full_text[:max(0, min(chars, len(full_text)))]


# ---------------------------------------------------------------------------
# Inbox messages
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class InterimReceived:
    text: str


@dataclass(frozen=True)
class TranscriptConfirmed:
    text: str
    recognizer_turn_order: int = -1


@dataclass(frozen=True)
class EagerEndOfTurn:
    text: str
    recognizer_turn_order: int = -1


@dataclass(frozen=True)
class SpeechStarted:
    pass


@dataclass(frozen=True)
class ReplyEmitted:
    event: Union[AiTurnStart, TextDelta, AiTurn]


@dataclass(frozen=True)
class ReplyFinished:
    turn_order: int
    result: GenerationResult


@dataclass(frozen=True)
class DrainElapsed:
    timer_id: int


@dataclass(frozen=True)
class CarryoverElapsed:
    timer_id: int


@dataclass(frozen=True)
class Publish:
    event: OutwardEvent


@dataclass(frozen=True)
class Teardown:
    pass


InboxMessage = Union[
    InterimReceived,
    TranscriptConfirmed,
    EagerEndOfTurn,
    SpeechStarted,
    ReplyEmitted,
    ReplyFinished,
    DrainElapsed,
    CarryoverElapsed,
    Publish,
    Teardown,
]


class TurnCoordinator:
    def __init__(
        self,
        engine: Any,
        sink: Callable[[OutwardEvent], None],
        form_snapshot: Callable[[], dict[str, str]] = dict,
        config: Optional[TurnConfig] = None,
        recognizer: Any = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.engine = engine
        self.recognizer = recognizer
        self.config = config or TurnConfig()
        self._sink = sink
        self._form_snapshot = form_snapshot
        self._clock = clock

        self.state = TurnState.IDLE
        self.pending_user: list[str] = []
        self.carryover: list[str] = []
        self.speech: AgentSpeechEstimate | None = None
        self.active_turn: int | None = None
        self._next_turn_order = 0

        self._drain_handle: asyncio.TimerHandle | None = None
        self._drain_id = 0
        self.drain_ms: float | None = None
        self._carryover_handle: asyncio.TimerHandle | None = None
        self._carryover_id = 0

        self._reply_tasks: set[asyncio.Task] = set()
        self._inbox: asyncio.Queue[InboxMessage] = asyncio.Queue()
        self._runner: asyncio.Task | None = None
        self._closed = False

    # -- actor plumbing ------------------------------------------------------

    def start(self) -> None:
        if self._runner is None:
            self._runner = asyncio.create_task(self._run(), name="turn_coordinator")

    def post(self, message: InboxMessage) -> None:
        if self._closed:
            log.debug("event=post_after_close message=%s", type(message).__name__)
            return
        self._inbox.put_nowait(message)

    def publish(self, event: OutwardEvent) -> None:
        """Queue a session-originated event behind everything already posted."""
        self.post(Publish(event))

    async def drained(self) -> None:
        """Wait until every message posted so far has been handled."""
        await self._inbox.join()

    async def close(self) -> None:
        if self._closed:
            return
        self.post(Teardown())
        self._closed = True
        if self._runner is not None:
            await self._runner

    @property
    def next_turn_order(self) -> int:
        return self._next_turn_order

    @property
    def drain_pending(self) -> bool:
        return self._drain_handle is not None

    @property
    def carryover_pending(self) -> bool:
        return self._carryover_handle is not None

    def recognizer_callbacks(self) -> RecognizerCallbacks:
        return RecognizerCallbacks(
            on_interim_transcript=lambda text: self.post(InterimReceived(text)),
            on_confirmed_transcript=lambda text, order: self.post(TranscriptConfirmed(text, order)),
            on_eager_end_of_turn=lambda text, order: self.post(EagerEndOfTurn(text, order)),
            on_speech_start=lambda: self.post(SpeechStarted()),
        )

    async def _run(self) -> None:
        while True:
            message = await self._inbox.get()
            if isinstance(message, Teardown):
                try:
                    await self._teardown()
                finally:
                    self._inbox.task_done()
                return
            try:
                self._handle(message)
            except Exception as exc:
                log.error(
                    "event=coordinator_handler_error message=%s error=%s",
                    type(message).__name__, exc, exc_info=True,
                )
            finally:
                self._inbox.task_done()

    # -- dispatch ------------------------------------------------------------

    def _handle(self, message: InboxMessage) -> None:
        if isinstance(message, InterimReceived):
            if self._carryover_handle is not None:
                self._schedule_carryover()
            self._emit(InterimTranscript(text=message.text))
        elif isinstance(message, TranscriptConfirmed):
            self._on_confirmed(message)
        elif isinstance(message, EagerEndOfTurn):
            self._on_eager(message)
        elif isinstance(message, SpeechStarted):
            self._on_speech_start()
        elif isinstance(message, ReplyEmitted):
            self._on_reply_event(message.event)
        elif isinstance(message, ReplyFinished):
            self._on_reply_finished(message)
        elif isinstance(message, DrainElapsed):
            self._on_drain(message)
        elif isinstance(message, CarryoverElapsed):
            self._on_carryover(message)
        elif isinstance(message, Publish):
            self._emit(message.event)
        elif isinstance(message, Teardown):
            raise RuntimeError("teardown is handled by the run loop")
        else:
            assert_never(message)

    def _emit(self, event: OutwardEvent) -> None:
        self._sink(event)

    def _set_state(self, new_state: TurnState) -> None:
        prev = self.state
        self.state = new_state
        if prev is not new_state:
            log.info(
                "event=state_change from=%s to=%s active_turn=%s pending=%d",
                prev.value, new_state.value, self.active_turn, len(self.pending_user),
            )

    # -- recognizer signals --------------------------------------------------

    def _on_confirmed(self, message: TranscriptConfirmed) -> None:
        if self.state is TurnState.AGENT_SPEAKING:
            self.pending_user.append(message.text)
            log.info(
                "event=user_turn_buffered pending=%d transcript_len=%d",
                len(self.pending_user), len(message.text),
            )
            return
        self._dispatch(message.text)

    def _on_eager(self, message: EagerEndOfTurn) -> None:
        if self.state is TurnState.AGENT_SPEAKING:
            log.debug("event=eager_ignored reason=agent_speaking")
            return
        self.engine.prepare_eager_reply(self._compose(message.text), self._form_snapshot())

    def _on_speech_start(self) -> None:
        if self.state is not TurnState.AGENT_SPEAKING:
            self._emit(StartOfTurn())
            return

        # Barge-in
        self.engine.abort_current()
        self._cancel_drain()
        speech = self.speech
        full_text = speech.full_text if speech else ""
        elapsed_ms = (self._clock() - speech.started_at) * 1000.0 if speech else 0.0
        heard = estimate_heard_prefix(full_text, elapsed_ms, self.config.ms_per_char_estimate)
        log.info(
            "event=barge_in turn_order=%s elapsed_ms=%.0f heard_chars=%d full_chars=%d",
            self.active_turn, elapsed_ms, len(heard), len(full_text),
        )
        self._emit(StartOfTurn(heard_prefix=heard, full_text=full_text))

        if self.pending_user:
            self.carryover.extend(self.pending_user)
            self.pending_user.clear()
        self.speech = None
        self.active_turn = None
        self._set_state(TurnState.IDLE)
        if self.carryover:
            self._schedule_carryover()

    # -- reply engine --------------------------------------------------------

    def _compose(self, text: str) -> str:
        return " ".join(part for part in [*self.carryover, text] if part)

    def _dispatch(self, text: str) -> None:
        text = self._compose(text)
        self.carryover.clear()
        self._cancel_carryover()
        self._cancel_drain()
        turn_order = self._next_turn_order
        self._next_turn_order += 1
        self.active_turn = turn_order
        self.speech = None

        self._emit(UserTurn(text=text, turn_order=turn_order))
        log.info("event=turn_dispatch turn_order=%d transcript_len=%d", turn_order, len(text))

        task = asyncio.create_task(
            self._run_reply(text, turn_order, self._form_snapshot()),
            name=f"dispatch_{turn_order}",
        )
        self._reply_tasks.add(task)
        task.add_done_callback(self._reply_tasks.discard)

    async def _run_reply(self, text: str, turn_order: int, form: dict[str, str]) -> None:
        def emit(event: OutwardEvent) -> None:
            if isinstance(event, (AiTurnStart, TextDelta, AiTurn)):
                self.post(ReplyEmitted(event))
            else:
                self.post(Publish(event))

        try:
            result = await self.engine.generate_reply(text, turn_order, form, emit)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.error("event=reply_task_error turn_order=%d error=%s", turn_order, exc, exc_info=True)
            result = GenerationFailed(str(exc))
        self.post(ReplyFinished(turn_order, result))

    def _on_reply_event(self, event: Union[AiTurnStart, TextDelta, AiTurn]) -> None:
        if event.turn_order != self.active_turn:
            log.debug(
                "event=stale_reply_event_dropped type=%s turn_order=%d active=%s",
                event.type, event.turn_order, self.active_turn,
            )
            return

        if isinstance(event, AiTurnStart):
            self._cancel_drain()
            self.speech = AgentSpeechEstimate(full_text="", started_at=self._clock())
            self._set_state(TurnState.AGENT_SPEAKING)
            self._emit(event)

        elif isinstance(event, TextDelta):
            if self.speech is not None and not event.is_end:
                self.speech.full_text += event.text
            self._emit(event)

        elif isinstance(event, AiTurn):
            self._emit(event)
            if event.error:
                if self.state is TurnState.AGENT_SPEAKING and self.speech is not None:
                    self._schedule_drain(self.speech.full_text)
                else:
                    self.active_turn = None
                return
            if self.speech is not None:
                self.speech.full_text = event.text
            self._schedule_drain(event.text)

        else:
            assert_never(event)

    def _on_reply_finished(self, message: ReplyFinished) -> None:
        log.debug(
            "event=reply_finished turn_order=%d result=%s",
            message.turn_order, type(message.result).__name__,
        )

    # -- drain timer ---------------------------------------------------------

    def _schedule_drain(self, text: str) -> None:
        self._cancel_drain()
        drain_ms = compute_drain_ms(text, self.config)
        self._drain_id += 1
        timer_id = self._drain_id
        loop = asyncio.get_running_loop()
        self._drain_handle = loop.call_later(drain_ms / 1000.0, self.post, DrainElapsed(timer_id))
        self.drain_ms = drain_ms
        log.info("event=drain_scheduled drain_ms=%.0f text_len=%d", drain_ms, len(text))

    def _cancel_drain(self) -> None:
        if self._drain_handle is not None:
            self._drain_handle.cancel()
            self._drain_handle = None
            log.debug("event=drain_cancelled")

    def _on_drain(self, message: DrainElapsed) -> None:
        if message.timer_id != self._drain_id or self._drain_handle is None:
            log.debug("event=stale_drain_ignored timer_id=%d", message.timer_id)
            return
        self._drain_handle = None

        combined = " ".join(self.pending_user)
        self.pending_user.clear()
        self.speech = None
        self.active_turn = None
        self._set_state(TurnState.IDLE)
        if combined:
            log.info("event=pending_flush transcript_len=%d", len(combined))
            self._dispatch(combined)

    # -- barge-in carryover --------------------------------------------------

    def _schedule_carryover(self) -> None:
        self._cancel_carryover()
        self._carryover_id += 1
        timer_id = self._carryover_id
        loop = asyncio.get_running_loop()
        delay = self.config.carryover_flush_ms / 1000.0
        self._carryover_handle = loop.call_later(delay, self.post, CarryoverElapsed(timer_id))
        log.debug(
            "event=carryover_scheduled delay_ms=%.0f held=%d",
            self.config.carryover_flush_ms, len(self.carryover),
        )

    def _cancel_carryover(self) -> None:
        if self._carryover_handle is not None:
            self._carryover_handle.cancel()
            self._carryover_handle = None

    def _on_carryover(self, message: CarryoverElapsed) -> None:
        if message.timer_id != self._carryover_id or self._carryover_handle is None:
            log.debug("event=stale_carryover_ignored timer_id=%d", message.timer_id)
            return
        self._carryover_handle = None
        if self.state is not TurnState.IDLE or not self.carryover:
            return
        log.info("event=carryover_flush held=%d", len(self.carryover))
        self._dispatch("")

    # -- teardown ------------------------------------------------------------

    async def _teardown(self) -> None:
        self._closed = True
        self._cancel_drain()
        self._cancel_carryover()
        try:
            self.engine.abort_current()
            for task in list(self._reply_tasks):
                task.cancel()
            if self._reply_tasks:
                await asyncio.gather(*self._reply_tasks, return_exceptions=True)
            await self.engine.disconnect()
        except Exception as exc:
            log.error("event=engine_teardown_error error=%s", exc, exc_info=True)
        if self.recognizer is not None:
            try:
                await self.recognizer.disconnect()
            except Exception as exc:
                log.error("event=recognizer_teardown_error error=%s", exc, exc_info=True)
        self.pending_user.clear()
        self.carryover.clear()
        self.speech = None
        self.active_turn = None
        self._set_state(TurnState.IDLE)
        log.info("event=coordinator_teardown")
