"""
session.py — Duplex Voice · Per-user session
============================================
One VoiceSession per end user.  Owns the profile form, the set of
websocket connections watching it, and (while voice mode is on) exactly
one RecognizerConnector, SpeculativeReplyEngine and TurnCoordinator.

Outward events are fanned out to every connection through a per-connection
outbox so a slow socket never stalls the coordinator.  While the voice
pipeline runs, session-originated events (field updates, completion) are
routed through the coordinator so the event stream stays in one order.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional, assert_never

from pydantic import BaseModel

from duplex_voice.config import DeepgramConfig, VoiceEngineConfig
from duplex_voice.coordinator import TurnCoordinator
from duplex_voice.events import (
    ErrorEvent,
    FieldUpdated,
    FormReset,
    FormState,
    GetState,
    Hello,
    OnboardingComplete,
    OutwardEvent,
    ResetForm,
    ServicesReady,
    StopVoice,
    UpdateField,
    parse_control,
    to_wire,
)
from duplex_voice.llm import FORM_FIELDS, SpeculativeReplyEngine, ToolContext, create_groq_client
from duplex_voice.recognizer import RecognizerConnector

log = logging.getLogger("duplex_voice.session")

VOICE_MODE = "voice"


class ProfileForm(BaseModel):
    full_name: str = ""
    email: str = ""
    phone: str = ""
    age: str = ""
    physical: str = ""
    mental: str = ""


class _Outbox:
    """Ordered writer for one connection."""

    def __init__(self, ws: Any, on_dead: Callable[[Any], None]):
        self.ws = ws
        self._queue: asyncio.Queue[dict | None] = asyncio.Queue()
        self._on_dead = on_dead
        self._task = asyncio.create_task(self._drain(), name="session_outbox")

    def put(self, payload: dict) -> None:
        self._queue.put_nowait(payload)

    async def _drain(self) -> None:
        while True:
            payload = await self._queue.get()
            if payload is None:
                return
            try:
                await self.ws.send_json(payload)
            except Exception as exc:
                log.info("event=connection_dead error=%s", exc)
                self._on_dead(self.ws)
                return

    async def close(self) -> None:
        self._queue.put_nowait(None)
        try:
            await asyncio.wait_for(self._task, timeout=2.0)
        except asyncio.TimeoutError:
            self._task.cancel()


class VoiceSession:
    def __init__(
        self,
        session_id: str,
        config: Optional[VoiceEngineConfig] = None,
        deepgram_api_key: Optional[str] = None,
        groq_api_key: Optional[str] = None,
        recognizer_factory: Callable[[str, DeepgramConfig], Any] = RecognizerConnector,
        client_factory: Callable[[str], Any] = create_groq_client,
    ):
        self.session_id = session_id
        self.config = config or VoiceEngineConfig()
        self._deepgram_api_key = deepgram_api_key
        self._groq_api_key = groq_api_key
        self._recognizer_factory = recognizer_factory
        self._client_factory = client_factory

        self.form = ProfileForm()
        self.completed = False
        self._outboxes: dict[Any, _Outbox] = {}
        self._closing: set[asyncio.Task] = set()

        self.recognizer: Any = None
        self.engine: SpeculativeReplyEngine | None = None
        self.coordinator: TurnCoordinator | None = None
        self._pipeline_lock = asyncio.Lock()

    # -- connections ---------------------------------------------------------

    @property
    def connection_count(self) -> int:
        return len(self._outboxes)

    @property
    def voice_mode(self) -> bool:
        return self.coordinator is not None

    def attach(self, ws: Any) -> None:
        self._outboxes[ws] = _Outbox(ws, self._drop_connection)
        log.info("event=connection_attached session=%s connections=%d", self.session_id, len(self._outboxes))

    def detach(self, ws: Any) -> bool:
        """
        Stop delivering to *ws*.  Returns True when it was the last connection.

        The outbox finishes writing in the background; close() waits for it.
        """
        outbox = self._outboxes.pop(ws, None)
        if outbox is not None:
            task = asyncio.create_task(outbox.close(), name="session_outbox_close")
            self._closing.add(task)
            task.add_done_callback(self._closing.discard)
        log.info("event=connection_detached session=%s connections=%d", self.session_id, len(self._outboxes))
        return not self._outboxes

    def _drop_connection(self, ws: Any) -> None:
        self._outboxes.pop(ws, None)

    def broadcast(self, event: OutwardEvent) -> None:
        payload = to_wire(event)
        for outbox in list(self._outboxes.values()):
            outbox.put(payload)

    def send_to(self, ws: Any, event: OutwardEvent) -> None:
        outbox = self._outboxes.get(ws)
        if outbox is not None:
            outbox.put(to_wire(event))

    def _notify(self, event: OutwardEvent) -> None:
        if self.coordinator is not None:
            self.coordinator.publish(event)
        else:
            self.broadcast(event)

    # -- form ----------------------------------------------------------------

    def form_snapshot(self) -> dict[str, str]:
        return self.form.model_dump()

    def _set_field(self, field: str, value: str) -> bool:
        if field not in FORM_FIELDS:
            log.warning("event=invalid_field session=%s field=%r", self.session_id, field)
            return False
        setattr(self.form, field, value)
        return True

    # -- tool context --------------------------------------------------------

    async def update_field(self, field: str, value: str) -> None:
        if not self._set_field(field, value):
            raise ValueError(f"unknown form field {field!r}")
        log.info("event=field_updated session=%s field=%s source=tool", self.session_id, field)
        self._notify(FieldUpdated(field=field, value=value))

    async def complete_onboarding(self) -> str:
        if not self.form.full_name:
            return "Cannot complete: full name is required"
        self.completed = True
        log.info("event=onboarding_complete session=%s", self.session_id)
        self._notify(OnboardingComplete(form=self.form_snapshot()))
        return "Onboarding complete"

    # -- inbound -------------------------------------------------------------

    async def handle_text(self, ws: Any, raw: str | bytes) -> None:
        message = parse_control(raw)
        if message is None:
            return

        if isinstance(message, Hello):
            if message.mode == VOICE_MODE:
                await self.start_pipeline(ws)
        elif isinstance(message, GetState):
            self.send_to(ws, FormState(form=self.form_snapshot()))
        elif isinstance(message, UpdateField):
            if self._set_field(message.field, message.value):
                self._notify(FieldUpdated(field=message.field, value=message.value))
        elif isinstance(message, ResetForm):
            self.form = ProfileForm()
            self.completed = False
            self._notify(FormReset(form=self.form_snapshot()))
        elif isinstance(message, StopVoice):
            await self.stop_pipeline()
        else:
            assert_never(message)

    async def handle_audio(self, frame: bytes) -> None:
        recognizer = self.recognizer
        if recognizer is None:
            return
        await recognizer.send_audio(frame)

    # -- pipeline ------------------------------------------------------------

    async def start_pipeline(self, ws: Any) -> bool:
        async with self._pipeline_lock:
            if self.coordinator is not None:
                self.send_to(ws, ServicesReady(sample_rate=self.config.deepgram.sample_rate))
                return True

            if not self._deepgram_api_key or not self._groq_api_key:
                log.error("event=pipeline_start_failed session=%s reason=missing_api_keys", self.session_id)
                self.send_to(ws, ErrorEvent(message="Missing API keys for voice pipeline"))
                return False

            log.info("event=pipeline_starting session=%s", self.session_id)
            recognizer = self._recognizer_factory(self._deepgram_api_key, self.config.deepgram)
            engine = SpeculativeReplyEngine(
                self._client_factory(self._groq_api_key),
                self.config,
                ToolContext(update_field=self.update_field, complete_onboarding=self.complete_onboarding),
            )
            coordinator = TurnCoordinator(
                engine,
                sink=self.broadcast,
                form_snapshot=self.form_snapshot,
                config=self.config.turn,
                recognizer=recognizer,
            )

            if not await recognizer.connect(coordinator.recognizer_callbacks()):
                log.error("event=pipeline_start_failed session=%s reason=stt_connect", self.session_id)
                await engine.disconnect()
                self.send_to(ws, ErrorEvent(message="Failed to connect to speech recognizer"))
                return False

            coordinator.start()
            self.recognizer, self.engine, self.coordinator = recognizer, engine, coordinator
            self.send_to(ws, ServicesReady(sample_rate=self.config.deepgram.sample_rate))
            log.info("event=pipeline_ready session=%s", self.session_id)
            return True

    async def stop_pipeline(self) -> None:
        async with self._pipeline_lock:
            coordinator = self.coordinator
            if coordinator is None:
                return
            log.info("event=pipeline_stopping session=%s", self.session_id)
            self.recognizer, self.engine, self.coordinator = None, None, None
            await coordinator.close()

    async def close(self) -> None:
        await self.stop_pipeline()
        for ws in list(self._outboxes):
            self.detach(ws)
        if self._closing:
            await asyncio.gather(*list(self._closing), return_exceptions=True)
        log.info("event=session_closed session=%s", self.session_id)
