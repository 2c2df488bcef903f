"""
recognizer.py — Duplex Voice · Streaming STT connector
======================================================
Wraps one Deepgram live-listen websocket and normalises its raw events
into four signals:

  on_interim_transcript(text)               non-final preview, never accumulated
  on_eager_end_of_turn(text, turn_order)    provisional end of turn (speculative work only)
  on_confirmed_transcript(text, turn_order) utterance ended (speech_final / UtteranceEnd)
  on_speech_start()                         VAD SpeechStarted, content-independent

No automatic reconnect: a failed ``connect`` is a fatal pipeline-start
error for the caller.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional
from urllib.parse import urlencode

import websockets
from websockets.protocol import State

from duplex_voice.config import DeepgramConfig

log = logging.getLogger("duplex_voice.recognizer")


@dataclass
class RecognizerCallbacks:
    on_interim_transcript: Callable[[str], None]
    on_confirmed_transcript: Callable[[str, int], None]
    on_eager_end_of_turn: Callable[[str, int], None]
    on_speech_start: Callable[[], None]


class RecognizerConnector:
    def __init__(
        self,
        api_key: str,
        config: Optional[DeepgramConfig] = None,
        connect: Callable[..., Any] = websockets.connect,
    ):
        self._api_key = api_key
        self.config = config or DeepgramConfig()
        self._connect = connect
        self._ws = None
        self._receiver_task: asyncio.Task | None = None
        self._callbacks: RecognizerCallbacks | None = None
        self.is_connected = False

        # Per-utterance accumulation
        self.current_turn_order = 0
        self.current_transcript = ""

        self.frames_sent = 0
        self.frames_dropped = 0

    @property
    def url(self) -> str:
        return f"{self.config.url}?{urlencode(self.config.query_params())}"

    # -- lifecycle -----------------------------------------------------------

    async def connect(self, callbacks: RecognizerCallbacks) -> bool:
        self._callbacks = callbacks
        headers = {"Authorization": f"Token {self._api_key}"}
        try:
            self._ws = await asyncio.wait_for(
                self._connect(self.url, additional_headers=headers),
                timeout=self.config.connect_timeout_sec,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.error("event=stt_connect_failed model=%s error=%s", self.config.model, exc)
            self._ws = None
            return False

        self.is_connected = True
        self._receiver_task = asyncio.create_task(self._receive(), name="stt_receiver")
        log.info("event=stt_connected model=%s sample_rate=%d", self.config.model, self.config.sample_rate)
        return True

    async def disconnect(self) -> None:
        self.is_connected = False
        self._callbacks = None
        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.send(json.dumps({"type": "CloseStream"}))
                await ws.close(code=1000, reason="disconnect")
            except websockets.ConnectionClosed:
                pass
            except OSError as exc:
                log.debug("event=stt_close_error error=%s", exc)
        if self._receiver_task and not self._receiver_task.done():
            self._receiver_task.cancel()
            try:
                await self._receiver_task
            except asyncio.CancelledError:
                pass
        self._receiver_task = None
        self.current_transcript = ""
        log.info(
            "event=stt_disconnected frames_sent=%d frames_dropped=%d",
            self.frames_sent, self.frames_dropped,
        )

    # -- audio ---------------------------------------------------------------

    async def send_audio(self, frame: bytes) -> bool:
        """Forward one PCM16 frame.  Dropped (not queued) when the link isn't open."""
        ws = self._ws
        if not self.is_connected or ws is None or ws.state is not State.OPEN:
            self.frames_dropped += 1
            return False
        try:
            await ws.send(frame)
        except websockets.ConnectionClosed as exc:
            log.warning("event=stt_send_failed reason=closed code=%s", exc.rcvd.code if exc.rcvd else None)
            self.is_connected = False
            self.frames_dropped += 1
            return False
        self.frames_sent += 1
        return True

    # -- provider events -----------------------------------------------------

    async def _receive(self) -> None:
        ws = self._ws
        try:
            async for message in ws:
                try:
                    data = json.loads(message)
                except (json.JSONDecodeError, UnicodeDecodeError) as exc:
                    log.warning("event=stt_parse_error error=%s", exc)
                    continue
                self.handle_message(data)
        except websockets.ConnectionClosed as exc:
            log.info("event=stt_closed code=%s", exc.rcvd.code if exc.rcvd else None)
        finally:
            self.is_connected = False

    def handle_message(self, data: dict) -> None:
        """Apply one decoded provider event to the accumulation buffer."""
        cb = self._callbacks
        if cb is None or not isinstance(data, dict):
            return
        msg_type = data.get("type")

        if msg_type == "Results":
            alternatives = (data.get("channel") or {}).get("alternatives") or []
            if not alternatives:
                return
            transcript = alternatives[0].get("transcript") or ""
            is_final = data.get("is_final") is True
            speech_final = data.get("speech_final") is True

            if not is_final:
                if transcript:
                    cb.on_interim_transcript(transcript)
                return

            # Deepgram often flags speech_final on an empty result after the last words.
            if not transcript:
                if speech_final:
                    self._confirm("speech_final")
                return

            self.current_transcript = (
                f"{self.current_transcript} {transcript}" if self.current_transcript else transcript
            )
            log.debug(
                "event=stt_final_segment turn_order=%d accumulated_len=%d speech_final=%s",
                self.current_turn_order, len(self.current_transcript), speech_final,
            )
            cb.on_eager_end_of_turn(self.current_transcript, self.current_turn_order)

            if speech_final:
                self._confirm("speech_final")

        elif msg_type == "UtteranceEnd":
            self._confirm("utterance_end")

        elif msg_type == "SpeechStarted":
            log.info("event=stt_speech_started")
            cb.on_speech_start()

        elif msg_type == "Metadata":
            log.debug("event=stt_metadata request_id=%s", data.get("request_id"))

        else:
            log.debug("event=stt_unhandled type=%s", msg_type)

    def _confirm(self, reason: str) -> None:
        if not self.current_transcript or self._callbacks is None:
            return
        text, turn_order = self.current_transcript, self.current_turn_order
        self.current_turn_order += 1
        self.current_transcript = ""
        log.info(
            "event=stt_confirmed reason=%s turn_order=%d transcript_len=%d",
            reason, turn_order, len(text),
        )
        self._callbacks.on_confirmed_transcript(text, turn_order)
