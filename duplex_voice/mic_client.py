"""
mic_client.py — Duplex Voice · Microphone client
================================================
Captures the default input device, conditions it to 16 kHz PCM16 frames
and streams them to a running server session.  Prints every event the
session broadcasts.  Capture only: no output stream is ever opened, the
avatar / TTS sink lives elsewhere.

Usage
-----
    python -m duplex_voice.mic_client ws://localhost:8000/ws/demo
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os

import numpy as np
import sounddevice as sd
import websockets
from pydantic import ValidationError
from websockets.protocol import State

from duplex_voice.config import AudioConfig
from duplex_voice.events import InterimTranscript, parse_event, to_wire
from duplex_voice.resampler import AudioResampler

log = logging.getLogger("duplex_voice.mic")


class MicStreamer:
    """Bridges the sounddevice audio thread to an asyncio websocket sender."""

    def __init__(self, ws, input_rate: int, audio: AudioConfig | None = None):
        audio = audio or AudioConfig()
        self._ws = ws
        self._loop = asyncio.get_running_loop()
        self._frames: asyncio.Queue[bytes] = asyncio.Queue()
        self.resampler = AudioResampler(
            input_rate,
            output_rate=audio.target_sample_rate,
            frame_size=audio.frame_size,
            on_frame=self._enqueue,
        )
        self.frames_sent = 0
        self.frames_dropped = 0

    # Runs on the PortAudio thread.
    def audio_callback(self, indata: np.ndarray, frames: int, time_info, status) -> None:
        if status:
            log.warning("event=mic_status status=%s", status)
        self.resampler.push(indata)

    def _enqueue(self, frame: bytes) -> None:
        self._loop.call_soon_threadsafe(self._frames.put_nowait, frame)

    async def pump(self) -> None:
        while True:
            frame = await self._frames.get()
            if self._ws.state is not State.OPEN:
                self.frames_dropped += 1
                continue
            try:
                await self._ws.send(frame)
            except websockets.ConnectionClosed:
                self.frames_dropped += 1
                continue
            self.frames_sent += 1


async def _print_events(ws) -> None:
    async for message in ws:
        if isinstance(message, bytes):
            continue
        try:
            event = parse_event(message)
        except ValidationError as exc:
            log.warning("event=bad_server_message error_count=%d", exc.error_count())
            continue
        if isinstance(event, InterimTranscript):
            log.debug("event=interim text=%r", event.text)
        else:
            log.info("event=%s payload=%s", event.type, to_wire(event))


async def run(url: str, device: int | str | None = None) -> None:
    info = sd.query_devices(device, kind="input")
    input_rate = int(info["default_samplerate"])
    log.info("event=mic_device name=%r rate=%d", info["name"], input_rate)

    async with websockets.connect(url) as ws:
        streamer = MicStreamer(ws, input_rate)
        await ws.send(json.dumps({"type": "hello", "mode": "voice"}))

        stream = sd.InputStream(
            samplerate=input_rate,
            channels=1,
            dtype="float32",
            device=device,
            callback=streamer.audio_callback,
        )
        stream.start()
        log.info("event=mic_started url=%s", url)

        pump = asyncio.create_task(streamer.pump(), name="mic_pump")
        try:
            await _print_events(ws)
        except websockets.ConnectionClosed as exc:
            log.info("event=server_closed code=%s", exc.rcvd.code if exc.rcvd else None)
        finally:
            stream.stop()
            stream.close()
            pump.cancel()
            try:
                await pump
            except asyncio.CancelledError:
                pass
            log.info(
                "event=mic_stopped frames_resampled=%d frames_sent=%d frames_dropped=%d",
                streamer.resampler.frames_emitted, streamer.frames_sent, streamer.frames_dropped,
            )


def main() -> None:
    parser = argparse.ArgumentParser(description="Stream the microphone to a duplex-voice session.")
    parser.add_argument("url", nargs="?", default="ws://localhost:8000/ws/demo")
    parser.add_argument("--device", default=None, help="sounddevice input device index or name")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if os.getenv("VOICE_DEBUG") else logging.INFO,
        format="%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s – %(message)s",
        datefmt="%H:%M:%S",
    )
    device = int(args.device) if args.device and args.device.isdigit() else args.device
    try:
        asyncio.run(run(args.url, device))
    except KeyboardInterrupt:
        print("\nShutdown requested")


if __name__ == "__main__":
    main()
