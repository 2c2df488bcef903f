"""
resampler.py — Duplex Voice · Client-side audio conditioning
============================================================
Converts float mono microphone blocks at the device rate into fixed-size
PCM16 little-endian frames at the recognizer rate (16 kHz by default).

Nothing here touches an output device; frames go to a callback (usually
the websocket sender) or are returned to the caller.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

import numpy as np

log = logging.getLogger("duplex_voice.resampler")

PCM16_DTYPE = np.dtype("<i2")


def float_to_pcm16(samples: np.ndarray) -> np.ndarray:
    """Clamp to [-1, 1] and quantize with the asymmetric PCM16 range."""
    clipped = np.clip(samples, -1.0, 1.0)
    scaled = np.where(clipped < 0, clipped * 32768.0, clipped * 32767.0)
    return np.round(scaled).astype(PCM16_DTYPE)


def linear_resample(chunk: np.ndarray, ratio: float, out_len: int) -> np.ndarray:
    """Linear interpolation at ``ratio = input_rate / output_rate``."""
    if ratio == 1.0:
        return chunk[:out_len]
    positions = np.arange(out_len, dtype=np.float64) * ratio
    # np.interp holds the last sample past the right edge
    return np.interp(positions, np.arange(len(chunk), dtype=np.float64), chunk)


class AudioResampler:
    """Accumulate float samples and emit one PCM16 frame per ``frame_size`` outputs."""

    def __init__(
        self,
        input_rate: int,
        output_rate: int = 16000,
        frame_size: int = 2048,
        on_frame: Optional[Callable[[bytes], None]] = None,
    ):
        if input_rate <= 0 or output_rate <= 0 or frame_size <= 0:
            raise ValueError("rates and frame size must be positive")
        self.input_rate = input_rate
        self.output_rate = output_rate
        self.frame_size = frame_size
        self.ratio = input_rate / output_rate
        self.input_chunk = max(1, round(frame_size * self.ratio))
        self._on_frame = on_frame
        self._pending = np.empty(0, dtype=np.float32)
        self.frames_emitted = 0

    @property
    def buffered_samples(self) -> int:
        return len(self._pending)

    def push(self, samples) -> list[bytes]:
        """Queue one block of input samples; return every frame it completed."""
        block = self._coerce(samples)
        if block is None:
            return []
        self._pending = np.concatenate((self._pending, block))

        frames: list[bytes] = []
        while len(self._pending) >= self.input_chunk:
            chunk = self._pending[:self.input_chunk]
            self._pending = self._pending[self.input_chunk:]
            resampled = linear_resample(chunk, self.ratio, self.frame_size)
            frame = float_to_pcm16(resampled).tobytes()
            self.frames_emitted += 1
            frames.append(frame)
            if self._on_frame is not None:
                self._on_frame(frame)
        return frames

    def _coerce(self, samples) -> Optional[np.ndarray]:
        if samples is None:
            return None
        try:
            block = np.asarray(samples, dtype=np.float32)
        except (TypeError, ValueError):
            log.debug("event=resampler_block_skipped reason=not_numeric")
            return None
        if block.ndim == 2:
            block = block[:, 0]  # mono
        if block.ndim != 1 or block.size == 0:
            log.debug("event=resampler_block_skipped reason=shape shape=%s", block.shape)
            return None
        return np.nan_to_num(block, nan=0.0, posinf=1.0, neginf=-1.0)
