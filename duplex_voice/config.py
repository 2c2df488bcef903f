"""
config.py — Duplex Voice · Runtime Configuration
================================================
Pydantic models for every tunable parameter across the pipeline.
Serialises to / deserialises from JSON.  Used by:
  • server.py   — GET/PUT /config endpoints, hands config to each session
  • session.py  — applies each section to the recognizer, reply engine and
                  turn coordinator it owns
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

log = logging.getLogger("duplex_voice.config")

# ---------------------------------------------------------------------------
# Default system prompt (kept here so config.py is the single source of truth)
# ---------------------------------------------------------------------------

DEFAULT_SYSTEM_PROMPT = """\
You are a warm AI companion speaking directly to an elderly person to help fill in their care profile.

Tools:
- fill_field(field, value): fill a profile field. Fields: full_name, email, phone, age, physical, mental
- complete_onboarding(confirm): mark the profile complete once the required fields are filled

Rules:
- Be warm, clear and patient. Use simple language.
- Keep responses to 1-2 short sentences. This is spoken aloud, so brevity is kindness.
- Always end with a question to keep the conversation moving. Ask one thing at a time.
- Call fill_field as soon as you hear information. Only confirm details that sound ambiguous.
- Speech-to-text may mishear: ask for spelling only for unusual names, repeat phone numbers back.
- Always include spoken text alongside tool calls. Never respond with only tool calls.
- If some fields are already filled, confirm them first, then move on to the empty ones.
- For "physical": gently ask about health conditions, mobility issues or medications.
- For "mental": be especially gentle. Ask how they have been feeling lately.
- When all fields are filled, ask if everything looks correct before completing.
- Once the user confirms, call complete_onboarding, thank them and say goodbye warmly.
- Keep responding naturally if the user keeps talking after the goodbye.
- No markdown, no lists.
"""


# ---------------------------------------------------------------------------
# Per-service config sections
# ---------------------------------------------------------------------------

class DeepgramConfig(BaseModel):
    """Deepgram live STT parameters (sent as listen query parameters)."""
    url: str = Field(default="wss://api.deepgram.com/v1/listen", description="Live listen endpoint")
    model: str = Field(default="nova-2", description="Deepgram model")
    language: str = Field(default="en", description="Recognition language")
    smart_format: bool = Field(default=True, description="Auto-formatting")
    endpointing: int = Field(default=300, ge=0, le=5000, description="Silence endpointing (ms)")
    interim_results: bool = Field(default=True, description="Stream partial results")
    vad_events: bool = Field(default=True, description="Emit SpeechStarted events")
    utterance_end_ms: Optional[int] = Field(default=1000, ge=1000, le=10000, description="Backup utterance end timeout (ms)")
    sample_rate: int = Field(default=16000, ge=8000, le=48000, description="PCM sample rate (Hz)")
    encoding: str = Field(default="linear16", description="Audio encoding")
    channels: int = Field(default=1, ge=1, le=2, description="Audio channels")
    connect_timeout_sec: float = Field(default=10.0, gt=0.0, description="Websocket open timeout")

    def query_params(self) -> dict[str, str]:
        """Listen query string, booleans rendered the way the API expects."""
        params = {
            "model": self.model,
            "language": self.language,
            "smart_format": str(self.smart_format).lower(),
            "endpointing": str(self.endpointing),
            "interim_results": str(self.interim_results).lower(),
            "sample_rate": str(self.sample_rate),
            "encoding": self.encoding,
            "channels": str(self.channels),
            "vad_events": str(self.vad_events).lower(),
        }
        if self.utterance_end_ms is not None:
            params["utterance_end_ms"] = str(self.utterance_end_ms)
        return params


class GroqConfig(BaseModel):
    """Groq LLM parameters for the authoritative and the eager pass."""
    model: str = Field(default="llama-3.3-70b-versatile", description="Authoritative (tool-calling) model")
    eager_model: str = Field(default="llama-3.1-8b-instant", description="Fast speculative model")
    temperature: float = Field(default=0.6, ge=0.0, le=2.0, description="Reply randomness")
    tool_pass_temperature: float = Field(default=0.3, ge=0.0, le=2.0, description="Randomness of the tool-only pass")
    max_tokens: Optional[int] = Field(default=None, ge=1, description="Max response tokens")
    max_tool_steps: int = Field(default=5, ge=1, le=20, description="Model round trips per turn when tools are called")


class ReplyConfig(BaseModel):
    """SpeculativeReplyEngine tuning."""
    history_limit: int = Field(default=16, ge=2, le=200, description="Messages kept in conversation history")
    eager_wait_ms: int = Field(default=3000, ge=0, le=30000, description="Max wait for an in-flight eager pass")
    tool_pass_timeout_ms: int = Field(default=15000, ge=100, le=120000, description="Ceiling for the background tool pass")


class TurnConfig(BaseModel):
    """TurnCoordinator drain / barge-in estimation."""
    minimum_drain_ms: float = Field(default=500.0, ge=0.0, le=60000.0, description="Floor for the drain timer")
    ms_per_char_estimate: float = Field(default=80.0, gt=0.0, le=1000.0, description="Estimated speech playback per character")
    carryover_flush_ms: float = Field(default=3000.0, ge=0.0, le=60000.0, description="Quiet time after a barge-in before held transcripts are answered")


class AudioConfig(BaseModel):
    """Client-side resampling."""
    target_sample_rate: int = Field(default=16000, ge=8000, le=48000, description="Output PCM rate (Hz)")
    frame_size: int = Field(default=2048, ge=64, le=65536, description="Output samples per frame")


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------

class VoiceEngineConfig(BaseModel):
    """Complete runtime configuration for the voice pipeline."""
    deepgram: DeepgramConfig = Field(default_factory=DeepgramConfig)
    groq: GroqConfig = Field(default_factory=GroqConfig)
    reply: ReplyConfig = Field(default_factory=ReplyConfig)
    turn: TurnConfig = Field(default_factory=TurnConfig)
    audio: AudioConfig = Field(default_factory=AudioConfig)
    system_prompt: str = Field(default=DEFAULT_SYSTEM_PROMPT, description="System prompt for the LLM")

    # -- Persistence -----------------------------------------------------------

    @classmethod
    def load(cls, path: str | Path) -> "VoiceEngineConfig":
        """Read *path*; a missing or unreadable file yields the defaults."""
        p = Path(path)
        if not p.exists():
            log.info("event=config_load_defaults path=%s", p)
            return cls()
        try:
            data = json.loads(p.read_text(encoding="utf-8"))
            config = cls.model_validate(data)
            log.info("event=config_loaded path=%s", p)
            return config
        except Exception as exc:
            log.warning("event=config_load_error path=%s error=%s fallback=defaults", p, exc)
            return cls()

    def save(self, path: str | Path) -> None:
        """Write the config as indented JSON."""
        p = Path(path)
        p.write_text(
            self.model_dump_json(indent=2, exclude_none=True),
            encoding="utf-8",
        )
        log.info("event=config_saved path=%s", p)

    def merge_patch(self, patch: dict) -> "VoiceEngineConfig":
        """Return a new config with `patch` merged over `self`.

        Supports nested partial updates, e.g.:
            {"turn": {"ms_per_char_estimate": 65}}
        only changes turn.ms_per_char_estimate, leaving everything else intact.
        """
        base = self.model_dump()
        _deep_merge(base, patch)
        return VoiceEngineConfig.model_validate(base)


def _deep_merge(base: dict, patch: dict) -> None:
    """Merge nested dicts of *patch* into *base*, mutating *base*."""
    for key, value in patch.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
