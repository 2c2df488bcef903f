"""
events.py — Duplex Voice · Wire Messages
========================================
Closed tagged-variant types for everything that crosses the session
websocket:

  • Outward events  (session → presentation / TTS sink), JSON text frames
  • Control messages (client → session), JSON text frames

Binary frames are raw PCM16 audio and never pass through this module.
Field names are snake_case in Python and camelCase on the wire.
"""

from __future__ import annotations

import logging
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

log = logging.getLogger("duplex_voice.events")

ERROR_REPLY_TEXT = "[Error generating response]"


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


# ---------------------------------------------------------------------------
# Outward events
# ---------------------------------------------------------------------------

class InterimTranscript(_WireModel):
    type: Literal["interim_transcript"] = "interim_transcript"
    text: str


class UserTurn(_WireModel):
    type: Literal["user_turn"] = "user_turn"
    text: str
    turn_order: int


class StartOfTurn(_WireModel):
    """User began speaking.  On barge-in, carries what was / was not voiced."""
    type: Literal["start_of_turn"] = "start_of_turn"
    heard_prefix: Optional[str] = None
    full_text: Optional[str] = None


class AiTurnStart(_WireModel):
    type: Literal["ai_turn_start"] = "ai_turn_start"
    turn_order: int


class TextDelta(_WireModel):
    type: Literal["text_delta"] = "text_delta"
    text: str
    is_end: bool
    turn_order: int


class AiTurn(_WireModel):
    """Full agent reply, post-hoc.  ``error`` marks a failed generation."""
    type: Literal["ai_turn"] = "ai_turn"
    turn_order: int
    text: str
    error: bool = False


class FieldUpdated(_WireModel):
    type: Literal["field_updated"] = "field_updated"
    field: str
    value: str


class OnboardingComplete(_WireModel):
    type: Literal["onboarding_complete"] = "onboarding_complete"
    form: Optional[dict[str, str]] = None


class ErrorEvent(_WireModel):
    type: Literal["error"] = "error"
    message: str


class FormState(_WireModel):
    type: Literal["form_state"] = "form_state"
    form: dict[str, str]


class FormReset(_WireModel):
    type: Literal["form_reset"] = "form_reset"
    form: dict[str, str]


class ServicesReady(_WireModel):
    type: Literal["services_ready"] = "services_ready"
    stt: bool = True
    sample_rate: int = 16000


OutwardEvent = Annotated[
    Union[
        InterimTranscript,
        UserTurn,
        StartOfTurn,
        AiTurnStart,
        TextDelta,
        AiTurn,
        FieldUpdated,
        OnboardingComplete,
        ErrorEvent,
        FormState,
        FormReset,
        ServicesReady,
    ],
    Field(discriminator="type"),
]

_outward_adapter: TypeAdapter[OutwardEvent] = TypeAdapter(OutwardEvent)


def to_wire(event: OutwardEvent) -> dict:
    """JSON-ready dict with camelCase keys; absent optionals are omitted."""
    return event.model_dump(by_alias=True, exclude_none=True)


def parse_event(data: dict | str | bytes) -> OutwardEvent:
    """Inverse of :func:`to_wire`, for clients reading the event stream."""
    if isinstance(data, dict):
        return _outward_adapter.validate_python(data)
    return _outward_adapter.validate_json(data)


# ---------------------------------------------------------------------------
# Inbound control messages
# ---------------------------------------------------------------------------

class Hello(_WireModel):
    type: Literal["hello"] = "hello"
    mode: str = "text"


class GetState(_WireModel):
    type: Literal["get_state"] = "get_state"


class UpdateField(_WireModel):
    type: Literal["update_field"] = "update_field"
    field: str
    value: str = ""


class ResetForm(_WireModel):
    type: Literal["reset_form"] = "reset_form"


class StopVoice(_WireModel):
    type: Literal["stop_voice"] = "stop_voice"


ControlMessage = Annotated[
    Union[Hello, GetState, UpdateField, ResetForm, StopVoice],
    Field(discriminator="type"),
]

_control_adapter: TypeAdapter[ControlMessage] = TypeAdapter(ControlMessage)


def parse_control(raw: str | bytes) -> ControlMessage | None:
    """Parse one inbound text frame.  Malformed frames yield ``None``."""
    try:
        return _control_adapter.validate_json(raw)
    except ValidationError as exc:
        log.warning(
            "event=control_message_ignored errors=%d raw=%.80r",
            exc.error_count(), raw,
        )
        return None
