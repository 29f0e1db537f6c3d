"""
protocol.py — Call Agent · Wire Envelopes
=========================================
Every frame on the persistent channel is a JSON object tagged by ``type``:

  client → server   {"type": "speech-to-ai", "text", "conversationHistory", "sessionId"?}
  server → client   {"type": "connected", "message"}
                    {"type": "ai-response", "text", "messageId", "timestamp", "sessionId"?}
                    {"type": "error", "message", "sessionId"?}

``sessionId`` is optional: the client tags outbound utterances with its call
session and the server echoes it back, so replies for an ended call can be
recognised and dropped.
"""

from __future__ import annotations

import json
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictStr, TypeAdapter, ValidationError, field_validator

SPEECH_TO_AI = "speech-to-ai"
AI_RESPONSE = "ai-response"
CONNECTED = "connected"
ERROR = "error"


class EnvelopeError(ValueError):
    """Raised when a frame cannot be decoded into a known envelope."""


class UnknownEnvelopeType(EnvelopeError):
    """Well-formed JSON object whose ``type`` is not part of the protocol."""

    def __init__(self, type_: str) -> None:
        super().__init__(f"unknown envelope type {type_!r}")
        self.type = type_


class _Wire(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class HistoryEntry(_Wire):
    role: str
    content: str


class SpeechToAI(_Wire):
    type: Literal["speech-to-ai"] = SPEECH_TO_AI
    text: StrictStr
    conversation_history: list[HistoryEntry] = Field(default_factory=list, alias="conversationHistory")
    session_id: Optional[str] = Field(default=None, alias="sessionId")

    @field_validator("conversation_history", mode="before")
    @classmethod
    def _null_history(cls, value):
        return [] if value is None else value


class Connected(_Wire):
    type: Literal["connected"] = CONNECTED
    message: str = "WebSocket connection established"


class AIResponse(_Wire):
    type: Literal["ai-response"] = AI_RESPONSE
    text: str
    message_id: Optional[str] = Field(default=None, alias="messageId")
    timestamp: Optional[str] = None
    session_id: Optional[str] = Field(default=None, alias="sessionId")


class ErrorEnvelope(_Wire):
    type: Literal["error"] = ERROR
    message: str
    session_id: Optional[str] = Field(default=None, alias="sessionId")


Envelope = Annotated[
    Union[SpeechToAI, Connected, AIResponse, ErrorEnvelope],
    Field(discriminator="type"),
]

_ENVELOPE_TYPES = frozenset({SPEECH_TO_AI, AI_RESPONSE, CONNECTED, ERROR})
_adapter: TypeAdapter = TypeAdapter(Envelope)


class GenerateRequest(_Wire):
    """Body of POST /api/generate-response."""
    message: StrictStr = Field(min_length=1)
    conversation_history: list[HistoryEntry] = Field(default_factory=list, alias="conversationHistory")

    @field_validator("conversation_history", mode="before")
    @classmethod
    def _null_history(cls, value):
        return [] if value is None else value


def decode(raw: str | bytes) -> Envelope:
    """Parse one frame.  Raises EnvelopeError for anything that is not a valid envelope."""
    try:
        data = json.loads(raw)
    except ValueError as exc:
        raise EnvelopeError(f"frame is not JSON: {exc}") from exc
    if not isinstance(data, dict) or not isinstance(data.get("type"), str):
        raise EnvelopeError("frame is not a typed object")
    if data["type"] not in _ENVELOPE_TYPES:
        raise UnknownEnvelopeType(data["type"])
    try:
        return _adapter.validate_python(data)
    except ValidationError as exc:
        raise EnvelopeError(f"invalid {data['type']} frame: {exc.error_count()} error(s)") from exc


def encode(envelope: BaseModel) -> str:
    """Serialise an envelope using its wire (camelCase) field names."""
    return envelope.model_dump_json(by_alias=True, exclude_none=True)
