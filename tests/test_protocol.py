"""
Wire envelopes.

Verifies:
    P1. Each envelope type decodes from its camelCase wire form.
    P2. encode() emits camelCase names and omits unset optionals.
    P3. Non-JSON, untyped and invalid frames raise EnvelopeError.
    P4. Unknown types raise UnknownEnvelopeType (an EnvelopeError).
"""

import json

import pytest

from protocol import (
    AIResponse,
    Connected,
    EnvelopeError,
    ErrorEnvelope,
    GenerateRequest,
    HistoryEntry,
    SpeechToAI,
    UnknownEnvelopeType,
    decode,
    encode,
)


def test_p1_decode_speech_to_ai():
    env = decode(json.dumps({
        "type": "speech-to-ai",
        "text": "hello",
        "conversationHistory": [{"role": "user", "content": "earlier"}],
        "sessionId": "s-1",
    }))
    assert isinstance(env, SpeechToAI)
    assert env.conversation_history == [HistoryEntry(role="user", content="earlier")]
    assert env.session_id == "s-1"


def test_p1_null_history_is_empty():
    env = decode(json.dumps({"type": "speech-to-ai", "text": "hello", "conversationHistory": None}))
    assert env.conversation_history == []


def test_p1_decode_server_envelopes():
    assert isinstance(decode('{"type": "connected", "message": "hi"}'), Connected)
    reply = decode(b'{"type": "ai-response", "text": "yo", "messageId": "m", "timestamp": "t"}')
    assert isinstance(reply, AIResponse)
    assert reply.message_id == "m"
    error = decode('{"type": "error", "message": "boom", "sessionId": "s"}')
    assert isinstance(error, ErrorEnvelope)
    assert error.session_id == "s"


def test_p2_encode_uses_wire_names():
    payload = json.loads(encode(SpeechToAI(
        text="hello",
        conversation_history=[HistoryEntry(role="assistant", content="hi")],
    )))
    assert payload == {
        "type": "speech-to-ai",
        "text": "hello",
        "conversationHistory": [{"role": "assistant", "content": "hi"}],
    }


def test_p2_encode_reply():
    payload = json.loads(encode(AIResponse(text="ok", message_id="m-1", timestamp="2026-01-01T00:00:00Z",
                                           session_id="s-1")))
    assert payload["messageId"] == "m-1"
    assert payload["sessionId"] == "s-1"
    assert "message_id" not in payload


@pytest.mark.parametrize("raw", [
    "not json",
    "[1, 2, 3]",
    '{"text": "no type"}',
    '{"type": 7}',
    '{"type": "speech-to-ai"}',
    '{"type": "speech-to-ai", "text": 42}',
    '{"type": "error"}',
])
def test_p3_invalid_frames(raw):
    with pytest.raises(EnvelopeError):
        decode(raw)


def test_p4_unknown_type():
    with pytest.raises(UnknownEnvelopeType) as info:
        decode('{"type": "ping"}')
    assert info.value.type == "ping"
    assert isinstance(info.value, EnvelopeError)


def test_generate_request_validation():
    req = GenerateRequest.model_validate({"message": "hi", "conversationHistory": None})
    assert req.conversation_history == []
    with pytest.raises(ValueError):
        GenerateRequest.model_validate({"message": ""})
    with pytest.raises(ValueError):
        GenerateRequest.model_validate({"message": 5})
