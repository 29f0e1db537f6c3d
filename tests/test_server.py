"""
Relay server tests.

Verifies:
    S1. GET /api/test-connection reports backend reachability.
    S2. POST /api/generate-response returns 200 {response} for a valid body.
    S3. Missing / non-string / empty message, or a non-JSON body, is a 400 with an error field.
    S4. Backend failure is a 500 with an error field.
    S5. /ws greets with a connected envelope.
    S6. speech-to-ai yields exactly one ai-response with a fresh messageId.
    S7. Malformed frames and backend failures produce error envelopes; the channel stays open.
    S8. Unknown frame types are ignored; binary frames are read as UTF-8 text.
    S9. /config round-trips patches and rejects invalid ones.
"""

import json

import pytest
from fastapi.testclient import TestClient

from config import AgentConfig
from fakes import FakeGenerator
from server import create_app


@pytest.fixture
def generator():
    return FakeGenerator(reply="Hi! What can I do for you?")


@pytest.fixture
def client(generator, tmp_path):
    app = create_app(config=AgentConfig(), generator=generator, config_file=str(tmp_path / "cfg.json"))
    with TestClient(app) as test_client:
        yield test_client


# ============================================================================
# REST endpoints
# ============================================================================

class TestConnectionProbe:
    def test_reachable(self, client):
        response = client.get("/api/test-connection")
        assert response.status_code == 200
        assert response.json() == {"connected": True}

    def test_unreachable(self, client, generator):
        generator.reachable = False
        assert client.get("/api/test-connection").json() == {"connected": False}


class TestGenerateResponse:
    def test_valid_message(self, client, generator):
        response = client.post("/api/generate-response", json={"message": "hi", "conversationHistory": []})
        assert response.status_code == 200
        assert response.json() == {"response": "Hi! What can I do for you?"}
        assert generator.calls[0][0] == "hi"

    def test_history_is_forwarded(self, client, generator):
        history = [
            {"role": "user", "content": "what's the weather"},
            {"role": "assistant", "content": "sunny"},
        ]
        client.post("/api/generate-response", json={"message": "thanks", "conversationHistory": history})
        _, sent_history = generator.calls[0]
        assert [(h.role, h.content) for h in sent_history] == [
            ("user", "what's the weather"),
            ("assistant", "sunny"),
        ]

    def test_history_defaults_to_empty(self, client, generator):
        response = client.post("/api/generate-response", json={"message": "hi"})
        assert response.status_code == 200
        assert generator.calls[0][1] == []

    @pytest.mark.parametrize("body", [{}, {"message": 42}, {"message": ""}, {"conversationHistory": []}])
    def test_invalid_message_rejected(self, client, generator, body):
        response = client.post("/api/generate-response", json=body)
        assert response.status_code == 400
        assert "error" in response.json()
        assert generator.calls == []

    def test_non_json_body_rejected(self, client):
        response = client.post(
            "/api/generate-response",
            content=b"not json",
            headers={"content-type": "application/json"},
        )
        assert response.status_code == 400
        assert "error" in response.json()

    def test_backend_failure(self, client, generator):
        generator.fail = True
        response = client.post("/api/generate-response", json={"message": "hi"})
        assert response.status_code == 500
        assert response.json() == {"error": "Failed to generate response"}


def test_health(client):
    data = client.get("/health").json()
    assert data["status"] == "ok"
    assert data["ws_clients"] == 0


# ============================================================================
# Persistent channel
# ============================================================================

class TestChannel:
    def test_connected_greeting(self, client):
        with client.websocket_connect("/ws") as ws:
            greeting = ws.receive_json()
        assert greeting["type"] == "connected"
        assert greeting["message"]

    def test_speech_round_trip(self, client, generator):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_json({"type": "speech-to-ai", "text": "hello", "conversationHistory": []})
            reply = ws.receive_json()

        assert reply["type"] == "ai-response"
        assert reply["text"] == "Hi! What can I do for you?"
        assert reply["messageId"]
        assert reply["timestamp"].endswith("Z")
        assert "sessionId" not in reply
        assert generator.calls == [("hello", [])]

    def test_message_ids_are_fresh(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ids = set()
            for text in ("one", "two", "three"):
                ws.send_json({"type": "speech-to-ai", "text": text, "conversationHistory": []})
                ids.add(ws.receive_json()["messageId"])
        assert len(ids) == 3

    def test_session_id_is_echoed(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_json({"type": "speech-to-ai", "text": "hello", "sessionId": "abc123"})
            reply = ws.receive_json()
        assert reply["sessionId"] == "abc123"

    def test_malformed_frame_keeps_channel_open(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_text("{not json")
            error = ws.receive_json()
            ws.send_json({"type": "speech-to-ai", "text": "still there?"})
            reply = ws.receive_json()
        assert error == {"type": "error", "message": "Failed to process message"}
        assert reply["type"] == "ai-response"

    def test_binary_frame_is_served(self, client, generator):
        frame = json.dumps({"type": "speech-to-ai", "text": "hello", "sessionId": "b1"}).encode("utf-8")
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_bytes(frame)
            reply = ws.receive_json()
        assert reply["type"] == "ai-response"
        assert reply["sessionId"] == "b1"
        assert generator.calls == [("hello", [])]

    def test_undecodable_binary_frame_keeps_channel_open(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_bytes(b"\xff\xfe\xfd")
            error = ws.receive_json()
            ws.send_json({"type": "speech-to-ai", "text": "still there?"})
            reply = ws.receive_json()
        assert error == {"type": "error", "message": "Failed to process message"}
        assert reply["type"] == "ai-response"

    def test_missing_text_is_an_error(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_json({"type": "speech-to-ai"})
            assert ws.receive_json()["type"] == "error"

    def test_backend_failure_is_an_error_envelope(self, client, generator):
        generator.fail = True
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_json({"type": "speech-to-ai", "text": "hello", "sessionId": "s1"})
            error = ws.receive_json()
            generator.fail = False
            ws.send_json({"type": "speech-to-ai", "text": "again", "sessionId": "s1"})
            reply = ws.receive_json()
        assert error["type"] == "error"
        assert error["sessionId"] == "s1"
        assert reply["type"] == "ai-response"

    def test_unknown_type_ignored(self, client, generator):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_json({"type": "ping"})
            ws.send_json({"type": "speech-to-ai", "text": "hello"})
            reply = ws.receive_json()
        assert reply["type"] == "ai-response"
        assert len(generator.calls) == 1


# ============================================================================
# Runtime config
# ============================================================================

class TestConfigEndpoints:
    def test_get_config(self, client):
        data = client.get("/config").json()
        assert data["transport"]["reconnect_delay_sec"] == 3.0
        assert data["debounce"]["min_chars"] == 2

    def test_put_config_merges_and_persists(self, client, tmp_path):
        response = client.put("/config", json={"generation": {"temperature": 0.5}})
        assert response.status_code == 200
        assert response.json()["generation"]["temperature"] == 0.5
        assert response.json()["generation"]["model"] == "llama-3.3-70b-versatile"
        saved = json.loads((tmp_path / "cfg.json").read_text(encoding="utf-8"))
        assert saved["generation"]["temperature"] == 0.5

    def test_put_config_rejects_unknown_section(self, client, tmp_path):
        response = client.put("/config", json={"genration": {"temperature": 0.5}})
        assert response.status_code == 400
        assert "genration" in response.json()["error"]
        assert not (tmp_path / "cfg.json").exists()

    def test_put_config_rejects_invalid(self, client):
        response = client.put("/config", json={"generation": {"temperature": 9.0}})
        assert response.status_code == 400
        assert client.get("/config").json()["generation"].get("temperature") is None
