"""
server.py — Call Agent · FastAPI Relay Server
=============================================
Server-side counterpart of the call client.  Accepts persistent websocket
connections, forwards each spoken utterance to the generation backend and
returns the reply on the same channel.

Endpoints
---------
  GET  /api/test-connection     Backend reachability probe → {"connected": bool}
  POST /api/generate-response   Non-streaming fallback path → {"response": str}
  WS   /ws                      Persistent channel (speech-to-ai ⇄ ai-response)
  GET  /health                  Service liveness
  GET  /config                  Current runtime config
  PUT  /config                  Deep-merge a partial config patch

Concurrency model
-----------------
One asyncio event loop.  Each websocket connection is served by its own
receive loop which awaits the backend inline, so a single connection never
has two generation calls in flight.  A failure on one frame produces an
``error`` envelope and the connection stays open.

Run
---
    uvicorn server:app --port 5000
"""

from __future__ import annotations

import logging
import os
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional, Protocol

from dotenv import load_dotenv
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from config import AgentConfig, config_path
from generation import GroqGenerator
from protocol import (
    AIResponse,
    Connected,
    EnvelopeError,
    ErrorEnvelope,
    GenerateRequest,
    SpeechToAI,
    UnknownEnvelopeType,
    decode,
    encode,
)

load_dotenv()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.DEBUG if os.getenv("VOICE_DEBUG") else logging.INFO,
    format="%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s – %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger("call_agent.server")


class Generator(Protocol):
    async def generate(self, message: str, history=()) -> str: ...

    async def test_connection(self) -> bool: ...


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


# ---------------------------------------------------------------------------
# Channel handling
# ---------------------------------------------------------------------------

async def _receive_frame(ws: WebSocket) -> str:
    """Next inbound frame as text.  Binary frames are read as UTF-8 JSON."""
    message = await ws.receive()
    if message["type"] == "websocket.disconnect":
        raise WebSocketDisconnect(message.get("code", 1000), message.get("reason"))
    if message.get("text") is not None:
        return message["text"]
    data = message.get("bytes") or b""
    # Undecodable bytes become U+FFFD so the frame fails JSON parsing downstream.
    return data.decode("utf-8", errors="replace")


async def _handle_frame(ws: WebSocket, generator: Generator, raw: str) -> None:
    """Process one inbound frame; every failure becomes an ``error`` envelope."""
    try:
        envelope = decode(raw)
    except UnknownEnvelopeType as exc:
        log.debug("event=ws_frame_ignored type=%s", exc.type)
        return
    except EnvelopeError as exc:
        log.warning("event=ws_frame_malformed remote=%s error=%s", ws.client, exc)
        await ws.send_text(encode(ErrorEnvelope(message="Failed to process message")))
        return

    if not isinstance(envelope, SpeechToAI):
        log.debug("event=ws_frame_ignored type=%s", envelope.type)
        return

    log.info(
        "event=speech_received text_len=%d history=%d session=%s",
        len(envelope.text), len(envelope.conversation_history), envelope.session_id,
    )
    try:
        text = await generator.generate(envelope.text, envelope.conversation_history)
    except Exception as exc:
        log.error("event=ws_generation_failed session=%s error=%s", envelope.session_id, exc)
        await ws.send_text(encode(ErrorEnvelope(
            message="Failed to process message",
            session_id=envelope.session_id,
        )))
        return

    reply = AIResponse(
        text=text,
        message_id=str(uuid.uuid4()),
        timestamp=_utc_timestamp(),
        session_id=envelope.session_id,
    )
    await ws.send_text(encode(reply))
    log.info("event=ai_response_sent message_id=%s session=%s", reply.message_id, reply.session_id)


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

def create_app(
    config: Optional[AgentConfig] = None,
    generator: Optional[Generator] = None,
    config_file: Optional[str] = None,
) -> FastAPI:
    """Build the relay app.  Tests inject a fake *generator*."""
    cfg = config if config is not None else AgentConfig.load(config_file or config_path())

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        log.info("event=server_start model=%s", app.state.config.generation.model)
        yield
        log.info("event=server_shutdown ws_clients=%d", len(app.state.clients))

    app = FastAPI(
        title="Call Agent Relay",
        version="1.0.0",
        description="Voice call relay to a text-generation backend",
        lifespan=_lifespan,
    )
    app.state.config = cfg
    app.state.config_file = config_file or str(config_path())
    app.state.generator = generator if generator is not None else GroqGenerator(cfg.generation)
    app.state.clients = set()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.server.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -----------------------------------------------------------------------
    # Endpoints
    # -----------------------------------------------------------------------

    @app.get("/api/test-connection")
    async def test_connection() -> JSONResponse:
        """Synchronously probe the generation backend."""
        try:
            connected = await app.state.generator.test_connection()
        except Exception as exc:
            log.error("event=connection_test_error error=%s", exc, exc_info=True)
            return JSONResponse(
                status_code=500,
                content={"connected": False, "error": "Connection test failed"},
            )
        log.info("event=connection_test connected=%s", connected)
        return JSONResponse({"connected": bool(connected)})

    @app.post("/api/generate-response")
    async def generate_response(request: Request) -> JSONResponse:
        """
        Non-streaming fallback for generating one reply outside the channel.

            { "message": "hi", "conversationHistory": [{"role": "user", "content": "..."}] }
        """
        try:
            body = GenerateRequest.model_validate(await request.json())
        except (ValueError, ValidationError) as exc:
            log.info("event=generate_rejected error=%s", exc)
            return JSONResponse(status_code=400, content={"error": "Message is required"})

        try:
            text = await app.state.generator.generate(body.message, body.conversation_history)
        except Exception as exc:
            log.error("event=generate_failed error=%s", exc)
            return JSONResponse(status_code=500, content={"error": "Failed to generate response"})
        return JSONResponse({"response": text})

    @app.get("/health")
    async def health() -> JSONResponse:
        """Liveness probe."""
        return JSONResponse({
            "status":     "ok",
            "model":      app.state.config.generation.model,
            "ws_clients": len(app.state.clients),
        })

    @app.get("/config")
    async def get_config() -> JSONResponse:
        return JSONResponse(app.state.config.model_dump())

    @app.put("/config")
    async def put_config(request: Request) -> JSONResponse:
        """Merge a partial patch, e.g. {"generation": {"temperature": 0.7}}."""
        try:
            patch = await request.json()
            if not isinstance(patch, dict):
                raise ValueError("config patch must be an object")
            new_config = app.state.config.merge_patch(patch)
        except (ValueError, ValidationError) as exc:
            return JSONResponse(status_code=400, content={"error": f"Invalid config: {exc}"})

        app.state.config = new_config
        app.state.generator.config = new_config.generation
        new_config.save(app.state.config_file)
        log.info("event=config_updated keys=%s", ",".join(sorted(patch)))
        return JSONResponse(new_config.model_dump())

    @app.websocket("/ws")
    async def ws_channel(ws: WebSocket) -> None:
        """Persistent relay channel: one ``ai-response`` or ``error`` per ``speech-to-ai``."""
        await ws.accept()
        app.state.clients.add(ws)
        log.info("event=ws_client_connected remote=%s", ws.client)
        try:
            await ws.send_text(encode(Connected()))
            while True:
                raw = await _receive_frame(ws)
                await _handle_frame(ws, app.state.generator, raw)
        except WebSocketDisconnect:
            pass
        finally:
            app.state.clients.discard(ws)
            log.info("event=ws_client_disconnected remote=%s", ws.client)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    _cfg = app.state.config.server
    uvicorn.run(app, host=_cfg.host, port=_cfg.port)
