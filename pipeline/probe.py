"""Client-side connection status probe (backend, microphone, speaker)."""

from __future__ import annotations

import logging
from typing import Optional
from urllib.parse import urlsplit

import httpx

from .controller import ConnectionStatus
from .speech import SpeechRecognizer, SpeechSynthesizer

log = logging.getLogger("call_agent.probe")

PROBE_PATH = "/api/test-connection"


def http_base_url(ws_url: str) -> str:
    """``ws://host:port/ws`` → ``http://host:port`` (``wss`` → ``https``)."""
    parts = urlsplit(ws_url)
    scheme = "https" if parts.scheme == "wss" else "http"
    return f"{scheme}://{parts.netloc}"


async def check_backend(base_url: str, client: Optional[httpx.AsyncClient] = None, timeout: float = 10.0) -> bool:
    """GET /api/test-connection; any failure counts as unreachable."""
    owns_client = client is None
    client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
    try:
        response = await client.get(PROBE_PATH)
        if response.status_code != 200:
            log.warning("event=backend_probe_failed status=%d", response.status_code)
            return False
        return bool(response.json().get("connected", False))
    except (httpx.HTTPError, ValueError) as exc:
        log.warning("event=backend_probe_error url=%s error=%s", base_url, exc)
        return False
    finally:
        if owns_client:
            await client.aclose()


async def probe_status(
    base_url: str,
    recognizer: SpeechRecognizer,
    synthesizer: SpeechSynthesizer,
    client: Optional[httpx.AsyncClient] = None,
) -> ConnectionStatus:
    backend = await check_backend(base_url, client=client)
    try:
        microphone = await recognizer.request_permission()
    except Exception as exc:
        log.warning("event=microphone_probe_error error=%s", exc)
        microphone = False
    status = ConnectionStatus(
        backend_reachable=backend,
        microphone_granted=bool(microphone),
        speaker_available=bool(getattr(synthesizer, "available", True)),
    )
    log.info(
        "event=connection_status backend=%s microphone=%s speaker=%s",
        status.backend_reachable, status.microphone_granted, status.speaker_available,
    )
    return status
