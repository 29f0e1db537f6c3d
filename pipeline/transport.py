"""
Transport channel — one logical websocket to the relay server.

Lifecycle
---------
  connect      → connected=True, last_error cleared
  frame in     → decoded envelope handed to ``on_message``; malformed frames
                 are logged and dropped
  send         → silent no-op (returns False) while not open; never queued
  close/error  → connected=False immediately, reconnect after a fixed delay,
                 forever, no backoff

Errors never raise to the caller; they are visible through ``state``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Any, Callable, Optional

import websockets
from pydantic import BaseModel
from websockets.exceptions import WebSocketException

from protocol import EnvelopeError, decode, encode

log = logging.getLogger("call_agent.transport")


@dataclass(frozen=True)
class TransportState:
    connected: bool = False
    last_error: Optional[str] = None


class TransportChannel:
    def __init__(
        self,
        url: str,
        reconnect_delay_sec: float = 3.0,
        on_message: Optional[Callable[[Any], None]] = None,
        on_state_change: Optional[Callable[[TransportState], None]] = None,
        connect: Callable[..., Any] = websockets.connect,
    ) -> None:
        self.url = url
        self.reconnect_delay_sec = reconnect_delay_sec
        self.on_message = on_message
        self.on_state_change = on_state_change
        self._connect = connect
        self.state = TransportState()
        self._ws: Any = None
        self._task: Optional[asyncio.Task] = None
        self._closing = False

    @property
    def connected(self) -> bool:
        return self.state.connected

    # -- lifecycle -------------------------------------------------------------

    def start(self) -> asyncio.Task:
        """Spawn the connection loop (idempotent while it is running)."""
        if self._task is None or self._task.done():
            self._closing = False
            self._task = asyncio.create_task(self._run(), name="transport_channel")
        return self._task

    async def close(self) -> None:
        """Stop reconnecting and tear the connection down."""
        self._closing = True
        ws = self._ws
        if ws is not None:
            try:
                await ws.close()
            except WebSocketException as exc:
                log.debug("event=ws_close_error error=%s", exc)
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        self._ws = None
        self._set_state(connected=False, last_error=self.state.last_error)

    async def _run(self) -> None:
        attempt = 0
        while not self._closing:
            error: Optional[str] = None
            try:
                async with self._connect(self.url) as ws:
                    self._ws = ws
                    attempt = 0
                    self._set_state(connected=True, last_error=None)
                    log.info("event=ws_connected url=%s", self.url)
                    await self._receive(ws)
                log.info("event=ws_closed reason=server")
            except (WebSocketException, OSError) as exc:
                error = "WebSocket connection error"
                log.warning("event=ws_disconnected url=%s error=%s", self.url, exc)
            except Exception:
                # Anything else (e.g. an open timeout) still goes through the retry path.
                error = "WebSocket connection error"
                log.exception("event=ws_connection_failed url=%s", self.url)
            finally:
                self._ws = None
            self._set_state(connected=False, last_error=error)

            if self._closing:
                break
            attempt += 1
            log.info(
                "event=ws_reconnect_scheduled attempt=%d delay=%.1fs",
                attempt, self.reconnect_delay_sec,
            )
            await asyncio.sleep(self.reconnect_delay_sec)

    async def _receive(self, ws: Any) -> None:
        async for raw in ws:
            try:
                envelope = decode(raw)
            except EnvelopeError as exc:
                log.error("event=ws_frame_dropped error=%s", exc)
                continue
            log.debug("event=ws_receive type=%s", envelope.type)
            if self.on_message is None:
                continue
            try:
                self.on_message(envelope)
            except Exception:
                log.exception("event=ws_message_handler_error type=%s", envelope.type)

    # -- outbound --------------------------------------------------------------

    async def send(self, envelope: BaseModel) -> bool:
        """Send one envelope.  Returns False (and drops it) when the channel is not open."""
        ws = self._ws
        if ws is None or not self.state.connected:
            log.warning("event=ws_send_dropped reason=not_connected")
            return False
        try:
            await ws.send(encode(envelope))
        except WebSocketException as exc:
            log.warning("event=ws_send_failed error=%s", exc)
            self._set_state(connected=self.state.connected, last_error="WebSocket connection error")
            return False
        return True

    # -- state -----------------------------------------------------------------

    def _set_state(self, connected: bool, last_error: Optional[str] = None) -> None:
        new_state = replace(self.state, connected=connected, last_error=last_error)
        if new_state == self.state:
            return
        self.state = new_state
        if self.on_state_change is not None:
            self.on_state_change(new_state)
