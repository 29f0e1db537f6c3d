"""Stand-ins for the external collaborators (generation backend, speech, transport)."""

from __future__ import annotations

import asyncio
from typing import Optional

from generation import GenerationError


class FakeGenerator:
    def __init__(self, reply: str = "Hello! How can I help?", fail: bool = False, reachable: bool = True) -> None:
        self.reply = reply
        self.fail = fail
        self.reachable = reachable
        self.calls: list[tuple[str, list]] = []

    async def generate(self, message, history=()):
        self.calls.append((message, list(history)))
        if self.fail:
            raise GenerationError("backend unavailable")
        return self.reply

    async def test_connection(self) -> bool:
        return self.reachable


class FakeRecognizer:
    def __init__(self, granted: bool = True) -> None:
        self.granted = granted
        self.is_listening = False
        self.transcript = ""
        self.error: Optional[str] = None
        self.start_calls = 0
        self.stop_calls = 0
        self.reset_calls = 0

    def start(self) -> None:
        self.start_calls += 1
        self.is_listening = True

    def stop(self) -> None:
        self.stop_calls += 1
        self.is_listening = False

    def reset(self) -> None:
        self.reset_calls += 1
        self.transcript = ""

    async def request_permission(self) -> bool:
        return self.granted


class FakeSynthesizer:
    def __init__(self) -> None:
        self.spoken: list[str] = []
        self.cancel_calls = 0
        self.is_speaking = False
        self.rate = 1.0
        self.volume = 0.8
        self.available = True

    def speak(self, text: str) -> None:
        self.spoken.append(text)

    def cancel(self) -> None:
        self.cancel_calls += 1


class FakeTransport:
    def __init__(self, connected: bool = True) -> None:
        self.connected = connected
        self.sent: list = []

    async def send(self, envelope) -> bool:
        if not self.connected:
            return False
        self.sent.append(envelope)
        return True


class BlockingTransport(FakeTransport):
    """send() parks until release() decides whether it went through."""

    def __init__(self) -> None:
        super().__init__(connected=True)
        self.entered = asyncio.Event()
        self._released = asyncio.Event()
        self._result = True

    async def send(self, envelope) -> bool:
        self.entered.set()
        await self._released.wait()
        if self._result:
            self.sent.append(envelope)
        return self._result

    def release(self, result: bool) -> None:
        self._result = result
        self._released.set()
