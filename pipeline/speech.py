"""
Speech capabilities.

Capture and synthesis are platform services this project treats as opaque.
The controller talks to them only through the two protocols below.  The
console implementations back the terminal front-end in ``agent.py``: typed
lines stand in for recognised speech and replies are printed instead of
spoken.
"""

from __future__ import annotations

import logging
import sys
from typing import Callable, Optional, Protocol, TextIO

log = logging.getLogger("call_agent.speech")


class SpeechRecognizer(Protocol):
    is_listening: bool
    transcript: str
    error: Optional[str]

    def start(self) -> None: ...

    def stop(self) -> None: ...

    def reset(self) -> None: ...

    async def request_permission(self) -> bool: ...


class SpeechSynthesizer(Protocol):
    is_speaking: bool
    rate: float
    volume: float
    available: bool

    def speak(self, text: str) -> None: ...

    def cancel(self) -> None: ...


class ConsoleRecognizer:
    """Each submitted line replaces the live transcript, as a recognizer tick would."""

    def __init__(
        self,
        on_transcript: Optional[Callable[[str], None]] = None,
        on_error: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.on_transcript = on_transcript
        self.on_error = on_error
        self.is_listening = False
        self.transcript = ""
        self.error: Optional[str] = None

    def start(self) -> None:
        self.is_listening = True
        self.error = None
        log.info("event=recognizer_started")

    def stop(self) -> None:
        self.is_listening = False
        log.info("event=recognizer_stopped")

    def reset(self) -> None:
        self.transcript = ""

    async def request_permission(self) -> bool:
        return True

    def submit(self, text: str) -> None:
        if not self.is_listening:
            self.error = "Not listening"
            if self.on_error is not None:
                self.on_error(self.error)
            return
        self.transcript = text
        if self.on_transcript is not None:
            self.on_transcript(text)


class ConsoleSynthesizer:
    """Writes replies to a stream.  ``rate``/``volume`` are kept for parity with real engines."""

    def __init__(self, rate: float = 1.0, volume: float = 0.8, stream: TextIO = sys.stdout) -> None:
        self.rate = rate
        self.volume = volume
        self.available = True
        self.is_speaking = False
        self._stream = stream

    def speak(self, text: str) -> None:
        self.cancel()
        self.is_speaking = True
        self._stream.write(f"assistant> {text}\n")
        self._stream.flush()
        self.is_speaking = False

    def cancel(self) -> None:
        self.is_speaking = False
