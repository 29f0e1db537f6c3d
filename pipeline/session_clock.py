"""Call start/stop tracking and ``HH:MM:SS`` duration rendering."""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Callable, Optional


def format_duration(seconds: float) -> str:
    """Render elapsed seconds as zero-padded ``HH:MM:SS`` (hours may exceed 99)."""
    total = max(0, int(seconds))
    hours, rem = divmod(total, 3600)
    minutes, secs = divmod(rem, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


class SessionClock:
    def __init__(self, monotonic: Callable[[], float] = time.monotonic) -> None:
        self._monotonic = monotonic
        self._start: Optional[float] = None
        self._stop: Optional[float] = None
        self.started_at: Optional[datetime] = None

    @property
    def running(self) -> bool:
        return self._start is not None and self._stop is None

    def start(self) -> None:
        self._start = self._monotonic()
        self._stop = None
        self.started_at = datetime.now(timezone.utc)

    def stop(self) -> None:
        if self.running:
            self._stop = self._monotonic()

    def elapsed(self) -> float:
        if self._start is None:
            return 0.0
        end = self._stop if self._stop is not None else self._monotonic()
        return end - self._start

    def render(self) -> str:
        return format_duration(self.elapsed())
