"""
Transcript debouncer.

The recognizer rewrites its transcript in place many times per second while
the user talks.  ``TranscriptDebouncer.evaluate`` turns that stream into
discrete commit decisions:

    Rule 1 — trimmed text must be longer than ``min_chars`` (noise guard)
    Rule 2 — a call must be active
    Rule 3 — no generation request may be in flight
    Rule 4 — text must differ from the last committed utterance

Repeated identical values therefore never commit twice.
"""

from __future__ import annotations

import logging
from typing import Optional

from config import DebounceConfig

log = logging.getLogger("call_agent.debouncer")


class TranscriptDebouncer:
    def __init__(self, config: Optional[DebounceConfig] = None) -> None:
        self.config = config or DebounceConfig()

    @property
    def reset_delay_sec(self) -> float:
        return self.config.reset_delay_sec

    def evaluate(
        self,
        transcript: str,
        *,
        active: bool,
        awaiting_response: bool,
        last_committed: str,
    ) -> Optional[str]:
        """Return the trimmed utterance to commit, or None when the value is not eligible."""
        text = (transcript or "").strip()
        if len(text) <= self.config.min_chars:
            return None
        if not active:
            log.debug("event=transcript_skipped reason=inactive")
            return None
        if awaiting_response:
            log.debug("event=transcript_skipped reason=awaiting_response text_len=%d", len(text))
            return None
        if text == last_committed:
            return None
        return text
