"""
generation.py — Call Agent · Generation Backend Client
======================================================
Thin async wrapper over Groq chat completions.  The relay server hands it one
utterance plus the conversation so far and gets back the reply text.

The history is bounded to the last ``max_history_messages`` entries so a long
call never grows the prompt without limit.
"""

from __future__ import annotations

import logging
import os
import time
from typing import Any, Iterable, Optional

from groq import AsyncGroq

from config import GenerationConfig

log = logging.getLogger("call_agent.generation")

_CONTEXT_ROLES: frozenset[str] = frozenset({"user", "assistant"})


class GenerationError(RuntimeError):
    """The backend failed to produce a reply (no structured error code)."""


def _field(entry: Any, name: str) -> Any:
    if isinstance(entry, dict):
        return entry.get(name)
    return getattr(entry, name, None)


def build_messages(
    message: str,
    history: Iterable[Any],
    config: GenerationConfig,
) -> list[dict]:
    """System prompt + last N history entries + the new user message.

    History entries may be dicts or objects with ``role``/``content``.  Entries
    with roles the model does not accept as context are dropped.
    """
    context = [
        {"role": _field(entry, "role"), "content": _field(entry, "content")}
        for entry in history
        if _field(entry, "role") in _CONTEXT_ROLES and isinstance(_field(entry, "content"), str)
    ]
    if config.max_history_messages == 0:
        context = []
    else:
        context = context[-config.max_history_messages:]
    return (
        [{"role": "system", "content": config.system_prompt}]
        + context
        + [{"role": "user", "content": message}]
    )


class GroqGenerator:
    """Generation backend used by the relay server."""

    def __init__(
        self,
        config: GenerationConfig,
        api_key: Optional[str] = None,
        client: Optional[AsyncGroq] = None,
    ) -> None:
        self.config = config
        self._api_key = api_key
        self._client = client

    def _get_client(self) -> AsyncGroq:
        if self._client is None:
            self._client = AsyncGroq(api_key=self._api_key or os.environ["GROQ_API_KEY"])
        return self._client

    def _sampling_kwargs(self) -> dict:
        cfg = self.config
        kwargs: dict = {}
        if cfg.temperature is not None:
            kwargs["temperature"] = cfg.temperature
        if cfg.top_p is not None:
            kwargs["top_p"] = cfg.top_p
        if cfg.max_tokens is not None:
            kwargs["max_tokens"] = cfg.max_tokens
        return kwargs

    async def _complete(self, messages: list[dict], **kwargs: Any) -> str:
        response = await self._get_client().chat.completions.create(
            model=self.config.model,
            messages=messages,
            stream=False,
            **kwargs,
        )
        return (response.choices[0].message.content or "").strip()

    async def generate(self, message: str, history: Iterable[Any] = ()) -> str:
        """Return the assistant reply for *message*.  Raises GenerationError."""
        messages = build_messages(message, history, self.config)
        start = time.perf_counter()
        try:
            text = await self._complete(messages, **self._sampling_kwargs())
        except Exception as exc:
            log.error("event=generation_failed model=%s error=%s", self.config.model, exc)
            raise GenerationError("Failed to generate AI response") from exc
        log.info(
            "event=generation_done model=%s context_messages=%d reply_len=%d duration_ms=%.1f",
            self.config.model, len(messages) - 2, len(text), (time.perf_counter() - start) * 1000,
        )
        return text or self.config.fallback_text

    async def test_connection(self) -> bool:
        """Send a tiny probe prompt; True when the backend answers with text."""
        try:
            text = await self._complete(
                [{"role": "user", "content": self.config.probe_prompt}],
                max_tokens=8,
            )
        except Exception as exc:
            log.warning("event=connection_probe_failed model=%s error=%s", self.config.model, exc)
            return False
        return bool(text)
