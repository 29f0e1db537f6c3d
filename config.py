"""
config.py — Call Agent · Runtime Configuration
==============================================
Pydantic models for every tunable parameter across the relay server and the
call client.  Serialises to / deserialises from JSON.  Used by:
  • server.py  — GET/PUT /config endpoints, generation backend settings
  • agent.py   — transport URL, debounce timing, speech output defaults
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationError

log = logging.getLogger("call_agent.config")

CONFIG_PATH_ENV = "CALL_AGENT_CONFIG"
DEFAULT_CONFIG_PATH = "call_agent.json"

# ---------------------------------------------------------------------------
# Default system prompt (kept here so config.py is the single source of truth)
# ---------------------------------------------------------------------------

DEFAULT_SYSTEM_PROMPT = """\
You are a helpful AI assistant having a voice conversation.
Keep responses conversational, clear, and concise since they will be spoken aloud.
Avoid overly long responses.
"""

DEFAULT_FALLBACK_TEXT = "I'm sorry, I couldn't generate a response. Please try again."


# ---------------------------------------------------------------------------
# Per-component config sections
# ---------------------------------------------------------------------------

class GenerationConfig(BaseModel):
    """Groq chat-completion parameters used by the relay server."""
    model: str = Field(default="llama-3.3-70b-versatile", description="Groq model ID")
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0, description="Randomness (0.0–2.0)")
    top_p: Optional[float] = Field(default=None, ge=0.0, le=1.0, description="Nucleus sampling")
    max_tokens: Optional[int] = Field(default=None, ge=1, description="Max response tokens")
    max_history_messages: int = Field(default=20, ge=0, le=200, description="History messages sent as context")
    system_prompt: str = Field(default=DEFAULT_SYSTEM_PROMPT, description="System prompt for the LLM")
    fallback_text: str = Field(default=DEFAULT_FALLBACK_TEXT, description="Reply used when the model returns nothing")
    probe_prompt: str = Field(default="Hello, this is a test message.", description="Prompt used by the connectivity probe")


class ServerConfig(BaseModel):
    """Relay server bind address."""
    host: str = Field(default="0.0.0.0", description="Bind host")
    port: int = Field(default=5000, ge=1, le=65535, description="Bind port")
    cors_origins: list[str] = Field(default_factory=lambda: ["*"], description="Allowed CORS origins")


class TransportConfig(BaseModel):
    """Client-side persistent channel."""
    url: str = Field(default="ws://127.0.0.1:5000/ws", description="Relay websocket endpoint")
    reconnect_delay_sec: float = Field(default=3.0, gt=0.0, le=60.0, description="Fixed delay between reconnects")


class DebounceConfig(BaseModel):
    """Transcript commit rules."""
    min_chars: int = Field(default=2, ge=0, description="Transcript must be longer than this to commit")
    reset_delay_sec: float = Field(default=0.5, ge=0.0, le=5.0, description="Delay before the recognizer is reset")


class SpeechConfig(BaseModel):
    """Speech output defaults."""
    rate: float = Field(default=1.0, ge=0.1, le=10.0, description="Speaking rate")
    volume: float = Field(default=0.8, ge=0.0, le=1.0, description="Output volume")
    speaker_on: bool = Field(default=True, description="Speak replies aloud")


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------

class AgentConfig(BaseModel):
    """Complete runtime configuration for the call agent."""
    generation: GenerationConfig = Field(default_factory=GenerationConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    transport: TransportConfig = Field(default_factory=TransportConfig)
    debounce: DebounceConfig = Field(default_factory=DebounceConfig)
    speech: SpeechConfig = Field(default_factory=SpeechConfig)

    # -- Persistence -----------------------------------------------------------

    @classmethod
    def load(cls, path: str | Path) -> "AgentConfig":
        """Read the JSON file written by ``save`` (or by PUT /config).

        A missing file means a first run; an unreadable or invalid one is
        logged and replaced by defaults so neither process refuses to start.
        """
        p = Path(path)
        try:
            raw = p.read_text(encoding="utf-8")
        except FileNotFoundError:
            log.info("event=config_load_defaults path=%s reason=missing", p)
            return cls()
        except OSError as exc:
            log.warning("event=config_load_error path=%s error=%s", p, exc)
            return cls()
        try:
            config = cls.model_validate_json(raw)
        except ValidationError as exc:
            log.warning("event=config_load_error path=%s errors=%d", p, exc.error_count())
            return cls()
        log.info("event=config_loaded path=%s model=%s url=%s", p, config.generation.model, config.transport.url)
        return config

    def save(self, path: str | Path) -> None:
        """Write the config as indented JSON; unset sampling params are omitted."""
        p = Path(path)
        p.write_text(self.model_dump_json(indent=2, exclude_none=True), encoding="utf-8")
        log.info("event=config_saved path=%s", p)

    def merge_patch(self, patch: dict) -> "AgentConfig":
        """Apply a partial update section by section and re-validate.

            {"debounce": {"reset_delay_sec": 0.8}}

        changes only that field.  Unknown section names raise ValueError so a
        typo in a PUT /config body is reported instead of silently dropped.
        """
        unknown = sorted(set(patch) - set(type(self).model_fields))
        if unknown:
            raise ValueError(f"unknown config section(s): {', '.join(unknown)}")
        merged = self.model_dump()
        _deep_merge(merged, patch)
        return type(self).model_validate(merged)


def config_path() -> Path:
    """Location of the JSON config file (env override, else the working dir)."""
    return Path(os.getenv(CONFIG_PATH_ENV, DEFAULT_CONFIG_PATH))


def _deep_merge(target: dict, patch: dict) -> None:
    """Merge *patch* into *target* in place; nested dicts merge, other values replace."""
    for key, value in patch.items():
        current = target.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            _deep_merge(current, value)
        else:
            target[key] = value
