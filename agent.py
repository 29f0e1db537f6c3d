"""
agent.py — Call Agent · Terminal Call Client
============================================
Client process.  Connects to the relay server, probes connection status and
runs one call at a time from the terminal.  Typed lines stand in for the
speech recognizer's live transcript; replies are written to stdout in place
of speech output.

Usage
-----
    python agent.py [--url ws://127.0.0.1:5000/ws] [--config call_agent.json]

Commands
--------
    /call      toggle the call            /mute      toggle mute
    /speaker   toggle speech output       /clear     clear the conversation
    /allow     request microphone access  /retry     re-probe connection status
    /dismiss   dismiss a pending notice   /status    show session stats
    /quit      exit

Pipeline
--------
ConsoleRecognizer (typed transcript)
    → TranscriptDebouncer  (inside the CallController reducer)
    → TransportChannel     (websocket → relay server → Groq)
    → CallController       (ConversationStore + ConsoleSynthesizer)
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

from config import AgentConfig, config_path
from pipeline.controller import Action, ActionType, CallController, CallState, Notice
from pipeline.conversation import ConversationStore
from pipeline.debouncer import TranscriptDebouncer
from pipeline.probe import http_base_url, probe_status
from pipeline.session_clock import SessionClock
from pipeline.speech import ConsoleRecognizer, ConsoleSynthesizer
from pipeline.transport import TransportChannel

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.DEBUG if os.getenv("VOICE_DEBUG") else logging.WARNING,
    format="%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s – %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger("call_agent.agent")


def _print_notice(notice: Notice) -> None:
    hint = "  (/retry to try again)" if notice.retryable else ""
    print(f"[{notice.title}] {notice.message}{hint}", flush=True)


class CallAgent:
    """Wires the client components together around one CallController."""

    def __init__(self, config: AgentConfig) -> None:
        self.config = config
        self.base_url = http_base_url(config.transport.url)
        self.recognizer = ConsoleRecognizer()
        self.synthesizer = ConsoleSynthesizer(
            rate=config.speech.rate,
            volume=config.speech.volume,
        )
        self.transport = TransportChannel(
            config.transport.url,
            reconnect_delay_sec=config.transport.reconnect_delay_sec,
        )
        self.controller = CallController(
            store=ConversationStore(),
            transport=self.transport,
            recognizer=self.recognizer,
            synthesizer=self.synthesizer,
            debouncer=TranscriptDebouncer(config.debounce),
            clock=SessionClock(),
            on_notice=_print_notice,
            speaker_on=config.speech.speaker_on,
        )
        self.recognizer.on_transcript = self.controller.on_transcript
        self.recognizer.on_error = self.controller.on_recognizer_error
        self.transport.on_message = self.controller.on_envelope
        self.transport.on_state_change = self.controller.on_transport_state

    async def refresh_status(self) -> None:
        status = await probe_status(self.base_url, self.recognizer, self.synthesizer)
        await self.controller.dispatch(Action(ActionType.STATUS_UPDATED, {"status": status}))
        if not status.backend_reachable:
            _print_notice(Notice(
                "API Connection Error",
                "Unable to reach the generation backend. Check the server and its API key configuration.",
                retryable=True,
            ))

    async def request_permission(self) -> None:
        granted = await self.recognizer.request_permission()
        await self.controller.dispatch(Action(ActionType.PERMISSION_RESULT, {"granted": granted}))

    def print_status(self) -> None:
        snap = self.controller.snapshot
        stats = self.controller.stats()
        print(
            f"state={snap.state.value} connected={self.transport.connected} "
            f"muted={snap.muted} speaker={snap.speaker_on} "
            f"messages={stats['message_count']} duration={stats['duration']} "
            f"api_calls={stats['api_calls']}",
            flush=True,
        )

    async def handle_line(self, line: str) -> bool:
        """Process one input line.  Returns False when the user asked to quit."""
        text = line.strip()
        if not text:
            return True
        if not text.startswith("/"):
            if self.controller.state != CallState.ACTIVE:
                print("(no active call, type /call to start)", flush=True)
                return True
            self.recognizer.submit(text)
            return True

        command = text[1:].lower()
        if command == "quit":
            return False
        if command == "call":
            state = await self.controller.toggle_call()
            if state == CallState.AWAITING_PERMISSION:
                print("[Microphone Access Required] type /allow to grant access or /dismiss", flush=True)
            elif state == CallState.ACTIVE:
                print("call started, speak (type) away", flush=True)
            elif state == CallState.IDLE:
                print("call ended", flush=True)
        elif command == "mute":
            await self.controller.dispatch(Action(ActionType.MUTE_TOGGLED))
        elif command == "speaker":
            await self.controller.dispatch(Action(ActionType.SPEAKER_TOGGLED))
        elif command == "clear":
            await self.controller.dispatch(Action(ActionType.CONVERSATION_CLEARED))
        elif command == "allow":
            await self.request_permission()
        elif command == "retry":
            await self.refresh_status()
        elif command == "dismiss":
            await self.controller.dispatch(Action(ActionType.DISMISSED))
        elif command == "status":
            self.print_status()
        else:
            print(f"unknown command: {text}", flush=True)
        return True

    async def run(self) -> None:
        self.transport.start()
        consumer = asyncio.create_task(self.controller.run(), name="call_controller")
        loop = asyncio.get_running_loop()
        try:
            await self.refresh_status()
            print("call agent ready: /call to start, /quit to exit", flush=True)
            while True:
                line = await loop.run_in_executor(None, sys.stdin.readline)
                if not line:
                    break
                if not await self.handle_line(line):
                    break
        finally:
            if self.controller.state == CallState.ACTIVE:
                await self.controller.stop_call()
            consumer.cancel()
            try:
                await consumer
            except asyncio.CancelledError:
                pass
            await self.controller.close()
            await self.transport.close()
            log.info("event=agent_shutdown")


def _parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Terminal client for the call agent relay")
    parser.add_argument("--url", help="Relay websocket URL (overrides config)")
    parser.add_argument("--config", default=str(config_path()), help="JSON config file")
    parser.add_argument("--rate", type=float, help="Speech rate")
    parser.add_argument("--volume", type=float, help="Speech volume")
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> None:
    args = _parse_args(argv)
    config = AgentConfig.load(args.config)
    patch: dict = {}
    if args.url:
        patch.setdefault("transport", {})["url"] = args.url
    if args.rate is not None:
        patch.setdefault("speech", {})["rate"] = args.rate
    if args.volume is not None:
        patch.setdefault("speech", {})["volume"] = args.volume
    if patch:
        config = config.merge_patch(patch)

    try:
        asyncio.run(CallAgent(config).run())
    except KeyboardInterrupt:
        log.info("event=shutdown reason=keyboard_interrupt")


if __name__ == "__main__":
    main()
