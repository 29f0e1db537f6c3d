"""
Call controller — the session state machine.

Contract:
    next_snapshot, commands = reduce_call(snapshot, action)

Rules:
    1. The reducer is pure; commands are side-effect intents only.
    2. At most one generation request is in flight per session
       (``CallSession.awaiting_response`` is the single-flight gate).
    3. Every failure path clears the gate.
    4. Replies for a session that is no longer active are discarded.

``CallController`` owns the current snapshot, executes commands against the
conversation store, transport and speech capabilities, and consumes one
``asyncio.Queue`` of actions so callbacks from the recognizer, synthesizer and
transport are handled in arrival order by a single consumer.  Front-end
commands go through the same queue via ``dispatch``, which waits for the
consumer to handle them.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, List, Optional, Tuple

from protocol import AIResponse, Connected, ErrorEnvelope, HistoryEntry, SpeechToAI

from .conversation import ConversationStore, Turn
from .debouncer import TranscriptDebouncer
from .session_clock import SessionClock
from .speech import SpeechRecognizer, SpeechSynthesizer
from .transport import TransportState

log = logging.getLogger("call_agent.controller")


class CallState(Enum):
    IDLE = "IDLE"
    ACTIVE = "ACTIVE"
    AWAITING_PERMISSION = "AWAITING_PERMISSION"
    AWAITING_CONNECTION = "AWAITING_CONNECTION"


@dataclass(frozen=True)
class ConnectionStatus:
    backend_reachable: bool = False
    microphone_granted: bool = False
    speaker_available: bool = True


@dataclass(frozen=True)
class CallSession:
    session_id: Optional[str] = None
    active: bool = False
    started_at: Optional[datetime] = None
    last_committed_utterance: str = ""
    awaiting_response: bool = False


@dataclass(frozen=True)
class CallSnapshot:
    state: CallState = CallState.IDLE
    session: CallSession = field(default_factory=CallSession)
    status: ConnectionStatus = field(default_factory=ConnectionStatus)
    muted: bool = False
    speaker_on: bool = True
    response_count: int = 0

    def evolve(self, **changes: Any) -> "CallSnapshot":
        return replace(self, **changes)

    def with_session(self, **changes: Any) -> "CallSnapshot":
        return replace(self, session=replace(self.session, **changes))


@dataclass(frozen=True)
class Notice:
    """A non-fatal condition surfaced to the user."""
    title: str
    message: str
    retryable: bool = False


class ActionType(str, Enum):
    START_REQUESTED = "START_REQUESTED"
    STOP_REQUESTED = "STOP_REQUESTED"
    DISMISSED = "DISMISSED"
    STATUS_UPDATED = "STATUS_UPDATED"
    PERMISSION_RESULT = "PERMISSION_RESULT"
    TRANSCRIPT_UPDATED = "TRANSCRIPT_UPDATED"
    RESPONSE_RECEIVED = "RESPONSE_RECEIVED"
    ERROR_RECEIVED = "ERROR_RECEIVED"
    SEND_FAILED = "SEND_FAILED"
    TRANSPORT_CHANGED = "TRANSPORT_CHANGED"
    RECOGNIZER_ERROR = "RECOGNIZER_ERROR"
    MUTE_TOGGLED = "MUTE_TOGGLED"
    SPEAKER_TOGGLED = "SPEAKER_TOGGLED"
    CONVERSATION_CLEARED = "CONVERSATION_CLEARED"


@dataclass(frozen=True)
class Action:
    type: ActionType
    payload: dict = field(default_factory=dict)


@dataclass(frozen=True)
class Command:
    """Side-effect intent emitted by the reducer and executed by CallController."""
    name: str
    args: dict = field(default_factory=dict)


# ── Transition Table ─────────────────────────────────────────────────────
#
# State              x Action              -> Next State           + Commands
# ------------------------------------------------------------------------------
# not ACTIVE           START (no mic)       -> AWAITING_PERMISSION  + (none)
# not ACTIVE           START (no backend)   -> AWAITING_CONNECTION  + Notify(retryable)
# not ACTIVE           START (ready)        -> ACTIVE               + ResetRecognizer, StartRecognizer, StartClock
# ACTIVE               STOP                 -> IDLE                 + StopRecognizer, CancelSpeech, StopClock
# AWAITING_*           STOP | DISMISSED     -> IDLE
# AWAITING_*           STATUS_UPDATED (ok)  -> IDLE
# AWAITING_PERMISSION  PERMISSION_RESULT    -> IDLE                 + Notify
# ACTIVE               TRANSCRIPT (commit)  -> ACTIVE, gate set     + CommitUtterance, ResetRecognizer(delay)
# ACTIVE               RESPONSE (this call) -> ACTIVE, gate clear   + DeliverResponse
# ANY                  ERROR                -> gate clear           + Notify
# ACTIVE               SEND_FAIL (this call) -> gate clear         + Notify
# ANY                  TRANSPORT lost       -> gate clear           + Notify (when a reply was pending)
# ------------------------------------------------------------------------------


def _start(s: CallSnapshot, payload: dict) -> Tuple[CallSnapshot, List[Command]]:
    if not s.status.microphone_granted:
        return s.evolve(state=CallState.AWAITING_PERMISSION), []

    if not s.status.backend_reachable:
        return (
            s.evolve(state=CallState.AWAITING_CONNECTION),
            [Command("Notify", {"notice": Notice(
                "Connection Required",
                "Please ensure the generation backend connection is working before starting a call.",
                retryable=True,
            )})],
        )

    session = CallSession(
        session_id=payload["session_id"],
        active=True,
        started_at=payload["at"],
        last_committed_utterance="",
        awaiting_response=False,
    )
    return (
        s.evolve(state=CallState.ACTIVE, session=session),
        [Command("ResetRecognizer"), Command("StartRecognizer"), Command("StartClock")],
    )


def _clear_gate(s: CallSnapshot, notice: Optional[Notice]) -> Tuple[CallSnapshot, List[Command]]:
    cmds = [Command("Notify", {"notice": notice})] if notice is not None else []
    return s.with_session(awaiting_response=False), cmds


def reduce_call(
    snapshot: CallSnapshot,
    action: Action,
    debouncer: Optional[TranscriptDebouncer] = None,
) -> Tuple[CallSnapshot, List[Command]]:
    """Pure reducer: (snapshot, action) -> (next_snapshot, commands)."""
    s = snapshot
    p = action.payload
    at = action.type

    # ── Call lifecycle ───────────────────────────────────────────────
    if at == ActionType.START_REQUESTED:
        if s.state == CallState.ACTIVE:
            return s, []
        return _start(s, p)

    if at == ActionType.STOP_REQUESTED:
        if s.state == CallState.ACTIVE:
            return (
                s.evolve(state=CallState.IDLE, session=CallSession()),
                [Command("StopRecognizer"), Command("CancelSpeech"), Command("StopClock")],
            )
        return s.evolve(state=CallState.IDLE), []

    if at == ActionType.DISMISSED:
        if s.state in (CallState.AWAITING_PERMISSION, CallState.AWAITING_CONNECTION):
            return s.evolve(state=CallState.IDLE), []
        return s, []

    if at == ActionType.STATUS_UPDATED:
        status: ConnectionStatus = p["status"]
        nxt = s.evolve(status=status)
        if s.state == CallState.AWAITING_PERMISSION and status.microphone_granted:
            nxt = nxt.evolve(state=CallState.IDLE)
        elif s.state == CallState.AWAITING_CONNECTION and status.backend_reachable:
            nxt = nxt.evolve(state=CallState.IDLE)
        return nxt, []

    if at == ActionType.PERMISSION_RESULT:
        granted = bool(p["granted"])
        nxt = s.evolve(status=replace(s.status, microphone_granted=granted))
        if s.state == CallState.AWAITING_PERMISSION:
            nxt = nxt.evolve(state=CallState.IDLE)
        if granted:
            return nxt, [Command("Notify", {"notice": Notice(
                "Permission Granted", "Microphone access has been granted.",
            )})]
        return nxt, [Command("Notify", {"notice": Notice(
            "Permission Denied",
            "Microphone access is required for voice conversations. "
            "Please allow microphone access and try again.",
        )})]

    # ── Turn taking ──────────────────────────────────────────────────
    if at == ActionType.TRANSCRIPT_UPDATED:
        debouncer = debouncer or TranscriptDebouncer()
        utterance = debouncer.evaluate(
            p.get("transcript", ""),
            active=s.state == CallState.ACTIVE and s.session.active,
            awaiting_response=s.session.awaiting_response,
            last_committed=s.session.last_committed_utterance,
        )
        if utterance is None:
            return s, []
        return (
            s.with_session(last_committed_utterance=utterance, awaiting_response=True),
            [
                Command("CommitUtterance", {"text": utterance, "session_id": s.session.session_id}),
                Command("ResetRecognizer", {"delay": debouncer.reset_delay_sec}),
            ],
        )

    if at == ActionType.RESPONSE_RECEIVED:
        reply: AIResponse = p["envelope"]
        if s.state != CallState.ACTIVE:
            return s, [Command("Discard", {"reason": "call_inactive", "message_id": reply.message_id})]
        if reply.session_id is not None and reply.session_id != s.session.session_id:
            return s, [Command("Discard", {"reason": "stale_session", "message_id": reply.message_id})]
        nxt = s.with_session(awaiting_response=False).evolve(response_count=s.response_count + 1)
        return nxt, [Command("DeliverResponse", {
            "envelope": reply,
            "speak": s.speaker_on and not s.muted,
        })]

    if at == ActionType.ERROR_RECEIVED:
        err: ErrorEnvelope = p["envelope"]
        if err.session_id is not None and err.session_id != s.session.session_id:
            return s, [Command("Discard", {"reason": "stale_session", "message_id": None})]
        return _clear_gate(s, Notice("Error", err.message))

    if at == ActionType.SEND_FAILED:
        if s.state != CallState.ACTIVE or p.get("session_id") != s.session.session_id:
            return s, [Command("Discard", {"reason": "send_failed_stale_session", "message_id": None})]
        return _clear_gate(s, Notice(
            "Connection Lost",
            "Your message could not be sent. Please wait for the connection to recover and try again.",
            retryable=True,
        ))

    if at == ActionType.TRANSPORT_CHANGED:
        state: TransportState = p["state"]
        if state.connected or not s.session.awaiting_response:
            return s, []
        return _clear_gate(s, Notice(
            "Connection Lost",
            "The connection dropped before a reply arrived. Please speak again once it reconnects.",
            retryable=True,
        ))

    if at == ActionType.RECOGNIZER_ERROR:
        return s, [Command("Notify", {"notice": Notice("Speech Recognition Error", p.get("error", ""))})]

    # ── Output and log controls ──────────────────────────────────────
    if at == ActionType.MUTE_TOGGLED:
        muted = not s.muted
        return s.evolve(muted=muted), [Command("CancelSpeech")] if muted else []

    if at == ActionType.SPEAKER_TOGGLED:
        speaker_on = not s.speaker_on
        return s.evolve(speaker_on=speaker_on), [] if speaker_on else [Command("CancelSpeech")]

    if at == ActionType.CONVERSATION_CLEARED:
        return (
            s.evolve(response_count=0).with_session(last_committed_utterance=""),
            [Command("ClearConversation"), Command("ResetRecognizer")],
        )

    raise ValueError(f"Unknown action type: {at}")


# ---------------------------------------------------------------------------
# Command executor
# ---------------------------------------------------------------------------

class CallController:
    """Holds the snapshot and performs the reducer's side-effect intents."""

    def __init__(
        self,
        store: ConversationStore,
        transport: Any,
        recognizer: SpeechRecognizer,
        synthesizer: SpeechSynthesizer,
        debouncer: Optional[TranscriptDebouncer] = None,
        clock: Optional[SessionClock] = None,
        on_notice: Optional[Callable[[Notice], None]] = None,
        speaker_on: bool = True,
    ) -> None:
        self.store = store
        self.transport = transport
        self.recognizer = recognizer
        self.synthesizer = synthesizer
        self.debouncer = debouncer or TranscriptDebouncer()
        self.clock = clock or SessionClock()
        self.on_notice = on_notice
        self.snapshot = CallSnapshot(speaker_on=speaker_on)
        self.queue: asyncio.Queue[tuple[Action, Optional[asyncio.Future]]] = asyncio.Queue()
        self._reset_timers: set[asyncio.TimerHandle] = set()

    # -- properties ------------------------------------------------------------

    @property
    def state(self) -> CallState:
        return self.snapshot.state

    @property
    def session(self) -> CallSession:
        return self.snapshot.session

    def stats(self) -> dict:
        return {
            "message_count": len(self.store),
            "duration": self.clock.render(),
            "api_calls": self.snapshot.response_count,
        }

    # -- action entry points ---------------------------------------------------

    def post(self, action: Action) -> None:
        """Enqueue from a callback; consumed in order by run()."""
        self.queue.put_nowait((action, None))

    async def dispatch(self, action: Action) -> CallState:
        """Enqueue *action* and wait until run() has handled it.

        Requires the run() consumer; never call from inside a handler.
        """
        done: asyncio.Future = asyncio.get_running_loop().create_future()
        self.queue.put_nowait((action, done))
        return await done

    def on_envelope(self, envelope: Any) -> None:
        """Transport ``on_message`` callback."""
        if isinstance(envelope, AIResponse):
            self.post(Action(ActionType.RESPONSE_RECEIVED, {"envelope": envelope}))
        elif isinstance(envelope, ErrorEnvelope):
            self.post(Action(ActionType.ERROR_RECEIVED, {"envelope": envelope}))
        elif isinstance(envelope, Connected):
            log.info("event=relay_connected message=%s", envelope.message)
        else:
            log.debug("event=envelope_ignored type=%s", envelope.type)

    def on_transport_state(self, state: TransportState) -> None:
        self.post(Action(ActionType.TRANSPORT_CHANGED, {"state": state}))

    def on_transcript(self, transcript: str) -> None:
        self.post(Action(ActionType.TRANSCRIPT_UPDATED, {"transcript": transcript}))

    def on_recognizer_error(self, error: str) -> None:
        self.post(Action(ActionType.RECOGNIZER_ERROR, {"error": error}))

    @staticmethod
    def start_action() -> Action:
        return Action(ActionType.START_REQUESTED, {
            "session_id": uuid.uuid4().hex,
            "at": datetime.now(timezone.utc),
        })

    async def start_call(self) -> CallState:
        return await self.dispatch(self.start_action())

    async def stop_call(self) -> CallState:
        return await self.dispatch(Action(ActionType.STOP_REQUESTED))

    async def toggle_call(self) -> CallState:
        if self.state == CallState.ACTIVE:
            return await self.stop_call()
        return await self.start_call()

    async def run(self) -> None:
        """Single consumer of the action queue.  Runs until cancelled."""
        while True:
            action, done = await self.queue.get()
            try:
                await self.handle(action)
            except Exception as exc:
                log.exception("event=action_failed type=%s", action.type.value)
                if done is not None and not done.done():
                    done.set_exception(exc)
            else:
                if done is not None and not done.done():
                    done.set_result(self.state)
            finally:
                self.queue.task_done()

    async def handle(self, action: Action) -> None:
        """Reduce one action and run its commands (one step of run())."""
        prev = self.snapshot
        self.snapshot, commands = reduce_call(prev, action, self.debouncer)
        if self.snapshot.state != prev.state:
            log.info(
                "event=state_change from=%s to=%s action=%s session=%s",
                prev.state.value, self.snapshot.state.value, action.type.value,
                self.snapshot.session.session_id or prev.session.session_id,
            )
        for command in commands:
            await self._execute(command)
        if (
            prev.session.awaiting_response
            and not self.snapshot.session.awaiting_response
            and self.snapshot.state == CallState.ACTIVE
            and self.recognizer.transcript
        ):
            # Speech that arrived while the gate was closed gets one more look.
            await self.handle(Action(ActionType.TRANSCRIPT_UPDATED, {"transcript": self.recognizer.transcript}))

    async def close(self) -> None:
        self._cancel_reset_timers()
        self.clock.stop()

    # -- command execution -----------------------------------------------------

    async def _execute(self, command: Command) -> None:
        name = command.name
        args = command.args

        if name == "StartRecognizer":
            self.recognizer.start()
        elif name == "StopRecognizer":
            self._cancel_reset_timers()
            self.recognizer.stop()
        elif name == "ResetRecognizer":
            self._reset_recognizer(args.get("delay", 0.0))
        elif name == "CancelSpeech":
            self.synthesizer.cancel()
        elif name == "StartClock":
            self.clock.start()
        elif name == "StopClock":
            self.clock.stop()
        elif name == "CommitUtterance":
            await self._commit_utterance(args["text"], args["session_id"])
        elif name == "DeliverResponse":
            self._deliver_response(args["envelope"], args["speak"])
        elif name == "ClearConversation":
            self.store.clear()
            log.info("event=conversation_cleared")
        elif name == "Notify":
            self._notify(args["notice"])
        elif name == "Discard":
            log.info("event=response_discarded reason=%s message_id=%s", args["reason"], args["message_id"])
        else:
            raise ValueError(f"Unknown command: {name}")

    async def _commit_utterance(self, text: str, session_id: Optional[str]) -> None:
        # History is taken before the new turn is appended; the utterance travels in ``text``.
        history = [HistoryEntry(**entry) for entry in self.store.history()]
        turn = Turn.user(text)
        self.store.append(turn)
        log.info("event=utterance_committed turn_id=%s text_len=%d session=%s", turn.id, len(text), session_id)
        sent = await self.transport.send(SpeechToAI(
            text=text,
            conversation_history=history,
            session_id=session_id,
        ))
        if not sent:
            # Queued behind anything already posted, e.g. a stop issued during the send.
            self.post(Action(ActionType.SEND_FAILED, {"session_id": session_id}))

    def _deliver_response(self, reply: AIResponse, speak: bool) -> None:
        turn = Turn.assistant(reply.text, turn_id=reply.message_id, timestamp=_parse_timestamp(reply.timestamp))
        inserted = self.store.append(turn)
        log.info("event=response_received message_id=%s inserted=%s", turn.id, inserted)
        if inserted and speak:
            self.synthesizer.speak(reply.text)

    def _reset_recognizer(self, delay: float) -> None:
        if delay <= 0:
            self.recognizer.reset()
            return
        loop = asyncio.get_running_loop()

        def _fire() -> None:
            self._reset_timers.discard(handle)
            self.recognizer.reset()

        handle = loop.call_later(delay, _fire)
        self._reset_timers.add(handle)

    def _cancel_reset_timers(self) -> None:
        for handle in self._reset_timers:
            handle.cancel()
        self._reset_timers.clear()

    def _notify(self, notice: Notice) -> None:
        log.info("event=notice title=%s message=%s retryable=%s", notice.title, notice.message, notice.retryable)
        if self.on_notice is not None:
            self.on_notice(notice)


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        log.debug("event=timestamp_unparsed value=%s", value)
        return None
