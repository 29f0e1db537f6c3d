"""Ordered, append-only conversation log deduplicated by turn id."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Iterator, Optional

log = logging.getLogger("call_agent.conversation")


class TurnRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class TurnKind(str, Enum):
    SPEECH = "speech"
    TEXT = "text"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Turn:
    """One message in the conversation.  Immutable once created."""
    role: TurnRole
    content: str
    kind: TurnKind
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=_now)

    @classmethod
    def user(cls, content: str) -> "Turn":
        return cls(role=TurnRole.USER, content=content, kind=TurnKind.SPEECH)

    @classmethod
    def assistant(
        cls,
        content: str,
        turn_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> "Turn":
        return cls(
            role=TurnRole.ASSISTANT,
            content=content,
            kind=TurnKind.TEXT,
            id=turn_id or str(uuid.uuid4()),
            timestamp=timestamp or _now(),
        )

    def as_history(self) -> dict:
        return {"role": self.role.value, "content": self.content}


class ConversationStore:
    """Turns in insertion order; at most one turn per id.

    The id set sits beside the list so the duplicate check is O(1) while
    iteration keeps insertion order.
    """

    def __init__(self) -> None:
        self._turns: list[Turn] = []
        self._ids: set[str] = set()

    def append(self, turn: Turn) -> bool:
        """Insert *turn* unless its id is already present.  Returns True if inserted."""
        if turn.id in self._ids:
            log.info("event=duplicate_turn_suppressed id=%s role=%s", turn.id, turn.role.value)
            return False
        self._turns.append(turn)
        self._ids.add(turn.id)
        return True

    def clear(self) -> None:
        self._turns.clear()
        self._ids.clear()

    def __contains__(self, turn_id: object) -> bool:
        return turn_id in self._ids

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self) -> Iterator[Turn]:
        return iter(list(self._turns))

    @property
    def turns(self) -> tuple[Turn, ...]:
        return tuple(self._turns)

    def history(self) -> list[dict]:
        """``[{role, content}, ...]`` in order, as sent to the relay."""
        return [turn.as_history() for turn in self._turns]
