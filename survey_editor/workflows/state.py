# survey_editor/workflows/state.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Literal, Optional
from uuid import uuid4

from survey_editor.app.errors import IllegalTransition


Role = Literal["user", "assistant"]


def _now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


# -------------------------
# Exchange state machine
# -------------------------

class ExchangePhase(str, Enum):
    IDLE = "idle"
    AWAITING_FIRST_TOKEN = "awaiting_first_token"
    STREAMING = "streaming"
    FINALIZING = "finalizing"


TRANSITIONS: Dict[ExchangePhase, FrozenSet[ExchangePhase]] = {
    ExchangePhase.IDLE: frozenset({ExchangePhase.AWAITING_FIRST_TOKEN}),
    # Straight to FINALIZING on an empty reply; back to IDLE on transport failure.
    ExchangePhase.AWAITING_FIRST_TOKEN: frozenset({
        ExchangePhase.STREAMING, ExchangePhase.FINALIZING, ExchangePhase.IDLE,
    }),
    ExchangePhase.STREAMING: frozenset({ExchangePhase.FINALIZING, ExchangePhase.IDLE}),
    ExchangePhase.FINALIZING: frozenset({ExchangePhase.IDLE}),
}


class ExchangeStateMachine:
    """Single-flight guard for chat exchanges."""

    def __init__(self) -> None:
        self._phase = ExchangePhase.IDLE
        self.changed_at = _now_iso()

    @property
    def phase(self) -> ExchangePhase:
        return self._phase

    @property
    def busy(self) -> bool:
        return self._phase is not ExchangePhase.IDLE

    def can_advance(self, to: ExchangePhase) -> bool:
        return to in TRANSITIONS[self._phase]

    def advance(self, to: ExchangePhase) -> None:
        if not self.can_advance(to):
            raise IllegalTransition(f"{self._phase.value} -> {to.value}")
        self._phase = to
        self.changed_at = _now_iso()


# -------------------------
# Chat messages
# -------------------------

@dataclass
class Attachment:
    name: str
    text: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.text is not None


@dataclass
class ChatMessage:
    role: Role
    text: str = ""
    attachments: List[Attachment] = field(default_factory=list)
    # Set when the text is a transport-failure fallback rather than a model reply.
    error: bool = False
    complete: bool = True
    id: str = field(default_factory=lambda: uuid4().hex)
    created_at: str = field(default_factory=_now_iso)

    def append(self, delta: str) -> None:
        if self.complete:
            raise IllegalTransition("Cannot append to a finished message")
        self.text += delta

    def finish(self, text: Optional[str] = None) -> None:
        if text is not None:
            self.text = text
        self.complete = True

    def request_content(self) -> str:
        # What the completion service sees; display text stays as typed.
        blocks = [self.text] if self.text else []
        for a in self.attachments:
            if a.ok:
                blocks.append(f"[Attached file: {a.name}]\n{a.text}")
        return "\n\n".join(blocks)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "text": self.text,
            "attachments": [
                {"name": a.name, "text": a.text, "error": a.error} for a in self.attachments
            ],
            "error": self.error,
            "complete": self.complete,
            "created_at": self.created_at,
        }
