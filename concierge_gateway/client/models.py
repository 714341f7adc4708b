from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional, Tuple


def random_id() -> str:
    return uuid.uuid4().hex


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


@dataclass(slots=True)
class DisplayMessage:
    id: str
    role: str
    text: str
    created_at: Optional[str] = None


@dataclass(frozen=True, slots=True)
class Session:
    id: str
    assistant_id: Optional[str]
    endpoint: str
    initial_messages: Tuple[DisplayMessage, ...] = ()


@dataclass(frozen=True, slots=True)
class StreamEvent:
    event: Optional[str]
    data: str
    payload: Any
    id: Optional[str] = None


@dataclass(frozen=True, slots=True)
class StreamResult:
    full_text: str


@dataclass(slots=True)
class StreamHandlers:
    on_delta: Optional[Callable[[str, str, Any], None]] = None
    on_event: Optional[Callable[[StreamEvent], None]] = None
    on_complete: Optional[Callable[[StreamResult], None]] = None


class SessionState(str, enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    FAILED = "failed"


class TurnState(str, enum.Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ABORTED = "aborted"
    TRANSPORT_ERROR = "transport_error"
    FALLBACK_SENDING = "fallback_sending"
    FALLBACK_ERROR = "fallback_error"


@dataclass(slots=True)
class Turn:
    sequence_id: int
    text: str
    assistant_message_id: str
    state: TurnState = TurnState.IDLE
    deltas: int = 0
    full_text: str = ""
    notice: Optional[str] = None
    history: List[TurnState] = field(default_factory=list)

    def transition(self, state: TurnState) -> None:
        self.history.append(state)
        self.state = state
