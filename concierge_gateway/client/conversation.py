"""Conversation coordinator: one session, one in-flight turn at a time.

Owns the session readiness state, the display message list and the abort
signal of the active turn. Each turn streams first; a transport failure
before any delta arrived falls back to one synchronous send.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from .agent_client import AgentClient
from .errors import SessionCreationError, TransportError, UserCancelled
from .models import (
    DisplayMessage,
    Session,
    SessionState,
    StreamEvent,
    StreamHandlers,
    StreamResult,
    Turn,
    TurnState,
    random_id,
    utc_now_iso,
)
from .signals import AbortSignal

logger = logging.getLogger(__name__)

SESSION_UNAVAILABLE_TEXT = "We couldn't reach the digital concierge. Please try again."
EMPTY_RESPONSE_TEXT = "The agent didn't send a message this time. Please try again."
FALLBACK_FAILURE_TEXT = "We couldn't retrieve a response. Please try again shortly."
GENERIC_FAILURE_TEXT = "We ran into an issue reaching the agent. Please try again shortly."
INTERRUPTED_NOTICE = "The agent connection was interrupted. The response may be incomplete."

StateListener = Callable[[SessionState], None]


class Conversation:
    def __init__(
        self,
        client: AgentClient,
        *,
        assistant_id: Optional[str] = None,
        session_overrides: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._client = client
        self._assistant_id = assistant_id
        self._session_overrides = session_overrides
        self._state = SessionState.UNINITIALIZED
        self._session: Optional[Session] = None
        self._init_task: Optional[asyncio.Task] = None
        self._listeners: List[StateListener] = []
        self._next_sequence_id = 1
        self._active_signal: Optional[AbortSignal] = None
        self.messages: List[DisplayMessage] = []
        self.error: Optional[str] = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def busy(self) -> bool:
        return self._active_signal is not None

    # -----------------------------
    # Session readiness
    # -----------------------------
    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register a state listener; returns a callable that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set_state(self, state: SessionState) -> None:
        if state is self._state:
            return
        self._state = state
        for listener in list(self._listeners):
            listener(state)

    def start(self) -> "asyncio.Task[Session]":
        """Begin session creation once; concurrent callers share the same task.

        A failed creation can be retried by calling ``start`` again.
        """
        if self._init_task is None or (self._state is SessionState.FAILED and self._init_task.done()):
            self._init_task = asyncio.ensure_future(self._initialise())
            self._init_task.add_done_callback(_consume_exception)
        return self._init_task

    async def wait_ready(self) -> Session:
        task = self._init_task if self._init_task is not None else self.start()
        return await asyncio.shield(task)

    async def _initialise(self) -> Session:
        self._set_state(SessionState.INITIALIZING)
        self.error = None
        try:
            session = await self._client.create_session(self._assistant_id, self._session_overrides)
        except SessionCreationError as exc:
            logger.error("Failed to create agent session: %s", exc)
            self.error = str(exc) or SESSION_UNAVAILABLE_TEXT
            self._set_state(SessionState.FAILED)
            raise

        self._session = session
        self._next_sequence_id = 1
        self.messages.extend(session.initial_messages)
        self._set_state(SessionState.READY)
        return session

    async def close(self) -> None:
        """Abort any in-flight turn and end the session best-effort."""
        if self._active_signal is not None:
            self._active_signal.abort("conversation closed")
            self._active_signal = None
        session, self._session = self._session, None
        self._init_task = None
        self._set_state(SessionState.UNINITIALIZED)
        if session is None:
            return
        try:
            await self._client.end_session(session)
        except TransportError as exc:
            logger.warning("Ending agent session %s failed: %s", session.id, exc)

    # -----------------------------
    # Turns
    # -----------------------------
    async def submit(self, text: str, *, metadata: Optional[Dict[str, Any]] = None) -> Turn:
        trimmed = (text or "").strip()
        if not trimmed:
            raise ValueError("message text is empty")
        session = self._session
        if session is None or self._state is not SessionState.READY:
            raise RuntimeError("Agent session is not ready")

        sequence_id = self._next_sequence_id
        self._next_sequence_id += 1

        now = utc_now_iso()
        placeholder = DisplayMessage(id=f"assistant-{random_id()}", role="assistant", text="", created_at=now)
        self.messages.append(DisplayMessage(id=f"local-{random_id()}", role="user", text=trimmed, created_at=now))
        self.messages.append(placeholder)
        self.error = None

        turn = Turn(sequence_id=sequence_id, text=trimmed, assistant_message_id=placeholder.id)
        turn.transition(TurnState.IDLE)
        turn.transition(TurnState.SENDING)

        signal = AbortSignal()
        if self._active_signal is not None:
            self._active_signal.abort("superseded by a newer turn")
        self._active_signal = signal

        def on_event(_event: StreamEvent) -> None:
            if turn.state is TurnState.SENDING:
                turn.transition(TurnState.STREAMING)

        def on_delta(_delta: str, full_text: str, _payload: Any) -> None:
            turn.deltas += 1
            turn.full_text = full_text
            placeholder.text = full_text

        def on_complete(result: StreamResult) -> None:
            turn.full_text = result.full_text

        try:
            result = await self._client.stream_message(
                session,
                trimmed,
                sequence_id,
                signal=signal,
                handlers=StreamHandlers(on_delta=on_delta, on_event=on_event, on_complete=on_complete),
                metadata=metadata,
            )
        except UserCancelled:
            turn.transition(TurnState.ABORTED)
            return turn
        except TransportError as exc:
            turn.transition(TurnState.TRANSPORT_ERROR)
            if turn.deltas == 0:
                logger.warning("Agent stream failed before any text for turn %s, sending synchronously: %s", sequence_id, exc)
                await self._fallback(session, turn, placeholder, signal, exc, metadata)
            else:
                logger.error("Agent stream interrupted for turn %s after %d deltas: %s", sequence_id, turn.deltas, exc)
                turn.notice = INTERRUPTED_NOTICE
                self.error = INTERRUPTED_NOTICE
            return turn
        finally:
            if self._active_signal is signal:
                self._active_signal = None

        turn.full_text = result.full_text
        if not result.full_text.strip():
            placeholder.text = EMPTY_RESPONSE_TEXT
        turn.transition(TurnState.COMPLETED)
        return turn

    async def _fallback(
        self,
        session: Session,
        turn: Turn,
        placeholder: DisplayMessage,
        signal: AbortSignal,
        stream_error: TransportError,
        metadata: Optional[Dict[str, Any]],
    ) -> None:
        turn.transition(TurnState.FALLBACK_SENDING)
        try:
            replies = await self._client.send_message(session, turn.text, turn.sequence_id, metadata=metadata)
        except TransportError as exc:
            if signal.aborted:
                turn.transition(TurnState.ABORTED)
                return
            logger.error("Agent fallback send failed for turn %s: %s", turn.sequence_id, exc)
            self._fail_turn(turn, placeholder, str(exc) or str(stream_error))
            return

        if signal.aborted:
            turn.transition(TurnState.ABORTED)
            return
        if not replies:
            logger.error("Agent fallback for turn %s returned no assistant message", turn.sequence_id)
            self._fail_turn(turn, placeholder, "No assistant response returned")
            return

        first, rest = replies[0], replies[1:]
        placeholder.text = first.text
        turn.full_text = first.text
        self.messages.extend(rest)
        turn.transition(TurnState.COMPLETED)

    def _fail_turn(self, turn: Turn, placeholder: DisplayMessage, reason: str) -> None:
        placeholder.text = FALLBACK_FAILURE_TEXT
        turn.notice = FALLBACK_FAILURE_TEXT
        self.error = reason or GENERIC_FAILURE_TEXT
        turn.transition(TurnState.FALLBACK_ERROR)


def _consume_exception(task: "asyncio.Task[Any]") -> None:
    if not task.cancelled():
        task.exception()
