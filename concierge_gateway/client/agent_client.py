from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from concierge_gateway import config

from .accumulator import ResponseAccumulator
from .errors import SessionCreationError, TransportError, UserCancelled
from .models import DisplayMessage, Session, StreamEvent, StreamHandlers, StreamResult, random_id
from .payloads import PayloadKind, classify_payload, extract_messages
from .signals import AbortSignal
from .sse import Frame, FrameDecoder, decode_data

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"
END_EVENT = "end"
STREAM_CHUNK_TYPES = ["Text"]


# -----------------------------
# Utils
# -----------------------------
def _safe_json(text: str) -> Any:
    if not text:
        return {}
    try:
        return json.loads(text)
    except ValueError:
        return {"raw": text}


def resolve_session_id(body: Any) -> Optional[str]:
    """Session id from ``sessionId``, ``id`` or ``session.id``, in that order."""
    if not isinstance(body, dict):
        return None
    session = body.get("session")
    candidates = [
        body.get("sessionId"),
        body.get("id"),
        session.get("id") if isinstance(session, dict) else None,
    ]
    for value in candidates:
        if isinstance(value, bool) or value is None:
            continue
        if isinstance(value, (str, int)) and str(value).strip():
            return str(value).strip()
    return None


def build_session_payload(endpoint: str, overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Default session-creation payload; each override replaces one default only."""
    payload: Dict[str, Any] = {
        "externalSessionKey": random_id(),
        "instanceConfig": {"endpoint": endpoint},
        "streamingCapabilities": {"chunkTypes": list(STREAM_CHUNK_TYPES)},
        "bypassUser": False,
    }
    for key, value in (overrides or {}).items():
        if value is not None:
            payload[key] = value
    return payload


def _turn_body(
    session: Session,
    text: str,
    sequence_id: int,
    metadata: Optional[Dict[str, Any]],
) -> Dict[str, Any]:
    message: Dict[str, Any] = {"sequenceId": sequence_id, "type": "Text", "text": text}
    if metadata is not None:
        message["metadata"] = metadata
    body: Dict[str, Any] = {"payload": {"message": message}}
    if session.assistant_id:
        body["assistantId"] = session.assistant_id
    return body


class AgentClient:
    """Talks to the relay: session creation, synchronous and streamed turns."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        assistant_id: Optional[str] = None,
        instance_endpoint: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        idle_timeout: Optional[float] = None,
    ) -> None:
        self._base_url = (base_url or config.relay_base_url()).rstrip("/")
        self._assistant_id = assistant_id or config.default_assistant_id() or None
        self._instance_endpoint = instance_endpoint or config.instance_endpoint()
        self._owns_client = http_client is None
        if http_client is None:
            read_timeout = idle_timeout if idle_timeout is not None else config.client_idle_timeout()
            http_client = httpx.AsyncClient(timeout=httpx.Timeout(30.0, read=read_timeout))
        self._client = http_client

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "AgentClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    def _session_url(self, session_id: Optional[str] = None, suffix: str = "") -> str:
        if session_id is None:
            return f"{self._base_url}/session"
        return f"{self._base_url}/session/{quote(session_id, safe='')}{suffix}"

    # -----------------------------
    # Session Manager
    # -----------------------------
    async def create_session(
        self,
        assistant_id: Optional[str] = None,
        overrides: Optional[Dict[str, Any]] = None,
    ) -> Session:
        assistant_id = assistant_id or self._assistant_id
        payload = build_session_payload(self._instance_endpoint, overrides)
        body: Dict[str, Any] = {"payload": payload}
        if assistant_id:
            body["assistantId"] = assistant_id

        try:
            r = await self._client.post(self._session_url(), json=body)
        except httpx.HTTPError as e:
            raise SessionCreationError(f"Agent session request failed: {e}") from e

        data = _safe_json(r.text)
        if r.is_error:
            raise SessionCreationError(
                f"Agent session failed: {r.status_code} {r.reason_phrase}".strip(),
                status=r.status_code,
                body=data,
            )

        session_id = resolve_session_id(data)
        if not session_id:
            raise SessionCreationError(
                "Agent session id missing in response",
                status=r.status_code,
                body=data,
            )

        instance = payload.get("instanceConfig")
        endpoint = instance.get("endpoint") if isinstance(instance, dict) else None
        greetings = tuple(m for m in extract_messages(data) if m.text.strip())
        logger.info("Agent session %s created (%d initial messages)", session_id, len(greetings))
        return Session(
            id=session_id,
            assistant_id=assistant_id,
            endpoint=endpoint or self._instance_endpoint,
            initial_messages=greetings,
        )

    async def end_session(self, session: Session) -> None:
        body: Dict[str, Any] = {}
        if session.assistant_id:
            body["assistantId"] = session.assistant_id
        try:
            r = await self._client.request("DELETE", self._session_url(session.id), json=body)
        except httpx.HTTPError as e:
            raise TransportError(f"Agent session teardown failed: {e}") from e
        if r.is_error:
            raise TransportError(
                f"Agent session teardown failed: {r.status_code} {r.reason_phrase}".strip(),
                status=r.status_code,
                body=_safe_json(r.text),
            )

    # -----------------------------
    # Synchronous Dispatcher
    # -----------------------------
    async def send_message(
        self,
        session: Session,
        text: str,
        sequence_id: int,
        *,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> List[DisplayMessage]:
        body = _turn_body(session, text, sequence_id, metadata)
        try:
            r = await self._client.post(self._session_url(session.id, "/messages"), json=body)
        except httpx.HTTPError as e:
            raise TransportError(f"Agent message request failed: {e}") from e

        data = _safe_json(r.text)
        if r.is_error:
            raise TransportError(
                f"Agent message failed: {r.status_code} {r.reason_phrase}".strip(),
                status=r.status_code,
                body=data,
            )
        return [m for m in extract_messages(data) if m.role != "user" and m.text.strip()]

    # -----------------------------
    # Streaming Client
    # -----------------------------
    async def stream_message(
        self,
        session: Session,
        text: str,
        sequence_id: int,
        *,
        signal: Optional[AbortSignal] = None,
        handlers: Optional[StreamHandlers] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> StreamResult:
        """Stream one turn, reporting deltas through ``handlers``.

        Resolves once the sentinel, a completion tag or the end of the byte
        stream is reached. Raises ``UserCancelled`` when ``signal`` fires
        (``on_complete`` is then never called) and ``TransportError`` for
        HTTP or network failures.
        """
        signal = signal or AbortSignal()
        handlers = handlers or StreamHandlers()
        signal.raise_if_aborted()

        body = _turn_body(session, text, sequence_id, metadata)
        url = self._session_url(session.id, "/messages/stream")
        turn = asyncio.ensure_future(self._stream_turn(url, body, signal, handlers))
        aborted = asyncio.ensure_future(signal.wait())
        try:
            await asyncio.wait({turn, aborted}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            turn.cancel()
            raise
        finally:
            aborted.cancel()

        if not turn.done():
            turn.cancel()
            await asyncio.wait({turn})
            if not turn.cancelled() and turn.exception() is not None:
                logger.debug("Stream task ended with %r after abort", turn.exception())
            raise UserCancelled(signal.reason or "Aborted")
        return turn.result()

    async def _stream_turn(
        self,
        url: str,
        body: Dict[str, Any],
        signal: AbortSignal,
        handlers: StreamHandlers,
    ) -> StreamResult:
        accumulator = ResponseAccumulator()
        decoder = FrameDecoder()
        try:
            async with self._client.stream(
                "POST",
                url,
                json=body,
                headers={"Accept": "text/event-stream"},
            ) as r:
                if r.is_error:
                    raw = await r.aread()
                    raise TransportError(
                        f"Agent stream failed: {r.status_code} {r.reason_phrase}".strip(),
                        status=r.status_code,
                        body=_safe_json(raw.decode("utf-8", errors="replace")),
                    )
                async for chunk in r.aiter_bytes():
                    for frame in decoder.feed(chunk):
                        if self._handle_frame(frame, accumulator, signal, handlers):
                            return self._complete(accumulator, signal, handlers)
        except httpx.HTTPError as e:
            raise TransportError(f"Agent stream interrupted: {e}") from e

        # stream closed without a completion signal
        for frame in decoder.flush():
            if self._handle_frame(frame, accumulator, signal, handlers):
                break
        return self._complete(accumulator, signal, handlers)

    def _handle_frame(
        self,
        frame: Frame,
        accumulator: ResponseAccumulator,
        signal: AbortSignal,
        handlers: StreamHandlers,
    ) -> bool:
        """Apply one frame; returns True when the turn is complete."""
        payload = decode_data(frame.data)
        if isinstance(payload, str) and payload and payload.strip() != DONE_SENTINEL:
            logger.warning("Non-JSON frame kept as raw text (%d chars)", len(payload))

        signal.raise_if_aborted()
        if handlers.on_event:
            handlers.on_event(StreamEvent(event=frame.event, data=frame.data, payload=payload, id=frame.id))

        if isinstance(payload, str) and payload.strip() == DONE_SENTINEL:
            return True

        classified = classify_payload(payload)
        if classified.kind is PayloadKind.DELTA:
            delta = accumulator.append_delta(classified.text)
        elif classified.kind is PayloadKind.CANDIDATE:
            delta = accumulator.apply_candidate(classified.text)
        else:
            delta = ""

        if delta:
            signal.raise_if_aborted()
            if handlers.on_delta:
                handlers.on_delta(delta, accumulator.text, payload)

        if classified.terminal:
            return True
        return frame.event == END_EVENT

    def _complete(
        self,
        accumulator: ResponseAccumulator,
        signal: AbortSignal,
        handlers: StreamHandlers,
    ) -> StreamResult:
        signal.raise_if_aborted()
        result = StreamResult(full_text=accumulator.freeze())
        if handlers.on_complete:
            handlers.on_complete(result)
        return result
