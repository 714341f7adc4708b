from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncGenerator, Dict, Optional

import httpx
from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse

from concierge_gateway import config
from concierge_gateway.schemas.agent import (
    AgentRelayRequest,
    BadRequestResponse,
    UnexpectedErrorResponse,
    UpstreamErrorResponse,
)
from concierge_gateway.services.agent_upstream import (
    AgentUpstream,
    UpstreamRequest,
    UpstreamResponse,
    UpstreamUnavailable,
    agent_path,
    platform_path,
)

logger = logging.getLogger(__name__)

router = APIRouter()

STREAM_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}
SESSION_END_REASON = "UserRequest"
DISCONNECT_POLL_SECS = 0.5


def get_upstream(request: Request) -> AgentUpstream:
    return request.app.state.agent_upstream


# -----------------------------
# Utils
# -----------------------------
def _safe_json_loads(text: str) -> Any:
    if not text:
        return {}
    try:
        return json.loads(text)
    except ValueError:
        return {"raw": text}


def _resolve_assistant_id(body: Optional[AgentRelayRequest]) -> str:
    requested = (body.assistantId or "").strip() if body else ""
    return requested or config.default_assistant_id()


def _payload(body: Optional[AgentRelayRequest]) -> Dict[str, Any]:
    return dict(body.payload) if body and body.payload else {}


def _missing_assistant() -> JSONResponse:
    content = BadRequestResponse(
        error="Missing assistant id",
        details="Provide assistantId in request body or set AGENT_ASSISTANT_ID",
    )
    return JSONResponse(content.model_dump(), status_code=400)


def _unexpected(label: str, action: str, exc: Exception) -> JSONResponse:
    logger.exception("[%s] Unexpected error", label)
    content = UnexpectedErrorResponse(
        error=f"Unexpected server error {action}",
        message=str(exc) or exc.__class__.__name__,
    )
    return JSONResponse(content.model_dump(), status_code=500)


def _unavailable(label: str, error: str, exc: Exception) -> JSONResponse:
    logger.error("[%s] No upstream available: %s", label, exc)
    content = UpstreamErrorResponse(error=error, details={"message": str(exc)}, status=502)
    return JSONResponse(content.model_dump(), status_code=502)


async def _json_passthrough(upstream: UpstreamResponse, *, label: str, error: str) -> Response:
    """Read the upstream body to completion and mirror its status."""
    try:
        raw = await upstream.aread()
    finally:
        await upstream.aclose()

    text = raw.decode("utf-8", errors="replace")
    status = upstream.status_code
    if status >= 400:
        logger.error("[%s] Error %s family=%s body=%r", label, status, upstream.family, text[:500])
        content = UpstreamErrorResponse(error=error, details=_safe_json_loads(text), status=status)
        return JSONResponse(content.model_dump(), status_code=status)

    if status == 204 or not text:
        return Response(status_code=status)
    return JSONResponse(_safe_json_loads(text), status_code=status)


async def _wait_for_disconnect(request: Request) -> None:
    while not await request.is_disconnected():
        await asyncio.sleep(DISCONNECT_POLL_SECS)


async def _relay_stream(
    upstream: UpstreamResponse,
    *,
    label: str,
    request: Optional[Request] = None,
) -> AsyncGenerator[bytes, None]:
    """Forward upstream bytes as they arrive.

    Each chunk is yielded only after the previous write completed. Every read
    is raced against a disconnect watcher, so a client that goes away aborts
    the upstream request even while the upstream is idle. An upstream error
    ends the relayed response.
    """
    forwarded = 0
    chunks = upstream.aiter_bytes()
    watcher = asyncio.ensure_future(_wait_for_disconnect(request)) if request is not None else None
    read: Optional[asyncio.Future] = None
    try:
        while True:
            read = asyncio.ensure_future(chunks.__anext__())
            waiting = {read} if watcher is None else {read, watcher}
            await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)
            if not read.done():
                read.cancel()
                await asyncio.wait({read})
                logger.info("[%s] Client disconnected after %d bytes; aborting upstream", label, forwarded)
                break
            try:
                chunk = read.result()
            except StopAsyncIteration:
                break
            if not chunk:
                continue
            forwarded += len(chunk)
            yield chunk
    except httpx.HTTPError as e:
        logger.error("[%s] Upstream error after %d bytes: %s", label, forwarded, e)
    finally:
        if read is not None and not read.done():
            read.cancel()
        if watcher is not None:
            watcher.cancel()
        await upstream.aclose()
        logger.debug("[%s] Stream closed after %d bytes family=%s", label, forwarded, upstream.family)


# -----------------------------
# Routes
# -----------------------------
@router.post("/session")
async def create_session(
    body: Optional[AgentRelayRequest] = None,
    upstream: AgentUpstream = Depends(get_upstream),
):
    label = "agent/session"
    assistant_id = _resolve_assistant_id(body)
    if not assistant_id:
        return _missing_assistant()

    try:
        r = await upstream.fetch(
            UpstreamRequest(
                agent_path=agent_path("agents", assistant_id, "sessions"),
                platform_path=platform_path(assistant_id, "sessions"),
                json=_payload(body),
            )
        )
        return await _json_passthrough(r, label=label, error="Failed to create agent session")
    except UpstreamUnavailable as e:
        return _unavailable(label, "Failed to create agent session", e)
    except Exception as e:
        return _unexpected(label, "creating agent session", e)


@router.post("/session/{session_id}/messages")
async def send_message(
    session_id: str,
    body: Optional[AgentRelayRequest] = None,
    upstream: AgentUpstream = Depends(get_upstream),
):
    label = "agent/messages"
    assistant_id = _resolve_assistant_id(body)
    if not assistant_id:
        return _missing_assistant()

    try:
        r = await upstream.fetch(
            UpstreamRequest(
                agent_path=agent_path("sessions", session_id, "messages"),
                platform_path=platform_path(assistant_id, "sessions", session_id, "messages"),
                json=_payload(body),
            )
        )
        return await _json_passthrough(r, label=label, error="Failed to send agent message")
    except UpstreamUnavailable as e:
        return _unavailable(label, "Failed to send agent message", e)
    except Exception as e:
        return _unexpected(label, "sending agent message", e)


@router.post("/session/{session_id}/messages/stream")
async def stream_message(
    request: Request,
    session_id: str,
    body: Optional[AgentRelayRequest] = None,
    upstream: AgentUpstream = Depends(get_upstream),
):
    label = "agent/messages/stream"
    assistant_id = _resolve_assistant_id(body)
    if not assistant_id:
        return _missing_assistant()

    try:
        r = await upstream.fetch(
            UpstreamRequest(
                agent_path=agent_path("sessions", session_id, "messages", "stream"),
                platform_path=platform_path(assistant_id, "sessions", session_id, "messages:stream"),
                json=_payload(body),
                headers={"Accept": "text/event-stream"},
                streaming=True,
            )
        )
    except UpstreamUnavailable as e:
        return _unavailable(label, "Failed to stream agent message", e)
    except Exception as e:
        return _unexpected(label, "streaming agent message", e)

    if r.status_code >= 400:
        return await _json_passthrough(r, label=label, error="Failed to stream agent message")

    return StreamingResponse(
        _relay_stream(r, label=label, request=request),
        media_type="text/event-stream",
        headers=STREAM_HEADERS,
    )


@router.delete("/session/{session_id}")
async def end_session(
    session_id: str,
    body: Optional[AgentRelayRequest] = None,
    upstream: AgentUpstream = Depends(get_upstream),
):
    label = "agent/session/end"
    assistant_id = _resolve_assistant_id(body)
    if not assistant_id:
        return _missing_assistant()

    try:
        r = await upstream.fetch(
            UpstreamRequest(
                agent_path=agent_path("sessions", session_id),
                platform_path=platform_path(assistant_id, "sessions", session_id),
                method="DELETE",
                headers={"x-session-end-reason": SESSION_END_REASON},
            )
        )
        return await _json_passthrough(r, label=label, error="Failed to end agent session")
    except UpstreamUnavailable as e:
        return _unavailable(label, "Failed to end agent session", e)
    except Exception as e:
        return _unexpected(label, "ending agent session", e)
