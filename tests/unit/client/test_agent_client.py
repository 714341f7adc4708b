import asyncio
import json
import logging

import httpx
import pytest

from concierge_gateway.client.agent_client import build_session_payload, resolve_session_id
from concierge_gateway.client.errors import SessionCreationError, TransportError, UserCancelled
from concierge_gateway.client.models import StreamHandlers
from concierge_gateway.client.signals import AbortSignal
from tests.unit.client.streams import sse_frames, tagged, text_chunk

SSE_HEADERS = {"content-type": "text/event-stream"}


class Recorder:
    def __init__(self):
        self.deltas = []
        self.events = []
        self.completions = []

    def handlers(self) -> StreamHandlers:
        return StreamHandlers(
            on_delta=lambda delta, full, payload: self.deltas.append((delta, full)),
            on_event=self.events.append,
            on_complete=self.completions.append,
        )


# -----------------------------
# Session Manager
# -----------------------------
@pytest.mark.parametrize(
    "body",
    [{"sessionId": "abc"}, {"id": "abc"}, {"session": {"id": "abc"}}],
)
@pytest.mark.asyncio
async def test_create_session_normalises_identifier(make_client, body):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=body)

    client = make_client(handler)
    session = await client.create_session()

    assert session.id == "abc"
    assert session.assistant_id == "asst-1"
    assert session.endpoint == "https://instance.test"
    assert seen["url"] == "http://relay.test/api/agent/session"
    payload = seen["body"]["payload"]
    assert seen["body"]["assistantId"] == "asst-1"
    assert payload["instanceConfig"] == {"endpoint": "https://instance.test"}
    assert payload["streamingCapabilities"] == {"chunkTypes": ["Text"]}
    assert payload["bypassUser"] is False
    assert payload["externalSessionKey"]


@pytest.mark.asyncio
async def test_create_session_without_identifier_raises(make_client):
    client = make_client(lambda request: httpx.Response(200, json={"session": {}}))

    with pytest.raises(SessionCreationError) as exc_info:
        await client.create_session()
    assert exc_info.value.status == 200
    assert exc_info.value.body == {"session": {}}


@pytest.mark.asyncio
async def test_create_session_non_success_carries_status_and_body(make_client):
    client = make_client(lambda request: httpx.Response(502, json={"error": "bad gateway"}))

    with pytest.raises(SessionCreationError) as exc_info:
        await client.create_session()
    assert exc_info.value.status == 502
    assert exc_info.value.body == {"error": "bad gateway"}


@pytest.mark.asyncio
async def test_create_session_network_failure(make_client):
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(SessionCreationError):
        await make_client(handler).create_session()


@pytest.mark.asyncio
async def test_create_session_keeps_greeting_messages(make_client):
    body = {"sessionId": "abc", "messages": [{"type": "Inform", "message": "Welcome aboard!"}]}
    client = make_client(lambda request: httpx.Response(200, json=body))

    session = await client.create_session()
    assert [m.text for m in session.initial_messages] == ["Welcome aboard!"]


def test_build_session_payload_partial_override():
    payload = build_session_payload(
        "https://default.test",
        {"bypassUser": True, "externalSessionKey": None, "locale": "en_US"},
    )
    assert payload["bypassUser"] is True
    assert payload["externalSessionKey"]
    assert payload["instanceConfig"] == {"endpoint": "https://default.test"}
    assert payload["streamingCapabilities"] == {"chunkTypes": ["Text"]}
    assert payload["locale"] == "en_US"


def test_resolve_session_id_order():
    assert resolve_session_id({"sessionId": "a", "id": "b"}) == "a"
    assert resolve_session_id({"id": 42}) == "42"
    assert resolve_session_id({"sessionId": "", "session": {"id": "c"}}) == "c"
    assert resolve_session_id({"id": None}) is None
    assert resolve_session_id(["abc"]) is None


# -----------------------------
# Synchronous Dispatcher
# -----------------------------
@pytest.mark.asyncio
async def test_send_message_extracts_assistant_messages(make_client, session):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "messages": [
                    {"role": "user", "text": "echo"},
                    {"type": "Inform", "message": "Your upgrade cleared."},
                    {"type": "Inform", "message": "  "},
                ]
            },
        )

    messages = await make_client(handler).send_message(session, "Upgrade?", 3)

    assert [m.text for m in messages] == ["Your upgrade cleared."]
    assert seen["url"] == "http://relay.test/api/agent/session/sess-1/messages"
    assert seen["body"] == {
        "assistantId": "asst-1",
        "payload": {"message": {"sequenceId": 3, "type": "Text", "text": "Upgrade?"}},
    }


@pytest.mark.asyncio
async def test_send_message_failure_raises_transport_error(make_client, session):
    client = make_client(lambda request: httpx.Response(404, json={"error": "nope"}))

    with pytest.raises(TransportError) as exc_info:
        await client.send_message(session, "hi", 1)
    assert exc_info.value.status == 404
    assert exc_info.value.body == {"error": "nope"}


# -----------------------------
# Streaming Client
# -----------------------------
@pytest.mark.asyncio
async def test_stream_text_chunks_until_end_of_turn(make_client, session):
    seen = {}
    body = sse_frames(text_chunk("Hello"), text_chunk(" world"), tagged("EndOfTurn"))

    def handler(request: httpx.Request) -> httpx.Response:
        seen["accept"] = request.headers.get("accept")
        seen["url"] = str(request.url)
        return httpx.Response(200, headers=SSE_HEADERS, content=body)

    rec = Recorder()
    result = await make_client(handler).stream_message(session, "hi", 1, handlers=rec.handlers())

    assert result.full_text == "Hello world"
    assert rec.deltas == [("Hello", "Hello"), (" world", "Hello world")]
    assert [c.full_text for c in rec.completions] == ["Hello world"]
    assert len(rec.events) == 3
    assert seen["accept"] == "text/event-stream"
    assert seen["url"].endswith("/session/sess-1/messages/stream")


@pytest.mark.asyncio
async def test_stream_done_sentinel_stops_processing(make_client, session):
    body = sse_frames(tagged("Start"), text_chunk("Hi"), "[DONE]", text_chunk("ignored"))
    rec = Recorder()
    client = make_client(lambda request: httpx.Response(200, headers=SSE_HEADERS, content=body))

    result = await client.stream_message(session, "hi", 1, handlers=rec.handlers())

    assert result.full_text == "Hi"
    assert len(rec.completions) == 1
    assert [e.data for e in rec.events][-1] == "[DONE]"


@pytest.mark.asyncio
async def test_stream_repeated_full_text_is_not_duplicated(make_client, session):
    body = sse_frames(
        {"messages": [{"type": "Progress", "message": "Checking"}]},
        {"messages": [{"type": "Progress", "message": "Checking your trip"}]},
        {"messages": [{"type": "Progress", "message": "Checking your trip"}, {"type": "Inform", "message": "Done."}]},
    )
    rec = Recorder()
    client = make_client(lambda request: httpx.Response(200, headers=SSE_HEADERS, content=body))

    result = await client.stream_message(session, "hi", 1, handlers=rec.handlers())

    assert result.full_text == "Checking your trip\n\nDone."
    assert [d for d, _ in rec.deltas] == ["Checking", " your trip", "\n\nDone."]
    assert "".join(d for d, _ in rec.deltas) == result.full_text
    assert len(rec.completions) == 1


@pytest.mark.asyncio
async def test_stream_close_without_signal_is_implicit_completion(make_client, session):
    body = sse_frames(text_chunk("Partial")) + b'data: {"message": {"type": "TextChunk", "message": " tail"}}'
    rec = Recorder()
    client = make_client(lambda request: httpx.Response(200, headers=SSE_HEADERS, content=body))

    result = await client.stream_message(session, "hi", 1, handlers=rec.handlers())

    assert result.full_text == "Partial tail"
    assert [c.full_text for c in rec.completions] == ["Partial tail"]


@pytest.mark.asyncio
async def test_stream_malformed_frame_kept_as_raw_text(make_client, session):
    body = sse_frames("plain words", tagged("EndOfResponse"))
    rec = Recorder()
    client = make_client(lambda request: httpx.Response(200, headers=SSE_HEADERS, content=body))

    result = await client.stream_message(session, "hi", 1, handlers=rec.handlers())

    assert result.full_text == "plain words"
    assert rec.events[0].payload == "plain words"


@pytest.mark.asyncio
async def test_stream_end_event_completes(make_client, session):
    body = sse_frames(text_chunk("Bye")) + b"event: end\ndata: {}\n\n" + sse_frames(text_chunk("late"))
    rec = Recorder()
    client = make_client(lambda request: httpx.Response(200, headers=SSE_HEADERS, content=body))

    result = await client.stream_message(session, "hi", 1, handlers=rec.handlers())
    assert result.full_text == "Bye"


@pytest.mark.asyncio
async def test_stream_http_error_raises_transport_error(make_client, session):
    client = make_client(lambda request: httpx.Response(500, json={"error": "boom"}))
    rec = Recorder()

    with pytest.raises(TransportError) as exc_info:
        await client.stream_message(session, "hi", 1, handlers=rec.handlers())
    assert exc_info.value.status == 500
    assert exc_info.value.body == {"error": "boom"}
    assert rec.completions == []


@pytest.mark.asyncio
async def test_stream_interrupted_mid_body(make_client, session):
    async def body():
        yield sse_frames(text_chunk("Half"))
        raise httpx.ReadError("connection reset")

    rec = Recorder()
    client = make_client(lambda request: httpx.Response(200, headers=SSE_HEADERS, content=body()))

    with pytest.raises(TransportError):
        await client.stream_message(session, "hi", 1, handlers=rec.handlers())
    assert rec.deltas == [("Half", "Half")]
    assert rec.completions == []


@pytest.mark.asyncio
async def test_abort_after_deltas_rejects_without_completion(make_client, session):
    release = asyncio.Event()
    first_delta = asyncio.Event()

    async def body():
        yield sse_frames(text_chunk("Hello"))
        await release.wait()
        yield sse_frames(text_chunk(" never"), tagged("EndOfTurn"))

    rec = Recorder()
    handlers = rec.handlers()
    on_delta = handlers.on_delta

    def delta_then_flag(delta, full, payload):
        on_delta(delta, full, payload)
        first_delta.set()

    handlers.on_delta = delta_then_flag
    signal = AbortSignal()
    client = make_client(lambda request: httpx.Response(200, headers=SSE_HEADERS, content=body()))

    task = asyncio.create_task(client.stream_message(session, "hi", 1, signal=signal, handlers=handlers))
    await asyncio.wait_for(first_delta.wait(), timeout=1)
    await asyncio.sleep(0.05)
    signal.abort()
    release.set()

    with pytest.raises(UserCancelled):
        await task
    assert rec.deltas == [("Hello", "Hello")]
    assert rec.completions == []


@pytest.mark.asyncio
async def test_already_aborted_signal_skips_request(make_client, session):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, headers=SSE_HEADERS, content=b"")

    signal = AbortSignal()
    signal.abort()

    with pytest.raises(UserCancelled):
        await make_client(handler).stream_message(session, "hi", 1, signal=signal)
    assert calls == []


@pytest.mark.asyncio
async def test_raw_text_frame_logs_warning(make_client, session, caplog):
    body = sse_frames("not json", tagged("EndOfTurn"))
    client = make_client(lambda request: httpx.Response(200, headers=SSE_HEADERS, content=body))

    with caplog.at_level(logging.WARNING, logger="concierge_gateway.client.agent_client"):
        await client.stream_message(session, "hi", 1)

    assert any("raw text" in r.getMessage() for r in caplog.records if r.levelno == logging.WARNING)
