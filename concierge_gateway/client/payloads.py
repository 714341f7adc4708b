"""Shape detection for agent payloads.

Upstream responses arrive in several shapes (tagged stream chunks, message
arrays under different keys, bare message objects, raw strings).
``detect_shape`` is the single place that inspects raw payloads; the stream
classifier and the synchronous extractor both work on its result.
"""

from __future__ import annotations

import enum
import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union

from .models import DisplayMessage, random_id

START = "Start"
PROGRESS_INDICATOR = "ProgressIndicator"
TEXT_CHUNK = "TextChunk"
END_OF_TURN = "EndOfTurn"
END_OF_RESPONSE = "EndOfResponse"

CONTROL_TAGS = frozenset({START, PROGRESS_INDICATOR})
COMPLETION_TAGS = frozenset({END_OF_TURN, END_OF_RESPONSE})
KNOWN_TAGS = CONTROL_TAGS | COMPLETION_TAGS | {TEXT_CHUNK}

# array items of this type mark the final answer of a turn
TERMINAL_ITEM_TYPES = frozenset({"Inform"})

MESSAGE_BLOCK_SEPARATOR = "\n\n"


# -----------------------------
# Payload shapes
# -----------------------------
@dataclass(frozen=True, slots=True)
class EmptyPayload:
    pass


@dataclass(frozen=True, slots=True)
class RawText:
    text: str


@dataclass(frozen=True, slots=True)
class TaggedMessage:
    kind: str
    message: Dict[str, Any]


@dataclass(frozen=True, slots=True)
class MessageList:
    items: Tuple[Any, ...]


@dataclass(frozen=True, slots=True)
class SingleMessage:
    body: Dict[str, Any]


PayloadShape = Union[EmptyPayload, RawText, TaggedMessage, MessageList, SingleMessage]


def _message_arrays(payload: Dict[str, Any]) -> List[List[Any]]:
    session = payload.get("session")
    candidates = [
        payload.get("messages"),
        session.get("messages") if isinstance(session, dict) else None,
        payload.get("outputs"),
        payload.get("assistantMessages"),
    ]
    return [c for c in candidates if isinstance(c, list)]


def detect_shape(payload: Any) -> PayloadShape:
    if payload is None:
        return EmptyPayload()
    if isinstance(payload, str):
        return RawText(payload) if payload else EmptyPayload()
    if isinstance(payload, list):
        return MessageList(tuple(payload))
    if not isinstance(payload, dict):
        return EmptyPayload()

    message = payload.get("message")
    if isinstance(message, dict) and message.get("type") in KNOWN_TAGS:
        return TaggedMessage(kind=message["type"], message=message)

    arrays = _message_arrays(payload)
    if arrays:
        items: List[Any] = []
        for array in arrays:
            items.extend(array)
        return MessageList(tuple(items))

    if not payload:
        return EmptyPayload()
    return SingleMessage(payload)


# -----------------------------
# Text extraction
# -----------------------------
def _content_block_text(block: Any) -> str:
    if not block:
        return ""
    if isinstance(block, str):
        return block
    if not isinstance(block, dict):
        return ""
    block_type = block.get("type")
    if block_type == "text" and isinstance(block.get("text"), str):
        return block["text"]
    if block_type == "toolCall" and block.get("toolInput"):
        return json.dumps(block["toolInput"], ensure_ascii=False, separators=(",", ":"))
    if block_type == "response" and block.get("responseText"):
        return str(block["responseText"])
    if block.get("text"):
        return str(block["text"])
    value = block.get("value")
    if value:
        return value if isinstance(value, str) else json.dumps(value, ensure_ascii=False, separators=(",", ":"))
    return ""


def normalise_message_content(message: Any) -> str:
    """Best-effort text of one message in any of the known layouts."""
    if not message:
        return ""
    if isinstance(message, str):
        return message
    if isinstance(message, list):
        parts = [normalise_message_content(m) for m in message]
        return MESSAGE_BLOCK_SEPARATOR.join(p for p in parts if p)
    if not isinstance(message, dict):
        return ""

    for key in ("text", "message"):
        if isinstance(message.get(key), str):
            return message[key]

    content = message.get("content")
    if content:
        if isinstance(content, list):
            blocks = [_content_block_text(b) for b in content]
            joined = MESSAGE_BLOCK_SEPARATOR.join(b for b in blocks if b)
            if joined:
                return joined
        if isinstance(content, str):
            return content
        if isinstance(content, dict) and isinstance(content.get("text"), str):
            return content["text"]

    for key in ("response", "answer", "summary"):
        if isinstance(message.get(key), str):
            return message[key]

    metadata = message.get("metadata")
    if isinstance(metadata, dict) and metadata.get("summary"):
        return str(metadata["summary"])
    return ""


def _to_display_message(raw: Any) -> Optional[DisplayMessage]:
    text = normalise_message_content(raw)
    if not text:
        return None
    body = raw if isinstance(raw, dict) else {}
    role = body.get("role") or body.get("sender") or body.get("participant") or "assistant"
    identifier = body.get("id") or body.get("messageId") or body.get("sid") or body.get("sequence") or random_id()
    created_at = body.get("createdAt") or body.get("timestamp")
    return DisplayMessage(id=str(identifier), role=str(role), text=text, created_at=created_at)


def extract_messages(payload: Any) -> List[DisplayMessage]:
    """Turn a non-streamed response body into display messages."""
    shape = detect_shape(payload)

    if isinstance(shape, MessageList):
        raw_items = list(shape.items)
    elif isinstance(shape, TaggedMessage):
        raw_items = [shape.message]
    elif isinstance(shape, SingleMessage):
        raw_items = [shape.body]
    elif isinstance(shape, RawText):
        raw_items = [shape.text]
    else:
        raw_items = []

    messages: List[DisplayMessage] = []
    for raw in raw_items:
        message = _to_display_message(raw)
        if message is not None:
            messages.append(message)
    if not messages and isinstance(shape, MessageList) and isinstance(payload, dict):
        # arrays held nothing readable; the body itself may be the message
        message = _to_display_message(payload)
        if message is not None:
            messages.append(message)
    return messages


# -----------------------------
# Stream classification
# -----------------------------
class PayloadKind(str, enum.Enum):
    IGNORE = "ignore"
    CONTROL = "control"
    DELTA = "delta"
    CANDIDATE = "candidate"
    COMPLETE = "complete"


@dataclass(frozen=True, slots=True)
class Classified:
    """Result of classifying one stream payload.

    ``DELTA`` text is a true increment; ``CANDIDATE`` text is a full-text
    update that still has to be reconciled with what was already shown.
    ``terminal`` may accompany a candidate when an array carries its final
    item.
    """

    kind: PayloadKind
    text: str = ""
    terminal: bool = False


IGNORED = Classified(PayloadKind.IGNORE)


def _chunk_text(message: Dict[str, Any]) -> str:
    for key in ("message", "text", "delta"):
        value = message.get(key)
        if value is not None:
            return value if isinstance(value, str) else ""
    return ""


def _item_text(item: Any) -> str:
    if not isinstance(item, dict):
        return item if isinstance(item, str) else ""
    for key in ("message", "text"):
        value = item.get(key)
        if value is not None:
            return value if isinstance(value, str) else ""
    return ""


def classify_payload(payload: Any) -> Classified:
    shape = detect_shape(payload)

    if isinstance(shape, TaggedMessage):
        if shape.kind in COMPLETION_TAGS:
            return Classified(PayloadKind.COMPLETE, terminal=True)
        if shape.kind in CONTROL_TAGS:
            return Classified(PayloadKind.CONTROL)
        chunk = _chunk_text(shape.message)
        if not chunk:
            return Classified(PayloadKind.CONTROL)
        return Classified(PayloadKind.DELTA, text=chunk)

    if isinstance(shape, MessageList):
        combined = MESSAGE_BLOCK_SEPARATOR.join(t for t in (_item_text(i) for i in shape.items) if t)
        terminal = any(isinstance(i, dict) and i.get("type") in TERMINAL_ITEM_TYPES for i in shape.items)
        if not combined:
            return Classified(PayloadKind.COMPLETE, terminal=True) if terminal else IGNORED
        return Classified(PayloadKind.CANDIDATE, text=combined, terminal=terminal)

    if isinstance(shape, (SingleMessage, RawText)):
        candidate = normalise_message_content(shape.body if isinstance(shape, SingleMessage) else shape.text)
        if candidate:
            return Classified(PayloadKind.CANDIDATE, text=candidate)
    return IGNORED
