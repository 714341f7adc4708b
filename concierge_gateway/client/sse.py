"""Incremental decoder for ``text/event-stream`` bodies.

Bytes arrive in arbitrary chunks; a frame is complete once a blank line
(two consecutive line breaks) has been seen. Multi-byte UTF-8 sequences
split across chunks are held back by the incremental decoder.
"""

from __future__ import annotations

import codecs
import json
from dataclasses import dataclass
from typing import Any, List, Optional

FRAME_SEPARATOR = "\n\n"


@dataclass(frozen=True, slots=True)
class Frame:
    event: Optional[str]
    data: str
    id: Optional[str] = None


def parse_frame(block: str) -> Optional[Frame]:
    """Split one frame into ``event:``, ``data:`` and ``id:`` fields.

    Comment lines (leading ``:``) and unknown fields are ignored. Returns
    ``None`` when the block carries no field at all (keep-alive comments).
    """
    if not block:
        return None

    event: Optional[str] = None
    frame_id: Optional[str] = None
    data: List[str] = []
    seen_field = False

    for raw_line in block.split("\n"):
        line = raw_line.rstrip()
        if not line or line.startswith(":"):
            continue
        if line.startswith("event:"):
            event = line[len("event:"):].strip()
            seen_field = True
        elif line.startswith("data:"):
            data.append(line[len("data:"):].lstrip())
            seen_field = True
        elif line.startswith("id:"):
            frame_id = line[len("id:"):].strip()
            seen_field = True

    if not seen_field:
        return None
    return Frame(event=event or None, data="\n".join(data), id=frame_id or None)


def decode_data(data: str) -> Any:
    """JSON-decode frame data, keeping undecodable data as the raw string."""
    if not data:
        return data
    try:
        return json.loads(data)
    except ValueError:
        return data


class FrameDecoder:
    def __init__(self, encoding: str = "utf-8") -> None:
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""

    @property
    def pending(self) -> str:
        return self._buffer

    def feed(self, chunk: bytes) -> List[Frame]:
        self._buffer += self._decoder.decode(chunk)
        # CRLF and bare CR are line breaks too
        self._buffer = self._buffer.replace("\r\n", "\n")
        if not self._buffer.endswith("\r"):
            self._buffer = self._buffer.replace("\r", "\n")
        return self._drain()

    def flush(self) -> List[Frame]:
        """Emit whatever remains once the byte stream has closed."""
        self._buffer += self._decoder.decode(b"", final=True)
        self._buffer = self._buffer.replace("\r\n", "\n").replace("\r", "\n")
        frames = self._drain()
        tail = self._buffer.strip("\n")
        self._buffer = ""
        frame = parse_frame(tail)
        if frame is not None:
            frames.append(frame)
        return frames

    def _drain(self) -> List[Frame]:
        frames: List[Frame] = []
        index = self._buffer.find(FRAME_SEPARATOR)
        while index >= 0:
            block = self._buffer[:index]
            self._buffer = self._buffer[index + len(FRAME_SEPARATOR):]
            frame = parse_frame(block)
            if frame is not None:
                frames.append(frame)
            index = self._buffer.find(FRAME_SEPARATOR)
        return frames
