import json
from typing import Any, List


def sse_frames(*payloads: Any) -> bytes:
    """Encode payloads as SSE frames; strings are sent verbatim."""
    out: List[str] = []
    for payload in payloads:
        data = payload if isinstance(payload, str) else json.dumps(payload)
        out.append("".join(f"data: {line}\n" for line in data.split("\n")) + "\n")
    return "".join(out).encode("utf-8")


def text_chunk(text: str) -> dict:
    return {"message": {"type": "TextChunk", "message": text}}


def tagged(kind: str) -> dict:
    return {"message": {"type": kind}}
