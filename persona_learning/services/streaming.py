from __future__ import annotations

import codecs
import json
from dataclasses import dataclass
from typing import Any, List, Optional

DATA_PREFIX = "data: "
DONE_MARKER = "[DONE]"


@dataclass(slots=True)
class StreamEvent:
    """One event on an in-flight completion turn.

    ``delta`` carries a text fragment, ``done`` carries the full text, and
    ``error`` carries whatever partial text was produced before the failure.
    """

    kind: str
    text: str = ""
    error: str = ""
    error_kind: str = ""
    session_id: str = ""

    @classmethod
    def delta(cls, text: str) -> "StreamEvent":
        return cls(kind="delta", text=text)

    @classmethod
    def done(cls, text: str) -> "StreamEvent":
        return cls(kind="done", text=text)

    @classmethod
    def failed(cls, partial_text: str, error: str, error_kind: str = "stream_interrupted") -> "StreamEvent":
        return cls(kind="error", text=partial_text, error=error, error_kind=error_kind)

    @property
    def is_terminal(self) -> bool:
        return self.kind in {"done", "error"}


@dataclass(slots=True)
class SSEFrame:
    done: bool = False
    delta: str = ""
    error: str = ""


class SSELineDecoder:
    """Split a byte stream into complete text lines.

    Bytes are decoded incrementally so a multi-byte character split across
    reads survives. Only ``\\n``-terminated lines are returned; the trailing
    fragment waits for the next ``feed``.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> List[str]:
        self._buffer += self._decoder.decode(chunk)
        if "\n" not in self._buffer:
            return []
        *complete, self._buffer = self._buffer.split("\n")
        return [line.rstrip("\r") for line in complete]

    @property
    def pending(self) -> str:
        return self._buffer


def parse_sse_line(line: str) -> Optional[SSEFrame]:
    """Interpret one complete SSE line; ``None`` means the line carries nothing usable."""
    if not line.startswith(DATA_PREFIX):
        return None
    data = line[len(DATA_PREFIX):].strip()
    if data == DONE_MARKER:
        return SSEFrame(done=True)
    try:
        payload = json.loads(data)
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None

    error = payload.get("error")
    if error:
        message = error.get("message") if isinstance(error, dict) else error
        return SSEFrame(error=str(message or "provider error"))

    return SSEFrame(delta=_delta_text(payload))


def _delta_text(payload: dict[str, Any]) -> str:
    choices = payload.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        return ""
    delta = choices[0].get("delta") or {}
    if not isinstance(delta, dict):
        return ""
    content = delta.get("content")
    return content if isinstance(content, str) else ""
