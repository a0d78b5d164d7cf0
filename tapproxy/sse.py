# -*- coding: utf-8 -*-
"""
Server-sent-event decoding for log display.

Only ``data: `` lines are interpreted. Payloads shaped like chat-completion
stream deltas (``choices[0].delta.content`` / ``.role``) are picked apart so
the log can show the generated text as it arrives. Nothing here touches the
bytes relayed to the client.
"""

from __future__ import annotations

import codecs
import json
from typing import Any, List, Optional

DATA_PREFIX = "data: "
DONE_MARKER = "[DONE]"


class StreamEvent:
    __slots__ = ("data", "content", "role")

    def __init__(self, data: str, content: Optional[str] = None, role: Optional[str] = None) -> None:
        self.data = data
        self.content = content
        self.role = role

    @property
    def is_done(self) -> bool:
        return self.data == DONE_MARKER

    @property
    def is_opaque(self) -> bool:
        return not self.is_done and self.content is None and self.role is None

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, StreamEvent):
            return NotImplemented
        return (self.data, self.content, self.role) == (other.data, other.content, other.role)

    def __repr__(self) -> str:
        return f"StreamEvent(data={self.data!r}, content={self.content!r}, role={self.role!r})"


def _first_delta(payload: Any) -> Optional[dict]:
    if not isinstance(payload, dict):
        return None
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    if not isinstance(first, dict):
        return None
    delta = first.get("delta")
    return delta if isinstance(delta, dict) else None


def parse_line(line: str) -> Optional[StreamEvent]:
    """Turn one SSE line into an event, or None for non-data lines."""
    if line.endswith("\r"):
        line = line[:-1]
    if not line.startswith(DATA_PREFIX):
        return None
    data = line[len(DATA_PREFIX):]
    if data == DONE_MARKER:
        return StreamEvent(data)
    try:
        payload = json.loads(data)
    except (ValueError, RecursionError):
        return StreamEvent(data)
    delta = _first_delta(payload)
    if delta is None:
        return StreamEvent(data)
    content = delta.get("content")
    if isinstance(content, str) and content:
        return StreamEvent(data, content=content)
    role = delta.get("role")
    if isinstance(role, str) and role:
        return StreamEvent(data, role=role)
    return StreamEvent(data)


class SSEDecoder:
    """
    Per-stream decoder.

    Keeps the unterminated tail of the previous chunk (and any split UTF-8
    sequence) so a ``data:`` line cut across two chunks still decodes as one
    event.
    """

    def __init__(self) -> None:
        self._text = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    def feed(self, chunk: bytes) -> List[StreamEvent]:
        self._pending += self._text.decode(chunk)
        *lines, self._pending = self._pending.split("\n")
        return [event for event in map(parse_line, lines) if event is not None]

    def flush(self) -> List[StreamEvent]:
        tail = self._pending + self._text.decode(b"", final=True)
        self._pending = ""
        if not tail:
            return []
        event = parse_line(tail)
        return [event] if event is not None else []


def decode(chunk: bytes) -> List[StreamEvent]:
    """Decode a single self-contained chunk."""
    decoder = SSEDecoder()
    return decoder.feed(chunk) + decoder.flush()
