# -*- coding: utf-8 -*-
"""
Human-readable traffic log.

Every entry is written to a text sink (stdout by default) in one piece and
carries the request id, so interleaved exchanges can still be told apart.
"""

from __future__ import annotations

import json
import sys
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, TextIO, Union

from termcolor import colored

from .sse import StreamEvent

DIVIDER = "─" * 70
DOUBLE_DIVIDER = "═" * 70
ELLIPSIS = "..."

# header name -> number of characters kept in the log
REDACT_LIMITS = {
    "authorization": 20,
    "x-api-key": 10,
}


class PlainStyle:
    """No-op styling, used for tests and when colors are disabled."""

    def paint(self, text: str, color: Optional[str] = None, on_color: Optional[str] = None, bold: bool = False) -> str:
        return text


class ColorStyle(PlainStyle):
    def paint(self, text: str, color: Optional[str] = None, on_color: Optional[str] = None, bold: bool = False) -> str:
        return colored(text, color, on_color, attrs=["bold"] if bold else None)


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def redact(name: str, value: str) -> str:
    limit = REDACT_LIMITS.get(name.lower())
    if limit is None or len(value) <= limit:
        return value
    return value[:limit] + ELLIPSIS


def redact_headers(headers: Mapping[str, Union[str, List[str]]]) -> Dict[str, Union[str, List[str]]]:
    safe: Dict[str, Union[str, List[str]]] = {}
    for name, value in headers.items():
        key = name.lower()
        if isinstance(value, list):
            safe[key] = [redact(key, v) for v in value]
        else:
            safe[key] = redact(key, value)
    return safe


def format_json(data: Any, pretty: bool = True) -> str:
    """Render JSON text (or an already parsed object); anything else comes back as text."""
    if isinstance(data, (bytes, bytearray)):
        data = bytes(data).decode("utf-8", errors="replace")
    text = data if isinstance(data, str) else None
    if text is not None:
        if not text:
            return ""
        try:
            data = json.loads(text)
        except (ValueError, RecursionError):
            return text
    try:
        if pretty:
            return json.dumps(data, indent=2, ensure_ascii=False)
        return json.dumps(data, ensure_ascii=False, separators=(",", ":"))
    except (ValueError, RecursionError):
        return text if text is not None else repr(data)


class TrafficLogger:
    def __init__(
        self,
        sink: Optional[TextIO] = None,
        style: Optional[PlainStyle] = None,
        log_headers: bool = True,
        pretty_json: bool = True,
        clock: Callable[[], str] = utc_timestamp,
    ) -> None:
        self._sink = sink if sink is not None else sys.stdout
        self._style = style if style is not None else ColorStyle()
        self._lock = threading.Lock()
        self.log_headers = log_headers
        self.pretty_json = pretty_json
        self._clock = clock

    def _write(self, text: str) -> None:
        with self._lock:
            self._sink.write(text)
            self._sink.flush()

    def _emit(self, lines: List[str]) -> None:
        self._write("\n".join(lines) + "\n")

    def _banner(self, label: str, request_id: int, color: str, on_color: str) -> str:
        paint = self._style.paint
        return "\n" + paint(f" {label} [{request_id}] ", color, on_color) + " " + paint(self._clock(), "dark_grey")

    def log_request(
        self,
        request_id: int,
        method: str,
        path: str,
        headers: Mapping[str, Union[str, List[str]]],
        body: Union[bytes, str],
    ) -> None:
        paint = self._style.paint
        lines = [
            self._banner("▶ REQUEST", request_id, "white", "on_blue"),
            paint(DOUBLE_DIVIDER, "cyan"),
            paint(f"{method} {path}", "yellow"),
        ]
        if self.log_headers:
            lines.append(paint(DIVIDER, "dark_grey"))
            lines.append(paint("Headers:", "magenta"))
            lines.append(paint(format_json(redact_headers(headers), self.pretty_json), "dark_grey"))
        if body:
            lines.append(paint(DIVIDER, "dark_grey"))
            lines.append(paint("Body:", "magenta"))
            lines.append(paint(format_json(body, self.pretty_json), "green"))
        lines.append(paint(DOUBLE_DIVIDER, "cyan") + "\n")
        self._emit(lines)

    def log_response_start(self, request_id: int, status: int) -> None:
        paint = self._style.paint
        self._emit([
            self._banner("◀ RESPONSE", request_id, "grey", "on_green"),
            paint(DOUBLE_DIVIDER, "green"),
            paint(f"Status: {status}", "red" if status >= 400 else "green"),
            paint(DIVIDER, "dark_grey"),
        ])

    def log_response_body(self, request_id: int, content: Union[bytes, str], is_stream: bool = False) -> None:
        paint = self._style.paint
        label = "Stream Data:" if is_stream else "Body:"
        # a blank line ends any inline stream fragments
        lines = [""] if is_stream else []
        lines.append(paint(f"{label} [{request_id}]", "magenta"))
        lines.append(paint(format_json(content, self.pretty_json), "cyan"))
        self._emit(lines)

    def log_stream_start(self, request_id: int) -> None:
        self._emit([self._style.paint(f"  [Streaming Response] [{request_id}]", "yellow")])

    def log_stream_event(self, request_id: int, event: StreamEvent) -> None:
        paint = self._style.paint
        if event.is_done:
            self._emit([paint("  [STREAM END]", "yellow")])
        elif event.content is not None:
            # fragments are written inline to read as running text
            self._write(paint(event.content, "cyan"))
        elif event.role is not None:
            self._emit([paint(f"  [Role: {event.role}]", "dark_grey")])
        elif event.data.strip():
            self._emit([paint(f"  {event.data}", "dark_grey")])

    def log_response_end(self, request_id: int, streamed: bool = False) -> None:
        lines = [""] if streamed else []
        lines.append(self._style.paint(DOUBLE_DIVIDER, "green") + "\n")
        self._emit(lines)

    def log_error(self, request_id: int, error: Union[BaseException, str]) -> None:
        paint = self._style.paint
        message = str(error) or type(error).__name__
        self._emit([
            self._banner("✖ ERROR", request_id, "white", "on_red"),
            paint(DOUBLE_DIVIDER, "red"),
            paint(message, "red"),
            paint(DOUBLE_DIVIDER, "red") + "\n",
        ])
