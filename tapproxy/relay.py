# -*- coding: utf-8 -*-
"""
Request/response relay between one client connection and the upstream.

The inbound body is buffered, then forwarded with the ``host`` header
rewritten and ``accept-encoding`` dropped so the upstream answers in plain
text. The response is copied to the client as it arrives and, at the same
time, handed to the traffic log: as one body for ordinary responses, or event
by event for ``text/event-stream`` responses.
"""

from __future__ import annotations

import enum
import itertools
import logging
import threading
from contextlib import closing
from typing import Iterable, Iterator, List, Optional, Tuple

import requests
import urllib3
from requests.structures import CaseInsensitiveDict
from urllib3.util import SKIP_HEADER

from .config import Target
from .console import TrafficLogger
from .sse import SSEDecoder

logger = logging.getLogger(__name__)

CHUNK_SIZE = 8192
PROXY_ERROR_LABEL = "Proxy error"

# regenerated by the transport for the buffered body
FRAMING_HEADERS = {"content-length", "transfer-encoding"}

HeaderPairs = List[Tuple[str, str]]


class ClientDisconnected(Exception):
    """The original client went away while the response was being written."""


class ResponseMode(enum.Enum):
    BUFFERED = "buffered"
    STREAMING = "streaming"

    @classmethod
    def from_content_type(cls, content_type: Optional[str]) -> "ResponseMode":
        if content_type and "text/event-stream" in content_type.lower():
            return cls.STREAMING
        return cls.BUFFERED


class RequestCounter:
    """Process-wide request ids: unique and strictly increasing, starting at 1."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ids = itertools.count(1)

    def next(self) -> int:
        with self._lock:
            return next(self._ids)


def collect_headers(pairs: Iterable[Tuple[str, str]]) -> CaseInsensitiveDict:
    """Fold raw header pairs into a case-insensitive mapping; repeated names become lists."""
    headers: CaseInsensitiveDict = CaseInsensitiveDict()
    for name, value in pairs:
        key = name.lower()
        if key in headers:
            existing = headers[key]
            headers[key] = (existing if isinstance(existing, list) else [existing]) + [value]
        else:
            headers[key] = value
    return headers


class InboundRequest:
    def __init__(self, method: str, path: str, headers: CaseInsensitiveDict, body: bytes = b"") -> None:
        self.method = method
        self.path = path
        self.headers = headers
        self.body = body

    def __repr__(self) -> str:
        return f"InboundRequest({self.method} {self.path}, body={len(self.body)}B)"


class OutboundRequest:
    def __init__(self, method: str, url: str, headers: CaseInsensitiveDict, body: bytes) -> None:
        self.method = method
        self.url = url
        self.headers = headers
        self.body = body

    def __repr__(self) -> str:
        return f"OutboundRequest({self.method} {self.url}, body={len(self.body)}B)"


def build_outbound_request(inbound: InboundRequest, target: Target) -> OutboundRequest:
    headers: CaseInsensitiveDict = CaseInsensitiveDict()
    for name, value in inbound.headers.items():
        key = name.lower()
        if key in FRAMING_HEADERS or key == "accept-encoding":
            continue
        headers[key] = ", ".join(value) if isinstance(value, list) else value
    headers["host"] = target.host
    return OutboundRequest(inbound.method, target.url_for(inbound.path), headers, inbound.body)


class UpstreamResponse:
    """An open upstream response; the body is read lazily and never content-decoded."""

    def __init__(self, session: requests.Session, response: requests.Response, chunk_size: int = CHUNK_SIZE) -> None:
        self._session = session
        self._response = response
        self._chunk_size = chunk_size
        self.status = response.status_code
        self.headers: HeaderPairs = list(response.raw.headers.items())
        self.mode = ResponseMode.from_content_type(response.headers.get("Content-Type"))

    def iter_chunks(self) -> Iterator[bytes]:
        for chunk in self._response.raw.stream(self._chunk_size, decode_content=False):
            if chunk:
                yield chunk

    def close(self) -> None:
        self._response.close()
        self._session.close()


class ClientResponse:
    """What the relay needs from the client side of the exchange."""

    headers_sent = False

    def send_head(self, status: int, headers: HeaderPairs) -> None:
        raise NotImplementedError

    def write(self, chunk: bytes) -> None:
        raise NotImplementedError

    def finish(self) -> None:
        raise NotImplementedError

    def send_error_json(self, status: int, payload: dict) -> bool:
        """Send a complete JSON error response; False when headers already went out."""
        raise NotImplementedError


class RelayEngine:
    def __init__(
        self,
        target: Target,
        traffic: TrafficLogger,
        connect_timeout: Optional[float] = 10.0,
        read_timeout: Optional[float] = 600.0,
        chunk_size: int = CHUNK_SIZE,
    ) -> None:
        self.target = target
        self.traffic = traffic
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout
        self.chunk_size = chunk_size

    def open_upstream(self, outbound: OutboundRequest) -> UpstreamResponse:
        # one connection per request, nothing added by requests itself
        session = requests.Session()
        session.headers.clear()
        session.trust_env = False
        headers = dict(outbound.headers.items())
        headers["Accept-Encoding"] = SKIP_HEADER
        if "user-agent" not in outbound.headers:
            headers["User-Agent"] = SKIP_HEADER
        try:
            response = session.request(
                outbound.method,
                outbound.url,
                headers=headers,
                data=outbound.body or None,
                stream=True,
                allow_redirects=False,
                timeout=(self.connect_timeout, self.read_timeout),
            )
        except BaseException:
            session.close()
            raise
        return UpstreamResponse(session, response, self.chunk_size)

    def handle(self, request_id: int, inbound: InboundRequest, client: ClientResponse) -> None:
        self.traffic.log_request(request_id, inbound.method, inbound.path, inbound.headers, inbound.body)
        outbound = build_outbound_request(inbound, self.target)
        logger.debug("relay: id=%s %s %s", request_id, outbound.method, outbound.url)

        try:
            upstream = self.open_upstream(outbound)
        except requests.RequestException as exc:
            self.fail(request_id, client, exc)
            return

        with closing(upstream):
            self.traffic.log_response_start(request_id, upstream.status)
            try:
                client.send_head(upstream.status, upstream.headers)
                if upstream.mode is ResponseMode.STREAMING:
                    self._relay_stream(request_id, upstream, client)
                else:
                    self._relay_buffered(request_id, upstream, client)
                client.finish()
            except ClientDisconnected as exc:
                logger.warning("relay: id=%s client disconnected (%s), closing upstream", request_id, exc)
            except (urllib3.exceptions.HTTPError, requests.RequestException, OSError) as exc:
                self.fail(request_id, client, exc)

    def _relay_buffered(self, request_id: int, upstream: UpstreamResponse, client: ClientResponse) -> None:
        body = bytearray()
        for chunk in upstream.iter_chunks():
            client.write(chunk)
            body.extend(chunk)
        self.traffic.log_response_body(request_id, bytes(body))
        self.traffic.log_response_end(request_id)

    def _relay_stream(self, request_id: int, upstream: UpstreamResponse, client: ClientResponse) -> None:
        self.traffic.log_stream_start(request_id)
        decoder = SSEDecoder()
        content: List[str] = []
        for chunk in upstream.iter_chunks():
            client.write(chunk)
            for event in decoder.feed(chunk):
                self.traffic.log_stream_event(request_id, event)
                if event.content is not None:
                    content.append(event.content)
        for event in decoder.flush():
            self.traffic.log_stream_event(request_id, event)
            if event.content is not None:
                content.append(event.content)
        if content:
            self.traffic.log_response_body(request_id, "".join(content), is_stream=True)
        self.traffic.log_response_end(request_id, streamed=not content)

    def fail(self, request_id: int, client: ClientResponse, exc: BaseException) -> None:
        self.traffic.log_error(request_id, exc)
        payload = {"error": PROXY_ERROR_LABEL, "message": str(exc) or type(exc).__name__}
        try:
            sent = client.send_error_json(502, payload)
        except ClientDisconnected:
            logger.warning("relay: id=%s client gone before error response", request_id)
            return
        if not sent:
            logger.warning("relay: id=%s upstream failed after headers were sent, dropping connection", request_id)
