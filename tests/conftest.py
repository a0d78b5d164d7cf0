"""
Shared fixtures: a scripted upstream API and a proxy pointed at it.

Both run on ephemeral ports in background threads; the proxy's traffic log is
captured in a StringIO with plain styling and a fixed clock.
"""

import gzip
import io
import json
import socket
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from tapproxy.config import Target
from tapproxy.console import PlainStyle, TrafficLogger
from tapproxy.relay import RelayEngine, RequestCounter
from tapproxy.server import ProxyServer

SSE_CHUNKS = [
    b'data: {"choices":[{"delta":{"role":"assistant"}}]}\n\n',
    b'data: {"choices":[{"delta":{"content":"Hi"}}]}\n\n',
    b"data: [DONE]\n\n",
]

GZIP_PAYLOAD = gzip.compress(b'{"compressed": true}')


class UpstreamHandler(BaseHTTPRequestHandler):
    protocol_version = "HTTP/1.1"

    def log_message(self, format, *args):
        pass

    def _record(self):
        length = int(self.headers.get("Content-Length", "0"))
        body = self.rfile.read(length) if length else b""
        self.server.received.append({
            "method": self.command,
            "path": self.path,
            "headers": list(self.headers.items()),
            "body": body,
        })
        return body

    def _send(self, status, body, content_type="application/json", extra=()):
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        for name, value in extra:
            self.send_header(name, value)
        self.end_headers()
        self.wfile.write(body)

    def _send_sse(self):
        self.send_response(200)
        self.send_header("Content-Type", "text/event-stream")
        self.send_header("Transfer-Encoding", "chunked")
        self.end_headers()
        for chunk in SSE_CHUNKS:
            self.wfile.write(b"%x\r\n%s\r\n" % (len(chunk), chunk))
            self.wfile.flush()
            time.sleep(0.01)
        self.wfile.write(b"0\r\n\r\n")
        self.close_connection = True

    def _dispatch(self):
        body = self._record()
        if self.path == "/v1/models":
            return self._send(200, b'{"data":[]}')
        if self.path == "/v1/chat/completions":
            if json.loads(body or b"{}").get("stream"):
                return self._send_sse()
            return self._send(200, b'{"choices":[{"message":{"content":"Hi"}}]}')
        if self.path.startswith("/echo"):
            return self._send(201, body, content_type="application/octet-stream")
        if self.path == "/cookies":
            return self._send(200, b"ok", "text/plain", extra=[("Set-Cookie", "a=1"), ("Set-Cookie", "b=2")])
        if self.path == "/gzip":
            return self._send(200, GZIP_PAYLOAD, extra=[("Content-Encoding", "gzip")])
        if self.path == "/redirect":
            return self._send(302, b"", "text/plain", extra=[("Location", "/elsewhere")])
        if self.path == "/missing":
            return self._send(404, b'{"error":"not found"}')
        if self.path == "/truncated":
            self.send_response(200)
            self.send_header("Content-Type", "text/plain")
            self.send_header("Content-Length", "100")
            self.end_headers()
            self.wfile.write(b"short")
            self.wfile.flush()
            self.close_connection = True
            return
        return self._send(404, b"{}")

    do_GET = do_POST = do_PUT = do_DELETE = do_PATCH = _dispatch


def _serve(server):
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return thread


def free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def upstream():
    server = ThreadingHTTPServer(("127.0.0.1", 0), UpstreamHandler)
    server.daemon_threads = True
    server.received = []
    _serve(server)
    yield server
    server.shutdown()
    server.server_close()


@pytest.fixture
def traffic_sink():
    return io.StringIO()


@pytest.fixture
def traffic(traffic_sink):
    return TrafficLogger(sink=traffic_sink, style=PlainStyle(), clock=lambda: "2026-01-01T00:00:00.000Z")


def start_proxy(target_url, traffic):
    engine = RelayEngine(Target(target_url), traffic, connect_timeout=5.0, read_timeout=5.0)
    server = ProxyServer(("127.0.0.1", 0), engine, RequestCounter())
    _serve(server)
    return server


@pytest.fixture
def proxy(upstream, traffic):
    server = start_proxy(f"http://127.0.0.1:{upstream.server_address[1]}", traffic)
    server.base_url = f"http://127.0.0.1:{server.server_address[1]}"
    yield server
    server.shutdown()
    server.server_close()


def wait_for_log(sink, text, timeout=2.0):
    """The relay logs a buffered body after the client already has it."""
    deadline = time.monotonic() + timeout
    while text not in sink.getvalue():
        if time.monotonic() > deadline:
            raise AssertionError(f"{text!r} never logged:\n{sink.getvalue()}")
        time.sleep(0.01)
    return sink.getvalue()
