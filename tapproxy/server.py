# -*- coding: utf-8 -*-
"""
Transparent logging proxy:
- Forward every request to one upstream with the host header rewritten
- Relay status, headers and body back unchanged (SSE streams included)
- Print each request, response and streamed delta to the console
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Dict, List, Optional, Tuple

from dotenv import load_dotenv
from termcolor import colored

from . import __version__
from .config import ProxyConfig, Target
from .console import ColorStyle, PlainStyle, TrafficLogger
from .relay import ClientDisconnected, ClientResponse, HeaderPairs, InboundRequest, RelayEngine, RequestCounter, collect_headers

LOG_LEVELS = ("debug", "info", "warning", "error")


class HandlerResponse(ClientResponse):
    """Writes the relayed response onto the handler's socket."""

    def __init__(self, handler: "ProxyHandler") -> None:
        self._handler = handler
        self._chunked = False
        self._body_allowed = True
        self.headers_sent = False

    def send_head(self, status: int, headers: HeaderPairs) -> None:
        h = self._handler
        self._body_allowed = h.command != "HEAD" and status not in (204, 304) and status >= 200
        try:
            # send_response() would add Server/Date; headers go out as received
            h.send_response_only(status)
            for name, value in headers:
                if name.lower() == "transfer-encoding" and "chunked" in value.lower():
                    self._chunked = True
                h.send_header(name, value)
            h.end_headers()
        except OSError as exc:
            raise ClientDisconnected(str(exc)) from exc
        self.headers_sent = True
        # send_header() honours an upstream "Connection: keep-alive"; the
        # exchange still ends with this response
        h.close_connection = True

    def write(self, chunk: bytes) -> None:
        if not self._body_allowed or not chunk:
            return
        data = b"%x\r\n%s\r\n" % (len(chunk), chunk) if self._chunked else chunk
        try:
            self._handler.wfile.write(data)
            self._handler.wfile.flush()
        except OSError as exc:
            raise ClientDisconnected(str(exc)) from exc

    def finish(self) -> None:
        if not (self._chunked and self._body_allowed):
            return
        try:
            self._handler.wfile.write(b"0\r\n\r\n")
            self._handler.wfile.flush()
        except OSError as exc:
            raise ClientDisconnected(str(exc)) from exc

    def send_error_json(self, status: int, payload: Dict[str, Any]) -> bool:
        if self.headers_sent:
            self._handler.close_connection = True
            return False
        try:
            self._handler._send_json(payload, status=status)
        except OSError as exc:
            raise ClientDisconnected(str(exc)) from exc
        self.headers_sent = True
        return True


class ProxyHandler(BaseHTTPRequestHandler):
    server_version = "tapproxy/" + __version__
    protocol_version = "HTTP/1.1"

    def _send_json(self, data: Dict[str, Any], status: int = 200) -> None:
        body = json.dumps(data, ensure_ascii=False).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _read_body(self) -> bytes:
        transfer_encoding = self.headers.get("Transfer-Encoding", "")
        if "chunked" in transfer_encoding.lower():
            chunks: List[bytes] = []
            while True:
                line = self.rfile.readline()
                if not line:
                    raise ConnectionError("client closed connection inside chunked body")
                size_str = line.split(b";", 1)[0].strip()
                try:
                    size = int(size_str, 16)
                except ValueError:
                    raise ValueError(f"malformed chunk size {size_str!r}")
                if size == 0:
                    # Drain trailing headers after last chunk.
                    while True:
                        tail = self.rfile.readline()
                        if not tail or tail in (b"\r\n", b"\n"):
                            break
                    break
                data = self.rfile.read(size)
                if len(data) < size:
                    raise ConnectionError("client closed connection inside chunked body")
                chunks.append(data)
                # Consume the trailing CRLF after each chunk.
                self.rfile.read(2)
            return b"".join(chunks)
        try:
            length = int(self.headers.get("Content-Length", "0"))
        except ValueError:
            raise ValueError("malformed Content-Length")
        if length <= 0:
            return b""
        body = self.rfile.read(length)
        if len(body) < length:
            raise ConnectionError(f"client closed connection after {len(body)} of {length} body bytes")
        return body

    def _relay(self) -> None:
        server: ProxyServer = self.server  # type: ignore[assignment]
        # one exchange per connection
        self.close_connection = True
        try:
            body = self._read_body()
        except (OSError, ValueError) as exc:
            server.traffic.log_error(server.request_ids.next(), exc)
            return
        request_id = server.request_ids.next()
        inbound = InboundRequest(self.command, self.path, collect_headers(self.headers.items()), body)
        server.engine.handle(request_id, inbound, HandlerResponse(self))

    def __getattr__(self, name: str) -> Any:
        # every method (GET, POST, PATCH, PROPFIND, ...) goes upstream
        if name.startswith("do_"):
            return self._relay
        raise AttributeError(name)

    def log_message(self, format: str, *args: Any) -> None:
        logging.debug("http: %s %s", self.address_string(), format % args)


class ProxyServer(ThreadingHTTPServer):
    # in-flight exchanges are joined by server_close()
    daemon_threads = False
    block_on_close = True

    def __init__(
        self,
        address: Tuple[str, int],
        engine: RelayEngine,
        request_ids: Optional[RequestCounter] = None,
    ) -> None:
        super().__init__(address, ProxyHandler)
        self.engine = engine
        self.traffic = engine.traffic
        self.request_ids = request_ids if request_ids is not None else RequestCounter()


def build_server(config: ProxyConfig, traffic: Optional[TrafficLogger] = None) -> ProxyServer:
    if traffic is None:
        traffic = TrafficLogger(
            style=ColorStyle() if config.color else PlainStyle(),
            log_headers=config.log_headers,
            pretty_json=config.pretty_json,
        )
    engine = RelayEngine(
        Target(config.target_url),
        traffic,
        connect_timeout=config.connect_timeout,
        read_timeout=config.read_timeout,
    )
    return ProxyServer((config.host, config.port), engine)


def print_banner(config: ProxyConfig, port: int) -> None:
    def paint(text: str, color: str, bold: bool = False) -> str:
        if not config.color:
            return text
        return colored(text, color, attrs=["bold"] if bold else None)

    edge = paint("║", "cyan", bold=True)
    listen = f"http://localhost:{port}"
    print()
    print(paint("╔" + "═" * 64 + "╗", "cyan", bold=True))
    print(edge + "          LLM Proxy Server Started".ljust(64) + edge)
    print(paint("╠" + "═" * 64 + "╣", "cyan", bold=True))
    print(edge + paint(" Listening on:     ", "yellow") + paint(listen.ljust(45), "green") + edge)
    print(edge + paint(" Proxying to:      ", "yellow") + paint(config.target_url.ljust(45), "green") + edge)
    print(paint("╠" + "═" * 64 + "╣", "cyan", bold=True))
    print(edge + paint(f" Usage: Set your API base URL to {listen}".ljust(64), "dark_grey") + edge)
    print(paint("╚" + "═" * 64 + "╝", "cyan", bold=True))
    print()


def install_signal_handlers(server: ProxyServer) -> None:
    def _stop(signum: int, frame: Any) -> None:
        logging.info("server: received %s, shutting down", signal.Signals(signum).name)
        # shutdown() waits for serve_forever(), which runs on this thread
        threading.Thread(target=server.shutdown, daemon=True).start()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Transparent HTTP proxy that prints the traffic it relays")
    parser.add_argument("--port", type=int, help="Listening port (env PORT, default 3003)")
    parser.add_argument("--host", type=str, help="Listening address (env HOST, default 0.0.0.0)")
    parser.add_argument("--target", type=str, help="Upstream base URL (env TARGET_URL)")
    parser.add_argument("--env-file", type=str, default=".env", help="dotenv file read before the environment (default: .env)")
    parser.add_argument("--no-color", action="store_true", help="Disable colored console output")
    parser.add_argument("--log-level", choices=LOG_LEVELS, help="Level for operational logs (env LOG_LEVEL, default info)")
    return parser


def load_settings(args: argparse.Namespace) -> ProxyConfig:
    load_dotenv(args.env_file)
    environ = dict(os.environ)
    if args.port is not None:
        environ["PORT"] = str(args.port)
    if args.host:
        environ["HOST"] = args.host
    if args.target:
        environ["TARGET_URL"] = args.target
    if args.no_color:
        environ["NO_COLOR"] = "1"
    if args.log_level:
        environ["LOG_LEVEL"] = args.log_level
    return ProxyConfig.from_env(environ)


def main(argv: Optional[List[str]] = None) -> None:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    try:
        config = load_settings(args)
    except ValueError as exc:
        parser.error(str(exc))

    level_name = config.log_level
    level = logging.INFO if level_name not in LOG_LEVELS else getattr(logging, level_name.upper())
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(message)s")

    try:
        server = build_server(config)
    except OSError as exc:
        logging.error("server: cannot listen on %s:%s (%s)", config.host, config.port, exc)
        raise SystemExit(1)

    install_signal_handlers(server)
    print_banner(config, server.server_address[1])
    try:
        server.serve_forever()
    finally:
        logging.info("server: waiting for in-flight requests")
        server.server_close()
    logging.info("server: stopped")
