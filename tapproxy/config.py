# -*- coding: utf-8 -*-
"""Environment-sourced settings for the proxy."""

from __future__ import annotations

import urllib.parse
from dataclasses import dataclass
from typing import Mapping, Optional

DEFAULT_PORT = 3003
DEFAULT_HOST = "0.0.0.0"
DEFAULT_TARGET_URL = "https://us.vveai.com"
DEFAULT_CONNECT_TIMEOUT_MS = "10000"
DEFAULT_API_TIMEOUT_MS = "600000"

FALSE_VALUES = {"false", "0", "no", "off"}


def parse_bool(value: Optional[str], default: bool = True) -> bool:
    if value is None:
        return default
    return value.strip().lower() not in FALSE_VALUES


def parse_timeout_ms(value: str, name: str) -> Optional[float]:
    try:
        timeout_ms = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be a number of milliseconds, got {value!r}")
    if timeout_ms < 0:
        raise ValueError(f"{name} must not be negative")
    if timeout_ms == 0:
        return None
    return timeout_ms / 1000.0


def parse_port(value: str) -> int:
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"PORT must be an integer, got {value!r}")
    if not 0 <= port <= 65535:
        raise ValueError(f"PORT out of range: {port}")
    return port


class Target:
    """The single upstream base URL; only scheme and host:port are used."""

    def __init__(self, url: str) -> None:
        parts = urllib.parse.urlsplit(url.strip())
        if parts.scheme not in ("http", "https") or not parts.hostname:
            raise ValueError(f"TARGET_URL must be an http(s) URL, got {url!r}")
        # userinfo never reaches the Host header or the outbound URL
        hostname = f"[{parts.hostname}]" if ":" in parts.hostname else parts.hostname
        port = parts.port
        self.url = url.strip()
        self.scheme = parts.scheme
        self.host = f"{hostname}:{port}" if port is not None else hostname

    @property
    def is_tls(self) -> bool:
        return self.scheme == "https"

    def url_for(self, path: str) -> str:
        if not path.startswith("/"):
            path = "/" + path
        return f"{self.scheme}://{self.host}{path}"

    def __repr__(self) -> str:
        return f"Target({self.url!r})"


@dataclass(frozen=True)
class ProxyConfig:
    port: int = DEFAULT_PORT
    host: str = DEFAULT_HOST
    target_url: str = DEFAULT_TARGET_URL
    log_headers: bool = True
    pretty_json: bool = True
    color: bool = True
    connect_timeout: Optional[float] = 10.0
    read_timeout: Optional[float] = 600.0
    log_level: str = "info"

    @property
    def target(self) -> Target:
        return Target(self.target_url)

    @classmethod
    def from_env(cls, environ: Mapping[str, str]) -> "ProxyConfig":
        return cls(
            port=parse_port(environ.get("PORT", str(DEFAULT_PORT))),
            host=environ.get("HOST", DEFAULT_HOST),
            target_url=Target(environ.get("TARGET_URL", DEFAULT_TARGET_URL)).url,
            log_headers=parse_bool(environ.get("LOG_HEADERS")),
            pretty_json=parse_bool(environ.get("PRETTY_JSON")),
            color="NO_COLOR" not in environ,
            connect_timeout=parse_timeout_ms(
                environ.get("CONNECT_TIMEOUT_MS", DEFAULT_CONNECT_TIMEOUT_MS), "CONNECT_TIMEOUT_MS"
            ),
            read_timeout=parse_timeout_ms(
                environ.get("API_TIMEOUT_MS", DEFAULT_API_TIMEOUT_MS), "API_TIMEOUT_MS"
            ),
            log_level=str(environ.get("LOG_LEVEL", "info")).lower(),
        )
