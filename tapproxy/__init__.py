# -*- coding: utf-8 -*-
"""Transparent HTTP proxy that prints the traffic it relays."""

__version__ = "0.1.0"

from .config import ProxyConfig, Target
from .console import ColorStyle, PlainStyle, TrafficLogger
from .relay import InboundRequest, OutboundRequest, RelayEngine, RequestCounter, ResponseMode, build_outbound_request
from .sse import SSEDecoder, StreamEvent, decode

__all__ = [
    "ColorStyle",
    "InboundRequest",
    "OutboundRequest",
    "PlainStyle",
    "ProxyConfig",
    "RelayEngine",
    "RequestCounter",
    "ResponseMode",
    "SSEDecoder",
    "StreamEvent",
    "Target",
    "TrafficLogger",
    "build_outbound_request",
    "decode",
]
