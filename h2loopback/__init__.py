"""A controllable HTTP/2 loopback server for protocol tests, built on trio."""

from ._connection import CONNECTION_PREFACE, Http2LoopbackConnection
from ._generic import GenericLoopbackServer, LoopbackServerFactory
from ._harness import Http2LoopbackServerFactory, create_client_and_server
from ._options import Http2Options
from ._request import HttpHeaderData, HttpRequestData, SettingsEntry
from ._server import Http2LoopbackServer
from .exceptions import (
    BindError,
    CompositionTimeout,
    ConnectionClosedError,
    FrameDecodeError,
    FrameTimeout,
    HandshakeProtocolViolation,
    HandshakeTimeout,
    LoopbackError,
    LoopbackTimeout,
    ProtocolUsageError,
    ProtocolViolation,
    TransportClosed,
    UnexpectedFrameError,
)

__version__ = "0.1.0.dev1"

__all__ = [
    "CONNECTION_PREFACE",
    "Http2LoopbackServer",
    "Http2LoopbackConnection",
    "Http2LoopbackServerFactory",
    "Http2Options",
    "GenericLoopbackServer",
    "LoopbackServerFactory",
    "create_client_and_server",
    "HttpHeaderData",
    "HttpRequestData",
    "SettingsEntry",
    "LoopbackError",
    "BindError",
    "TransportClosed",
    "ProtocolUsageError",
    "ConnectionClosedError",
    "ProtocolViolation",
    "HandshakeProtocolViolation",
    "UnexpectedFrameError",
    "FrameDecodeError",
    "LoopbackTimeout",
    "HandshakeTimeout",
    "FrameTimeout",
    "CompositionTimeout",
]
