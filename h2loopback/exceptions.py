"""Errors raised by the loopback server.

Protocol violations also derive from `AssertionError` so that test runners
report a misbehaving client as a failed assertion. Timeouts also derive from
the builtin `TimeoutError`.
"""

from __future__ import annotations


class LoopbackError(Exception):
    """Base class for all loopback server errors."""


class BindError(LoopbackError):
    """The listening socket could not be bound."""


class TransportClosed(LoopbackError):
    """An operation was attempted on a listener or connection we closed."""


class ProtocolUsageError(LoopbackError):
    """The server was used in a way its current state does not allow.

    For example, accepting a second connection without setting
    `allow_multiple_connections`, or asking for the current connection
    before one was established.
    """


class ConnectionClosedError(LoopbackError):
    """The peer closed or reset the connection in the middle of an operation."""


class ProtocolViolation(LoopbackError, AssertionError):
    """The peer sent something other than what the scenario expects."""


class HandshakeProtocolViolation(ProtocolViolation):
    """The client's connection preface did not have the required shape."""


class UnexpectedFrameError(ProtocolViolation):
    """A frame arrived that the current operation does not allow."""


class FrameDecodeError(ProtocolViolation):
    """A frame could not be decoded."""


class LoopbackTimeout(LoopbackError, TimeoutError):
    """A bounded wait expired."""


class HandshakeTimeout(LoopbackTimeout):
    """A step of the HTTP/2 handshake did not complete in time."""


class FrameTimeout(LoopbackTimeout):
    """Reading or writing a frame did not complete in time."""


class CompositionTimeout(LoopbackTimeout):
    """A client/server scenario did not finish in time."""
