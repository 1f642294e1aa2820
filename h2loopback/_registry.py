from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

import trio

from ._connection import Http2LoopbackConnection
from ._listener import TransportListener
from ._logging import ContextualLogger
from .exceptions import ProtocolUsageError

_logger = ContextualLogger(logging.getLogger(__name__))

OpenConnection = Callable[[trio.SocketStream], Awaitable[Http2LoopbackConnection]]
"""Turns an accepted TCP stream into a connection ready for frames."""


class ConnectionRegistry:
    """The connections accepted by a server, oldest first.

    Invalid connections are dropped lazily at the start of every read of
    the registry, so what a caller sees depends only on what it has done.
    """

    def __init__(self) -> None:
        self._connections: list[Http2LoopbackConnection] = []
        self._in_setup: trio.SocketStream | None = None

        # trio does not allow two tasks to wait on one socket, and the
        # single-connection check must see the result of an accept in flight.
        self._accept_lock = trio.Lock()

    def __len__(self) -> int:
        self.prune_invalid()
        return len(self._connections)

    def prune_invalid(self) -> None:
        """Forget all connections that are no longer valid."""
        self._connections = [c for c in self._connections if c.is_valid]

    def current(self) -> Http2LoopbackConnection:
        """Return the oldest valid connection.

        Raises:
            ProtocolUsageError: If no connection has been established.
        """
        self.prune_invalid()

        if not self._connections:
            raise ProtocolUsageError("No connection has been established.")

        return self._connections[0]

    async def accept(
        self,
        listener: TransportListener,
        open_connection: OpenConnection,
        allow_multiple: bool,
    ) -> Http2LoopbackConnection:
        """Accept and track a new connection.

        Raises:
            ProtocolUsageError: If a valid connection already exists and
                `allow_multiple` is false. This never waits on the listener.
            TransportClosed: If the listener is closed, or `close_all` is
                called while the new connection is being set up.
        """
        self._check_can_accept(allow_multiple)

        async with self._accept_lock:
            self._check_can_accept(allow_multiple)

            transport = await listener.accept()
            self._in_setup = transport
            try:
                connection = await open_connection(transport)
            finally:
                self._in_setup = None
            self._connections.append(connection)

        _logger.info("Tracking %d connection(s).", len(self._connections))
        return connection

    def close_all(self) -> None:
        """Close every tracked connection and the one being set up, if any."""
        if self._in_setup is not None:
            # Fails the pending setup read with TransportClosed.
            self._in_setup.socket.close()

        for connection in self._connections:
            connection.close()
        self._connections = []

    def _check_can_accept(self, allow_multiple: bool) -> None:
        self.prune_invalid()

        if not allow_multiple and self._connections:
            raise ProtocolUsageError(
                "Connection already established."
                " Set `allow_multiple_connections = True` to bypass."
            )
