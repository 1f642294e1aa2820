from __future__ import annotations

import ipaddress
import logging
import socket

import trio

from ._logging import ContextualLogger
from .exceptions import BindError, TransportClosed

_logger = ContextualLogger(logging.getLogger(__name__))

_WILDCARDS = {
    socket.AF_INET: "127.0.0.1",
    socket.AF_INET6: "::1",
}


class TransportListener:
    """A listening TCP socket that accepts one raw connection at a time."""

    def __init__(self, address: str, backlog: int, port: int = 0) -> None:
        """Bind and start listening.

        Args:
            address: The IP address or host name to bind.
            backlog: The listen queue depth.
            port: The port to bind, or 0 for an ephemeral port.

        Raises:
            BindError: If the address cannot be resolved or bound.
        """
        try:
            family, type_, proto, _, sockaddr = socket.getaddrinfo(
                address,
                port,
                type=socket.SOCK_STREAM,
                flags=socket.AI_PASSIVE,
            )[0]
        except OSError as e:
            raise BindError(f"Cannot resolve {address!r}: {e}") from e

        sock = socket.socket(family, type_, proto)
        try:
            if hasattr(socket, "SO_REUSEADDR") and not hasattr(socket, "SO_EXCLUSIVEADDRUSE"):
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind(sockaddr)
            sock.listen(backlog)
        except OSError as e:
            sock.close()
            raise BindError(f"Cannot bind {address!r} port {port}: {e}") from e

        self._family = family
        self._listener = trio.SocketListener(trio.socket.from_stdlib_socket(sock))

    @property
    def port(self) -> int:
        """The concrete port the listener is bound to."""
        return self._sockname()[1]

    def address(self, scheme: str) -> str:
        """A URL that a client can connect to.

        Wildcard addresses are replaced with the loopback address of the
        same family, and IPv6 hosts are bracketed.
        """
        host, port = self._sockname()[:2]

        if ipaddress.ip_address(host).is_unspecified:
            host = _WILDCARDS[self._family]
        if self._family == socket.AF_INET6:
            host = f"[{host}]"

        return f"{scheme}://{host}:{port}/"

    async def accept(self) -> trio.SocketStream:
        """Wait for a client to connect.

        Raises:
            TransportClosed: If the listener is closed, before or during the call.
        """
        try:
            stream = await self._listener.accept()
        except trio.ClosedResourceError as e:
            raise TransportClosed("The listener is closed.") from e

        _logger.debug("Accepted TCP connection from %s.", stream.socket.getpeername())
        return stream

    def close(self) -> None:
        """Release the socket. Calling this again is a no-op."""
        if self._listener.socket.fileno() == -1:
            return

        # Closing through trio wakes up any task blocked in accept().
        self._listener.socket.close()
        _logger.info("Stopped listening.")

    def _sockname(self) -> tuple:
        try:
            return self._listener.socket.getsockname()
        except OSError as e:
            raise TransportClosed("The listener is closed.") from e
