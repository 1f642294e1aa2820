from __future__ import annotations

import logging
import math
from collections.abc import Iterable
from http import HTTPStatus
from typing import TypeVar

import hyperframe.frame
import trio
from typing_extensions import override

from ._connection import Http2LoopbackConnection
from ._generic import GenericLoopbackServer
from ._listener import TransportListener
from ._logging import ContextualLogger, stream_id_ctx
from ._options import Http2Options
from ._registry import ConnectionRegistry
from ._request import HeaderLike, HttpRequestData, SettingsEntry
from ._timeout import fail_after
from .exceptions import FrameDecodeError, HandshakeProtocolViolation, HandshakeTimeout

_logger = ContextualLogger(logging.getLogger(__name__))

_FrameType = TypeVar("_FrameType", bound=hyperframe.frame.Frame)


class Http2LoopbackServer(GenericLoopbackServer):
    """An HTTP/2 server that a test drives frame by frame.

    The server is bound and listening as soon as it is constructed. Use it
    as a context manager, or call `close`, to stop listening.

    Attributes:
        allow_multiple_connections: Whether more than one connection may be
            open at a time. Off by default, so that a test which accidentally
            makes its client open a second connection fails loudly.
    """

    def __init__(self, options: Http2Options | None = None) -> None:
        self._options = options or Http2Options()
        self._ssl_context = (
            self._options.create_ssl_context() if self._options.use_tls else None
        )

        self._listener = TransportListener(
            self._options.address,
            self._options.listen_backlog,
            self._options.port,
        )
        self._connections = ConnectionRegistry()
        self.allow_multiple_connections = False

        _logger.info("Listening on %s", self.address)

    def __enter__(self) -> Http2LoopbackServer:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    async def __aenter__(self) -> Http2LoopbackServer:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def options(self) -> Http2Options:
        return self._options

    @property
    @override
    def address(self) -> str:
        return self._listener.address(self._options.scheme)

    @property
    def port(self) -> int:
        return self._listener.port

    @property
    def connection(self) -> Http2LoopbackConnection:
        """The oldest connection that is still open.

        Raises:
            ProtocolUsageError: If no connection has been established.
        """
        return self._connections.current()

    @override
    def close(self) -> None:
        """Stop listening and close all tracked connections.

        Calling this again is a no-op.
        """
        self._listener.close()
        self._connections.close_all()

    async def accept_connection(self) -> Http2LoopbackConnection:
        """Accept a connection and read the client connection preface magic.

        Waits indefinitely for a client; reading the preface is bounded by
        the handshake timeout.

        Raises:
            ProtocolUsageError: If a connection is already open and
                `allow_multiple_connections` is not set.
            TransportClosed: If the server is closed.
        """
        return await self._connections.accept(
            self._listener,
            self._open_connection,
            self.allow_multiple_connections,
        )

    async def establish_connection(
        self,
        *settings_entries: SettingsEntry,
    ) -> Http2LoopbackConnection:
        """Like `establish_connection_get_settings`, without the client SETTINGS."""
        connection, _ = await self.establish_connection_get_settings(*settings_entries)
        return connection

    async def establish_connection_get_settings(
        self,
        *settings_entries: SettingsEntry,
    ) -> tuple[Http2LoopbackConnection, hyperframe.frame.SettingsFrame]:
        """Accept a connection and perform the server side of the handshake.

        The client must open with SETTINGS followed by WINDOW_UPDATE, both on
        stream 0 without flags. We then send our SETTINGS and acknowledge the
        client's. The client's acknowledgement of our SETTINGS is not awaited;
        the connection records that it is owed.

        Args:
            settings_entries: The entries of our SETTINGS frame. May be empty.

        Returns:
            The connection and the client's SETTINGS frame.

        Raises:
            HandshakeTimeout: If any step takes longer than the handshake timeout.
            HandshakeProtocolViolation: If the client's first frames are not
                as required. No server frames are sent in that case.
        """
        timeout = self._options.handshake_timeout

        with fail_after(timeout, HandshakeTimeout, "Timed out accepting a connection."):
            connection = await self.accept_connection()

        try:
            with fail_after(timeout, HandshakeTimeout, "Timed out waiting for SETTINGS."):
                client_settings = await _read_preface_frame(
                    connection,
                    hyperframe.frame.SettingsFrame,
                )
            connection.apply_peer_settings(client_settings)

            with fail_after(timeout, HandshakeTimeout, "Timed out waiting for WINDOW_UPDATE."):
                await _read_preface_frame(connection, hyperframe.frame.WindowUpdateFrame)

            settings = hyperframe.frame.SettingsFrame(
                0,
                settings={e.setting_id: e.value for e in settings_entries},
            )
            with fail_after(timeout, HandshakeTimeout, "Timed out sending SETTINGS."):
                await connection.write_frame(settings, timeout=math.inf)

            settings_ack = hyperframe.frame.SettingsFrame(0, flags=["ACK"])
            with fail_after(timeout, HandshakeTimeout, "Timed out sending SETTINGS ACK."):
                await connection.write_frame(settings_ack, timeout=math.inf)

        except BaseException:
            connection.close()
            raise

        # The client will acknowledge our SETTINGS eventually, but not
        # necessarily before sending anything else.
        connection.expect_settings_ack()

        _logger.info("HTTP/2 connection established.")
        return connection, client_settings

    @override
    async def handle_request(
        self,
        status: int = HTTPStatus.OK,
        headers: Iterable[HeaderLike] | None = None,
        content: str | None = None,
    ) -> HttpRequestData:
        """Serve one request on a new connection, then wait for it to close.

        Args:
            status: The response status.
            headers: Additional response headers.
            content: The response body, sent as ASCII with "?" in place of
                other characters. If None, the response has no body and the
                stream ends with the headers.

        Returns:
            The request the client sent.
        """
        body = None if content is None else content.encode("ascii", errors="replace")

        connection = await self.establish_connection()

        stream_id, request = await connection.read_and_parse_request_header()
        token = stream_id_ctx.set(stream_id)

        try:
            # We close the connection after this response, so tell the client
            # not to send further requests on it before it sees the response.
            await connection.send_goaway(stream_id)

            if body is None:
                await connection.send_response_headers(
                    stream_id,
                    end_stream=True,
                    status=status,
                    headers=headers,
                )
            else:
                await connection.send_response_headers(
                    stream_id,
                    end_stream=False,
                    status=status,
                    headers=headers,
                )
                await connection.send_response_body(stream_id, body)

            _logger.info("Sent %d response.", int(status))

            await connection.wait_for_connection_shutdown()

        finally:
            stream_id_ctx.reset(token)

        return request

    async def _open_connection(self, transport: trio.SocketStream) -> Http2LoopbackConnection:
        with fail_after(
            self._options.handshake_timeout,
            HandshakeTimeout,
            "Timed out setting up the connection.",
        ):
            return await Http2LoopbackConnection.open(transport, self._ssl_context)


async def _read_preface_frame(
    connection: Http2LoopbackConnection,
    frame_type: type[_FrameType],
) -> _FrameType:
    name = frame_type.__name__

    try:
        frame = await connection.read_frame(timeout=math.inf)
    except FrameDecodeError as e:
        raise HandshakeProtocolViolation(f"Malformed frame instead of {name}.") from e

    if frame is None:
        raise HandshakeProtocolViolation(f"Connection closed before {name}.")
    if not isinstance(frame, frame_type):
        raise HandshakeProtocolViolation(f"Expected {name} but got {frame}.")
    if connection.last_flags_byte:
        raise HandshakeProtocolViolation(
            f"Expected {name} without flags but got flags"
            f" 0x{connection.last_flags_byte:02x}: {frame}."
        )
    if frame.stream_id != 0:
        raise HandshakeProtocolViolation(f"Expected {name} on stream 0 but got {frame}.")

    return frame
