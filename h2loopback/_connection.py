from __future__ import annotations

import contextlib
import itertools
import logging
import math
import os
import ssl
from collections.abc import Iterable, Iterator
from typing import TypeVar

import hpack
import hyperframe.exceptions
import hyperframe.frame
import trio
from h2.errors import ErrorCodes
from h2.settings import SettingCodes

from ._logging import ContextualLogger, connection_ctx, format_peer, peer_ctx
from ._options import DEFAULT_TIMEOUT
from ._request import HeaderLike, HttpHeaderData, HttpRequestData, header_pairs
from ._timeout import fail_after
from .exceptions import (
    ConnectionClosedError,
    FrameDecodeError,
    FrameTimeout,
    HandshakeProtocolViolation,
    TransportClosed,
    UnexpectedFrameError,
)

_logger = ContextualLogger(logging.getLogger(__name__))

CONNECTION_PREFACE = b"PRI * HTTP/2.0\r\n\r\nSM\r\n\r\n"
"""The magic octets every HTTP/2 client sends before its first frame."""

FRAME_HEADER_SIZE = 9
DEFAULT_MAX_FRAME_SIZE = 16384

_FrameType = TypeVar("_FrameType", bound=hyperframe.frame.Frame)

_connection_numbers = itertools.count(1)


def is_settings_ack(frame: hyperframe.frame.Frame) -> bool:
    return isinstance(frame, hyperframe.frame.SettingsFrame) and "ACK" in frame.flags


@contextlib.contextmanager
def _map_transport_errors(conn: Http2LoopbackConnection) -> Iterator[None]:
    """Translate trio stream errors, invalidating the connection on any of them."""
    try:
        yield
    except trio.ClosedResourceError as e:
        conn._invalidate()
        raise TransportClosed("The connection is closed.") from e
    except trio.BrokenResourceError as e:
        conn._invalidate()
        raise ConnectionClosedError("The connection was reset by the peer.") from e


class Http2LoopbackConnection:
    """One accepted HTTP/2 connection, read and written frame by frame.

    Nothing here keeps HTTP/2 state beyond HPACK contexts and the peer's
    maximum frame size: tests decide exactly which frames go out and in
    which order. Reads and writes on one connection must not be issued
    concurrently.
    """

    def __init__(self, stream: trio.abc.Stream, socket_stream: trio.SocketStream) -> None:
        self._stream = stream
        self._socket_stream = socket_stream

        self._valid = True
        self._pending_settings_ack = False
        self._ignore_window_updates = False

        self._encoder = hpack.Encoder()
        self._decoder = hpack.Decoder()
        self.peer_max_frame_size = DEFAULT_MAX_FRAME_SIZE
        self._last_flags_byte = 0
        self.number = next(_connection_numbers)

        try:
            self.peer = format_peer(socket_stream.socket.getpeername())
        except OSError:
            # The client may already have reset the connection.
            self.peer = "unknown"

    @classmethod
    async def open(
        cls,
        transport: trio.SocketStream,
        ssl_context: ssl.SSLContext | None,
    ) -> Http2LoopbackConnection:
        """Set up a freshly accepted transport for HTTP/2.

        Performs the TLS handshake when `ssl_context` is given and reads the
        client connection preface magic. The transport is closed on failure.

        Raises:
            HandshakeProtocolViolation: If TLS negotiated something other than
                HTTP/2, or the client preface magic is wrong.
            ConnectionClosedError: If the client went away during setup.
        """
        stream: trio.abc.Stream = transport
        if ssl_context:
            stream = trio.SSLStream(transport, ssl_context, server_side=True)

        conn = cls(stream, transport)
        peer_ctx.set(conn.peer)
        connection_ctx.set(conn.number)
        _logger.info("New connection.")

        try:
            if isinstance(stream, trio.SSLStream):
                with _map_transport_errors(conn):
                    await stream.do_handshake()
                _validate_tls(stream)
                _logger.info("TLS handshake succeeded.")

            await conn._read_preface()

        except BaseException:
            conn.close()
            raise

        return conn

    @property
    def is_valid(self) -> bool:
        """False once the transport was observed closed or broken."""
        return self._valid

    @property
    def pending_settings_ack(self) -> bool:
        """Whether the client still owes us a SETTINGS ACK."""
        return self._pending_settings_ack

    @property
    def last_flags_byte(self) -> int:
        """The raw flags octet of the last frame read.

        hyperframe drops flag bits that are undefined for a frame type, so
        this is the only way to see them.
        """
        return self._last_flags_byte

    def expect_settings_ack(self) -> None:
        """Record that the client will eventually acknowledge our SETTINGS.

        The ACK is consumed by a later `read_frame` or `wait_for_settings_ack`,
        and its absence is reported at `wait_for_connection_shutdown`.
        """
        self._pending_settings_ack = True

    def ignore_window_updates(self) -> None:
        """Make `read_frame` silently skip WINDOW_UPDATE frames from now on."""
        self._ignore_window_updates = True

    def apply_peer_settings(self, settings: hyperframe.frame.SettingsFrame) -> None:
        """Remember the peer's settings that affect how we frame output."""
        if SettingCodes.MAX_FRAME_SIZE in settings.settings:
            self.peer_max_frame_size = settings.settings[SettingCodes.MAX_FRAME_SIZE]

    async def read_frame(
        self,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> hyperframe.frame.Frame | None:
        """Read the next frame.

        Returns:
            The parsed frame, or None if the peer closed the connection
            cleanly between frames.

        Raises:
            FrameTimeout: If no complete frame arrives in time.
            FrameDecodeError: If the frame is malformed.
            ConnectionClosedError: If the peer closed or reset the connection
                in the middle of a frame.
            TransportClosed: If we closed the connection.
        """
        with fail_after(timeout, FrameTimeout, "Timed out waiting for a frame."):
            while True:
                frame = await self._read_frame()

                if frame is None:
                    return None

                if self._pending_settings_ack and is_settings_ack(frame):
                    _logger.debug("Received the expected SETTINGS ACK.")
                    self._pending_settings_ack = False
                    continue

                if self._ignore_window_updates and isinstance(
                    frame, hyperframe.frame.WindowUpdateFrame
                ):
                    continue

                return frame

    async def expect(
        self,
        frame_type: type[_FrameType],
        timeout: float = DEFAULT_TIMEOUT,
    ) -> _FrameType:
        """Read the next frame and assert its type.

        Raises:
            UnexpectedFrameError: If the next frame has a different type or
                the connection was closed.
        """
        frame = await self.read_frame(timeout)
        if not isinstance(frame, frame_type):
            raise UnexpectedFrameError(
                f"Expected {frame_type.__name__} but got {_describe(frame)}."
            )
        return frame

    async def write_frame(
        self,
        frame: hyperframe.frame.Frame,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        """Serialize and send a frame.

        Raises:
            FrameTimeout: If the frame cannot be written in time.
            ConnectionClosedError: If the peer reset the connection.
            TransportClosed: If we closed the connection.
        """
        _logger.debug("Sending %s.", frame)
        await self.write_raw(frame.serialize(), timeout)

    async def write_raw(self, data: bytes, timeout: float = DEFAULT_TIMEOUT) -> None:
        """Send arbitrary bytes, e.g. a deliberately malformed frame."""
        with fail_after(timeout, FrameTimeout, "Timed out writing to the connection."):
            with _map_transport_errors(self):
                await self._stream.send_all(data)

    async def wait_for_settings_ack(self, timeout: float = DEFAULT_TIMEOUT) -> None:
        """Wait for the client to acknowledge our SETTINGS.

        WINDOW_UPDATE frames received meanwhile are skipped.

        Raises:
            UnexpectedFrameError: If any other frame arrives first, or the
                connection closes.
        """
        with fail_after(timeout, FrameTimeout, "Timed out waiting for SETTINGS ACK."):
            while self._pending_settings_ack:
                frame = await self._read_frame()

                if frame is not None and is_settings_ack(frame):
                    _logger.debug("Received the expected SETTINGS ACK.")
                    self._pending_settings_ack = False
                elif not isinstance(frame, hyperframe.frame.WindowUpdateFrame):
                    raise UnexpectedFrameError(
                        f"Expected SETTINGS ACK but got {_describe(frame)}."
                    )

    async def ping_pong(
        self,
        opaque_data: bytes | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        """Send a PING and assert that the next frame is its acknowledgement."""
        opaque_data = opaque_data or os.urandom(8)
        await self.write_frame(hyperframe.frame.PingFrame(0, opaque_data), timeout)

        pong = await self.expect(hyperframe.frame.PingFrame, timeout)
        if "ACK" not in pong.flags or pong.opaque_data != opaque_data:
            raise UnexpectedFrameError(f"Expected PING ACK for our PING but got {pong}.")

    async def read_and_parse_request_header(
        self,
        read_body: bool = True,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> tuple[int, HttpRequestData]:
        """Read a request's HEADERS and, optionally, its body.

        WINDOW_UPDATE frames before the HEADERS are skipped.

        Returns:
            The stream ID and the parsed request.
        """
        frame = await self._read_skipping_window_updates(timeout)
        if not isinstance(frame, hyperframe.frame.HeadersFrame):
            raise UnexpectedFrameError(f"Expected HEADERS but got {_describe(frame)}.")

        stream_id = frame.stream_id
        headers = await self._read_header_block(frame, timeout)
        request = HttpRequestData.from_header_block(headers, stream_id)
        _logger.info("Received request %s %s.", request.method, request.path)

        if read_body and "END_STREAM" not in frame.flags:
            request.body, request.trailers = await self._read_body(stream_id, timeout)

        return stream_id, request

    async def read_body(self, stream_id: int, timeout: float = DEFAULT_TIMEOUT) -> bytes:
        """Read DATA frames on a stream until it ends. Trailers are discarded."""
        body, _ = await self._read_body(stream_id, timeout)
        return body

    async def send_goaway(
        self,
        last_stream_id: int,
        error_code: int = ErrorCodes.NO_ERROR,
    ) -> None:
        await self.write_frame(
            hyperframe.frame.GoAwayFrame(
                0,
                last_stream_id=last_stream_id,
                error_code=error_code,
            )
        )

    async def send_reset_stream(
        self,
        stream_id: int,
        error_code: int = ErrorCodes.CANCEL,
    ) -> None:
        await self.write_frame(
            hyperframe.frame.RstStreamFrame(stream_id, error_code=error_code)
        )

    async def send_response_headers(
        self,
        stream_id: int,
        end_stream: bool = True,
        status: int = 200,
        is_trailing_header: bool = False,
        headers: Iterable[HeaderLike] | None = None,
    ) -> None:
        """Send a response header block.

        Args:
            stream_id: The request's stream.
            end_stream: Whether this block ends the stream.
            status: The :status value. Not sent for trailers.
            is_trailing_header: Whether this is a trailer block.
            headers: Additional header fields.
        """
        fields: list[tuple[str, str]] = []
        if not is_trailing_header:
            fields.append((":status", str(int(status))))
        fields.extend(header_pairs(headers or ()))

        await self._send_header_block(stream_id, self._encoder.encode(fields), end_stream)

    async def send_response_data(
        self,
        stream_id: int,
        data: bytes,
        end_stream: bool = False,
    ) -> None:
        flags = ["END_STREAM"] if end_stream else []
        await self.write_frame(
            hyperframe.frame.DataFrame(stream_id, data=data, flags=flags)
        )

    async def send_response_body(
        self,
        stream_id: int,
        body: bytes,
        is_final: bool = True,
    ) -> None:
        """Send a body as DATA frames no larger than the peer allows.

        The last frame carries END_STREAM if `is_final` is set.
        """
        body = memoryview(body)
        chunk_size = self.peer_max_frame_size

        while True:
            chunk, body = body[:chunk_size], body[chunk_size:]
            last = not body
            await self.send_response_data(stream_id, chunk.tobytes(), is_final and last)

            if last:
                return

    async def shutdown_send(self) -> None:
        """Tell the client we will not send anything else.

        Only plain TCP supports this; over TLS it does nothing.
        """
        if not isinstance(self._stream, trio.abc.HalfCloseableStream):
            return

        try:
            with _map_transport_errors(self):
                await self._stream.send_eof()
        except ConnectionClosedError:
            _logger.info("Connection already reset before shutdown.")

    async def wait_for_client_disconnect(
        self,
        ignore_unexpected_frames: bool = False,
    ) -> None:
        """Wait until the client closes the connection, then close our side.

        This has no timeout of its own.

        Raises:
            UnexpectedFrameError: If the client sends any frame other than
                WINDOW_UPDATE or the expected SETTINGS ACK, unless
                `ignore_unexpected_frames` is set.
        """
        self.ignore_window_updates()

        try:
            while (frame := await self.read_frame(timeout=math.inf)) is not None:
                if not ignore_unexpected_frames:
                    raise UnexpectedFrameError(
                        "Unexpected frame received while waiting for client"
                        f" disconnect: {frame}"
                    )
        except ConnectionClosedError:
            _logger.info("Connection reset by the client.")
        finally:
            await self.aclose()

    async def wait_for_connection_shutdown(
        self,
        ignore_unexpected_frames: bool = False,
    ) -> None:
        """Shut down our send side and wait for the client to disconnect.

        Raises:
            HandshakeProtocolViolation: If the client never acknowledged our
                SETTINGS.
        """
        await self.shutdown_send()
        await self.wait_for_client_disconnect(ignore_unexpected_frames)

        if self._pending_settings_ack:
            raise HandshakeProtocolViolation(
                "The client closed the connection without acknowledging our SETTINGS."
            )

    def close(self) -> None:
        """Close the transport immediately.

        Pending reads and writes fail with `TransportClosed`. Calling this
        again is a no-op.
        """
        self._invalidate()

        sock = self._socket_stream.socket
        if sock.fileno() != -1:
            sock.close()
            _logger.info("Closed.")

    async def aclose(self) -> None:
        """Close the transport gracefully (sending close_notify over TLS)."""
        self._invalidate()
        await self._stream.aclose()
        _logger.info("Closed gracefully.")

    def _invalidate(self) -> None:
        self._valid = False

    async def _read_preface(self) -> None:
        preface = await self._receive_exactly(len(CONNECTION_PREFACE))

        if preface is None:
            raise ConnectionClosedError(
                "Connection closed while reading the connection preface."
            )
        if preface != CONNECTION_PREFACE:
            self._invalidate()
            raise HandshakeProtocolViolation(
                f"Invalid connection preface: {preface!r}"
            )

    async def _read_frame(self) -> hyperframe.frame.Frame | None:
        header = await self._receive_exactly(FRAME_HEADER_SIZE)
        if header is None:
            _logger.info("Reached end of TCP connection.")
            return None

        try:
            frame, body_len = hyperframe.frame.Frame.parse_frame_header(
                memoryview(header)
            )
        except hyperframe.exceptions.HyperframeError as e:
            self._invalidate()
            raise FrameDecodeError(f"Invalid frame header: {header.hex()}") from e

        self._last_flags_byte = header[4]

        body = await self._receive_exactly(body_len)
        if body is None:
            raise ConnectionClosedError("Connection closed in the middle of a frame.")

        try:
            frame.parse_body(memoryview(body))
        except hyperframe.exceptions.HyperframeError as e:
            self._invalidate()
            raise FrameDecodeError(f"Invalid {type(frame).__name__} body.") from e

        _logger.debug("Received %s.", frame)
        return frame

    async def _receive_exactly(self, n: int) -> bytes | None:
        """Read exactly `n` bytes, or None if the stream ends before any."""
        chunks: list[bytes | bytearray] = []
        total_read = 0

        while total_read < n:
            with _map_transport_errors(self):
                data = await self._stream.receive_some(n - total_read)

            if not data:
                self._invalidate()
                if total_read == 0:
                    return None
                raise ConnectionClosedError(
                    f"Connection closed after {total_read} of {n} bytes."
                )

            total_read += len(data)
            chunks.append(data)

        return b"".join(chunks)

    async def _read_skipping_window_updates(
        self,
        timeout: float,
    ) -> hyperframe.frame.Frame | None:
        while isinstance(
            frame := await self.read_frame(timeout),
            hyperframe.frame.WindowUpdateFrame,
        ):
            pass
        return frame

    async def _read_header_block(
        self,
        first: hyperframe.frame.HeadersFrame,
        timeout: float,
    ) -> list[tuple[str, str]]:
        block = bytearray(first.data)
        frame: hyperframe.frame.Frame = first

        while "END_HEADERS" not in frame.flags:
            frame = await self.expect(hyperframe.frame.ContinuationFrame, timeout)
            if frame.stream_id != first.stream_id:
                raise UnexpectedFrameError(
                    f"CONTINUATION on stream {frame.stream_id} while reading"
                    f" headers of stream {first.stream_id}."
                )
            block += frame.data

        try:
            return list(self._decoder.decode(bytes(block)))
        except hpack.HPACKError as e:
            self._invalidate()
            raise FrameDecodeError("Invalid header block.") from e

    async def _read_body(
        self,
        stream_id: int,
        timeout: float,
    ) -> tuple[bytes, list[HttpHeaderData]]:
        body = bytearray()

        while True:
            frame = await self._read_skipping_window_updates(timeout)

            if isinstance(frame, hyperframe.frame.DataFrame) and frame.stream_id == stream_id:
                body += frame.data
                if "END_STREAM" in frame.flags:
                    return bytes(body), []

            elif (
                isinstance(frame, hyperframe.frame.HeadersFrame)
                and frame.stream_id == stream_id
                and "END_STREAM" in frame.flags
            ):
                trailers = await self._read_header_block(frame, timeout)
                return bytes(body), [HttpHeaderData(n, v) for n, v in trailers]

            else:
                raise UnexpectedFrameError(
                    f"Expected DATA on stream {stream_id} but got {_describe(frame)}."
                )

    async def _send_header_block(
        self,
        stream_id: int,
        block: bytes,
        end_stream: bool,
    ) -> None:
        max_size = self.peer_max_frame_size
        first, rest = block[:max_size], block[max_size:]

        flags = ["END_STREAM"] if end_stream else []
        if not rest:
            flags.append("END_HEADERS")
        await self.write_frame(
            hyperframe.frame.HeadersFrame(stream_id, data=first, flags=flags)
        )

        while rest:
            chunk, rest = rest[:max_size], rest[max_size:]
            await self.write_frame(
                hyperframe.frame.ContinuationFrame(
                    stream_id,
                    data=chunk,
                    flags=[] if rest else ["END_HEADERS"],
                )
            )


def _validate_tls(stream: trio.SSLStream) -> None:
    """Check that TLS negotiated a connection fit for HTTP/2."""
    # SSLStream forwards ssl.SSLObject methods.
    tls_version = stream.version()
    if tls_version not in ("TLSv1.2", "TLSv1.3"):
        raise HandshakeProtocolViolation(
            f"Unrecognized TLS version: {tls_version}. HTTP/2 requires TLS 1.2+."
        )

    alpn = stream.selected_alpn_protocol()
    if not alpn:
        raise HandshakeProtocolViolation("No ALPN protocol negotiated.")
    if alpn != "h2":
        raise HandshakeProtocolViolation(f"Invalid protocol selected: {alpn}")


def _describe(frame: hyperframe.frame.Frame | None) -> str:
    if frame is None:
        return "end of connection"
    return str(frame)
