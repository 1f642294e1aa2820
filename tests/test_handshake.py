import logging

import hyperframe.frame
import pytest
import trio
from h2.settings import SettingCodes

import h2loopback
from h2loopback import SettingsEntry

from .http2client import DEFAULT_CLIENT_SETTINGS


@pytest.mark.parametrize(
    "entries",
    [
        [],
        [SettingsEntry(SettingCodes.MAX_CONCURRENT_STREAMS, 123)],
        [
            SettingsEntry(SettingCodes.INITIAL_WINDOW_SIZE, 5),
            SettingsEntry(SettingCodes.MAX_FRAME_SIZE, 32768),
            SettingsEntry(0x7F, 1),
        ],
    ],
)
async def test_sends_settings_then_ack(server, connect_client, entries) -> None:
    client = await connect_client(server.address, preface=True)

    await server.establish_connection(*entries)

    settings = await client.expect(hyperframe.frame.SettingsFrame)
    assert not settings.flags
    assert settings.stream_id == 0
    assert settings.settings == {e.setting_id: e.value for e in entries}

    ack = await client.expect(hyperframe.frame.SettingsFrame)
    assert "ACK" in ack.flags
    assert ack.settings == {}


async def test_returns_client_settings(server, connect_client) -> None:
    client = await connect_client(server.address)
    await client.send_preface(settings={SettingCodes.MAX_FRAME_SIZE: 20000})

    connection, client_settings = await server.establish_connection_get_settings()

    assert client_settings.settings == {SettingCodes.MAX_FRAME_SIZE: 20000}
    assert connection.peer_max_frame_size == 20000


async def test_ack_is_deferred(server, connect_client) -> None:
    client = await connect_client(server.address, preface=True)

    # The handshake completes although the client has not acknowledged yet.
    connection = await server.establish_connection()
    assert connection.pending_settings_ack

    await client.complete_handshake()
    await connection.wait_for_settings_ack()

    assert not connection.pending_settings_ack


async def test_read_frame_consumes_expected_ack(server, connect_client) -> None:
    client = await connect_client(server.address, preface=True)
    connection = await server.establish_connection()

    await client.complete_handshake()
    await client.send_random_ping()

    # The SETTINGS ACK is consumed on the way to the PING.
    frame = await connection.read_frame()
    assert isinstance(frame, hyperframe.frame.PingFrame)
    assert not connection.pending_settings_ack


async def test_wait_for_ack_rejects_other_frames(server, connect_client) -> None:
    client = await connect_client(server.address, preface=True)
    connection = await server.establish_connection()

    await client.send_random_ping()

    with pytest.raises(h2loopback.UnexpectedFrameError, match="SETTINGS ACK"):
        await connection.wait_for_settings_ack()


async def test_fails_if_preface_does_not_start_with_settings(
    server,
    connect_client,
) -> None:
    client = await connect_client(server.address)
    await client.send_raw(h2loopback.CONNECTION_PREFACE)
    await client.send_random_ping()

    with pytest.raises(h2loopback.HandshakeProtocolViolation, match="SettingsFrame"):
        await server.establish_connection()

    # No server frames were sent before the connection was closed.
    await client.expect_closed()


async def test_fails_on_settings_with_flags(server, connect_client) -> None:
    client = await connect_client(server.address)
    await client.send_raw(h2loopback.CONNECTION_PREFACE)
    await client.ack_settings()

    with pytest.raises(h2loopback.HandshakeProtocolViolation, match="without flags"):
        await server.establish_connection()

    await client.expect_closed()


@pytest.mark.parametrize(
    "frames",
    [
        # SETTINGS with the undefined flag 0x02.
        [b"\x00\x00\x00\x04\x02\x00\x00\x00\x00"],
        # Valid SETTINGS, then WINDOW_UPDATE with the undefined flag 0x01.
        [
            b"\x00\x00\x00\x04\x00\x00\x00\x00\x00",
            b"\x00\x00\x04\x08\x01\x00\x00\x00\x00\x00\x00\x10\x00",
        ],
    ],
)
async def test_fails_on_undefined_flags(server, connect_client, frames) -> None:
    client = await connect_client(server.address)
    await client.send_raw(h2loopback.CONNECTION_PREFACE)
    for frame in frames:
        await client.send_raw(frame)

    with pytest.raises(h2loopback.HandshakeProtocolViolation, match="without flags"):
        await server.establish_connection()

    await client.expect_closed()


async def test_fails_on_settings_on_nonzero_stream(server, connect_client) -> None:
    client = await connect_client(server.address)
    await client.send_raw(h2loopback.CONNECTION_PREFACE)
    # SETTINGS with no payload on stream 1; hyperframe refuses to build it.
    await client.send_raw(b"\x00\x00\x00\x04\x00\x00\x00\x00\x01")

    with pytest.raises(h2loopback.HandshakeProtocolViolation, match="Malformed"):
        await server.establish_connection()

    await client.expect_closed()


async def test_fails_if_window_update_missing(server, connect_client) -> None:
    client = await connect_client(server.address)
    await client.send_raw(h2loopback.CONNECTION_PREFACE)
    await client.send_frame(
        hyperframe.frame.SettingsFrame(0, settings=DEFAULT_CLIENT_SETTINGS)
    )
    await client.send_random_ping()

    with pytest.raises(h2loopback.HandshakeProtocolViolation, match="WindowUpdateFrame"):
        await server.establish_connection()

    await client.expect_closed()


async def test_fails_if_client_disconnects(server, connect_client) -> None:
    client = await connect_client(server.address)
    await client.send_raw(h2loopback.CONNECTION_PREFACE)
    await client.aclose()

    with pytest.raises(h2loopback.HandshakeProtocolViolation, match="closed"):
        await server.establish_connection()


@pytest.mark.parametrize("options", [h2loopback.Http2Options(use_tls=False, handshake_timeout=0.5)])
async def test_times_out_waiting_for_settings(server, connect_client) -> None:
    client = await connect_client(server.address)
    await client.send_raw(h2loopback.CONNECTION_PREFACE)

    start = trio.current_time()
    with pytest.raises(h2loopback.HandshakeTimeout):
        await server.establish_connection()
    elapsed = trio.current_time() - start

    assert 0.5 <= elapsed < 3
    await client.expect_closed()


@pytest.mark.parametrize("options", [h2loopback.Http2Options(use_tls=False, handshake_timeout=0.5)])
async def test_times_out_waiting_for_client(server) -> None:
    start = trio.current_time()
    with pytest.raises(h2loopback.HandshakeTimeout):
        await server.establish_connection()
    elapsed = trio.current_time() - start

    assert 0.5 <= elapsed < 3


async def test_connection_after_handshake_violation_is_invalid(
    server,
    connect_client,
) -> None:
    client = await connect_client(server.address)
    await client.send_raw(h2loopback.CONNECTION_PREFACE)
    await client.send_random_ping()

    with pytest.raises(h2loopback.HandshakeProtocolViolation):
        await server.establish_connection()

    # The failed connection does not count against the single-connection policy.
    await connect_client(server.address, preface=True)
    connection = await server.establish_connection()
    assert connection.is_valid


async def test_logs_peer(server, connect_client, caplog) -> None:
    caplog.set_level(logging.INFO, logger="h2loopback")
    await connect_client(server.address, preface=True)

    await server.establish_connection()

    assert "peer=127.0.0.1:" in caplog.text

    [record] = [r for r in caplog.records if "established" in r.getMessage()]
    assert record.h2loopback_context["conn"] == server.connection.number
    assert "HTTP/2 connection established." in caplog.text
