import re

import pytest
import trio
import trio.testing

import h2loopback
from h2loopback._listener import TransportListener


async def test_address_resolves_ephemeral_port(server) -> None:
    match = re.fullmatch(r"http://127\.0\.0\.1:(\d+)/", server.address)

    assert match
    assert int(match.group(1)) == server.port != 0


async def test_address_uses_https_with_tls() -> None:
    listener = TransportListener("127.0.0.1", 1)
    try:
        assert listener.address("https").startswith("https://127.0.0.1:")
    finally:
        listener.close()


async def test_address_brackets_ipv6() -> None:
    try:
        listener = TransportListener("::1", 1)
    except h2loopback.BindError:
        pytest.skip("IPv6 loopback is unavailable.")

    try:
        assert re.fullmatch(r"http://\[::1\]:\d+/", listener.address("http"))
    finally:
        listener.close()


async def test_address_replaces_wildcard_with_loopback() -> None:
    listener = TransportListener("0.0.0.0", 1)
    try:
        assert listener.address("http").startswith("http://127.0.0.1:")
    finally:
        listener.close()


async def test_bind_fails_if_port_in_use(server) -> None:
    with pytest.raises(h2loopback.BindError):
        TransportListener("127.0.0.1", 1, port=server.port)


async def test_bind_fails_for_unknown_host() -> None:
    with pytest.raises(h2loopback.BindError):
        TransportListener("host.invalid", 1)


async def test_accepts_raw_connection() -> None:
    listener = TransportListener("127.0.0.1", 1)
    try:
        client = await trio.open_tcp_stream("127.0.0.1", listener.port)
        async with client:
            accepted = await listener.accept()
            async with accepted:
                await client.send_all(b"ping")
                assert await accepted.receive_some(4) == b"ping"
    finally:
        listener.close()


async def test_close_is_idempotent(options) -> None:
    server = h2loopback.Http2LoopbackServer(options)

    server.close()
    server.close()

    with trio.fail_after(1):
        with pytest.raises(h2loopback.TransportClosed):
            await server.accept_connection()


async def test_close_fails_pending_accept(options) -> None:
    server = h2loopback.Http2LoopbackServer(options)
    errors: list[Exception] = []

    async def accept() -> None:
        try:
            await server.accept_connection()
        except h2loopback.TransportClosed as e:
            errors.append(e)

    with trio.fail_after(1):
        async with trio.open_nursery() as nursery:
            nursery.start_soon(accept)
            await trio.testing.wait_all_tasks_blocked()
            server.close()

    assert len(errors) == 1

