from __future__ import annotations

import pytest

import h2loopback

from . import http2client


@pytest.fixture
def options() -> h2loopback.Http2Options:
    """Cleartext options with a short handshake timeout."""
    return h2loopback.Http2Options(use_tls=False, handshake_timeout=5)


@pytest.fixture
async def server(options):
    """A server for the duration of the test."""
    with h2loopback.Http2LoopbackServer(options) as server:
        yield server


@pytest.fixture
async def connect_client():
    """Connect frame-level clients, closing them after the test.

    Args:
        address: The server's address.
        preface: Whether to send the client connection preface right away.
            Defaults to False.

    Returns:
        An HTTP2Client instance.
    """
    clients: list[http2client.HTTP2Client] = []

    async def fn(address: str, *, preface=False) -> http2client.HTTP2Client:
        client = await http2client.HTTP2Client.connect(address)
        clients.append(client)

        if preface:
            await client.send_preface()

        return client

    yield fn

    for client in clients:
        await client.aclose()
