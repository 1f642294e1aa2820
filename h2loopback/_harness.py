from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

import trio
from typing_extensions import override

from ._generic import LoopbackServerFactory, ServerFunc
from ._logging import ContextualLogger
from ._options import Http2Options
from ._server import Http2LoopbackServer
from .exceptions import CompositionTimeout

_logger = ContextualLogger(logging.getLogger(__name__))

DEFAULT_SCENARIO_TIMEOUT = 60.0

ClientFunc = Callable[[str], Awaitable[None]]
"""The client side of a scenario; receives the server's address."""

Http2ServerFunc = Callable[[Http2LoopbackServer], Awaitable[None]]
"""The server side of a scenario."""


async def create_client_and_server(
    client_fn: ClientFunc,
    server_fn: Http2ServerFunc,
    *,
    timeout: float = DEFAULT_SCENARIO_TIMEOUT,
    options: Http2Options | None = None,
) -> None:
    """Run a client and a server side concurrently against a fresh server.

    If either side raises, the other is cancelled and that first exception
    is re-raised as is.

    Raises:
        CompositionTimeout: If the two sides do not both finish in time.
    """
    with Http2LoopbackServer(options) as server:
        address = server.address
        failures: list[Exception] = []

        async def run(fn: Callable[[], Awaitable[None]], nursery: trio.Nursery) -> None:
            try:
                await fn()
            except Exception as e:
                failures.append(e)
                nursery.cancel_scope.cancel()

        with trio.move_on_after(timeout) as timeout_scope:
            async with trio.open_nursery() as nursery:
                nursery.start_soon(run, lambda: client_fn(address), nursery)
                nursery.start_soon(run, lambda: server_fn(server), nursery)

        if failures:
            _logger.info("Scenario failed: %r", failures[0])
            raise failures[0]

        if timeout_scope.cancelled_caught:
            raise CompositionTimeout(
                f"Client and server did not finish within {timeout} seconds."
            )


class Http2LoopbackServerFactory(LoopbackServerFactory):
    """Creates `Http2LoopbackServer` instances for version-generic tests."""

    def __init__(self, options: Http2Options | None = None) -> None:
        self._options = options

    @override
    async def create_server(
        self,
        fn: ServerFunc,
        timeout: float = DEFAULT_SCENARIO_TIMEOUT,
    ) -> None:
        """Run `fn(server, address)` against a fresh server.

        Raises:
            CompositionTimeout: If `fn` does not finish in time.
        """
        with Http2LoopbackServer(self._options) as server:
            with trio.move_on_after(timeout) as timeout_scope:
                await fn(server, server.address)

            if timeout_scope.cancelled_caught:
                raise CompositionTimeout(f"Scenario did not finish within {timeout} seconds.")

    @property
    @override
    def is_http11(self) -> bool:
        return False

    @property
    @override
    def is_http2(self) -> bool:
        return True
