from __future__ import annotations

import abc
from collections.abc import Awaitable, Callable, Iterable
from http import HTTPStatus

from ._request import HeaderLike, HttpRequestData


class GenericLoopbackServer(abc.ABC):
    """What a test needs from a loopback server, whatever its HTTP version."""

    @property
    @abc.abstractmethod
    def address(self) -> str:
        """The URL clients should connect to."""

    @abc.abstractmethod
    async def handle_request(
        self,
        status: int = HTTPStatus.OK,
        headers: Iterable[HeaderLike] | None = None,
        content: str | None = None,
    ) -> HttpRequestData:
        """Serve exactly one request on a new connection and return it."""

    @abc.abstractmethod
    def close(self) -> None:
        """Stop listening. Calling this again is a no-op."""


ServerFunc = Callable[[GenericLoopbackServer, str], Awaitable[None]]
"""A test body that receives a server and its address."""


class LoopbackServerFactory(abc.ABC):
    """Creates loopback servers of one HTTP version."""

    @abc.abstractmethod
    async def create_server(self, fn: ServerFunc, timeout: float = 60.0) -> None:
        """Run `fn` against a fresh server, closing the server afterwards."""

    @property
    @abc.abstractmethod
    def is_http11(self) -> bool: ...

    @property
    @abc.abstractmethod
    def is_http2(self) -> bool: ...
