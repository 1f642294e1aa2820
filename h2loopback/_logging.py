from __future__ import annotations

import logging
from collections.abc import MutableMapping
from contextvars import ContextVar
from typing import Any

connection_ctx: ContextVar[int | None] = ContextVar("connection", default=None)
"""Sequence number of the connection being served, unique per process."""

peer_ctx: ContextVar[str | None] = ContextVar("peer", default=None)
"""Client address ("host:port") of the connection being served."""

stream_id_ctx: ContextVar[int | None] = ContextVar("stream_id", default=None)
"""ID of the HTTP/2 stream whose response is being sent."""

_FIELDS: tuple[tuple[str, ContextVar[Any]], ...] = (
    ("conn", connection_ctx),
    ("peer", peer_ctx),
    ("stream", stream_id_ctx),
)


class ContextualLogger(logging.LoggerAdapter):
    """Prefixes messages with the connection and stream they concern.

    The same values are attached to each record as `h2loopback_context`
    so that handlers can filter on them, e.g. to pick out one connection
    among several in a test with `allow_multiple_connections`.
    """

    def __init__(self, logger: logging.Logger) -> None:
        super().__init__(logger, extra=None)

    def process(
        self,
        msg: str,
        kwargs: MutableMapping[str, Any],
    ) -> tuple[str, MutableMapping[str, Any]]:
        ctx = {name: var.get() for name, var in _FIELDS}
        ctx = {name: value for name, value in ctx.items() if value is not None}

        if not ctx:
            return msg, kwargs

        kwargs.setdefault("extra", {})["h2loopback_context"] = ctx

        ctx_str = " ".join(f"{name}={value}" for name, value in ctx.items())
        return f"[{ctx_str}] {msg}", kwargs


def format_peer(sockaddr: tuple[Any, ...]) -> str:
    """Format a socket address for `peer_ctx`, bracketing IPv6 hosts."""
    host, port = sockaddr[0], sockaddr[1]
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"
