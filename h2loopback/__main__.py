"""Serve a single HTTP/2 request and print it.

Uses TLS if a certificate is available (see `Http2Options`). Try:

  curl --http2-prior-knowledge <address>

or, over TLS with a self-signed localhost.pem:

  curl --insecure --http2 <address>
"""

import logging
import sys

import trio

from . import Http2LoopbackServer


async def main() -> None:
    with Http2LoopbackServer() as server:
        print(f"Listening on {server.address}", file=sys.stderr)

        request = await server.handle_request(
            headers=[("content-type", "text/plain")],
            content="hello\n",
        )

        print(f"{request.method} {request.path}")
        for header in request.headers:
            print(f"\t{header.name}={header.value}")
        if request.body:
            print(request.body.decode(errors="replace"))


if __name__ == "__main__":
    logging.basicConfig(stream=sys.stderr, level=logging.INFO)
    trio.run(main)
