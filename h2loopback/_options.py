from __future__ import annotations

import dataclasses
import os
import ssl

CERT_FILE_ENV = "H2LOOPBACK_CERT_FILE"
"""Environment variable naming the server's certificate chain (PEM)."""

FORCE_UNENCRYPTED_ENV = "H2LOOPBACK_FORCE_UNENCRYPTED"
"""Environment variable that, when truthy, turns off TLS by default."""

_DEFAULT_CERT_FILE = "localhost.pem"

DEFAULT_TIMEOUT = 30.0
"""Default bound, in seconds, on every blocking handshake or frame step."""


def _default_cert_file() -> str | None:
    if path := os.environ.get(CERT_FILE_ENV):
        return path
    if os.path.exists(_DEFAULT_CERT_FILE):
        return _DEFAULT_CERT_FILE
    return None


def _force_unencrypted() -> bool:
    value = os.environ.get(FORCE_UNENCRYPTED_ENV, "")
    return value.lower() in ("1", "true", "yes", "on")


def supports_tls_by_default() -> bool:
    """Whether new servers use TLS unless told otherwise.

    HTTP/2 over TLS needs ALPN, and the server needs a certificate to present.
    """
    return ssl.HAS_ALPN and not _force_unencrypted() and _default_cert_file() is not None


@dataclasses.dataclass(frozen=True)
class Http2Options:
    """Construction options for an `Http2LoopbackServer`.

    Attributes:
        address: The IP address or host name to bind. Defaults to the IPv4
            loopback address.
        port: The port to bind, or 0 to let the OS pick one.
        listen_backlog: The listen queue depth.
        use_tls: Whether to speak HTTP/2 over TLS with ALPN ("h2") instead of
            cleartext HTTP/2 with prior knowledge.
        min_tls_version: The oldest TLS version accepted from clients.
        cert_file: A PEM file with the certificate chain and private key, used
            when `use_tls` is set and no `ssl_context` is given.
        ssl_context: A server SSL context to use as-is.
        handshake_timeout: Bound, in seconds, on each handshake step.
    """

    address: str = "127.0.0.1"
    port: int = 0
    listen_backlog: int = 1
    use_tls: bool = dataclasses.field(default_factory=supports_tls_by_default)
    min_tls_version: ssl.TLSVersion = ssl.TLSVersion.TLSv1_2
    cert_file: str | None = dataclasses.field(default_factory=_default_cert_file)
    ssl_context: ssl.SSLContext | None = None
    handshake_timeout: float = DEFAULT_TIMEOUT

    @property
    def scheme(self) -> str:
        return "https" if self.use_tls else "http"

    def create_ssl_context(self) -> ssl.SSLContext:
        """Return the server SSL context to wrap accepted connections with.

        Raises:
            ValueError: If there is neither an `ssl_context` nor a `cert_file`.
        """
        if self.ssl_context:
            return self.ssl_context

        if not self.cert_file:
            raise ValueError(
                "TLS requires a certificate chain."
                f" Set cert_file, ssl_context or the {CERT_FILE_ENV} variable."
            )

        context = ssl.create_default_context(purpose=ssl.Purpose.CLIENT_AUTH)
        context.load_cert_chain(self.cert_file)
        context.set_alpn_protocols(["h2"])
        context.minimum_version = self.min_tls_version
        return context
