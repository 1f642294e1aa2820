import ssl

import pytest

import h2loopback
from h2loopback import _options


def test_tls_requires_certificate() -> None:
    with pytest.raises(ValueError, match="certificate"):
        h2loopback.Http2LoopbackServer(
            h2loopback.Http2Options(use_tls=True, cert_file=None)
        )


def test_uses_given_ssl_context() -> None:
    context = ssl.create_default_context(purpose=ssl.Purpose.CLIENT_AUTH)
    options = h2loopback.Http2Options(use_tls=True, ssl_context=context)

    assert options.create_ssl_context() is context
    assert options.scheme == "https"


def test_defaults(monkeypatch, tmp_path) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv(_options.CERT_FILE_ENV, raising=False)

    options = h2loopback.Http2Options()

    assert options.address == "127.0.0.1"
    assert options.port == 0
    assert options.listen_backlog == 1
    assert options.min_tls_version == ssl.TLSVersion.TLSv1_2
    assert options.handshake_timeout == 30
    # No certificate is available, so TLS is off.
    assert not options.use_tls
    assert options.scheme == "http"


def test_tls_by_default_with_certificate(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv(_options.CERT_FILE_ENV, str(tmp_path / "cert.pem"))
    monkeypatch.delenv(_options.FORCE_UNENCRYPTED_ENV, raising=False)

    assert h2loopback.Http2Options().use_tls == ssl.HAS_ALPN


def test_force_unencrypted(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv(_options.CERT_FILE_ENV, str(tmp_path / "cert.pem"))
    monkeypatch.setenv(_options.FORCE_UNENCRYPTED_ENV, "1")

    assert not h2loopback.Http2Options().use_tls
