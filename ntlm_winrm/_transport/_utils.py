# -*- coding: utf-8 -*-
# Copyright: (c) 2021, Jordan Borean (@jborean93) <jborean93@gmail.com>
# MIT License (see LICENSE or https://opensource.org/licenses/MIT)

import base64
import contextlib
import select
import socket
import sys
import typing

import httpcore
import httpx

from cryptography import x509
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes
from cryptography.exceptions import UnsupportedAlgorithm


PoolKey = typing.Tuple[bytes, bytes, int, typing.Optional[str]]

DEFAULT_PORTS = {
    b"http": 80,
    b"https": 443,
}

# Most specific first, the first isinstance match wins.
HTTPCORE_EXC_MAP: typing.Dict[typing.Type[Exception], typing.Type[Exception]] = {
    httpcore.ConnectTimeout: httpx.ConnectTimeout,
    httpcore.ReadTimeout: httpx.ReadTimeout,
    httpcore.WriteTimeout: httpx.WriteTimeout,
    httpcore.PoolTimeout: httpx.PoolTimeout,
    httpcore.TimeoutException: httpx.TimeoutException,
    httpcore.ConnectError: httpx.ConnectError,
    httpcore.ReadError: httpx.ReadError,
    httpcore.WriteError: httpx.WriteError,
    httpcore.NetworkError: httpx.NetworkError,
    httpcore.ProxyError: httpx.ProxyError,
    httpcore.UnsupportedProtocol: httpx.UnsupportedProtocol,
    httpcore.LocalProtocolError: httpx.LocalProtocolError,
    httpcore.RemoteProtocolError: httpx.RemoteProtocolError,
    httpcore.ProtocolError: httpx.ProtocolError,
}


@contextlib.contextmanager
def map_exceptions(exc_map: typing.Dict[typing.Type[Exception], typing.Type[Exception]]) -> typing.Iterator[None]:
    try:
        yield
    except Exception as exc:
        for from_exc, to_exc in exc_map.items():
            if isinstance(exc, from_exc):
                raise to_exc(str(exc)) from exc
        raise


def map_httpcore_exceptions() -> typing.ContextManager[None]:
    """Re-raises httpcore errors as the httpx equivalent so callers only deal with httpx."""
    return map_exceptions(HTTPCORE_EXC_MAP)


def get_tls_server_end_point_hash(
    certificate_der: bytes,
) -> bytes:
    """Get Channel Binding hash.

    Get the channel binding tls-server-end-point hash value from the
    certificate passed in.

    Args:
        certificate_der: The X509 DER encoded certificate.

    Returns:
        bytes: The hash value to use for the channel binding token.
    """
    backend = default_backend()

    cert = x509.load_der_x509_certificate(certificate_der, backend)
    try:
        hash_algorithm = cert.signature_hash_algorithm
    except UnsupportedAlgorithm:
        hash_algorithm = None

    # If the cert signature algorithm is unknown, md5, or sha1 then use sha256 otherwise use the signature
    # algorithm of the cert itself.
    if not hash_algorithm or hash_algorithm.name in ["md5", "sha1"]:
        digest = hashes.Hash(hashes.SHA256(), backend)
    else:
        digest = hashes.Hash(hash_algorithm, backend)

    digest.update(certificate_der)
    return digest.finalize()


def is_socket_readable(sock: socket.socket) -> bool:
    """
    Return whether a socket is readable.

    An idle keep-alive socket that is readable has either been closed by the
    peer or received unexpected data, either way it cannot be reused.
    """
    sock_fd = sock.fileno()
    if sock_fd == -1:
        return True

    # Use select.select on Windows, and select.poll everywhere else
    if sys.platform == "win32":
        rready, _, _ = select.select([sock_fd], [], [], 0)
        return bool(rready)
    p = select.poll()
    p.register(sock_fd, select.POLLIN)
    return bool(p.poll(0))


def url_origin(url: httpx.URL) -> httpcore.Origin:
    scheme = url.raw_scheme
    return httpcore.Origin(scheme, url.raw_host, url.port or DEFAULT_PORTS.get(scheme, 80))


def basic_auth_header(
    username: typing.Optional[str],
    password: typing.Optional[str],
) -> bytes:
    """Builds the value of a Basic Authorization or Proxy-Authorization header."""
    credential = f'{username or ""}:{password or ""}'.encode("utf-8")
    return b"Basic " + base64.b64encode(credential)
