# -*- coding: utf-8 -*-
# Copyright: (c) 2021, Jordan Borean (@jborean93) <jborean93@gmail.com>
# MIT License (see LICENSE or https://opensource.org/licenses/MIT)

import logging
import socket
import ssl
import time
import typing

import httpcore

from ..exceptions import (
    CertificateVerificationError,
)

from ._config import (
    CertificateVerifier,
    Dialer,
    default_dial,
)

from ._utils import (
    is_socket_readable,
    map_exceptions,
)

log = logging.getLogger(__name__)


class SocketStream(httpcore.NetworkStream):
    """ Based on httpcore._backends.sync.SyncStream with a pluggable certificate check after the TLS handshake. """

    def __init__(
        self,
        sock: socket.socket,
        verify_certificate: typing.Optional[CertificateVerifier] = None,
    ):
        self._sock = sock
        self._verify_certificate = verify_certificate

    def read(
        self,
        max_bytes: int,
        timeout: typing.Optional[float] = None,
    ) -> bytes:
        exc_map = {socket.timeout: httpcore.ReadTimeout, OSError: httpcore.ReadError}
        with map_exceptions(exc_map):
            self._sock.settimeout(timeout)
            return self._sock.recv(max_bytes)

    def write(
        self,
        buffer: bytes,
        timeout: typing.Optional[float] = None,
    ) -> None:
        if not buffer:
            return

        exc_map = {socket.timeout: httpcore.WriteTimeout, OSError: httpcore.WriteError}
        with map_exceptions(exc_map):
            while buffer:
                self._sock.settimeout(timeout)
                n = self._sock.send(buffer)
                buffer = buffer[n:]

    def close(self) -> None:
        self._sock.close()

    def start_tls(
        self,
        ssl_context: ssl.SSLContext,
        server_hostname: typing.Optional[str] = None,
        timeout: typing.Optional[float] = None,
    ) -> "SocketStream":
        exc_map = {
            ssl.SSLCertVerificationError: CertificateVerificationError,
            socket.timeout: httpcore.ConnectTimeout,
            OSError: httpcore.ConnectError,
        }
        with map_exceptions(exc_map):
            try:
                self._sock.settimeout(timeout)
                sock = ssl_context.wrap_socket(self._sock, server_hostname=server_hostname)
            except Exception:
                self.close()
                raise

        tls_stream = SocketStream(sock, self._verify_certificate)
        tls_stream._check_peer_certificate()
        return tls_stream

    def get_extra_info(
        self,
        info: str,
    ) -> typing.Any:
        if info == "ssl_object" and isinstance(self._sock, ssl.SSLSocket):
            return self._sock
        if info == "client_addr":
            return self._sock.getsockname()
        if info == "server_addr":
            return self._sock.getpeername()
        if info == "socket":
            return self._sock
        if info == "is_readable":
            return is_socket_readable(self._sock)
        return None

    def _check_peer_certificate(self) -> None:
        if not self._verify_certificate:
            return

        certificate = self._sock.getpeercert(binary_form=True)
        try:
            self._verify_certificate([certificate] if certificate else [])
        except Exception as e:
            self.close()
            raise CertificateVerificationError(f"Peer certificate rejected: {e}") from e


class DialerBackend(httpcore.NetworkBackend):
    """Network backend that opens every TCP connection through a dial function.

    Args:
        dial: Called with ``(host, port)`` and the connect timeout, returns a
            connected socket.
        verify_certificate: Run on the peer certificate of every TLS stream
            started from the sockets dialed here.
    """

    def __init__(
        self,
        dial: typing.Optional[Dialer] = None,
        verify_certificate: typing.Optional[CertificateVerifier] = None,
    ):
        self._dial = dial or default_dial
        self._verify_certificate = verify_certificate

    def connect_tcp(
        self,
        host: str,
        port: int,
        timeout: typing.Optional[float] = None,
        local_address: typing.Optional[str] = None,
        socket_options: typing.Optional[typing.Iterable[typing.Any]] = None,
    ) -> SocketStream:
        log.debug("Dialing %s:%d", host, port)
        exc_map = {socket.timeout: httpcore.ConnectTimeout, OSError: httpcore.ConnectError}
        with map_exceptions(exc_map):
            sock = self._dial((host, port), timeout)

        for option in socket_options or []:
            sock.setsockopt(*option)

        return SocketStream(sock, self._verify_certificate)

    def connect_unix_socket(
        self,
        path: str,
        timeout: typing.Optional[float] = None,
        socket_options: typing.Optional[typing.Iterable[typing.Any]] = None,
    ) -> SocketStream:
        raise httpcore.UnsupportedProtocol("WinRM endpoints are only reachable over TCP")

    def sleep(
        self,
        seconds: float,
    ) -> None:
        time.sleep(seconds)
