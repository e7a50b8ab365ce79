# -*- coding: utf-8 -*-
# Copyright: (c) 2021, Jordan Borean (@jborean93) <jborean93@gmail.com>
# MIT License (see LICENSE or https://opensource.org/licenses/MIT)

import dataclasses
import socket
import typing

import httpx

Dialer = typing.Callable[[typing.Tuple[str, int], typing.Optional[float]], socket.socket]
ProxyResolver = typing.Callable[[httpx.Request], typing.Optional[typing.Union[str, httpx.URL]]]
CertificateVerifier = typing.Callable[[typing.List[bytes]], None]


def default_dial(
    address: typing.Tuple[str, int],
    timeout: typing.Optional[float],
) -> socket.socket:
    """Opens a TCP connection with the platform resolver and socket stack."""
    return socket.create_connection(address, timeout)


@dataclasses.dataclass(frozen=True)
class TransportConfig:
    """Overrides for the network behaviour of a transport.

    Each field left unset uses the default. The config is frozen so it cannot
    change once a transport is built from it.

    Attributes:
        dial: Opens the TCP connection, takes ``(host, port)`` and the connect
            timeout and returns a connected socket. Defaults to
            ``socket.create_connection``.
        proxy: Takes the outgoing request and returns the proxy URL to route
            it through, or None to connect directly. Defaults to the
            HTTP_PROXY, HTTPS_PROXY, and NO_PROXY environment variables.
        verify_certificate: Called with the DER encoded peer certificate once
            the TLS handshake is done, raises to reject the connection. It runs
            after the standard validation, combine with
            ``Endpoint(insecure=True)`` to trust self-signed or pinned
            certificates.
    """

    dial: typing.Optional[Dialer] = None
    proxy: typing.Optional[ProxyResolver] = None
    verify_certificate: typing.Optional[CertificateVerifier] = None
