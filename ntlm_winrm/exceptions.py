# -*- coding: utf-8 -*-
# Copyright: (c) 2021, Jordan Borean (@jborean93) <jborean93@gmail.com>
# MIT License (see LICENSE or https://opensource.org/licenses/MIT)

import typing


class WinRMError(Exception):
    """Base class for every error raised by ntlm_winrm."""


class ConfigurationError(WinRMError, ValueError):
    """The endpoint or transport options are invalid, or the transport is used before being built."""


class WinRMTransportError(WinRMError):
    """The endpoint could not be reached.

    Covers DNS, dial, proxy, timeout, read and write failures. The underlying httpx exception is kept as
    ``__cause__``. These failures are safe to retry at the caller's discretion.
    """


class CertificateVerificationError(WinRMError):
    """The TLS certificate presented by the peer was not trusted."""


class AuthenticationError(WinRMError):
    """The server rejected the authentication handshake."""


class WinRMHTTPError(WinRMError):
    """The endpoint answered with a non-success HTTP status.

    Args:
        message: The error message.
        status_code: The HTTP status code of the response.
        body: The response body, a WSManFault envelope is usually found here.
    """

    def __init__(
        self,
        message: str,
        status_code: int,
        body: typing.Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.body = body
