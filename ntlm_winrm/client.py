# -*- coding: utf-8 -*-
# Copyright: (c) 2021, Jordan Borean (@jborean93) <jborean93@gmail.com>
# MIT License (see LICENSE or https://opensource.org/licenses/MIT)

import abc
import logging
import typing

import httpx

from .endpoint import (
    Endpoint,
)

from .exceptions import (
    ConfigurationError,
    WinRMHTTPError,
    WinRMTransportError,
)

from ._transport import (
    CertificateVerifier,
    Dialer,
    HTTPTransport,
    NTLMNegotiator,
    ProxyResolver,
    TransportConfig,
)

log = logging.getLogger(__name__)

SOAP_CONTENT_TYPE = "application/soap+xml;charset=UTF-8"
USER_AGENT = "Python WinRM client"


class Transporter(metaclass=abc.ABCMeta):
    """The contract a transport strategy of a Client must implement.

    The Client calls transport once when it is created, then post for every
    message it sends.
    """

    @abc.abstractmethod
    def transport(
        self,
        endpoint: Endpoint,
    ) -> None:
        """Builds the HTTP machinery used to reach the endpoint.

        Args:
            endpoint: The WinRM endpoint the messages are sent to.
        """
        pass

    @abc.abstractmethod
    def post(
        self,
        client: "Client",
        message: typing.Union[bytes, str],
    ) -> str:
        """Sends the SOAP message to the client's endpoint.

        Args:
            client: The client whose URL and credentials are used.
            message: The SOAP envelope to send.

        Returns:
            str: The SOAP response body.
        """
        pass

    @abc.abstractmethod
    def close(self) -> None:
        """Closes any connections that are still open."""
        pass


class ClientRequest(Transporter):
    """Sends the messages with HTTP Basic authentication.

    Args:
        dial: Opens the TCP connections, see TransportConfig.
        proxy: Selects the proxy for each request, see TransportConfig.
        verify_certificate: Checks the peer certificate of TLS connections,
            see TransportConfig.
    """

    def __init__(
        self,
        dial: typing.Optional[Dialer] = None,
        proxy: typing.Optional[ProxyResolver] = None,
        verify_certificate: typing.Optional[CertificateVerifier] = None,
    ):
        self.config = TransportConfig(dial=dial, proxy=proxy, verify_certificate=verify_certificate)
        self._http: typing.Optional[httpx.Client] = None

    def transport(
        self,
        endpoint: Endpoint,
    ) -> None:
        if not isinstance(endpoint, Endpoint):
            raise ConfigurationError(
                f"{type(self).__name__} transport requires an Endpoint, not {type(endpoint).__name__}"
            )

        if self._http is not None:
            raise ConfigurationError(f"{type(self).__name__} transport has already been built")

        transport = self._wrap_transport(HTTPTransport(endpoint, self.config))
        self._http = httpx.Client(
            headers={
                "Accept-Encoding": "identity",
                "Content-Type": SOAP_CONTENT_TYPE,
                "User-Agent": USER_AGENT,
            },
            timeout=httpx.Timeout(endpoint.timeout),
            transport=transport,
            follow_redirects=True,
        )

    def post(
        self,
        client: "Client",
        message: typing.Union[bytes, str],
    ) -> str:
        if self._http is None:
            raise ConfigurationError(f"{type(self).__name__} transport has not been built, call transport() first")

        if isinstance(message, str):
            message = message.encode("utf-8")
        elif not isinstance(message, bytes):
            raise TypeError(f"message must be bytes or str, not {type(message).__name__}")

        log.debug("WinRM Request to %s: %s", client.url, message.decode("utf-8", errors="replace"))
        try:
            response = self._http.post(
                client.url,
                content=message,
                auth=httpx.BasicAuth(client.username, client.password),
            )
        except httpx.RequestError as e:
            raise WinRMTransportError(f"Failed to send the request to {client.url}: {e}") from e

        body = response.text
        log.debug("WinRM Response %d: %s", response.status_code, body)

        if response.status_code != 200:
            raise WinRMHTTPError(f"http error {response.status_code}: {body}", response.status_code, body)

        return body

    def close(self) -> None:
        if self._http is not None:
            self._http.close()

    def _wrap_transport(
        self,
        transport: HTTPTransport,
    ) -> httpx.BaseTransport:
        return transport


class ClientNTLM(ClientRequest):
    """Sends the messages with NTLMv2 authentication.

    The Basic credentials of the request are swapped for an NTLM handshake on
    each new connection.

    Args:
        dial: Opens the TCP connections, see TransportConfig.
        proxy: Selects the proxy for each request, see TransportConfig.
        verify_certificate: Checks the peer certificate of TLS connections,
            see TransportConfig.
        send_cbt: Bind the authentication to the TLS channel over HTTPS.
    """

    def __init__(
        self,
        dial: typing.Optional[Dialer] = None,
        proxy: typing.Optional[ProxyResolver] = None,
        verify_certificate: typing.Optional[CertificateVerifier] = None,
        send_cbt: bool = True,
    ):
        super().__init__(dial=dial, proxy=proxy, verify_certificate=verify_certificate)
        self.send_cbt = send_cbt

    def _wrap_transport(
        self,
        transport: HTTPTransport,
    ) -> httpx.BaseTransport:
        return NTLMNegotiator(transport, send_cbt=self.send_cbt)


class Client:
    """A client for a single WinRM endpoint.

    Args:
        endpoint: The endpoint to send the messages to.
        username: The user to authenticate as, can be ``DOMAIN\\user``.
        password: The password of the user.
        transporter: How the messages are sent, defaults to ClientNTLM.
    """

    def __init__(
        self,
        endpoint: Endpoint,
        username: str,
        password: str,
        transporter: typing.Optional[Transporter] = None,
    ):
        self.endpoint = endpoint
        self.username = username
        self.password = password
        self.transporter = transporter or ClientNTLM()
        self.transporter.transport(endpoint)

    def __enter__(self) -> "Client":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @property
    def url(self) -> str:
        return self.endpoint.url

    def post(
        self,
        message: typing.Union[bytes, str],
    ) -> str:
        return self.transporter.post(self, message)

    def close(self) -> None:
        self.transporter.close()
