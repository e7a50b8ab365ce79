# -*- coding: utf-8 -*-
# Copyright: (c) 2021, Jordan Borean (@jborean93) <jborean93@gmail.com>
# MIT License (see LICENSE or https://opensource.org/licenses/MIT)

import base64
import binascii
import logging
import re
import threading
import typing
import weakref

import httpx
import spnego
import spnego.channel_bindings
import spnego.exceptions

from ..exceptions import (
    AuthenticationError,
    ConfigurationError,
)

from ._connection import (
    Connection,
    HTTPTransport,
)

from ._utils import (
    get_tls_server_end_point_hash,
)

log = logging.getLogger(__name__)

WWW_AUTH_PATTERN = re.compile(r"(Negotiate|NTLM)\s*([^,]*),?", re.I)
WWW_AUTHS = "WWW-Authenticate"
WWW_AUTHZ = "Authorization"


def _get_basic_credentials(
    headers: httpx.Headers,
) -> typing.Optional[typing.Tuple[str, str]]:
    """Extracts the username and password from a Basic Authorization header."""
    auth = headers.get(WWW_AUTHZ, "")
    scheme, _, value = auth.partition(" ")
    if scheme.lower() != "basic":
        return None

    try:
        credential = base64.b64decode(value.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        raise AuthenticationError(f"Invalid Basic credentials on the request: {e}") from e

    username, _, password = credential.partition(":")
    return username, password


def _without_authorization(
    request: httpx.Request,
) -> httpx.Request:
    """Copies the request without its Authorization header.

    The caller's request keeps its credentials, httpx builds any redirect
    request from it.
    """
    headers = request.headers.copy()
    del headers[WWW_AUTHZ]
    return httpx.Request(
        request.method,
        request.url,
        headers=headers,
        content=request.read(),
        extensions=request.extensions,
    )


def _offers(
    response: httpx.Response,
    *schemes: str,
) -> bool:
    """Whether the 401 response advertises one of the auth schemes."""
    auths = response.headers.get(WWW_AUTHS, "").lower()
    return response.status_code == 401 and any(s.lower() in auths for s in schemes)


def _get_challenge(
    response: httpx.Response,
) -> typing.Optional[typing.Tuple[str, bytes]]:
    auths = response.headers.get(WWW_AUTHS, "")
    match = WWW_AUTH_PATTERN.search(auths)
    if not match or not match.group(2).strip():
        return None

    try:
        token = base64.b64decode(match.group(2).strip(), validate=True)
    except binascii.Error as e:
        raise AuthenticationError(f"Server returned an invalid {match.group(1)} token: {e}") from e

    return match.group(1), token


class NTLMNegotiator(httpx.BaseTransport):
    """Runs the NTLM handshake transparently over the wrapped transport.

    Requests that carry Basic credentials are authenticated with NTLMv2
    instead, the credentials themselves are never sent unless the server only
    offers Basic. The handshake is done once per physical connection: the
    negotiate message gets a challenge back, the authenticate message is sent
    with the original request, and its response is returned to the caller.
    Later requests on an authenticated connection are sent as is.

    Args:
        transport: The transport doing the network I/O.
        service: The SPN service used for the authentication context.
        auth_scheme: The WWW-Authenticate scheme the tokens are sent with,
            Negotiate or NTLM.
        send_cbt: Bind the authentication to the TLS channel over HTTPS.
    """

    def __init__(
        self,
        transport: HTTPTransport,
        service: str = "HTTP",
        auth_scheme: str = "Negotiate",
        send_cbt: bool = True,
    ):
        valid_schemes = ["Negotiate", "NTLM"]
        if auth_scheme not in valid_schemes:
            raise ConfigurationError(f"{type(self).__name__} auth_scheme only supports {', '.join(valid_schemes)}")

        self._transport = transport
        self._service = service
        self._auth_scheme = auth_scheme
        self._send_cbt = send_cbt

        self._authenticated: "weakref.WeakSet[Connection]" = weakref.WeakSet()
        self._lock = threading.Lock()

    def handle_request(
        self,
        request: httpx.Request,
    ) -> httpx.Response:
        credentials = _get_basic_credentials(request.headers)
        if credentials is None:
            return self._transport.handle_request(request)

        basic_auth = request.headers[WWW_AUTHZ]
        request = _without_authorization(request)

        with self._transport.connection(request) as connection:
            if self._is_authenticated(connection):
                response = connection.handle_request(request)
                if not _offers(response, "Negotiate", "NTLM"):
                    return response

                # The server has dropped the authenticated session, the connection is negotiated again once.
                log.debug("Authentication on %r is no longer valid, negotiating again", connection)
                self._set_authenticated(connection, False)
                if connection.is_closed():
                    raise AuthenticationError("Server rejected the authenticated connection and closed it")

            return self._authenticate(connection, request, credentials, basic_auth)

    def close(self) -> None:
        self._transport.close()

    def _authenticate(
        self,
        connection: Connection,
        request: httpx.Request,
        credentials: typing.Tuple[str, str],
        basic_auth: str,
    ) -> httpx.Response:
        context = self._build_context(connection, request.url.host, credentials)

        out_token = self._step(context, None)
        log.debug("Sending NTLM negotiate message on %r", connection)
        response = self._send(connection, request, self._auth_scheme, out_token)
        if response.status_code != 401:
            # Nothing to authenticate against, the response is the actual answer.
            return response

        challenge = _get_challenge(response)
        if challenge is None:
            if _offers(response, "Basic") and not _offers(response, "Negotiate", "NTLM"):
                log.debug("Server only offers Basic authentication, sending the Basic credentials")
                self._check_open(connection)
                request.headers[WWW_AUTHZ] = basic_auth
                response = connection.handle_request(request)
                if response.status_code == 401:
                    raise AuthenticationError(f"Server rejected the Basic authentication for user '{credentials[0]}'")

                return response

            auths = response.headers.get(WWW_AUTHS, "")
            raise AuthenticationError(
                f"Server did not respond with an NTLM challenge to the negotiate message, "
                f"status: {response.status_code}, {WWW_AUTHS}: '{auths}'"
            )

        scheme, in_token = challenge
        out_token = self._step(context, in_token)
        self._check_open(connection)

        log.debug("Sending NTLM authenticate message on %r", connection)
        response = self._send(connection, request, scheme, out_token)
        if response.status_code == 401:
            raise AuthenticationError(f"Server rejected the NTLM authentication for user '{credentials[0]}'")

        self._set_authenticated(connection, True)
        return response

    def _build_context(
        self,
        connection: Connection,
        hostname: str,
        credentials: typing.Tuple[str, str],
    ) -> spnego.ContextProxy:
        cbt = None
        ssl_object = connection.get_extra_info("ssl_object")
        if ssl_object and self._send_cbt:
            cert = ssl_object.getpeercert(True)
            cert_hash = get_tls_server_end_point_hash(cert)
            cbt = spnego.channel_bindings.GssChannelBindings(application_data=b"tls-server-end-point:" + cert_hash)

        username, password = credentials
        return spnego.client(
            username,
            password,
            hostname=hostname,
            service=self._service,
            channel_bindings=cbt,
            protocol="ntlm",
        )

    def _step(
        self,
        context: spnego.ContextProxy,
        in_token: typing.Optional[bytes],
    ) -> bytes:
        try:
            out_token = context.step(in_token)
        except spnego.exceptions.SpnegoError as e:
            raise AuthenticationError(f"Failed to process the NTLM token: {e}") from e

        if not out_token:
            raise AuthenticationError("NTLM context did not produce a token to send to the server")

        return out_token

    def _send(
        self,
        connection: Connection,
        request: httpx.Request,
        scheme: str,
        token: bytes,
    ) -> httpx.Response:
        request.headers[WWW_AUTHZ] = f"{scheme} {base64.b64encode(token).decode()}"
        try:
            return connection.handle_request(request)
        finally:
            del request.headers[WWW_AUTHZ]

    def _check_open(
        self,
        connection: Connection,
    ) -> None:
        # NTLM authenticates the connection, the handshake cannot continue on another one.
        if connection.is_closed():
            raise AuthenticationError("Server closed the connection during the NTLM handshake")

    def _is_authenticated(
        self,
        connection: Connection,
    ) -> bool:
        with self._lock:
            return connection in self._authenticated

    def _set_authenticated(
        self,
        connection: Connection,
        authenticated: bool,
    ) -> None:
        with self._lock:
            if authenticated:
                self._authenticated.add(connection)
            else:
                self._authenticated.discard(connection)
