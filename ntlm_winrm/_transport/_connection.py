# -*- coding: utf-8 -*-
# Copyright: (c) 2021, Jordan Borean (@jborean93) <jborean93@gmail.com>
# MIT License (see LICENSE or https://opensource.org/licenses/MIT)

import contextlib
import http
import logging
import ssl
import threading
import typing

import httpcore
import httpx

from ..endpoint import (
    Endpoint,
)

from ..exceptions import (
    ConfigurationError,
)

from ._backends import (
    DialerBackend,
)

from ._config import (
    TransportConfig,
)

from ._proxy import (
    Headers,
    environment_proxy,
    get_proxy_headers,
    parse_proxy_url,
)

from ._utils import (
    PoolKey,
    map_httpcore_exceptions,
    url_origin,
)

log = logging.getLogger(__name__)

KEEPALIVE_EXPIRY = 60.0
MAX_IDLE_CONNECTIONS_PER_HOST = 2


def create_ssl_context(
    endpoint: Endpoint,
) -> ssl.SSLContext:
    """Builds the TLS context used for every connection to the endpoint."""
    if endpoint.ca_cert:
        try:
            ca_cert = endpoint.ca_cert
            if isinstance(ca_cert, bytes):
                ca_cert = ca_cert.decode("ascii")

            ssl_context = ssl.create_default_context(cadata=ca_cert)
        except (ssl.SSLError, ValueError) as e:
            raise ConfigurationError(f"Invalid ca_cert for endpoint {endpoint.url}: {e}") from e

    else:
        ssl_context = httpx.create_ssl_context()

    if endpoint.insecure:
        ssl_context.check_hostname = False
        ssl_context.verify_mode = ssl.CERT_NONE

    return ssl_context


class Connection:
    """A single physical HTTP/1.1 connection.

    Args:
        key: The pool key the connection is stored under.
        origin: The origin the socket is connected to, this is the proxy for a
            forwarding proxy connection.
        stream: The connected network stream.
        keepalive_expiry: Seconds the connection can stay idle before it is
            discarded.
        proxy_headers: Headers added to each request sent to a forwarding
            proxy.
        forward: Send requests with an absolute-form target to a forwarding
            proxy.
    """

    def __init__(
        self,
        key: PoolKey,
        origin: httpcore.Origin,
        stream: httpcore.NetworkStream,
        keepalive_expiry: typing.Optional[float] = None,
        proxy_headers: typing.Optional[Headers] = None,
        forward: bool = False,
    ):
        self.key = key
        self._origin = origin
        self._stream = stream
        self._http = httpcore.HTTP11Connection(origin=origin, stream=stream, keepalive_expiry=keepalive_expiry)
        self._proxy_headers = proxy_headers or []
        self._forward = forward

    def __repr__(self) -> str:
        return f"<Connection [{self._origin}, {self._http.info()}]>"

    def handle_request(
        self,
        request: httpx.Request,
    ) -> httpx.Response:
        """Sends the request over this connection and returns the buffered response."""
        content = request.read()
        headers = request.headers.raw
        target = request.url.raw_path

        if self._forward:
            headers = headers + self._proxy_headers
            target = str(request.url).encode("ascii")

        req = httpcore.Request(
            method=request.method,
            url=httpcore.URL(
                scheme=self._origin.scheme,
                host=self._origin.host,
                port=self._origin.port,
                target=target,
            ),
            headers=headers,
            content=content,
            extensions=request.extensions,
        )

        with map_httpcore_exceptions():
            resp = self._http.handle_request(req)
            try:
                data = resp.read()
            finally:
                resp.close()

        return httpx.Response(
            status_code=resp.status,
            headers=resp.headers,
            content=data,
            extensions=resp.extensions,
        )

    def get_extra_info(
        self,
        info: str,
    ) -> typing.Any:
        return self._stream.get_extra_info(info)

    def is_idle(self) -> bool:
        return self._http.is_idle()

    def is_closed(self) -> bool:
        return self._http.is_closed()

    def has_expired(self) -> bool:
        return self._http.has_expired()

    def close(self) -> None:
        self._http.close()


class HTTPTransport(httpx.BaseTransport):
    """The HTTP transport that does the actual network I/O for an endpoint.

    Connections are opened through the dial function of the config, routed
    through the proxy its resolver selects, and TLS peers are checked with its
    certificate verifier. Idle connections are kept for reuse.

    Args:
        endpoint: The endpoint the TLS settings are taken from.
        config: The dial, proxy, and certificate overrides.
        keepalive_expiry: Seconds an idle connection is kept.
        max_idle_connections_per_host: The number of idle connections kept for
            each host.
    """

    def __init__(
        self,
        endpoint: Endpoint,
        config: typing.Optional[TransportConfig] = None,
        keepalive_expiry: float = KEEPALIVE_EXPIRY,
        max_idle_connections_per_host: int = MAX_IDLE_CONNECTIONS_PER_HOST,
    ):
        config = config or TransportConfig()

        self.endpoint = endpoint
        self._ssl_context = create_ssl_context(endpoint)
        self._backend = DialerBackend(config.dial, config.verify_certificate)
        self._proxy = config.proxy or environment_proxy
        self._keepalive_expiry = keepalive_expiry
        self._max_idle = max_idle_connections_per_host

        self._idle: typing.Dict[PoolKey, typing.List[Connection]] = {}
        self._lock = threading.Lock()

    def handle_request(
        self,
        request: httpx.Request,
    ) -> httpx.Response:
        with self.connection(request) as connection:
            return connection.handle_request(request)

    @contextlib.contextmanager
    def connection(
        self,
        request: httpx.Request,
    ) -> typing.Iterator[Connection]:
        """Checks out a connection for the request.

        The connection is used exclusively by the caller until the context
        exits. It then goes back to the pool, or is closed if the block raised
        or the connection cannot be reused.
        """
        connection = self._acquire(request)
        try:
            yield connection
        except BaseException:
            connection.close()
            raise

        self._release(connection)

    def close(self) -> None:
        with self._lock:
            connections = [c for idle in self._idle.values() for c in idle]
            self._idle.clear()

        for connection in connections:
            connection.close()

    def _acquire(
        self,
        request: httpx.Request,
    ) -> Connection:
        if request.url.scheme not in ["http", "https"]:
            raise httpx.UnsupportedProtocol(f"Request URL has an unsupported protocol '{request.url.scheme}://'")

        proxy_url = parse_proxy_url(self._proxy(request))
        origin = url_origin(request.url)
        key = (origin.scheme, origin.host, origin.port, str(proxy_url) if proxy_url else None)

        connection = None
        expired = []
        with self._lock:
            idle = self._idle.get(key, [])
            while idle:
                candidate = idle.pop()
                if candidate.has_expired():
                    expired.append(candidate)
                else:
                    connection = candidate
                    break

        for candidate in expired:
            log.debug("Discarding expired %r", candidate)
            candidate.close()

        if connection:
            log.debug("Reusing %r", connection)
            return connection

        return self._open_connection(key, origin, proxy_url, request.extensions)

    def _release(
        self,
        connection: Connection,
    ) -> None:
        if connection.is_idle():
            with self._lock:
                idle = self._idle.setdefault(connection.key, [])
                if len(idle) < self._max_idle:
                    idle.append(connection)
                    return

        log.debug("Closing %r", connection)
        connection.close()

    def _open_connection(
        self,
        key: PoolKey,
        origin: httpcore.Origin,
        proxy_url: typing.Optional[httpx.URL],
        extensions: typing.Dict[str, typing.Any],
    ) -> Connection:
        timeout = extensions.get("timeout", {}).get("connect")

        with map_httpcore_exceptions():
            if not proxy_url:
                stream = self._backend.connect_tcp(origin.host.decode("ascii"), origin.port, timeout=timeout)
                if origin.scheme == b"https":
                    stream = self._start_tls(stream, origin, timeout)

                connection = Connection(key, origin, stream, keepalive_expiry=self._keepalive_expiry)

            else:
                proxy_origin = url_origin(proxy_url)
                proxy_headers = get_proxy_headers(proxy_url)
                stream = self._backend.connect_tcp(
                    proxy_origin.host.decode("ascii"), proxy_origin.port, timeout=timeout
                )

                if origin.scheme == b"http":
                    connection = Connection(
                        key,
                        proxy_origin,
                        stream,
                        keepalive_expiry=self._keepalive_expiry,
                        proxy_headers=proxy_headers,
                        forward=True,
                    )

                else:
                    try:
                        stream = self._connect_tunnel(stream, proxy_origin, origin, proxy_headers, extensions)
                    except BaseException:
                        stream.close()
                        raise

                    stream = self._start_tls(stream, origin, timeout)
                    connection = Connection(key, origin, stream, keepalive_expiry=self._keepalive_expiry)

        log.debug("Opened %r", connection)
        return connection

    def _start_tls(
        self,
        stream: httpcore.NetworkStream,
        origin: httpcore.Origin,
        timeout: typing.Optional[float],
    ) -> httpcore.NetworkStream:
        server_hostname = self.endpoint.tls_server_name or origin.host.decode("ascii")
        return stream.start_tls(self._ssl_context, server_hostname=server_hostname, timeout=timeout)

    def _connect_tunnel(
        self,
        stream: httpcore.NetworkStream,
        proxy_origin: httpcore.Origin,
        origin: httpcore.Origin,
        proxy_headers: Headers,
        extensions: typing.Dict[str, typing.Any],
    ) -> httpcore.NetworkStream:
        target = b"%b:%d" % (origin.host, origin.port)
        connect_url = httpcore.URL(
            scheme=proxy_origin.scheme,
            host=proxy_origin.host,
            port=proxy_origin.port,
            target=target,
        )
        connect_headers = [(b"Host", target), (b"Accept", b"*/*")] + proxy_headers

        log.debug("Opening CONNECT tunnel to %s through %s", target.decode(), proxy_origin)
        tunnel = httpcore.HTTP11Connection(origin=proxy_origin, stream=stream)
        response = tunnel.handle_request(
            httpcore.Request(
                b"CONNECT",
                connect_url,
                headers=connect_headers,
                extensions={"timeout": extensions.get("timeout", {})},
            )
        )

        if response.status < 200 or response.status > 299:
            try:
                reason = http.HTTPStatus(response.status).phrase
            except ValueError:
                reason = ""
            raise httpcore.ProxyError(f"Proxy failed {response.status} {reason}")

        return response.extensions["network_stream"]
