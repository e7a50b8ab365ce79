# -*- coding: utf-8 -*-
# Copyright: (c) 2021, Jordan Borean (@jborean93) <jborean93@gmail.com>
# MIT License (see LICENSE or https://opensource.org/licenses/MIT)

import dataclasses
import ipaddress
import re
import typing

from urllib.parse import urlsplit

from .exceptions import (
    ConfigurationError,
)

HTTP_PORT = 5985
HTTPS_PORT = 5986

_INVALID_HOST_PATTERN = re.compile(r"[\s/?#@]|://")


@dataclasses.dataclass(frozen=True)
class Endpoint:
    """WinRM endpoint details.

    The target of a client. It is fixed once a transport has been built from
    it.

    Attributes:
        host: The hostname or IP address of the WinRM service.
        port: The port of the WinRM service.
        https: Whether to connect over TLS.
        insecure: Skip the standard certificate chain and hostname validation.
            A certificate verifier, if configured, still runs.
        ca_cert: PEM encoded CA certificate(s) used as the only trust anchors
            instead of the default store.
        tls_server_name: Override the name used for SNI and hostname
            validation.
        timeout: Timeout in seconds applied to connect, read, and write.
        path: The URL path of the WinRM service.
    """

    host: str
    port: int = HTTP_PORT
    https: bool = False
    insecure: bool = False
    ca_cert: typing.Optional[typing.Union[bytes, str]] = dataclasses.field(default=None, repr=False)
    tls_server_name: typing.Optional[str] = None
    timeout: float = 60.0
    path: str = "wsman"

    def __post_init__(self) -> None:
        if not isinstance(self.host, str) or not self.host or _INVALID_HOST_PATTERN.search(self.host):
            raise ConfigurationError(f"Invalid endpoint host '{self.host}'")

        if not isinstance(self.port, int) or isinstance(self.port, bool) or not 0 < self.port < 65536:
            raise ConfigurationError(f"Invalid endpoint port '{self.port}', must be between 1 and 65535")

        if not isinstance(self.timeout, (int, float)) or isinstance(self.timeout, bool) or self.timeout <= 0:
            raise ConfigurationError(f"Invalid endpoint timeout '{self.timeout}', must be a number greater than 0")

        if not isinstance(self.path, str):
            raise ConfigurationError(f"Invalid endpoint path '{self.path}', must be a string")

        if self.ca_cert is not None and not isinstance(self.ca_cert, (bytes, str)):
            raise ConfigurationError("Invalid endpoint ca_cert, must be PEM encoded bytes or str")

        object.__setattr__(self, "path", self.path.lstrip("/"))

    @classmethod
    def from_url(
        cls,
        url: str,
        **kwargs: typing.Any,
    ) -> "Endpoint":
        """Builds an Endpoint from an absolute URL like ``https://server:5986/wsman``."""
        try:
            parsed = urlsplit(url)
            port = parsed.port
        except ValueError as e:
            raise ConfigurationError(f"Invalid endpoint URL '{url}': {e}") from e

        if parsed.scheme not in ["http", "https"] or not parsed.hostname:
            raise ConfigurationError(f"Invalid endpoint URL '{url}', must be an absolute http or https URL")

        https = parsed.scheme == "https"
        port = port or (HTTPS_PORT if https else HTTP_PORT)
        path = parsed.path.lstrip("/") or "wsman"

        return cls(parsed.hostname, port=port, https=https, path=path, **kwargs)

    @property
    def url(self) -> str:
        """The URL the WinRM messages are posted to."""
        host = self.host
        try:
            address = ipaddress.IPv6Address(host)
        except ipaddress.AddressValueError:
            pass
        else:
            host = "[%s]" % address.compressed

        scheme = "https" if self.https else "http"
        return f"{scheme}://{host}:{self.port}/{self.path}"
