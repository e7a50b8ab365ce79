# -*- coding: utf-8 -*-
# Copyright: (c) 2021, Jordan Borean (@jborean93) <jborean93@gmail.com>
# MIT License (see LICENSE or https://opensource.org/licenses/MIT)

import ipaddress
import typing
import urllib.request

import httpx

from ._config import (
    ProxyResolver,
)

from ._utils import (
    basic_auth_header,
)

Headers = typing.List[typing.Tuple[bytes, bytes]]


def _is_loopback(
    host: str,
) -> bool:
    if host.lower() == "localhost":
        return True

    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False


def environment_proxy(
    request: httpx.Request,
) -> typing.Optional[str]:
    """Selects the proxy for a request from the environment.

    Uses HTTP_PROXY for http and HTTPS_PROXY for https targets, in upper or
    lower case, unless the host matches NO_PROXY. Requests to a loopback host
    are never proxied.
    """
    host = request.url.host
    if _is_loopback(host):
        return None

    proxies = urllib.request.getproxies_environment()
    proxy = proxies.get(request.url.scheme)
    if not proxy or urllib.request.proxy_bypass_environment(host, proxies):
        return None

    return proxy


def fixed_proxy(
    url: typing.Union[str, httpx.URL],
) -> ProxyResolver:
    """Returns a resolver that routes every request through url."""
    proxy_url = httpx.URL(url)

    def resolve(request: httpx.Request) -> httpx.URL:
        return proxy_url

    return resolve


def parse_proxy_url(
    value: typing.Optional[typing.Union[str, httpx.URL]],
) -> typing.Optional[httpx.URL]:
    if not value:
        return None

    if isinstance(value, str) and "://" not in value:
        value = f"http://{value}"

    url = httpx.URL(value)
    if url.scheme != "http":
        raise httpx.ProxyError(f"Unsupported proxy scheme '{url.scheme}', only http proxies are supported")

    return url


def get_proxy_headers(
    url: httpx.URL,
) -> Headers:
    if not url.username:
        return []

    return [(b"Proxy-Authorization", basic_auth_header(url.username, url.password))]
